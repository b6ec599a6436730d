import functools
import math
import os
import tempfile
import unittest
from dataclasses import asdict
import torch
import torch.nn as nn
from torch.func import functional_call
import pyro
from pyro import poutine

from layer_dist import LayerWeights, Unpacker, make_bnn, bnn_model, fit_advi, fit_nuts, predict, BnnTrainer
from dataset import make_xor_dataset
from helpers import make_config
import utils


class LayerWeightsTest(unittest.TestCase):
    def setUp(self):
        torch.manual_seed(0)
        self.layer = nn.Linear(3, 4)
        self.dist = LayerWeights.from_module(self.layer, scale=2.0)

    def test_event_shape_covers_weight_and_bias(self):
        self.assertEqual(self.dist.event_shape, (16,))
        self.assertEqual(self.dist.sample().shape, (16,))
        self.assertEqual(self.dist.sample((5,)).shape, (5, 16))

    def test_weights_are_scaled_by_fan_in(self):
        expected = torch.cat([torch.full((12,), 2.0 / math.sqrt(3)), torch.full((4,), 2.0)])

        self.assertTrue(torch.allclose(self.dist.stddev, expected))
        self.assertTrue(torch.equal(self.dist.mean, torch.zeros(16)))

    def test_log_prob_sums_independent_gaussians(self):
        value = torch.randn(5, 16)
        expected = torch.distributions.Normal(torch.zeros(16), self.dist.stddev).log_prob(value).sum(-1)

        self.assertEqual(self.dist.log_prob(value).shape, (5,))
        self.assertTrue(torch.allclose(self.dist.log_prob(value), expected))

    def test_unpack(self):
        value = torch.arange(16.)
        params = self.dist.unpack(value)

        self.assertTrue(torch.equal(params["weight"], torch.arange(12.).reshape(4, 3)))
        self.assertTrue(torch.equal(params["bias"], torch.arange(12., 16.)))

    def test_unpack_batched_samples(self):
        params = self.dist.unpack(self.dist.sample((7,)))

        self.assertEqual(params["weight"].shape, (7, 4, 3))
        self.assertEqual(params["bias"].shape, (7, 4))

    def test_layer_without_bias(self):
        layer_dist = LayerWeights.from_module(nn.Linear(3, 4, bias=False))

        self.assertEqual(layer_dist.event_shape, (12,))
        self.assertNotIn("bias", layer_dist.unpack(layer_dist.sample()))

    def test_convolution_fan_in(self):
        layer_dist = LayerWeights.from_module(nn.Conv2d(2, 3, kernel_size=3))

        self.assertEqual(layer_dist.fan_in, 18)
        self.assertEqual(layer_dist.event_shape, (3 * 2 * 9 + 3,))

    def test_expand_under_a_plate(self):
        batched = self.dist.expand([3])

        self.assertEqual(batched.batch_shape, (3,))
        self.assertEqual(batched.sample().shape, (3, 16))
        self.assertEqual(batched.sample((2,)).shape, (2, 3, 16))
        self.assertEqual(batched.log_prob(torch.zeros(3, 16)).shape, (3,))
        self.assertTrue(torch.allclose(batched.log_prob(torch.zeros(3, 16)), self.dist.log_prob(torch.zeros(16)).expand(3)))

        def model():
            with pyro.plate("networks", 3):
                return pyro.sample("layer", self.dist)

        trace = poutine.trace(model).get_trace()
        self.assertEqual(trace.nodes["layer"]["value"].shape, (3, 16))
        self.assertEqual(trace.log_prob_sum().shape, ())

    def test_unsupported_layer(self):
        with self.assertRaises(ValueError):
            LayerWeights.from_module(nn.BatchNorm1d(4))


class UnpackerTest(unittest.TestCase):
    def setUp(self):
        torch.manual_seed(0)
        self.network = make_bnn(input_dim=2, hidden_dim=5, num_classes=3)
        self.unpacker = Unpacker(self.network)

    def test_counts_every_parameter(self):
        self.assertEqual(self.unpacker.num_params, utils.count_parameters(self.network))

    def test_pack_inverts_unpack(self):
        flat = torch.randn(self.unpacker.num_params)

        self.assertTrue(torch.equal(self.unpacker.pack(self.unpacker(flat)), flat))

    def test_unpacked_parameters_drive_the_network(self):
        params = dict(self.network.named_parameters())
        x = torch.randn(4, 2)

        unpacked = self.unpacker(self.unpacker.pack(params))

        self.assertTrue(torch.allclose(functional_call(self.network, unpacked, (x,)), self.network(x)))

    def test_wrong_length(self):
        with self.assertRaises(ValueError):
            self.unpacker(torch.randn(self.unpacker.num_params + 1))


class BnnModelTest(unittest.TestCase):
    def setUp(self):
        self.network = make_bnn(hidden_dim=4)
        self.x, self.y = make_xor_dataset(n_per_cluster=5)

    def test_layerwise_sites(self):
        trace = poutine.trace(bnn_model).get_trace(self.network, self.x, self.y)
        sites = {name for name, site in trace.nodes.items() if site["type"] == "sample"}

        self.assertEqual(sites, {"layer_0", "layer_2", "layer_4", "obs"})
        self.assertEqual(trace.nodes["_RETURN"]["value"].shape, (20, 2))

    def test_flat_site(self):
        trace = poutine.trace(bnn_model).get_trace(self.network, self.x, self.y, layerwise=False)

        self.assertEqual(trace.nodes["weights"]["value"].shape, (utils.count_parameters(self.network),))
        self.assertTrue(trace.nodes["obs"]["is_observed"])


class InferenceTest(unittest.TestCase):
    def setUp(self):
        pyro.set_rng_seed(0)
        self.x, self.y = make_xor_dataset(n_per_cluster=25, spread=0.3)

    def test_advi_separates_xor(self):
        model = functools.partial(bnn_model, make_bnn(hidden_dim=8))
        guide, losses = fit_advi(model, self.x, self.y, num_steps=1500, lr=0.03)

        probs = predict(model, self.x, guide=guide, num_samples=50)
        accuracy = (probs.argmax(-1) == self.y).float().mean().item()

        self.assertEqual(probs.shape, (100, 2))
        self.assertTrue(torch.allclose(probs.sum(-1), torch.ones(100)))
        self.assertLess(sum(losses[-100:]), sum(losses[:100]))
        self.assertGreater(accuracy, 0.75)

    def test_advi_with_flat_prior_and_full_covariance(self):
        model = functools.partial(bnn_model, make_bnn(hidden_dim=2), layerwise=False)
        guide, losses = fit_advi(model, self.x, self.y, num_steps=5, guide='multivariate')

        self.assertEqual(len(losses), 5)
        self.assertEqual(predict(model, self.x, guide=guide, num_samples=3).shape, (100, 2))

    def test_unknown_guide(self):
        with self.assertRaises(ValueError):
            fit_advi(bnn_model, make_bnn(), self.x, self.y, num_steps=1, guide='delta')

    def test_nuts(self):
        model = functools.partial(bnn_model, make_bnn(hidden_dim=2))
        samples = fit_nuts(model, self.x[::10], self.y[::10], num_samples=5, warmup_steps=5)

        self.assertEqual(samples["layer_0"].shape, (5, 6))
        self.assertEqual(predict(model, self.x, posterior_samples=samples).shape, (100, 2))

    def test_predict_needs_a_posterior(self):
        with self.assertRaises(ValueError):
            predict(bnn_model, make_bnn(), self.x)


class BnnTrainerTest(unittest.TestCase):
    def test_advi_run(self):
        with tempfile.TemporaryDirectory() as results_dir:
            config = make_config(results_dir, run_mode='bnn', bnn_steps=20)
            trainer = BnnTrainer(config=config, **asdict(config))
            accuracy = trainer.train()

            self.assertGreaterEqual(accuracy, 0.0)
            self.assertLessEqual(accuracy, 1.0)
            self.assertTrue(os.path.exists(os.path.join(config.run_path, "advi_losses.csv")))
            self.assertTrue(os.path.exists(os.path.join(config.output_path, "bnn_decision_boundary.png")))

    def test_unknown_inference(self):
        with tempfile.TemporaryDirectory() as results_dir:
            config = make_config(results_dir, bnn_inference='laplace')

            with self.assertRaises(ValueError):
                BnnTrainer(config=config, **asdict(config))


if __name__ == '__main__':
    unittest.main()
