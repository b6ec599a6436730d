import os
import tempfile
import unittest
from dataclasses import asdict
import torch
import torch.nn as nn
import pyro
from pyro import poutine

from bayes_gan import BayesianGan, BayesGanTrainer, make_bayesian
from utils import TrainingDivergedError
from helpers import make_config


class MakeBayesianTest(unittest.TestCase):
    def test_weights_are_drawn_from_the_prior(self):
        network = make_bayesian(nn.Sequential(nn.Linear(3, 4), nn.ReLU(), nn.Linear(4, 1)))

        first, second = network[0].weight, network[0].weight

        self.assertEqual(first.shape, (4, 3))
        self.assertFalse(torch.equal(first, second))

    def test_sample_sites_are_named_after_parameters(self):
        network = make_bayesian(nn.Sequential(nn.Linear(3, 4), nn.ReLU(), nn.Linear(4, 1)))
        trace = poutine.trace(network).get_trace(torch.randn(2, 3))

        self.assertEqual(
            {name for name, site in trace.nodes.items() if site["type"] == "sample"},
            {"0.weight", "0.bias", "2.weight", "2.bias"}
        )


class BayesianGanTest(unittest.TestCase):
    def setUp(self):
        pyro.clear_param_store()
        torch.manual_seed(0)
        self.gan = BayesianGan(latent_dim=8, image_size=8)

    def test_model_scores_generated_images(self):
        trace = poutine.trace(self.gan.model).get_trace(self.gan.noise(4))

        self.assertIn("layers.0.weight", trace.nodes)
        self.assertIn("discriminator", trace.nodes)
        self.assertEqual(trace.nodes["_RETURN"]["value"].shape, (4, 1, 8, 8))

    def test_posterior_generators_differ(self):
        noise = self.gan.noise(4)

        first = self.gan.sample_images(noise)
        second = self.gan.sample_images(noise)

        self.assertEqual(first.shape, (4, 1, 8, 8))
        self.assertFalse(torch.equal(first, second))

    def test_sample_posterior_stacks_generators(self):
        images = self.gan.sample_posterior(self.gan.noise(3), num_samples=2)

        self.assertEqual(images.shape, (6, 1, 8, 8))
        self.assertTrue(self.gan.generator.training)


class BayesGanTrainerTest(unittest.TestCase):
    def test_train(self):
        with tempfile.TemporaryDirectory() as results_dir:
            config = make_config(results_dir, latent_dim=8, image_size=8, batch_size=4, max_images=8,
                                 verbose_freq=1, output_x=3, num_posterior_samples=2)
            trainer = BayesGanTrainer(config=config, **asdict(config))
            trainer.train()

            for step in (0, 1, 2):
                self.assertTrue(os.path.exists(os.path.join(config.output_path, f"bayes_gan_steps_{step:06d}.png")))

            self.assertTrue(os.path.exists(os.path.join(config.run_path, "checkpoints", "generator_posterior.pt")))
            self.assertTrue(os.path.exists(os.path.join(config.run_path, "model.pt")))
            self.assertEqual(trainer.model.likelihood_scale, 2.0)

    def test_dataset_smaller_than_a_batch(self):
        with tempfile.TemporaryDirectory() as results_dir:
            config = make_config(results_dir, latent_dim=8, image_size=8, batch_size=16, max_images=8)

            with self.assertRaises(ValueError):
                BayesGanTrainer(config=config, **asdict(config))

    def test_diverging_discriminator_stops_training(self):
        with tempfile.TemporaryDirectory() as results_dir:
            config = make_config(results_dir, latent_dim=8, image_size=8, batch_size=4, max_images=8,
                                 output_x=3, num_posterior_samples=2)
            trainer = BayesGanTrainer(config=config, **asdict(config))
            trainer.train_loader = [(torch.full((4, 1, 8, 8), float("nan")), torch.zeros(4))]

            with self.assertRaises(TrainingDivergedError) as context:
                trainer.train()

            self.assertEqual(context.exception.loss_name, "discriminator loss")
            self.assertEqual(context.exception.step, 0)


if __name__ == '__main__':
    unittest.main()
