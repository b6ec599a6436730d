import os
import tempfile
import unittest
import torch
import pyro
from pyro.infer import Trace_ELBO

from vae_model import Encoder, Decoder, Vae, PyroVae


class EncoderDecoderTest(unittest.TestCase):
    def test_encoder_returns_mean_and_positive_std(self):
        encoder = Encoder(input_dim=784, hidden_dim=32, z_dim=3)
        mean, std = encoder(torch.rand(5, 784))

        self.assertEqual(mean.shape, (5, 3))
        self.assertEqual(std.shape, (5, 3))
        self.assertTrue((std > 0).all())

    def test_decoder_returns_logits(self):
        decoder = Decoder(z_dim=3, hidden_dim=32, input_dim=784)

        self.assertEqual(decoder(torch.randn(5, 3)).shape, (5, 784))


class VaeTest(unittest.TestCase):
    def setUp(self):
        torch.manual_seed(0)
        self.model = Vae(z_dim=2, hidden_dim=32)
        self.images = torch.rand(6, 1, 28, 28)

    def test_elbo_per_image(self):
        elbo = self.model.elbo(self.images)

        self.assertEqual(elbo.shape, (6,))
        self.assertTrue((elbo < 0).all())

    def test_forward_is_negative_elbo(self):
        loss = self.model(self.images)

        self.assertEqual(loss.shape, (6,))
        self.assertTrue((loss > 0).all())

    def test_regularization_is_l2_of_decoder(self):
        expected = 0.01 * sum(param.pow(2).sum() for param in self.model.decoder.parameters())

        self.assertAlmostEqual(self.model.regularization().item(), expected.item(), places=4)

    def test_samples_are_pixel_means(self):
        images = self.model.sample(9)

        self.assertEqual(images.shape, (9, 1, 28, 28))
        self.assertTrue(((images >= 0) & (images <= 1)).all())

    def test_reconstructions(self):
        self.assertEqual(self.model.recon_images(self.images).shape, (6, 1, 28, 28))

    def test_latent_manifold(self):
        self.assertEqual(self.model.latent_manifold(n_rows=5).shape, (25, 1, 28, 28))

    def test_latent_manifold_needs_2d_latent_space(self):
        with self.assertRaises(ValueError):
            Vae(z_dim=3, hidden_dim=32).latent_manifold()

    def test_init_from_stored_model(self):
        with tempfile.TemporaryDirectory() as results_dir:
            os.makedirs(os.path.join(results_dir, "run"))
            torch.save(self.model.state_dict(), os.path.join(results_dir, "run", "model.pt"))

            loaded = PyroVae.init("run", "cpu", 2, results_dir=results_dir, hidden_dim=32)
            z = torch.randn(4, 2)

            self.assertIsInstance(loaded, PyroVae)
            self.assertTrue(torch.allclose(self.model.sample(4, z), loaded.sample(4, z)))

    def test_init_without_model(self):
        with tempfile.TemporaryDirectory() as results_dir:
            with self.assertRaises(FileNotFoundError):
                Vae.init("missing", "cpu", 2, results_dir=results_dir)


class PyroVaeTest(unittest.TestCase):
    def test_model_and_guide_give_a_finite_loss(self):
        pyro.clear_param_store()
        model = PyroVae(z_dim=2, hidden_dim=32)

        loss = Trace_ELBO().loss(model.model, model.guide, torch.rand(4, 1, 28, 28))

        self.assertTrue(torch.isfinite(torch.tensor(loss)))
        self.assertGreater(loss, 0)

    def test_registers_encoder_and_decoder(self):
        pyro.clear_param_store()
        model = PyroVae(z_dim=2, hidden_dim=32)

        Trace_ELBO().loss(model.model, model.guide, torch.rand(4, 1, 28, 28))
        names = set(pyro.get_param_store().keys())

        self.assertIn("encoder$$$mean.weight", names)
        self.assertIn("decoder$$$layers.0.weight", names)


if __name__ == '__main__':
    unittest.main()
