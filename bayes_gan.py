"""
A Bayesian GAN keeps a distribution over generators instead of a single one.

The generator weights get gaussian priors and the posterior

    p(theta_g | z, theta_d)  ~  prod_i D(G(z_i; theta_g); theta_d) * p(theta_g)

is approximated with mean-field ADVI (an AutoNormal guide trained by SVI).
The discriminator stays a point estimate trained by Adam on real images
against images of generators drawn from the current posterior.
"""

from typing import Optional, Tuple
from datetime import datetime
import os
import torch
import torch.nn as nn
import torch.nn.functional as F
import pyro
import pyro.distributions as dist
from pyro import poutine
from pyro.infer import SVI, Trace_ELBO
from pyro.infer.autoguide import AutoNormal, init_to_value
from pyro.nn import PyroSample
from pyro.nn.module import to_pyro_module_

from config import Config, init_training_results
from gan_model import Generator, Discriminator, weights_init, discriminator_loss
from dataset import make_train_loader, check_loader
from logger import logger
import utils

BAYESIAN_LAYERS = (nn.Linear, nn.Conv2d, nn.ConvTranspose2d)


def make_bayesian(module: nn.Module, prior_scale: float = 1.0):
    """
    Turns `module` into a PyroModule in place. Every weight and bias of its
    linear and convolutional layers becomes a sample site with a N(0, prior_scale)
    prior, named like the parameter it replaces.
    """
    to_pyro_module_(module)

    for submodule in module.modules():
        if not isinstance(submodule, BAYESIAN_LAYERS):
            continue

        for name, param in list(submodule.named_parameters(recurse=False)):
            loc = torch.zeros((), device=param.device)
            prior = dist.Normal(loc, prior_scale).expand(param.shape).to_event(param.dim())
            setattr(submodule, name, PyroSample(prior))

    return module


class BayesianGan:

    def __init__(
        self,
        latent_dim=100,
        channels=1,
        image_size=28,
        prior_scale=1.0,
        likelihood_scale=1.0,
        init_scale=0.01,
        device="cpu"
    ):
        self.device = device
        self.latent_dim = latent_dim
        self.likelihood_scale = likelihood_scale

        self.generator = Generator(latent_dim, channels, image_size).to(device)
        self.generator.apply(weights_init)

        # The posterior starts around the usual DCGAN initialisation
        initial_values = {
            f"{module_name}.{name}": param.detach().clone()
            for module_name, submodule in self.generator.named_modules() if isinstance(submodule, BAYESIAN_LAYERS)
            for name, param in submodule.named_parameters(recurse=False)
        }

        make_bayesian(self.generator, prior_scale)

        self.discriminator = Discriminator(channels, image_size).to(device)
        self.discriminator.apply(weights_init)

        self.guide = AutoNormal(self.model, init_loc_fn=init_to_value(values=initial_values), init_scale=init_scale)

    def noise(self, n_samples: int):
        return torch.randn(n_samples, self.latent_dim, device=self.device)

    def model(self, noise: torch.Tensor):
        """Generator weights from the prior, scored by how real the discriminator finds their images."""
        fake_images = self.generator(noise)
        fake_output = self.discriminator(fake_images)

        pyro.factor("discriminator", self.likelihood_scale * F.logsigmoid(fake_output).sum())

        return fake_images

    def sample_images(self, noise: torch.Tensor):
        """Images of one generator drawn from the variational posterior."""
        with torch.no_grad():
            guide_trace = poutine.trace(self.guide).get_trace(noise)
            return poutine.replay(self.generator, trace=guide_trace)(noise)

    def sample_posterior(self, noise: torch.Tensor, num_samples: int):
        """Stacks the images of `num_samples` posterior generators, all fed the same noise."""
        was_training = self.generator.training
        self.generator.eval()

        images = torch.cat([self.sample_images(noise) for _ in range(num_samples)])

        self.generator.train(was_training)

        return images


class BayesGanTrainer:
    def __init__(
        self,
        epochs: int,
        batch_size: int,
        latent_dim: int,
        max_images: int,
        dataset: str,
        device: str,
        lr_dscr: float = 0.0002,
        lr_gen: float = 0.0002,
        beta1: float = 0.5,
        verbose_freq: int = 1000,
        output_x: int = 6,
        num_posterior_samples: int = 4,
        prior_scale: float = 1.0,
        num_particles: int = 1,
        channels: int = 1,
        image_size: int = 28,
        num_workers: int = 0,
        random_seed: int = 0,
        config: Optional[Config] = None,
        **kwargs
    ):
        """Trains a discriminator and a variational posterior over generators."""
        init_training_results(config, ["epoch", "dscr_loss", "neg_elbo", "dscr_acc"])
        self.epochs = epochs
        self.device = device
        self.verbose_freq = verbose_freq
        self.output_x = output_x
        self.num_posterior_samples = num_posterior_samples

        self.config = config
        self.train_steps = 0

        utils.set_random_seed(random_seed)
        pyro.clear_param_store()

        self.train_loader = make_train_loader(
            batch_size=batch_size,
            max_images=max_images,
            dataset=dataset,
            num_workers=num_workers,
            random_seed=random_seed,
            normalize=True,
            image_size=image_size,
            channels=channels,
            **kwargs
        )
        check_loader(self.train_loader)

        # A batch of noise stands in for the whole training set
        likelihood_scale = len(self.train_loader.dataset) / batch_size

        logger.info(f"Creating new bayesian gan with the following parameters:\n"
                    f"latent_dim: {latent_dim}\n"
                    f"prior_scale: {prior_scale}\n"
                    f"likelihood_scale: {likelihood_scale:.2f}\n"
        )
        self.model = BayesianGan(
            latent_dim=latent_dim,
            channels=channels,
            image_size=image_size,
            prior_scale=prior_scale,
            likelihood_scale=likelihood_scale,
            device=device
        )

        self.optimizer_dscr = torch.optim.Adam(self.model.discriminator.parameters(), lr=lr_dscr, betas=(beta1, 0.999))
        self.svi = SVI(
            self.model.model,
            self.model.guide,
            pyro.optim.Adam({"lr": lr_gen, "betas": (beta1, 0.999)}),
            loss=Trace_ELBO(num_particles=num_particles)
        )

        self.fixed_noise = self.model.noise(output_x)

    def train(self, epochs: Optional[int] = None):
        epochs = self.epochs if epochs is None else epochs

        for epoch in range(epochs):
            epoch_start_t = datetime.now()
            logger.info(f"Starting epoch: {epoch+1}/{epochs}")

            dscr_loss, neg_elbo, dscr_acc = self._train_epoch()
            logger.info(f"epoch {epoch+1}/{epochs} => dscr_loss={dscr_loss:.4f}, neg_elbo={neg_elbo:.2f}, "
                        f"dscr_acc={dscr_acc:.2f} ({datetime.now() - epoch_start_t})")

            self._save_epoch(epoch, dscr_loss, neg_elbo, dscr_acc)

        self.snapshot()

        logger.success(f"Finished training on {epochs} epochs ({self.train_steps} steps).")

    def train_discriminator(self, real_images: torch.Tensor) -> Tuple[float, float]:
        """One update of the discriminator against a generator drawn from the posterior."""
        fake_images = self.model.sample_images(self.model.noise(real_images.shape[0]))

        real_output = self.model.discriminator(real_images)
        fake_output = self.model.discriminator(fake_images)

        loss = discriminator_loss(real_output, fake_output)

        self.optimizer_dscr.zero_grad()
        loss.backward()
        self.optimizer_dscr.step()

        acc = (utils.calculate_accuracy(torch.ones_like(real_output), real_output) +
               utils.calculate_accuracy(torch.zeros_like(fake_output), fake_output)) / 2

        return loss.item(), acc

    def _train_epoch(self):
        self.model.generator.train()
        self.model.discriminator.train()

        avg_dscr_loss: float = 0
        avg_neg_elbo: float = 0
        avg_acc: float = 0
        count: int = 0

        for i, (images, _) in enumerate(self.train_loader):
            images = images.to(self.device)

            if self.train_steps % self.verbose_freq == 0:
                self.snapshot()

            dscr_loss, acc = self.train_discriminator(images)
            utils.check_finite(dscr_loss, "discriminator loss", self.train_steps)

            neg_elbo = self.svi.step(self.model.noise(images.shape[0]))
            utils.check_finite(neg_elbo, "negative elbo", self.train_steps)

            if self.train_steps % self.verbose_freq == 0:
                logger.step(f"Train step {self.train_steps}, discriminator loss = {dscr_loss:.4f}, negative elbo = {neg_elbo:.2f}")

            self.train_steps += 1

            avg_dscr_loss += dscr_loss
            avg_neg_elbo += neg_elbo
            avg_acc += acc
            count = i

        return avg_dscr_loss/(count+1), avg_neg_elbo/(count+1), avg_acc/(count+1)

    def snapshot(self):
        """Each row of output/bayes_gan_steps_{step}.png is drawn by a different posterior generator."""
        images = self.model.sample_posterior(self.fixed_noise, self.num_posterior_samples)
        path = utils.snapshot_path(self.config.output_path, "bayes_gan_steps", self.train_steps)

        return utils.save_image_grid(images, path, n_rows=self.output_x, value_range=(-1, 1))

    def _save_epoch(self, epoch: int, dscr_loss: float, neg_elbo: float, dscr_acc: float):
        path_to_results = os.path.join(self.config.run_path, "training_results.csv")
        with open(path_to_results, "a") as wf:
            wf.write(f"{epoch}, {dscr_loss}, {neg_elbo}, {dscr_acc}\n")

        # Posterior over the generator lives in the param store
        pyro.get_param_store().save(os.path.join(self.config.run_path, "checkpoints", "generator_posterior.pt"))
        torch.save(self.model.discriminator.state_dict(), os.path.join(self.config.run_path, "model.pt"))

        logger.save(f"Stored posterior, discriminator and results at {self.config.run_path}")
