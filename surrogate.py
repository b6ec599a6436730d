"""
A GAN as a surrogate for a probabilistic program.

The simulator is a small pyro program (a ring of gaussian modes). A GAN is
trained on its draws until the generator emulates it; the frozen generator
then replaces the simulator inside a new pyro model, so latent codes that
explain a set of observations can be inferred with SVI.
"""

import math
import os
from datetime import datetime
from typing import List, Optional, Tuple
import numpy as np
import torch
import pyro
import pyro.distributions as dist
from pyro.infer import SVI, Trace_ELBO
from pyro.infer.autoguide import AutoNormal
from matplotlib import pyplot as plt

from config import Config, init_training_results
from gan_model import MlpGenerator, MlpDiscriminator, discriminator_loss, generator_loss
from dataset import make_tensor_loader, check_loader
from logger import logger
import utils


def ring_centers(num_modes: int = 8, radius: float = 2.0):
    angles = torch.arange(num_modes, dtype=torch.float) * (2 * math.pi / num_modes)
    return radius * torch.stack([torch.cos(angles), torch.sin(angles)], dim=-1)


def ring_simulator(num_samples: int, num_modes: int = 8, radius: float = 2.0, scale: float = 0.05):
    """Picks one of `num_modes` centres on a circle uniformly and adds isotropic gaussian noise."""
    centers = ring_centers(num_modes, radius)

    with pyro.plate("simulations", num_samples):
        mode = pyro.sample("mode", dist.Categorical(logits=torch.zeros(num_modes)))
        return pyro.sample("x", dist.Normal(centers[mode], scale).to_event(1))


def mode_coverage(samples: torch.Tensor, centers: torch.Tensor, scale: float, threshold: float = 3.0) -> Tuple[int, float]:
    """
    Returns how many modes have at least one sample within `threshold` standard
    deviations, and the fraction of samples that lie that close to some mode.
    """
    distances = torch.cdist(samples, centers.to(samples.device))
    nearest_distance, nearest_mode = distances.min(dim=1)

    close = nearest_distance < threshold * scale
    modes_covered = torch.unique(nearest_mode[close]).numel()

    return modes_covered, close.float().mean().item()


class SurrogateInference:
    """Infers the latent codes of observations through a frozen generator."""

    def __init__(self, generator: torch.nn.Module, latent_dim: int, obs_scale: float = 0.05):
        self.generator = generator.eval()
        self.generator.requires_grad_(False)
        self.latent_dim = latent_dim
        self.obs_scale = obs_scale
        self.guide: Optional[AutoNormal] = None

    def model(self, observations: torch.Tensor):
        with pyro.plate("observations", observations.shape[0]):
            z = pyro.sample("z", dist.Normal(observations.new_zeros(self.latent_dim), 1.).to_event(1))
            pyro.sample("obs", dist.Normal(self.generator(z), self.obs_scale).to_event(1), obs=observations)

    def fit(self, observations: torch.Tensor, num_steps: int = 1000, lr: float = 0.01) -> List[float]:
        # Latent sites are sized by the observations, so every fit starts clean
        pyro.clear_param_store()
        self.guide = AutoNormal(self.model)

        svi = SVI(self.model, self.guide, pyro.optim.Adam({"lr": lr}), loss=Trace_ELBO())

        losses = []
        for step in range(num_steps):
            loss = utils.check_finite(svi.step(observations), "surrogate negative elbo", step)
            losses.append(loss)

        logger.info(f"Inferred latent codes of {observations.shape[0]} observations, "
                    f"final negative elbo = {losses[-1]:.2f}")

        return losses

    def reconstruct(self, observations: torch.Tensor):
        """Pushes the posterior median of every latent code through the generator."""
        with torch.no_grad():
            z = self.guide.median(observations)["z"]
            return self.generator(z)


class SurrogateTrainer:
    def __init__(
        self,
        epochs: int,
        batch_size: int,
        device: str,
        surrogate_latent_dim: int = 2,
        lr_dscr: float = 0.0002,
        lr_gen: float = 0.0002,
        beta1: float = 0.5,
        verbose_freq: int = 1000,
        surrogate_modes: int = 8,
        surrogate_radius: float = 2.0,
        surrogate_scale: float = 0.05,
        num_simulations: int = 8192,
        inference_steps: int = 1000,
        random_seed: int = 0,
        mlp_hidden_dim: int = 128,
        config: Optional[Config] = None,
        **kwargs
    ):
        """Trains an mlp gan to emulate the ring simulator."""
        init_training_results(config, ["epoch", "dscr_loss", "gen_loss", "modes_covered", "high_quality"])
        self.epochs = epochs
        self.device = device
        self.latent_dim = surrogate_latent_dim
        self.verbose_freq = verbose_freq
        self.num_modes = surrogate_modes
        self.radius = surrogate_radius
        self.scale = surrogate_scale
        self.inference_steps = inference_steps

        self.config = config
        self.train_steps = 0

        utils.set_random_seed(random_seed)

        self.centers = ring_centers(surrogate_modes, surrogate_radius).to(device)
        with torch.no_grad():
            simulations = ring_simulator(num_simulations, surrogate_modes, surrogate_radius, surrogate_scale)
        self.train_loader = make_tensor_loader(simulations, batch_size)
        check_loader(self.train_loader, name="simulated")

        logger.info(f"Simulated {num_simulations} draws of a ring of {surrogate_modes} modes")

        self.generator = MlpGenerator(self.latent_dim, mlp_hidden_dim, data_dim=2).to(device)
        self.discriminator = MlpDiscriminator(mlp_hidden_dim, data_dim=2).to(device)

        self.optimizer_dscr = torch.optim.Adam(self.discriminator.parameters(), lr=lr_dscr, betas=(beta1, 0.999))
        self.optimizer_gen = torch.optim.Adam(self.generator.parameters(), lr=lr_gen, betas=(beta1, 0.999))

        self.fixed_noise = self.noise(512)

    def noise(self, n_samples: int):
        return torch.randn(n_samples, self.latent_dim, device=self.device)

    def train(self, epochs: Optional[int] = None):
        epochs = self.epochs if epochs is None else epochs

        for epoch in range(epochs):
            epoch_start_t = datetime.now()
            logger.info(f"Starting epoch: {epoch+1}/{epochs}")

            dscr_loss, gen_loss = self._train_epoch()
            modes_covered, high_quality = self.evaluate()
            logger.info(f"epoch {epoch+1}/{epochs} => dscr_loss={dscr_loss:.4f}, gen_loss={gen_loss:.4f}, "
                        f"modes={modes_covered}/{self.num_modes}, high_quality={high_quality:.2f} "
                        f"({datetime.now() - epoch_start_t})")

            self._save_epoch(epoch, dscr_loss, gen_loss, modes_covered, high_quality)

        self.snapshot()
        logger.success(f"Finished training the surrogate on {epochs} epochs.")

        self.run_inference()

    def _train_epoch(self):
        self.generator.train()
        self.discriminator.train()

        avg_dscr_loss: float = 0
        avg_gen_loss: float = 0
        count: int = 0

        for i, (samples,) in enumerate(self.train_loader):
            samples = samples.to(self.device)

            if self.train_steps % self.verbose_freq == 0:
                self.snapshot()

            # Discriminator
            fake = self.generator(self.noise(samples.shape[0]))
            dscr_loss = discriminator_loss(self.discriminator(samples), self.discriminator(fake.detach()))

            self.optimizer_dscr.zero_grad()
            dscr_loss.backward()
            self.optimizer_dscr.step()

            # Generator
            gen_loss = generator_loss(self.discriminator(self.generator(self.noise(samples.shape[0]))))

            self.optimizer_gen.zero_grad()
            gen_loss.backward()
            self.optimizer_gen.step()

            utils.check_finite(dscr_loss.item(), "discriminator loss", self.train_steps)
            utils.check_finite(gen_loss.item(), "generator loss", self.train_steps)

            if self.train_steps % self.verbose_freq == 0:
                logger.step(f"Train step {self.train_steps}, discriminator loss = {dscr_loss.item():.4f}, generator loss = {gen_loss.item():.4f}")

            self.train_steps += 1

            avg_dscr_loss += dscr_loss.item()
            avg_gen_loss += gen_loss.item()
            count = i

        return avg_dscr_loss/(count+1), avg_gen_loss/(count+1)

    def emulate(self, n_samples: Optional[int] = None, noise: Optional[torch.Tensor] = None):
        """Draws from the surrogate instead of the simulator."""
        noise = self.noise(n_samples) if noise is None else noise

        was_training = self.generator.training
        self.generator.eval()
        with torch.no_grad():
            samples = self.generator(noise)
        self.generator.train(was_training)

        return samples

    def evaluate(self):
        return mode_coverage(self.emulate(noise=self.fixed_noise), self.centers, self.scale)

    def snapshot(self):
        """Scatters emulated draws over the mode centres in output/surrogate_steps_{step}.png."""
        samples = self.emulate(noise=self.fixed_noise).cpu().numpy()
        centers = self.centers.cpu().numpy()

        fig = plt.figure(figsize=(6, 6))
        plt.scatter(samples[:, 0], samples[:, 1], s=4, alpha=0.5, label="surrogate")
        plt.scatter(centers[:, 0], centers[:, 1], marker="x", color="red", label="modes")
        plt.xlim(-1.5 * self.radius, 1.5 * self.radius)
        plt.ylim(-1.5 * self.radius, 1.5 * self.radius)
        plt.legend(loc="upper right")

        path = utils.snapshot_path(self.config.output_path, "surrogate_steps", self.train_steps)
        fig.savefig(path, bbox_inches='tight')
        plt.close()

        return path

    def run_inference(self, num_observations: int = 64):
        """Infers latent codes of fresh simulator draws through the trained surrogate."""
        with torch.no_grad():
            observations = ring_simulator(num_observations, self.num_modes, self.radius, self.scale).to(self.device)

        inference = SurrogateInference(self.generator, self.latent_dim, obs_scale=self.scale)
        try:
            losses = inference.fit(observations, num_steps=self.inference_steps)
            reconstructions = inference.reconstruct(observations)
        finally:
            # The generator is only frozen for inference
            self.generator.requires_grad_(True)

        error = (reconstructions - observations).norm(dim=-1).mean().item()
        logger.info(f"Mean distance between observations and their surrogate reconstructions: {error:.4f}")

        fig = plt.figure(figsize=(6, 6))
        observations, reconstructions = observations.cpu().numpy(), reconstructions.cpu().numpy()
        plt.scatter(observations[:, 0], observations[:, 1], s=12, label="observations")
        plt.scatter(reconstructions[:, 0], reconstructions[:, 1], s=12, marker="+", label="reconstructions")
        for obs, recon in zip(observations, reconstructions):
            plt.plot([obs[0], recon[0]], [obs[1], recon[1]], color="grey", linewidth=0.5)
        plt.legend(loc="upper right")

        fig.savefig(os.path.join(self.config.output_path, "surrogate_inference.png"), bbox_inches='tight')
        plt.close()

        np.savetxt(os.path.join(self.config.run_path, "inference_losses.csv"), np.array(losses), delimiter=",")

        return error

    def _save_epoch(self, epoch: int, dscr_loss: float, gen_loss: float, modes_covered: int, high_quality: float):
        path_to_results = os.path.join(self.config.run_path, "training_results.csv")
        with open(path_to_results, "a") as wf:
            wf.write(f"{epoch}, {dscr_loss}, {gen_loss}, {modes_covered}, {high_quality}\n")

        torch.save({
            "generator": self.generator.state_dict(),
            "discriminator": self.discriminator.state_dict()
        }, os.path.join(self.config.run_path, "model.pt"))

        logger.save(f"Stored surrogate and results at {self.config.run_path}")
