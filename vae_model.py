"""
Here the structure of the variational autoencoder is made in pytorch
"""

from typing import Optional, Tuple
import os
import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F
import pyro
import pyro.distributions as dist
from scipy.stats import norm
from logger import logger


class Encoder(nn.Module):
    """
    Encodes the data using a fully connected network

    Input => flattened image input_dim
    Output => mean vector z_dim
              std vector z_dim
    """

    def __init__(self, input_dim=784, hidden_dim=500, z_dim=2):
        super().__init__()

        self.z_dim = z_dim

        self.layers = nn.Sequential(
            nn.Linear(input_dim, hidden_dim),
            nn.Tanh()
        )
        self.mean = nn.Linear(hidden_dim, z_dim)
        self.log_std = nn.Linear(hidden_dim, z_dim)

    def forward(self, input):
        """
        Perform forward pass of encoder.
        """
        hidden = self.layers(input)

        return self.mean(hidden), torch.exp(self.log_std(hidden))


class Decoder(nn.Module):
    """
    Decodes a latent sample into the logits of a bernoulli per pixel

    Input => sample vector z_dim
    Output => logits input_dim
    """

    def __init__(self, z_dim=2, hidden_dim=500, input_dim=784):
        super().__init__()

        self.layers = nn.Sequential(
            nn.Linear(z_dim, hidden_dim),
            nn.Tanh(),
            nn.Linear(hidden_dim, input_dim)
        )

    def forward(self, input):
        return self.layers(input)


class Vae(nn.Module):

    def __init__(
        self,
        z_dim=2,
        hidden_dim=500,
        channels=1,
        image_size=28,
        reg_lambda=0.01,
        device="cpu"
    ):
        super().__init__()

        self.device = device
        self.z_dim = z_dim
        self.image_shape: Tuple[int, int, int] = (channels, image_size, image_size)
        self.input_dim = int(np.prod(self.image_shape))

        self.encoder = Encoder(self.input_dim, hidden_dim, z_dim)
        self.decoder = Decoder(z_dim, hidden_dim, self.input_dim)

        self.reg_lambda = reg_lambda

    @classmethod
    def init(cls, path_to_model: str, device, z_dim, results_dir='results', **kwargs):
        full_path_to_model = os.path.join(results_dir, path_to_model, "model.pt")
        if not os.path.exists(full_path_to_model):
            logger.error(
                f"Can't find model at {full_path_to_model}",
                next_step="Sampling will stop",
                tip="Double check your path to model"
            )
            raise FileNotFoundError(full_path_to_model)

        model = cls(z_dim=z_dim, device=device, **kwargs)
        model.load_state_dict(torch.load(full_path_to_model, map_location=device))

        return model.to(device)

    def _flatten(self, images: torch.Tensor):
        return images.view(images.shape[0], -1)

    def prior(self, n_samples: int):
        zeros = torch.zeros(n_samples, self.z_dim, device=self.device)
        return torch.distributions.normal.Normal(zeros, torch.ones_like(zeros))

    def elbo(self, images: torch.Tensor):
        """
        Given images, perform an encoding and decoding step and return the
        elbo of every image, estimated with a single reparameterised sample.
        """
        x = self._flatten(images)
        mean, std = self.encoder(x)

        posterior = torch.distributions.normal.Normal(mean, std)
        z = posterior.rsample()

        logits = self.decoder(z)

        log_likelihood = -F.binary_cross_entropy_with_logits(logits, x, reduction='none').sum(1)
        loss_kl = torch.distributions.kl.kl_divergence(posterior, self.prior(x.shape[0])).sum(1)

        return log_likelihood - loss_kl

    def forward(self, images: torch.Tensor):
        """Negative elbo of every image of the batch."""
        return -self.elbo(images)

    def regularization(self):
        """L2 penalty on the decoder weights."""
        return self.reg_lambda * sum(param.pow(2).sum() for param in self.decoder.parameters())

    def recon_images(self, images):
        with torch.no_grad():
            mean, std = self.encoder(self._flatten(images))

            # Get single samples from the distributions with reparametrisation trick
            z = torch.distributions.normal.Normal(mean, std).rsample()

            recon_images = torch.sigmoid(self.decoder(z))

        return recon_images.view(-1, *self.image_shape)

    def sample(self, n_samples, z_samples: Optional[torch.Tensor] = None):
        """
        Sample n_samples from the model. Returns the means of the pixel
        bernoullis rather than binary draws, as these are what gets plotted.
        """
        with torch.no_grad():
            z = self.prior(n_samples).sample() if z_samples is None else z_samples.to(self.device)
            images = torch.sigmoid(self.decoder(z))

        return images.view(-1, *self.image_shape)

    def latent_manifold(self, n_rows=20):
        """Decodes an n_rows x n_rows grid of the latent space, spaced by the quantiles of the prior."""
        if self.z_dim != 2:
            logger.error(
                f"Can't draw the manifold of a {self.z_dim} dimensional latent space",
                tip="Train with --z_dim 2 to get the manifold."
            )
            raise ValueError(f"latent_manifold needs z_dim == 2, got {self.z_dim}")

        grid = norm.ppf(np.linspace(0.05, 0.95, n_rows))
        z_samples = torch.tensor([[z_1, z_2] for z_2 in grid[::-1] for z_1 in grid], dtype=torch.float)

        return self.sample(n_rows**2, z_samples)


class PyroVae(Vae):
    """The same encoder and decoder written as a pyro model and guide, to be trained with SVI."""

    def model(self, images: torch.Tensor):
        pyro.module("decoder", self.decoder)

        x = self._flatten(images)
        with pyro.plate("data", x.shape[0]):
            z_loc = x.new_zeros((x.shape[0], self.z_dim))
            z_scale = x.new_ones((x.shape[0], self.z_dim))
            z = pyro.sample("latent", dist.Normal(z_loc, z_scale).to_event(1))

            logits = self.decoder(z)
            # Pixel intensities are not binary
            pyro.sample("obs", dist.Bernoulli(logits=logits, validate_args=False).to_event(1), obs=x)

    def guide(self, images: torch.Tensor):
        pyro.module("encoder", self.encoder)

        x = self._flatten(images)
        with pyro.plate("data", x.shape[0]):
            mean, std = self.encoder(x)
            pyro.sample("latent", dist.Normal(mean, std).to_event(1))
