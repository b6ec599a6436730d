"""
Here the structure of the adversarial networks is made in pytorch
"""

from typing import Optional
import os
import torch
import torch.nn as nn
import torch.nn.functional as F
from logger import logger


class UnFlatten(nn.Module):
    def __init__(self, channel_size, image_size):
        super(UnFlatten, self).__init__()
        self.channel_size = channel_size
        self.image_size = image_size

    def forward(self, input):
        return input.view(-1, self.channel_size, self.image_size, self.image_size)


def check_image_size(image_size: int):
    if image_size % 4 != 0:
        logger.error(
            f"Image size {image_size} can't be generated",
            next_step="The networks will not be created",
            tip="Use an image size divisible by 4, e.g. 28 or 64."
        )
        raise ValueError(f"image_size must be divisible by 4, got {image_size}")

    return image_size // 4


class Generator(nn.Module):
    """
    Generates images using a transposed CNN

    Input => noise vector latent_dim
    Output => channels x image_size x image_size image in [-1, 1]
    """

    def __init__(self, latent_dim=100, channels=1, image_size=28):
        super().__init__()

        self.latent_dim = latent_dim
        init_size = check_image_size(image_size)

        self.layers = nn.Sequential(
            nn.Linear(latent_dim, 256*init_size*init_size),
            nn.BatchNorm1d(256*init_size*init_size),
            nn.ReLU(),
            UnFlatten(256, init_size),

            nn.ConvTranspose2d(256, 128, kernel_size=5, stride=1, padding=2),
            nn.BatchNorm2d(128),
            nn.ReLU(),

            nn.ConvTranspose2d(128, 64, kernel_size=4, stride=2, padding=1),
            nn.BatchNorm2d(64),
            nn.ReLU(),

            nn.ConvTranspose2d(64, channels, kernel_size=4, stride=2, padding=1),
            nn.Tanh()
        )

    def forward(self, input):
        return self.layers(input)


class Discriminator(nn.Module):
    """
    Classifies real and generated images using a CNN

    Input => channels x image_size x image_size image
    Output => one logit per image
    """

    def __init__(self, channels=1, image_size=28):
        super().__init__()

        out_size = check_image_size(image_size)

        self.layers = nn.Sequential(
            nn.Conv2d(channels, 64, kernel_size=4, stride=2, padding=1),
            nn.LeakyReLU(0.2),
            nn.Dropout(0.25),

            nn.Conv2d(64, 128, kernel_size=4, stride=2, padding=1),
            nn.LeakyReLU(0.2),
            nn.Dropout(0.25),
            nn.Flatten(),

            nn.Linear(128*out_size*out_size, 1)
        )

    def forward(self, input):
        return self.layers(input).squeeze(-1)


class MlpGenerator(nn.Module):
    """Maps noise to points of a `data_dim` dimensional space."""

    def __init__(self, latent_dim=2, hidden_dim=128, data_dim=2):
        super().__init__()

        self.latent_dim = latent_dim

        self.layers = nn.Sequential(
            nn.Linear(latent_dim, hidden_dim),
            nn.LeakyReLU(0.2),
            nn.Linear(hidden_dim, hidden_dim),
            nn.LeakyReLU(0.2),
            nn.Linear(hidden_dim, data_dim)
        )

    def forward(self, input):
        return self.layers(input)


class MlpDiscriminator(nn.Module):
    def __init__(self, hidden_dim=128, data_dim=2):
        super().__init__()

        self.layers = nn.Sequential(
            nn.Linear(data_dim, hidden_dim),
            nn.LeakyReLU(0.2),
            nn.Linear(hidden_dim, hidden_dim),
            nn.LeakyReLU(0.2),
            nn.Linear(hidden_dim, 1)
        )

    def forward(self, input):
        return self.layers(input).squeeze(-1)


def weights_init(module: nn.Module):
    """DCGAN initialisation, apply with `network.apply(weights_init)`."""
    if isinstance(module, (nn.Conv2d, nn.ConvTranspose2d, nn.Linear)):
        nn.init.normal_(module.weight, 0.0, 0.02)
        if module.bias is not None:
            nn.init.zeros_(module.bias)
    elif isinstance(module, (nn.BatchNorm1d, nn.BatchNorm2d)):
        nn.init.normal_(module.weight, 1.0, 0.02)
        nn.init.zeros_(module.bias)


def discriminator_loss(real_output: torch.Tensor, fake_output: torch.Tensor):
    """Real images should score 1, generated images 0."""
    real_loss = F.binary_cross_entropy_with_logits(real_output, torch.ones_like(real_output))
    fake_loss = F.binary_cross_entropy_with_logits(fake_output, torch.zeros_like(fake_output))

    return real_loss + fake_loss


def generator_loss(fake_output: torch.Tensor):
    """The generator wins when its images score 1."""
    return F.binary_cross_entropy_with_logits(fake_output, torch.ones_like(fake_output))


class Gan(nn.Module):

    def __init__(self, latent_dim=100, channels=1, image_size=28, device="cpu"):
        super().__init__()

        self.device = device
        self.latent_dim = latent_dim

        self.generator = Generator(latent_dim, channels, image_size)
        self.discriminator = Discriminator(channels, image_size)

        self.generator.apply(weights_init)
        self.discriminator.apply(weights_init)

    @staticmethod
    def init(path_to_model: str, device, latent_dim, channels=1, image_size=28, results_dir='results'):
        full_path_to_model = os.path.join(results_dir, path_to_model, "model.pt")
        if not os.path.exists(full_path_to_model):
            logger.error(
                f"Can't find model at {full_path_to_model}",
                next_step="Sampling will stop",
                tip="Double check your path to model"
            )
            raise FileNotFoundError(full_path_to_model)

        model: Gan = Gan(latent_dim=latent_dim, channels=channels, image_size=image_size, device=device)
        model.load_state_dict(torch.load(full_path_to_model, map_location=device))

        return model.to(device)

    def noise(self, n_samples: int):
        return torch.randn(n_samples, self.latent_dim, device=self.device)

    def sample(self, n_samples: int, noise: Optional[torch.Tensor] = None):
        """Generates `n_samples` images with the generator in evaluation mode."""
        noise = self.noise(n_samples) if noise is None else noise

        was_training = self.generator.training
        self.generator.eval()
        with torch.no_grad():
            images = self.generator(noise)
        self.generator.train(was_training)

        return images
