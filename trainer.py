import torch
from typing import Optional, Tuple
from datetime import datetime
import os
import pyro
from pyro.infer import SVI, Trace_ELBO
from logger import logger

from config import Config, init_training_results
from gan_model import Gan, discriminator_loss, generator_loss
from vae_model import Vae, PyroVae
from dataset import make_train_loader, make_train_and_valid_loaders, sample_dataset, check_loader, DataLoaderTuple
import utils

from torchvision.utils import make_grid
from matplotlib import pyplot as plt

VAE_BACKENDS = ('torch', 'svi')


class GanTrainer:
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
        output_y: int = 6,
        channels: int = 1,
        image_size: int = 28,
        num_workers: int = 0,
        random_seed: int = 0,
        load_model: bool = False,
        path_to_model: Optional[str] = None,
        results_dir: str = 'results',
        config: Optional[Config] = None,
        **kwargs
    ):
        """Wrapper class which trains a DCGAN."""
        init_training_results(config, ["epoch", "dscr_loss", "gen_loss", "dscr_acc"])
        self.epochs = epochs
        self.batch_size = batch_size
        self.latent_dim = latent_dim
        self.channels = channels
        self.image_size = image_size
        self.device = device
        self.verbose_freq = verbose_freq
        self.output_x = output_x
        self.output_y = output_y
        self.load_model = load_model
        self.path_to_model = path_to_model
        self.results_dir = results_dir

        self.config = config
        self.train_steps = 0

        utils.set_random_seed(random_seed)

        self.model = self.init_model()

        self.optimizer_dscr = torch.optim.Adam(self.model.discriminator.parameters(), lr=lr_dscr, betas=(beta1, 0.999))
        self.optimizer_gen = torch.optim.Adam(self.model.generator.parameters(), lr=lr_gen, betas=(beta1, 0.999))

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

        # Every snapshot renders the same noise
        self.fixed_noise = self.model.noise(output_x * output_y)

    def init_model(self):
        # If model is loaded from file-system
        if self.load_model:
            if self.path_to_model is None:
                logger.error(
                    "Path has not been set.",
                    next_step="Model will not be initialized.",
                    tip="Set a path_to_model in your config."
                )
                raise ValueError("load_model requires path_to_model")

            logger.info(f"Initializing model from {self.path_to_model}")
            return Gan.init(
                self.path_to_model,
                self.device,
                self.latent_dim,
                channels=self.channels,
                image_size=self.image_size,
                results_dir=self.results_dir
            )

        # Model is newly initialized
        logger.info(f"Creating new gan with the following parameters:\n"
                    f"latent_dim: {self.latent_dim}\n"
                    f"channels: {self.channels}\n"
                    f"image_size: {self.image_size}\n"
        )

        return Gan(
            latent_dim=self.latent_dim,
            channels=self.channels,
            image_size=self.image_size,
            device=self.device
        ).to(device=self.device)

    def train(self, epochs: Optional[int] = None):
        # Optionally use passed epochs
        epochs = self.epochs if epochs is None else epochs

        for epoch in range(epochs):
            epoch_start_t = datetime.now()
            logger.info(f"Starting epoch: {epoch+1}/{epochs}")

            dscr_loss, gen_loss, dscr_acc = self._train_epoch()
            logger.info(f"epoch {epoch+1}/{epochs} => dscr_loss={dscr_loss:.4f}, gen_loss={gen_loss:.4f}, "
                        f"dscr_acc={dscr_acc:.2f} ({datetime.now() - epoch_start_t})")

            self._save_epoch(epoch, dscr_loss, gen_loss, dscr_acc)

        # Final snapshot
        self.snapshot()

        logger.success(f"Finished training on {epochs} epochs ({self.train_steps} steps).")

    def train_discriminator(self, real_images: torch.Tensor) -> Tuple[float, float]:
        """One update of the discriminator on real images and as many generated ones."""
        fake_images = self.model.generator(self.model.noise(real_images.shape[0]))

        real_output = self.model.discriminator(real_images)
        fake_output = self.model.discriminator(fake_images.detach())

        loss = discriminator_loss(real_output, fake_output)

        self.optimizer_dscr.zero_grad()
        loss.backward()
        self.optimizer_dscr.step()

        acc = (utils.calculate_accuracy(torch.ones_like(real_output), real_output) +
               utils.calculate_accuracy(torch.zeros_like(fake_output), fake_output)) / 2

        return loss.item(), acc

    def train_generator(self, batch_size: int) -> float:
        """One update of the generator through the current discriminator."""
        fake_output = self.model.discriminator(self.model.generator(self.model.noise(batch_size)))
        loss = generator_loss(fake_output)

        self.optimizer_gen.zero_grad()
        loss.backward()
        self.optimizer_gen.step()

        return loss.item()

    def _train_epoch(self):
        """Trains the model for one epoch."""
        self.model.train()

        avg_dscr_loss: float = 0
        avg_gen_loss: float = 0
        avg_acc: float = 0
        count: int = 0

        for i, (images, _) in enumerate(self.train_loader):
            images = images.to(self.device)

            # Snapshot of the generator before the update of this step
            if self.train_steps % self.verbose_freq == 0:
                self.snapshot()

            dscr_loss, acc = self.train_discriminator(images)
            gen_loss = self.train_generator(images.shape[0])

            utils.check_finite(dscr_loss, "discriminator loss", self.train_steps)
            utils.check_finite(gen_loss, "generator loss", self.train_steps)

            if self.train_steps % self.verbose_freq == 0:
                logger.step(f"Train step {self.train_steps}, discriminator loss = {dscr_loss:.4f}, generator loss = {gen_loss:.4f}")

            self.train_steps += 1

            avg_dscr_loss += dscr_loss
            avg_gen_loss += gen_loss
            avg_acc += acc
            count = i

        return avg_dscr_loss/(count+1), avg_gen_loss/(count+1), avg_acc/(count+1)

    def snapshot(self):
        """Writes the generated images of the fixed noise to output/gan_steps_{step}.png."""
        images = self.model.sample(self.fixed_noise.shape[0], self.fixed_noise)
        path = utils.snapshot_path(self.config.output_path, "gan_steps", self.train_steps)

        return utils.save_image_grid(images, path, n_rows=self.output_x, value_range=(-1, 1))

    def _save_epoch(self, epoch: int, dscr_loss: float, gen_loss: float, dscr_acc: float):
        """Writes training scores to a csv, and stores a model to disk."""
        path_to_results = os.path.join(self.config.run_path, "training_results.csv")
        with open(path_to_results, "a") as wf:
            wf.write(f"{epoch}, {dscr_loss}, {gen_loss}, {dscr_acc}\n")

        # Write model to disk
        path_to_model = os.path.join(self.config.run_path, "model.pt")
        torch.save(self.model.state_dict(), path_to_model)

        logger.save(f"Stored model and results at {self.config.run_path}")


class VaeTrainer:
    def __init__(
        self,
        epochs: int,
        batch_size: int,
        z_dim: int,
        max_images: int,
        dataset: str,
        device: str,
        hidden_dim: int = 500,
        lr: float = 0.001,
        reg_lambda: float = 0.01,
        eval_freq: int = 1,
        sample_size: int = 10,
        vae_backend: str = 'torch',
        num_particles: int = 1,
        channels: int = 1,
        image_size: int = 28,
        num_workers: int = 0,
        random_seed: int = 0,
        load_model: bool = False,
        path_to_model: Optional[str] = None,
        results_dir: str = 'results',
        config: Optional[Config] = None,
        **kwargs
    ):
        """Wrapper class which trains a variational autoencoder."""
        if vae_backend not in VAE_BACKENDS:
            logger.error(
                f"Unknown vae backend {vae_backend}",
                next_step="The vae will not be trained",
                tip=f"Use one of {', '.join(VAE_BACKENDS)}."
            )
            raise ValueError(f"Unknown vae backend {vae_backend}")

        init_training_results(config, ["epoch", "train_loss", "valid_loss"])
        self.epochs = epochs
        self.z_dim = z_dim
        self.hidden_dim = hidden_dim
        self.reg_lambda = reg_lambda
        self.channels = channels
        self.image_size = image_size
        self.device = device
        self.eval_freq = eval_freq
        self.sample_size = sample_size
        self.vae_backend = vae_backend
        self.load_model = load_model
        self.path_to_model = path_to_model
        self.results_dir = results_dir

        self.config = config

        utils.set_random_seed(random_seed)

        self.model = self.init_model()

        if vae_backend == 'svi':
            pyro.clear_param_store()
            self.svi = SVI(self.model.model, self.model.guide, pyro.optim.Adam({"lr": lr}),
                           loss=Trace_ELBO(num_particles=num_particles))
        else:
            self.optimizer = torch.optim.Adam(params=self.model.parameters(), lr=lr)

        self.loaders: DataLoaderTuple = make_train_and_valid_loaders(
            batch_size=batch_size,
            max_images=max_images,
            dataset=dataset,
            num_workers=num_workers,
            random_seed=random_seed,
            normalize=False,
            image_size=image_size,
            channels=channels,
            **kwargs
        )
        check_loader(self.loaders.train)

    def init_model(self):
        model_class = PyroVae if self.vae_backend == 'svi' else Vae
        model_kwargs = dict(hidden_dim=self.hidden_dim, channels=self.channels,
                            image_size=self.image_size, reg_lambda=self.reg_lambda)

        if self.load_model:
            if self.path_to_model is None:
                logger.error(
                    "Path has not been set.",
                    next_step="Model will not be initialized.",
                    tip="Set a path_to_model in your config."
                )
                raise ValueError("load_model requires path_to_model")

            logger.info(f"Initializing model from {self.path_to_model}")
            return model_class.init(self.path_to_model, self.device, self.z_dim,
                                    results_dir=self.results_dir, **model_kwargs)

        logger.info(f"Creating new vae ({self.vae_backend} backend) with the following parameters:\n"
                    f"z_dim: {self.z_dim}\n"
                    f"hidden_dim: {self.hidden_dim}\n"
                    f"reg_lambda: {self.reg_lambda}\n"
        )

        return model_class(z_dim=self.z_dim, device=self.device, **model_kwargs).to(device=self.device)

    def train(self, epochs: Optional[int] = None):
        # Optionally use passed epochs
        epochs = self.epochs if epochs is None else epochs

        for epoch in range(epochs):
            epoch_start_t = datetime.now()
            logger.info(f"Starting epoch: {epoch+1}/{epochs}")

            train_loss = self._train_epoch(epoch)
            logger.info(f"epoch {epoch+1}/{epochs} => train_loss={train_loss:.2f}")

            valid_loss = self._eval_epoch()
            logger.info(f"epoch {epoch+1}/{epochs} => valid_loss={valid_loss:.2f} ({datetime.now() - epoch_start_t})")

            if (epoch + 1) % self.eval_freq == 0:
                self.print_reconstruction(epoch)
                self.snapshot(epoch)

            self._save_epoch(epoch, train_loss, valid_loss)

        if self.z_dim == 2:
            manifold = self.model.latent_manifold(n_rows=20)
            utils.save_image_grid(manifold, os.path.join(self.config.output_path, "vae_manifold.png"), n_rows=20)

        logger.success(f"Finished training on {epochs} epochs.")

    def _train_epoch(self, epoch: int):
        """Trains the model for one epoch and returns the average negative elbo per image."""
        self.model.train()

        avg_loss: float = 0
        count: int = 0

        for i, (images, _) in enumerate(self.loaders.train):
            images = images.to(self.device)

            if self.vae_backend == 'svi':
                loss = self.svi.step(images) / images.shape[0]
            else:
                loss = self.model.forward(images).mean() + self.model.regularization()

                # Calculate the gradient, and clip at 5
                self.optimizer.zero_grad()
                loss.backward()
                torch.nn.utils.clip_grad_norm_(self.model.parameters(), max_norm=5)
                self.optimizer.step()

                loss = loss.item()

            utils.check_finite(loss, "negative elbo", epoch)

            avg_loss += loss
            count = i

        return avg_loss/(count+1)

    def _eval_epoch(self):
        """Calculates the average validation negative elbo per image."""
        self.model.eval()

        total_loss: float = 0
        nr_images: int = 0

        with torch.no_grad():
            for images, _ in self.loaders.valid:
                images = images.to(self.device)

                if self.vae_backend == 'svi':
                    total_loss += self.svi.evaluate_loss(images)
                else:
                    total_loss += self.model.forward(images).sum().item()

                nr_images += images.shape[0]

        return total_loss / max(nr_images, 1)

    def snapshot(self, epoch: int):
        """Writes images sampled from the prior to output/vae_epoch_{epoch}.png."""
        images = self.model.sample(self.sample_size**2)
        path = utils.snapshot_path(self.config.output_path, "vae_epoch", epoch)

        return utils.save_image_grid(images, path, n_rows=self.sample_size)

    def print_reconstruction(self, epoch, n_rows=4, save=True):
        self.model.eval()
        n_samples = n_rows**2

        images = sample_dataset(self.loaders.valid.dataset, n_samples).to(self.device)

        recon_images = self.model.recon_images(images)

        fig=plt.figure(figsize=(16, 8))

        fig.add_subplot(1, 2, 1)
        grid = make_grid(images.reshape(-1, *self.model.image_shape), n_rows)
        plt.imshow(grid.permute(1,2,0).cpu())

        utils.remove_frame(plt)

        fig.add_subplot(1, 2, 2)
        grid = make_grid(recon_images.reshape(-1, *self.model.image_shape), n_rows)
        plt.imshow(grid.permute(1,2,0).cpu())

        utils.remove_frame(plt)

        if save:
            fig.savefig(os.path.join(self.config.run_path, "reconstructions", f"epoch={epoch}.png"), bbox_inches='tight')

            plt.close()
        else:
            return fig

    def _save_epoch(self, epoch: int, train_loss: float, valid_loss: float):
        """Writes training and validation scores to a csv, and stores a model to disk."""
        path_to_results = os.path.join(self.config.run_path, "training_results.csv")
        with open(path_to_results, "a") as wf:
            wf.write(f"{epoch}, {train_loss}, {valid_loss}\n")

        path_to_model = os.path.join(self.config.run_path, "model.pt")
        torch.save(self.model.state_dict(), path_to_model)

        logger.save(f"Stored model and results at {self.config.run_path}")
