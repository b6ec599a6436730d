from typing import Optional
from dataclasses import asdict
import os
from config import Config
from logger import logger
from gan_model import Gan
from trainer import GanTrainer, VaeTrainer
from bayes_gan import BayesGanTrainer
from surrogate import SurrogateTrainer
from layer_dist import BnnTrainer
import utils

TRAINERS = {
     'gan': GanTrainer,
     'vae': VaeTrainer,
     'bayes_gan': BayesGanTrainer,
     'surrogate': SurrogateTrainer,
     'bnn': BnnTrainer
}

# Run modes whose trainer can continue from a stored model.pt
RESUMABLE = ('gan', 'vae')


def make_trainer(config: Config, load_model: bool = False):
     """Creates the trainer of `config.run_mode`, ready to .train on. Allows .load_model to load file. """
     if config.run_mode not in TRAINERS:
          logger.error(
               f"Unknown run mode {config.run_mode}",
               next_step="Nothing will be trained",
               tip=f"Set --run_mode to one of {', '.join(TRAINERS)}."
          )
          raise ValueError(f"Unknown run mode {config.run_mode}")

     if load_model and config.run_mode not in RESUMABLE:
          logger.error(
               f"Can't continue a {config.run_mode} run from {config.path_to_model}",
               next_step="Nothing will be trained",
               tip=f"Only {', '.join(RESUMABLE)} runs load a stored model, drop --path_to_model."
          )
          raise ValueError(f"Run mode {config.run_mode} can't load a stored model")

     return TRAINERS[config.run_mode](
          load_model=load_model,
          config=config,
          **asdict(config)
     )


def generate_images(
     path_to_model: str,
     latent_dim: int,
     n_rows: int = 6,
     device: Optional[str] = 'cpu',
     results_dir: str = 'results',
     path_to_output: Optional[str] = None,
     **kwargs
):
     """Samples an n_rows x n_rows grid from a stored gan."""
     model = Gan.init(path_to_model, device, latent_dim, results_dir=results_dir, **kwargs)
     images = model.sample(n_rows**2)

     if path_to_output is None:
          path_to_output = os.path.join(results_dir, path_to_model, "output", "generated.png")

     utils.save_image_grid(images, path_to_output, n_rows=n_rows, value_range=(-1, 1))
     logger.save(f"Saved {n_rows**2} generated images to {path_to_output}")

     return path_to_output


if __name__ == "__main__":
     config = Config()

     logger.info(f"Running {config.run_mode}")
     trainer = make_trainer(config, load_model=config.path_to_model is not None)
     trainer.train()

     # Every run mode but the bnn logs one row per epoch
     if config.run_mode != 'bnn':
          utils.plot_training_results(config.run_path)
