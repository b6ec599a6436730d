from dataclasses import dataclass, asdict
from typing import Optional, List
import torch
import datetime
import os
import argparse
from logger import logger

# Default device
DEVICE = torch.device('cuda' if torch.cuda.is_available() else 'cpu')
# DEVICE = 'cpu'

RUN_MODES = ('gan', 'vae', 'bayes_gan', 'surrogate', 'bnn')

# Parse arguments
parser = argparse.ArgumentParser(allow_abbrev=False)
parser.add_argument('--run_mode', type=str, choices=RUN_MODES,
                    help='which model to train')
parser.add_argument("--folder_name", type=str,
                    help='folder_name_to_save in')
parser.add_argument("--results_dir", type=str,
                    help='root directory of all runs')
parser.add_argument('--dataset', type=str,
                    help='name of the image dataset [mnist/fashion_mnist/fake]')
parser.add_argument('--path_to_data', type=str,
                    help='where datasets are downloaded to')
parser.add_argument("--path_to_model", type=str,
                    help='Path to stored model')
parser.add_argument('--seed', type=int,
                    help='random seed')
parser.add_argument('--batch_size', type=int,
                    help='size of batch')
parser.add_argument('--epochs', type=int,
                    help='max number of epochs')
parser.add_argument('--latent_dim', type=int,
                    help='dimensionality of the generator noise')
parser.add_argument('--lr_dscr', type=float,
                    help='learning rate of the discriminator')
parser.add_argument('--lr_gen', type=float,
                    help='learning rate of the generator')
parser.add_argument('--verbose_freq', type=int,
                    help='number of steps between gan snapshots')
parser.add_argument('--max_images', type=int,
                    help='total size of database')
parser.add_argument("--num_workers", type=int,
                    help='number of dataloader workers')
parser.add_argument('--z_dim', type=int,
                    help='dimensionality of vae latent space')
parser.add_argument('--lr', type=float,
                    help='learning rate of the vae')
parser.add_argument('--eval_freq', type=int,
                    help='number of epochs between vae snapshots')
parser.add_argument('--vae_backend', type=str, choices=('torch', 'svi'),
                    help='train the vae with an explicit loss or with pyro svi')
parser.add_argument('--prior_scale', type=float,
                    help='scale of the gaussian weight priors')
parser.add_argument('--num_particles', type=int,
                    help='number of elbo particles')
parser.add_argument('--bnn_inference', type=str, choices=('advi', 'nuts'),
                    help='inference algorithm of the bayesian neural network')
parser.add_argument("--debug_mode", type=bool,
                    help='Debug mode')


ARGS, unknown = parser.parse_known_args()
if len(unknown) > 0:
    logger.warning(f'There are some unknown args: {unknown}')

def create_folder_name(foldername: str, results_dir: str = 'results'):
    if foldername == "":
        return foldername

    suffix = ''
    count = 0
    while True:
        if not os.path.isdir(os.path.join(results_dir, f"{foldername}{suffix}")):
            return f'{foldername}{suffix}'
        else:
            count += 1
            suffix = f'_{count}'

def create_run_folder(folder_name: str, results_dir: str = 'results'):
    if len(folder_name) > 0:
        return create_folder_name(folder_name, results_dir)

    return create_folder_name(str(datetime.datetime.now().strftime("%d_%m_%Y---%H_%M_%S")), results_dir)

@dataclass
class Config:
    # Model to train
    run_mode: str = ARGS.run_mode or 'gan'
    # Folder name of the run
    run_folder: str = '' if ARGS.folder_name is None else ARGS.folder_name
    # Root of all run folders
    results_dir: str = ARGS.results_dir or 'results'
    # Image dataset
    dataset: str = ARGS.dataset or 'mnist'
    # Where torchvision stores the datasets
    path_to_data: str = ARGS.path_to_data or 'data'
    # Path to stored model, relative to results_dir
    path_to_model: Optional[str] = ARGS.path_to_model
    # Random seed for reproducability
    random_seed: int = 0 if ARGS.seed is None else ARGS.seed
    # Device to use
    device: torch.device = DEVICE
    # Batch size
    batch_size: int = ARGS.batch_size or 128
    # Epochs
    epochs: int = ARGS.epochs or 20
    # Generator noise dimension
    latent_dim: int = ARGS.latent_dim or 100
    # Discriminator learning rate
    lr_dscr: float = ARGS.lr_dscr or 0.0002
    # Generator learning rate
    lr_gen: float = ARGS.lr_gen or 0.0002
    # First Adam moment of the adversarial optimizers
    beta1: float = 0.5
    # Steps between generator snapshots
    verbose_freq: int = ARGS.verbose_freq or 1000
    # Snapshot grid
    output_x: int = 6
    output_y: int = 6
    # Image size
    image_size: int = 28
    # Image channels
    channels: int = 1
    # Dataset size
    max_images: int = ARGS.max_images or -1
    # Number workers
    num_workers: int = 2 if ARGS.num_workers is None else ARGS.num_workers
    # VAE latent dimension
    z_dim: int = ARGS.z_dim or 2
    # VAE hidden layer
    hidden_dim: int = 500
    # VAE learning rate
    lr: float = ARGS.lr or 0.001
    # Weight of the decoder L2 penalty
    reg_lambda: float = 0.01
    # Number of images in a vae snapshot row
    sample_size: int = 10
    # Epochs between vae snapshots
    eval_freq: int = ARGS.eval_freq or 1
    # Explicit elbo or pyro svi
    vae_backend: str = ARGS.vae_backend or 'torch'
    # Std of the gaussian weight priors
    prior_scale: float = ARGS.prior_scale or 1.0
    # Elbo particles
    num_particles: int = ARGS.num_particles or 1
    # Posterior generators drawn per bayes gan snapshot
    num_posterior_samples: int = 4
    # Ring simulator and the noise dimension of its surrogate
    surrogate_latent_dim: int = 2
    surrogate_modes: int = 8
    surrogate_radius: float = 2.0
    surrogate_scale: float = 0.05
    # Number of simulator draws the surrogate is trained on
    num_simulations: int = 8192
    # SVI steps for inference through the surrogate
    inference_steps: int = 1000
    # Bayesian neural network
    bnn_hidden_dim: int = 8
    bnn_steps: int = 2000
    bnn_lr: float = 0.01
    bnn_inference: str = ARGS.bnn_inference or 'advi'
    # NUTS draws and warmup of the bayesian neural network
    bnn_num_samples: int = 200
    bnn_warmup_steps: int = 200
    # Debug mode prints several statistics
    debug_mode: bool = False if ARGS.debug_mode is None else ARGS.debug_mode

    def __post_init__(self, printing=False):
        self.run_folder = create_run_folder(self.run_folder, self.results_dir)
        if printing:
            logger.save(f"Saving new run files to {self.run_path}")

    @property
    def run_path(self):
        return os.path.join(self.results_dir, self.run_folder)

    @property
    def output_path(self):
        return os.path.join(self.run_path, 'output')


def init_training_results(config: Config, header: List[str]):
    """Creates the run folder of `config` with its flags, log and results csv."""
    os.makedirs(config.results_dir, exist_ok=True)

    config.__post_init__(printing=True)
    os.makedirs(config.output_path)
    os.makedirs(os.path.join(config.run_path, 'reconstructions'))
    os.makedirs(os.path.join(config.run_path, 'checkpoints'))

    if config.debug_mode:
        os.makedirs(os.path.join(config.run_path, 'debug'))

    logger.add_file(os.path.join(config.run_path, 'run.log'))

    with open(os.path.join(config.run_path, 'flags.txt'), "w") as write_file:
        for key, value in asdict(config).items():
            write_file.write(f"{key} = {value}\n")

    with open(os.path.join(config.run_path, 'training_results.csv'), "a+") as write_file:
        write_file.write(",".join(header) + "\n")
