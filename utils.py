from typing import Optional, Tuple
from logger import logger
import os
import math
import torch
import numpy as np
import pandas as pd
import pyro
import matplotlib.pyplot as plt
import torchvision.transforms as transforms
from torchvision.utils import save_image


class TrainingDivergedError(RuntimeError):
    """Raised when a training loss stops being finite."""

    def __init__(self, loss_name: str, step: int, value: float):
        super().__init__(f"{loss_name} became {value} at step {step}")
        self.loss_name = loss_name
        self.step = step
        self.value = value


def check_finite(value: float, loss_name: str, step: int):
    """Stops training once a loss is nan or inf."""
    if not math.isfinite(value):
        logger.error(
            f"{loss_name} is {value} at step {step}",
            next_step="Training will stop",
            tip="Lower the learning rates or the prior scale."
        )
        raise TrainingDivergedError(loss_name, step, value)

    return value


def set_random_seed(seed: int):
    """Seeds numpy, torch and pyro."""
    np.random.seed(seed)
    torch.manual_seed(seed)
    pyro.set_rng_seed(seed)


def calculate_accuracy(labels, pred):
    """Calculates accuracy given labels and logits."""
    return float(((pred > 0) == (labels > 0)).sum()) / labels.size()[0]


def count_parameters(model: torch.nn.Module):
    return sum(p.numel() for p in model.parameters())


def snapshot_path(output_dir: str, prefix: str, step: int):
    """Fixed file name of the snapshot written after `step` steps."""
    return os.path.join(output_dir, f"{prefix}_{step:06d}.png")


def save_image_grid(images: torch.Tensor, path: str, n_rows: int, value_range: Optional[Tuple[float, float]] = None):
    """Writes a batch of images as a single png grid with `n_rows` images per row."""
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)

    images = images.detach().cpu()
    if value_range is None:
        save_image(images, path, nrow=n_rows)
    else:
        save_image(images, path, nrow=n_rows, normalize=True, value_range=value_range)

    return path


def remove_frame(plt):
    """Removes frames from a pyplot plot. """
    frame = plt.gca()
    for xlabel_i in frame.axes.get_xticklabels():
        xlabel_i.set_visible(False)
        xlabel_i.set_fontsize(0.0)
    for xlabel_i in frame.axes.get_yticklabels():
        xlabel_i.set_fontsize(0.0)
        xlabel_i.set_visible(False)
    for tick in frame.axes.get_xticklines():
        tick.set_visible(False)
    for tick in frame.axes.get_yticklines():
        tick.set_visible(False)


def read_training_results(run_path: str) -> pd.DataFrame:
    """Reads the training_results.csv of a run."""
    path_to_results = os.path.join(run_path, 'training_results.csv')

    if not os.path.exists(path_to_results):
        logger.error(
            f"Can't find results at {path_to_results}",
            tip="Check that the run has finished at least one epoch."
        )
        raise FileNotFoundError(path_to_results)

    return pd.read_csv(path_to_results, skipinitialspace=True)


def plot_training_results(run_path: str, save=True):
    """Plots every loss column of a run against its epoch."""
    df = read_training_results(run_path)

    fig = plt.figure(figsize=(10, 5))
    for column in df.columns:
        if column == 'epoch':
            continue
        plt.plot(df['epoch'], df[column], label=column)

    plt.xlabel('epoch')
    plt.legend()

    if save:
        path_to_plot = os.path.join(run_path, 'training_results.png')
        fig.savefig(path_to_plot, bbox_inches='tight')
        plt.close()

        return path_to_plot

    return fig


def visualize_tensor(img_tensor: torch.Tensor):
    """Visualizes a image tensor."""
    pil_transformer = transforms.ToPILImage()
    pil_transformer(img_tensor).show()
