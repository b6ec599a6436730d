from typing import Optional, NamedTuple, Tuple
import numpy as np
import torch
from torch.utils.data import DataLoader, Dataset, TensorDataset
from torch.utils.data.dataset import Subset
import torchvision.datasets as dset
import torchvision.transforms as transforms
from logger import logger

DATASETS = ('mnist', 'fashion_mnist', 'fake')


class DataLoaderTuple(NamedTuple):
    train: DataLoader
    valid: DataLoader


def make_transform(image_size: int, normalize: bool = True):
    """Resizes to `image_size` and scales pixels to [-1, 1] if `normalize`, else to [0, 1]."""
    steps = [
        transforms.Resize((image_size, image_size)),
        transforms.ToTensor()
    ]

    if normalize:
        steps.append(transforms.Normalize((0.5,), (0.5,)))

    return transforms.Compose(steps)


def make_dataset(
    dataset: str,
    path_to_data: str = 'data',
    image_size: int = 28,
    channels: int = 1,
    normalize: bool = True,
    train: bool = True,
    fake_size: int = 256,
    random_seed: int = 0,
    **kwargs
) -> Dataset:
    """Creates one of the supported image datasets."""
    transform = make_transform(image_size, normalize)

    if dataset == 'mnist':
        return dset.MNIST(root=path_to_data, train=train, transform=transform, download=True)

    if dataset == 'fashion_mnist':
        return dset.FashionMNIST(root=path_to_data, train=train, transform=transform, download=True)

    if dataset == 'fake':
        return dset.FakeData(
            size=fake_size,
            image_size=(channels, image_size, image_size),
            num_classes=10,
            transform=transform,
            random_offset=random_seed if train else random_seed + fake_size
        )

    logger.error(
        f"Unknown dataset {dataset}",
        next_step="Will stop training",
        tip=f"Use one of {', '.join(DATASETS)}."
    )
    raise ValueError(f"Unknown dataset {dataset}")


def split_dataset(dataset, train_size: float, random_seed, max_images: Optional[int] = None):
    """Splits a dataset into a certain (maximum) size."""
    # Shuffle indices of the dataset
    idxs: np.array = np.arange(len(dataset))
    np.random.seed(random_seed)
    np.random.shuffle(idxs)

    # Sample sub-selection
    sampled_idxs: np.array = idxs if not max_images else idxs[:min(max_images, len(idxs))]

    # Split dataset
    split: int = int(np.floor(train_size * len(sampled_idxs)))
    train_idxs = sampled_idxs[:split]
    valid_idxs = sampled_idxs[split:]

    # Subsample dataset with given validation indices
    train_data = Subset(dataset, train_idxs)
    valid_data = Subset(dataset, valid_idxs)

    return train_data, valid_data


def make_train_loader(
    batch_size: int,
    max_images: int,
    dataset: str,
    num_workers: int,
    random_seed: int = 0,
    normalize: bool = True,
    shuffle: bool = True,
    **kwargs
) -> DataLoader:
    """Create a dataloader over the (optionally capped) training images."""
    nr_images: Optional[int] = max_images if max_images >= 0 else None

    train_data = make_dataset(dataset, normalize=normalize, train=True, random_seed=random_seed, **kwargs)
    if nr_images is not None:
        train_data, _ = split_dataset(train_data, 1.0, random_seed, nr_images)

    logger.info(f"Size of {dataset} training data: {len(train_data)}")

    return DataLoader(
        train_data,
        batch_size=batch_size,
        shuffle=shuffle,
        num_workers=num_workers,
        drop_last=True
    )


def make_train_and_valid_loaders(
    batch_size: int,
    max_images: int,
    dataset: str,
    num_workers: int,
    train_size: float = 0.8,
    random_seed: int = 0,
    normalize: bool = False,
    **kwargs
) -> DataLoaderTuple:
    """Create two dataloaders, one for training data and one for validation data."""
    nr_images: Optional[int] = max_images if max_images >= 0 else None

    data = make_dataset(dataset, normalize=normalize, train=True, random_seed=random_seed, **kwargs)
    train_data, valid_data = split_dataset(data, train_size, random_seed, nr_images)
    logger.info(f"Sizes of dataset are:\n"
                f"{dataset}-train: {len(train_data)}\n"
                f"{dataset}-valid: {len(valid_data)}\n")

    train_loader = DataLoader(train_data, batch_size=batch_size, shuffle=True, num_workers=num_workers, drop_last=True)
    valid_loader = DataLoader(valid_data, batch_size=batch_size, shuffle=False, num_workers=num_workers)

    return DataLoaderTuple(train_loader, valid_loader)


def sample_dataset(dataset: Dataset, nr_samples: int):
    """Stacks `nr_samples` randomly drawn images of `dataset`."""
    max_nr_items: int = min(nr_samples, len(dataset))
    idxs = np.random.permutation(np.arange(len(dataset)))[:max_nr_items]

    return torch.stack([dataset[idx][0] for idx in idxs])


def make_xor_dataset(n_per_cluster: int = 50, spread: float = 0.5, random_seed: int = 0) -> Tuple[torch.Tensor, torch.Tensor]:
    """Four gaussian clusters at (+-2, +-2) labelled like xor of the signs of both coordinates."""
    generator = torch.Generator().manual_seed(random_seed)
    centers = torch.tensor([[2., 2.], [-2., -2.], [2., -2.], [-2., 2.]])
    labels = torch.tensor([0, 0, 1, 1])

    xs = centers.repeat_interleave(n_per_cluster, dim=0)
    xs = xs + spread * torch.randn(xs.shape, generator=generator)
    ys = labels.repeat_interleave(n_per_cluster)

    return xs, ys


def make_tensor_loader(xs: torch.Tensor, batch_size: int, shuffle: bool = True) -> DataLoader:
    """Wraps an in-memory tensor of samples into a dataloader."""
    return DataLoader(TensorDataset(xs), batch_size=batch_size, shuffle=shuffle, drop_last=True)


def check_loader(loader: DataLoader, name: str = 'training'):
    """Refuses loaders that yield no batch at all, e.g. fewer images than one batch with `drop_last`."""
    if len(loader) == 0:
        logger.error(
            f"The {name} data ({len(loader.dataset)} samples) doesn't fill a single batch of {loader.batch_size}",
            next_step="Nothing will be trained",
            tip="Lower --batch_size or raise --max_images."
        )
        raise ValueError(f"{name} loader is empty: {len(loader.dataset)} samples, batch size {loader.batch_size}")

    return loader
