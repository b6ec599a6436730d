"""
Neural network layers as probability distributions.

Every layer with parameters gets a distribution over its flattened weights
and bias (`LayerWeights`), so a network becomes a sequence of sample sites in
a pyro program. `Unpacker` is generated from a network and turns one flat
vector back into the named parameters `torch.func.functional_call` expects.
"""

import functools
import math
import os
from collections import OrderedDict
from typing import Dict, Iterator, List, Optional, Tuple
import numpy as np
import pandas as pd
import torch
import torch.nn as nn
from torch.distributions import constraints
from torch.func import functional_call
import pyro
import pyro.distributions as dist
from pyro.distributions import TorchDistribution
from pyro.infer import MCMC, NUTS, SVI, Predictive, Trace_ELBO
from pyro.infer.autoguide import AutoDiagonalNormal, AutoMultivariateNormal, AutoNormal
from matplotlib import pyplot as plt

from config import Config, init_training_results
from dataset import make_xor_dataset
from logger import logger
import utils

LAYER_TYPES = (nn.Linear, nn.Conv2d, nn.ConvTranspose2d)
GUIDES = {
    'diagonal': AutoDiagonalNormal,
    'multivariate': AutoMultivariateNormal,
    'normal': AutoNormal
}
INFERENCE_METHODS = ('advi', 'nuts')


class LayerWeights(TorchDistribution):
    """
    Distribution over the weights and bias of one layer, flattened into a
    single vector. Weights are N(0, scale^2 / fan_in) so the variance of a
    layer's output does not grow with its width, biases are N(0, scale^2).
    """
    arg_constraints = {}
    support = constraints.real_vector
    has_rsample = True

    def __init__(
        self,
        weight_shape: torch.Size,
        bias_shape: Optional[torch.Size] = None,
        fan_in: Optional[int] = None,
        scale=1.0,
        validate_args=None
    ):
        self.weight_shape = torch.Size(weight_shape)
        self.bias_shape = None if bias_shape is None else torch.Size(bias_shape)
        self.num_weights = self.weight_shape.numel()
        self.num_biases = 0 if self.bias_shape is None else self.bias_shape.numel()
        self.fan_in = self.weight_shape[1:].numel() if fan_in is None else fan_in
        self.scale = torch.as_tensor(scale, dtype=torch.get_default_dtype())

        event_shape = torch.Size([self.num_weights + self.num_biases])
        super().__init__(batch_shape=torch.Size(), event_shape=event_shape, validate_args=validate_args)

    @classmethod
    def from_module(cls, module: nn.Module, scale=1.0):
        if not isinstance(module, LAYER_TYPES):
            logger.error(
                f"Can't build a weight distribution for {type(module).__name__}",
                tip=f"Supported layers are {', '.join(layer.__name__ for layer in LAYER_TYPES)}."
            )
            raise ValueError(f"Unsupported layer {type(module).__name__}")

        bias_shape = None if module.bias is None else module.bias.shape
        scale = torch.as_tensor(scale, dtype=module.weight.dtype, device=module.weight.device)

        return cls(module.weight.shape, bias_shape, scale=scale)

    def expand(self, batch_shape, _instance=None):
        new = self._get_checked_instance(LayerWeights, _instance)
        new.weight_shape = self.weight_shape
        new.bias_shape = self.bias_shape
        new.num_weights = self.num_weights
        new.num_biases = self.num_biases
        new.fan_in = self.fan_in
        new.scale = self.scale

        super(LayerWeights, new).__init__(torch.Size(batch_shape), self.event_shape, validate_args=False)
        new._validate_args = self._validate_args

        return new

    @property
    def stddev(self):
        weight_std = (self.scale / math.sqrt(self.fan_in)).expand(self.num_weights)
        bias_std = self.scale.expand(self.num_biases)
        return torch.cat([weight_std, bias_std]).expand(self.batch_shape + self.event_shape)

    @property
    def mean(self):
        return torch.zeros_like(self.stddev)

    @property
    def variance(self):
        return self.stddev.pow(2)

    def rsample(self, sample_shape=torch.Size()):
        shape = self._extended_shape(sample_shape)
        eps = torch.randn(shape, dtype=self.scale.dtype, device=self.scale.device)
        return eps * self.stddev

    def log_prob(self, value):
        if self._validate_args:
            self._validate_sample(value)
        return torch.distributions.Normal(self.mean, self.stddev).log_prob(value).sum(-1)

    def unpack(self, value: torch.Tensor) -> Dict[str, torch.Tensor]:
        """Splits a flat sample into the `weight` and `bias` of the layer."""
        batch_shape = value.shape[:-1]
        params = {"weight": value[..., :self.num_weights].reshape(batch_shape + self.weight_shape)}

        if self.bias_shape is not None:
            params["bias"] = value[..., self.num_weights:].reshape(batch_shape + self.bias_shape)

        return params


class Unpacker:
    """Maps flat parameter vectors onto the named parameters of `network` and back."""

    def __init__(self, network: nn.Module):
        self.shapes = OrderedDict((name, param.shape) for name, param in network.named_parameters())
        self.sizes = [shape.numel() for shape in self.shapes.values()]
        self.num_params = sum(self.sizes)

    def __call__(self, flat: torch.Tensor) -> Dict[str, torch.Tensor]:
        if flat.shape[-1] != self.num_params:
            logger.error(
                f"Can't unpack a vector of {flat.shape[-1]} values",
                tip=f"The network has {self.num_params} parameters."
            )
            raise ValueError(f"Expected {self.num_params} values, got {flat.shape[-1]}")

        chunks = torch.split(flat, self.sizes, dim=-1)
        return {
            name: chunk.reshape(flat.shape[:-1] + shape)
            for (name, shape), chunk in zip(self.shapes.items(), chunks)
        }

    def pack(self, params: Dict[str, torch.Tensor]) -> torch.Tensor:
        return torch.cat([params[name].reshape(-1) for name in self.shapes])


def parametrized_layers(network: nn.Module) -> Iterator[Tuple[str, nn.Module]]:
    """Every submodule that directly owns parameters, with its qualified name."""
    for name, module in network.named_modules():
        if len(list(module.parameters(recurse=False))) > 0:
            yield name, module


def make_bnn(input_dim=2, hidden_dim=8, num_classes=2):
    return nn.Sequential(
        nn.Linear(input_dim, hidden_dim),
        nn.Tanh(),
        nn.Linear(hidden_dim, hidden_dim),
        nn.Tanh(),
        nn.Linear(hidden_dim, num_classes)
    )


def bnn_model(network: nn.Module, x: torch.Tensor, y: Optional[torch.Tensor] = None, prior_scale=1.0, layerwise=True):
    """
    Bayesian neural network classifier. With `layerwise` every layer is its
    own `LayerWeights` site, otherwise all parameters come from one flat
    gaussian vector that is unpacked onto the network.
    """
    if layerwise:
        params = {}
        for name, layer in parametrized_layers(network):
            layer_dist = LayerWeights.from_module(layer, prior_scale)
            value = pyro.sample(f"layer_{name}", layer_dist)
            params.update({f"{name}.{key}": tensor for key, tensor in layer_dist.unpack(value).items()})
    else:
        unpacker = Unpacker(network)
        flat = pyro.sample("weights", dist.Normal(x.new_zeros(unpacker.num_params), prior_scale).to_event(1))
        params = unpacker(flat)

    logits = functional_call(network, params, (x,))

    with pyro.plate("data", x.shape[0]):
        pyro.sample("obs", dist.Categorical(logits=logits), obs=y)

    return logits


def fit_advi(model, *args, num_steps=2000, lr=0.01, num_particles=1, guide='diagonal', log_freq=500, **kwargs):
    """Automatic differentiation variational inference of every latent site of `model`."""
    if guide not in GUIDES:
        logger.error(f"Unknown guide {guide}", tip=f"Use one of {', '.join(GUIDES)}.")
        raise ValueError(f"Unknown guide {guide}")

    pyro.clear_param_store()
    auto_guide = GUIDES[guide](model)
    svi = SVI(model, auto_guide, pyro.optim.Adam({"lr": lr}), loss=Trace_ELBO(num_particles=num_particles))

    losses: List[float] = []
    for step in range(1, num_steps + 1):
        loss = utils.check_finite(svi.step(*args, **kwargs), "negative elbo", step)
        losses.append(loss)

        if step == 1 or step % log_freq == 0:
            logger.step(f"ADVI step {step}/{num_steps}, negative elbo = {loss:.4f}")

    return auto_guide, losses


def fit_nuts(model, *args, num_samples=200, warmup_steps=200, num_chains=1, **kwargs):
    """Draws posterior samples of every latent site of `model` with the No-U-Turn sampler."""
    mcmc = MCMC(NUTS(model), num_samples=num_samples, warmup_steps=warmup_steps,
                num_chains=num_chains, disable_progbar=True)
    mcmc.run(*args, **kwargs)

    logger.info(f"Drew {num_samples} NUTS samples after {warmup_steps} warmup steps")

    return mcmc.get_samples()


def predict(model, *args, guide=None, posterior_samples=None, num_samples=100):
    """Posterior predictive class probabilities, averaged over weight draws of a guide or of mcmc samples."""
    if guide is None and posterior_samples is None:
        logger.error("Nothing to predict with", tip="Pass a fitted guide or posterior samples.")
        raise ValueError("predict needs a guide or posterior samples")

    predictive = Predictive(
        model,
        guide=guide,
        posterior_samples=posterior_samples,
        num_samples=num_samples if posterior_samples is None else None,
        return_sites=("_RETURN",)
    )

    with torch.no_grad():
        logits = predictive(*args)["_RETURN"]

    return torch.softmax(logits, dim=-1).mean(0)


class BnnTrainer:
    def __init__(
        self,
        bnn_hidden_dim: int = 8,
        bnn_steps: int = 2000,
        bnn_lr: float = 0.01,
        bnn_inference: str = 'advi',
        bnn_num_samples: int = 200,
        bnn_warmup_steps: int = 200,
        prior_scale: float = 1.0,
        num_particles: int = 1,
        random_seed: int = 0,
        layerwise: bool = True,
        config: Optional[Config] = None,
        **kwargs
    ):
        """Fits a bayesian neural network classifier to the xor clusters."""
        if bnn_inference not in INFERENCE_METHODS:
            logger.error(
                f"Unknown inference method {bnn_inference}",
                next_step="The network will not be fitted",
                tip=f"Use one of {', '.join(INFERENCE_METHODS)}."
            )
            raise ValueError(f"Unknown inference method {bnn_inference}")

        init_training_results(config, ["inference", "train_accuracy"])
        self.steps = bnn_steps
        self.lr = bnn_lr
        self.inference = bnn_inference
        self.num_samples = bnn_num_samples
        self.warmup_steps = bnn_warmup_steps
        self.num_particles = num_particles

        self.config = config

        utils.set_random_seed(random_seed)

        self.x, self.y = make_xor_dataset(random_seed=random_seed)
        self.network = make_bnn(input_dim=2, hidden_dim=bnn_hidden_dim, num_classes=2)
        self.model = functools.partial(bnn_model, self.network, prior_scale=prior_scale, layerwise=layerwise)

        self.guide = None
        self.posterior_samples = None

        logger.info(f"Bayesian neural network with {utils.count_parameters(self.network)} weights, "
                    f"{bnn_inference} inference, {'layerwise' if layerwise else 'flat'} prior")

    def train(self):
        if self.inference == 'advi':
            self.guide, losses = fit_advi(self.model, self.x, self.y, num_steps=self.steps, lr=self.lr,
                                          num_particles=self.num_particles)
            pd.DataFrame({"step": np.arange(1, len(losses) + 1), "neg_elbo": losses}).to_csv(
                os.path.join(self.config.run_path, "advi_losses.csv"), index=False)
        else:
            self.posterior_samples = fit_nuts(self.model, self.x, self.y, num_samples=self.num_samples,
                                              warmup_steps=self.warmup_steps)

        accuracy = self.accuracy(self.x, self.y)
        logger.success(f"Posterior predictive accuracy on the training data: {accuracy:.2f}")

        with open(os.path.join(self.config.run_path, "training_results.csv"), "a") as wf:
            wf.write(f"{self.inference}, {accuracy}\n")

        self.plot_decision_boundary()

        return accuracy

    def predict(self, x: torch.Tensor):
        return predict(self.model, x, guide=self.guide, posterior_samples=self.posterior_samples)

    def accuracy(self, x: torch.Tensor, y: torch.Tensor):
        return (self.predict(x).argmax(-1) == y).float().mean().item()

    def plot_decision_boundary(self, resolution=100):
        grid = torch.linspace(-4, 4, resolution)
        xx, yy = torch.meshgrid(grid, grid, indexing="xy")
        probs = self.predict(torch.stack([xx.reshape(-1), yy.reshape(-1)], dim=-1))[:, 1]

        fig = plt.figure(figsize=(6, 6))
        plt.contourf(xx.numpy(), yy.numpy(), probs.reshape(resolution, resolution).numpy(), levels=20, cmap="RdBu_r", alpha=0.8)
        plt.colorbar()
        plt.scatter(self.x[:, 0].numpy(), self.x[:, 1].numpy(), c=self.y.numpy(), cmap="RdBu_r", edgecolors="k")

        path = os.path.join(self.config.output_path, "bnn_decision_boundary.png")
        fig.savefig(path, bbox_inches='tight')
        plt.close()

        return path
