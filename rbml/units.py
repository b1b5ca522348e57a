"""Unit types and their activation functions, derivatives and sampling procedures.

Each side of an RBM (visible/hidden) has a unit type. The type decides how pre-activations are mapped to activations
(e.g. probabilities for binary units), how we draw stochastic states from those activations during Gibbs sampling, and
how errors are scaled when the layer is used inside a backpropagation pipeline.

REFERENCES
Practical guide to training RBMs (Hinton): https://www.cs.toronto.edu/~hinton/absps/guideTR.pdf
Noisy rectified linear units: https://www.cs.toronto.edu/~hinton/absps/reluICML.pdf
"""
from enum import Enum

import torch
from torch import nn

from .errors import ConfigurationError
from .types import TabularBatchFloat


class UnitType(Enum):
    BINARY = "binary"
    GAUSSIAN = "gaussian"
    RELU = "relu"
    RELU1 = "relu1"
    RELU6 = "relu6"
    SOFTMAX = "softmax"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls,
              unit: "UnitType | str") -> "UnitType":
        """Accept either a member or its (case-insensitive) name."""
        if isinstance(unit, cls):
            return unit
        try:
            return cls(str(unit).lower())
        except ValueError:
            allowed = ", ".join(f"'{member.value}'" for member in cls)
            raise ConfigurationError(f"Invalid unit type {unit}. Allowed are {allowed}.") from None


RELU_CAPS = {UnitType.RELU: None, UnitType.RELU1: 1., UnitType.RELU6: 6.}
BACKPROP_UNITS = frozenset({UnitType.BINARY, UnitType.RELU, UnitType.SOFTMAX})


def is_relu(unit: UnitType) -> bool:
    return unit in RELU_CAPS


def activate(unit: UnitType,
             pre_activation: TabularBatchFloat) -> TabularBatchFloat:
    """Map pre-activations (e.g. v @ W + b) to activations for the given unit type.

    For binary units these are probabilities, for Gaussian units the mean of a unit-variance Gaussian, for rectified
    units the (capped) rectified input. Softmax is computed over the last dimension after subtracting the row-wise
    maximum, so it stays finite for inputs of large magnitude.
    """
    if unit == UnitType.BINARY:
        return torch.sigmoid(pre_activation)
    elif unit == UnitType.GAUSSIAN:
        return pre_activation
    elif is_relu(unit):
        return _capped_relu(pre_activation, RELU_CAPS[unit])
    elif unit == UnitType.SOFTMAX:
        shifted = pre_activation - pre_activation.amax(dim=-1, keepdim=True)
        exponentials = torch.exp(shifted)
        return exponentials / exponentials.sum(dim=-1, keepdim=True)
    raise NotImplementedError(f"Unit type {unit} has no activation function")


def derivative(unit: UnitType,
               output: TabularBatchFloat,
               errors: TabularBatchFloat,
               softmax_jacobian: bool = False) -> TabularBatchFloat:
    """Scale errors by the derivative of the activation function, evaluated at the cached output.

    Softmax units are meant to be paired with a cross-entropy loss, whose errors (target - output) already contain the
    softmax derivative. So by default, softmax errors pass through unchanged.

    Parameters:
        unit: Unit type whose activation produced output.
        output: Activations as returned by activate.
        errors: Upstream errors, same shape as output.
        softmax_jacobian: If True, softmax errors are multiplied with the full Jacobian instead, s * (e - <e, s>).
                          Use this for losses other than cross-entropy.
    """
    if unit == UnitType.BINARY:
        return errors * output * (1 - output)
    elif unit == UnitType.GAUSSIAN:
        return errors
    elif is_relu(unit):
        cap = RELU_CAPS[unit]
        active = output > 0
        if cap is not None:
            active = active & (output < cap)
        return errors * active.to(errors.dtype)
    elif unit == UnitType.SOFTMAX:
        if not softmax_jacobian:
            return errors
        return output * (errors - (errors * output).sum(dim=-1, keepdim=True))
    raise NotImplementedError(f"Unit type {unit} has no derivative")


def sample(unit: UnitType,
           activation: TabularBatchFloat,
           pre_activation: TabularBatchFloat,
           stochastic: bool = False,
           generator: torch.Generator | None = None) -> TabularBatchFloat:
    """Draw unit states given their activations.

    Binary units are Bernoulli draws, Gaussian units get unit-variance noise added to the mean. Rectified and softmax
    units pass their activations through unchanged, unless stochastic is True: then rectified units become noisy
    rectified units max(0, x + N(0, sigmoid(x))) and softmax units draw a one-hot vector per row.

    Parameters:
        unit: Guess what.
        activation: As returned by activate(unit, pre_activation).
        pre_activation: Needed for the noise scale of noisy rectified units.
        stochastic: See above. Ignored for binary and Gaussian units, which are always sampled.
        generator: Optional random generator for reproducible draws.
    """
    if unit == UnitType.BINARY:
        return torch.bernoulli(activation, generator=generator)
    elif unit == UnitType.GAUSSIAN:
        return activation + _normal_like(activation, generator)
    elif is_relu(unit):
        if not stochastic:
            return activation
        noise = _normal_like(pre_activation, generator) * torch.sqrt(torch.sigmoid(pre_activation))
        return _capped_relu(pre_activation + noise, RELU_CAPS[unit])
    elif unit == UnitType.SOFTMAX:
        if not stochastic:
            return activation
        flat = activation.reshape(-1, activation.shape[-1])
        indices = torch.multinomial(flat, 1, generator=generator).squeeze(1)
        one_hot = nn.functional.one_hot(indices, activation.shape[-1]).to(activation.dtype)
        return one_hot.view_as(activation)
    raise NotImplementedError(f"Unit type {unit} cannot be sampled")


def check_backprop_unit(unit: UnitType):
    """Only binary, rectified and softmax hidden units can be used as a backprop layer."""
    if unit not in BACKPROP_UNITS:
        raise ConfigurationError(f"Only RBMs with binary, softmax or relu hidden units are supported for "
                                 f"backpropagation, got {unit}.")


def _capped_relu(inputs: TabularBatchFloat,
                 cap: float | None) -> TabularBatchFloat:
    if cap is None:
        return torch.clamp(inputs, min=0.)
    return torch.clamp(inputs, min=0., max=cap)


def _normal_like(tensor: TabularBatchFloat,
                 generator: torch.Generator | None) -> TabularBatchFloat:
    return torch.randn(tensor.shape, generator=generator, device=tensor.device, dtype=tensor.dtype)
