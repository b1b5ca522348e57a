from __future__ import annotations

import torch

from .parameters import ParameterStore
from ..errors import ConfigurationError
from ..types import HiddenBatchFloat, HiddenVectorFloat, VisibleBatchFloat, WeightMatrixFloat
from ..units import UnitType, activate, check_backprop_unit, derivative


class SGDContext:
    def __init__(self,
                 w_grad: WeightMatrixFloat,
                 b_grad: HiddenVectorFloat,
                 w_inc: WeightMatrixFloat,
                 b_inc: HiddenVectorFloat,
                 input: VisibleBatchFloat,
                 output: HiddenBatchFloat,
                 errors: HiddenBatchFloat):
        """Per-layer buffers of an SGD fine-tuning driver.

        The driver allocates and owns this; the BackpropAdapter only fills in fields. errors follow the "target minus
        output" convention, i.e. they point in the direction parameters should move, so increments are *added*.
        """
        self.w_grad = w_grad
        self.b_grad = b_grad
        self.w_inc = w_inc
        self.b_inc = b_inc
        self.input = input
        self.output = output
        self.errors = errors

    @classmethod
    def for_layer(cls,
                  num_visible: int,
                  num_hidden: int,
                  batch_size: int,
                  device: str | torch.device | None = None,
                  dtype: torch.dtype | None = None) -> SGDContext:
        """All-zero context with batch-shaped buffers."""
        def zeros(*shape):
            return torch.zeros(*shape, device=device, dtype=dtype)

        return cls(w_grad=zeros(num_visible, num_hidden), b_grad=zeros(num_hidden),
                   w_inc=zeros(num_visible, num_hidden), b_inc=zeros(num_hidden),
                   input=zeros(batch_size, num_visible), output=zeros(batch_size, num_hidden),
                   errors=zeros(batch_size, num_hidden))


class BackpropAdapter:
    def __init__(self,
                 params: ParameterStore,
                 hidden_unit: UnitType,
                 softmax_jacobian: bool = False):
        """Exposes an RBM as a plain linear + nonlinearity layer for backpropagation.

        Shares the parameter store with the CD machinery, but the two training paths should not be mixed within one
        training run.

        Parameters:
            params: The layer's parameters.
            hidden_unit: Must be one of binary, relu, softmax. Anything else raises a ConfigurationError right away.
            softmax_jacobian: Only for softmax hidden units. By default, adapt_errors leaves their errors alone, as
                              they are expected to come from a cross-entropy loss. If True, the full softmax Jacobian
                              is applied.
        """
        check_backprop_unit(hidden_unit)
        self.params = params
        self.hidden_unit = hidden_unit
        self.softmax_jacobian = softmax_jacobian

    def forward(self,
                inputs: VisibleBatchFloat) -> HiddenBatchFloat:
        return activate(self.hidden_unit, inputs @ self.params.w + self.params.b)

    def forward_batch(self,
                      context: SGDContext,
                      inputs: VisibleBatchFloat) -> HiddenBatchFloat:
        """Forward pass that also caches inputs and outputs in the context."""
        self._check_batch(inputs.shape, self.params.num_visible, "inputs")
        context.input = inputs
        context.output = self.forward(inputs)
        return context.output

    def adapt_errors(self,
                     context: SGDContext):
        """Scale errors by the activation derivative at the cached outputs, before backpropagating them."""
        context.errors = derivative(self.hidden_unit, context.output, context.errors, self.softmax_jacobian)

    def backward(self,
                 context: SGDContext) -> VisibleBatchFloat:
        """Errors for the previous layer, batch x V."""
        self._check_batch(context.errors.shape, self.params.num_hidden, "errors")
        return (context.errors @ self.params.w.T).reshape(context.errors.shape[0], self.params.num_visible)

    def compute_gradients(self,
                          context: SGDContext):
        """Sum of per-example outer products input x errors, and summed errors for the bias."""
        context.w_grad = context.input.T @ context.errors
        context.b_grad = context.errors.sum(dim=0)

    @torch.no_grad()
    def sgd_step(self,
                 context: SGDContext,
                 learning_rate: float,
                 momentum: float = 0.,
                 weight_cost: float = 0.):
        """Parameter update as done by a simple SGD driver: inc = momentum * inc + lr * (grad - weight_cost * w).

        Visible biases are not part of the backprop layer and stay untouched.
        """
        w_grad = context.w_grad - weight_cost * self.params.w
        context.w_inc = momentum * context.w_inc + learning_rate * w_grad
        context.b_inc = momentum * context.b_inc + learning_rate * context.b_grad
        self.params.update(context.w_inc, context.b_inc)

    @staticmethod
    def _check_batch(shape: torch.Size,
                     expected_dim: int,
                     name: str):
        if len(shape) != 2 or shape[1] != expected_dim:
            raise ConfigurationError(f"{name} should be batch x {expected_dim}, got {tuple(shape)}.")
