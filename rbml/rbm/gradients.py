from typing import NamedTuple

import torch

from .parameters import ParameterStore
from .sampler import CDSamples
from ..config import BiasMode, ClipMode, DecayType, NegativePhase, RBMDescriptor, SparsityMethod
from ..errors import NumericDivergence
from ..types import HiddenVectorFloat, VisibleVectorFloat, WeightMatrixFloat


class Gradients(NamedTuple):
    """Log-likelihood gradient estimates (ascent direction) for weights, hidden and visible biases."""
    w: WeightMatrixFloat
    b: HiddenVectorFloat
    c: VisibleVectorFloat


class GradientAccumulator:
    def __init__(self,
                 descriptor: RBMDescriptor):
        """Turns CD samples into parameter updates.

        Order of operations per step: positive minus negative statistics -> weight decay -> sparsity -> clipping ->
        finiteness check -> increments (with momentum) -> ParameterStore.update.

        Momentum buffers and sparsity moving averages live here, so one accumulator should be used with one layer.

        Parameters:
            descriptor: Provides all hyperparameters. momentum starts at descriptor.momentum_at(0) and can be changed
                        by the driver afterwards (see CDTrainer).
        """
        self.descriptor = descriptor
        self.learning_rate = descriptor.learning_rate
        self.momentum = descriptor.momentum_at(0)

        self.w_inc = None
        self.b_inc = None
        self.c_inc = None
        self.q_global = None
        self.q_local = None

    def compute(self,
                samples: CDSamples) -> Gradients:
        """Positive phase minus negative phase statistics, averaged over the batch."""
        batch_size = samples.v1.shape[0]
        v_negative = samples.v2_a if self.descriptor.negative_phase == NegativePhase.PROBABILITIES else samples.v2_s
        w_grad = (samples.v1.T @ samples.h1_a - v_negative.T @ samples.h2_a) / batch_size
        b_grad = (samples.h1_a - samples.h2_a).mean(dim=0)
        c_grad = (samples.v1 - v_negative).mean(dim=0)
        return Gradients(w_grad, b_grad, c_grad)

    def apply_decay(self,
                    gradients: Gradients,
                    params: ParameterStore) -> Gradients:
        """Subtract L1 (sign) or L2 (value) weight decay terms. Full variants decay biases, too."""
        decay = self.descriptor.decay_type
        if decay == DecayType.NONE:
            return gradients

        if decay in [DecayType.L1, DecayType.L1_FULL]:
            cost = self.descriptor.l1_weight_cost
            penalty = torch.sign
        else:
            cost = self.descriptor.weight_cost
            penalty = lambda param: param

        w_grad = gradients.w - cost * penalty(params.w)
        if decay in [DecayType.L1_FULL, DecayType.L2_FULL]:
            return Gradients(w_grad, gradients.b - cost * penalty(params.b), gradients.c - cost * penalty(params.c))
        return Gradients(w_grad, gradients.b, gradients.c)

    def apply_sparsity(self,
                       gradients: Gradients,
                       samples: CDSamples) -> Gradients:
        """Push the mean hidden activation towards the configured target.

        The batch statistics are smoothed with an exponential moving average q = decay_rate * q + (1 - decay_rate) *
        mean(h2_a). The first batch initializes the average directly.
        """
        method = self.descriptor.sparsity_method
        if method == SparsityMethod.NONE:
            return gradients

        rate = self.descriptor.decay_rate
        if method == SparsityMethod.GLOBAL_TARGET:
            q_batch = samples.h2_a.mean()
            self.q_global = q_batch if self.q_global is None else rate * self.q_global + (1 - rate) * q_batch
            penalty = self.descriptor.sparsity_cost * (self.q_global - self.descriptor.sparsity_target)
            return Gradients(gradients.w - penalty, gradients.b - penalty, gradients.c)

        q_batch = samples.h2_a.mean(dim=0)
        self.q_local = q_batch if self.q_local is None else rate * self.q_local + (1 - rate) * q_batch
        if method == SparsityMethod.LOCAL_TARGET:
            penalty = self.descriptor.sparsity_cost * (self.q_local - self.descriptor.sparsity_target)
            return Gradients(gradients.w - penalty[None, :], gradients.b - penalty, gradients.c)

        # Lee et al. only correct the hidden biases
        if self.descriptor.bias_mode == BiasMode.SIMPLE:
            correction = self.descriptor.pbias_lambda * (self.descriptor.pbias - self.q_local)
            return Gradients(gradients.w, gradients.b + correction, gradients.c)
        return gradients

    def clip(self,
             gradients: Gradients) -> Gradients:
        if not self.descriptor.clip_gradients:
            return gradients
        bound = self.descriptor.gradient_clip
        mode = self.descriptor.clip_mode

        if mode == ClipMode.VALUE:
            return Gradients(*(grad.clamp(-bound, bound) for grad in gradients))
        elif mode == ClipMode.NORM:
            return Gradients(*(_rescale(grad, torch.linalg.vector_norm(grad), bound) for grad in gradients))
        norm = torch.sqrt(sum((grad**2).sum() for grad in gradients))
        return Gradients(*(_rescale(grad, norm, bound) for grad in gradients))

    @torch.no_grad()
    def step(self,
             params: ParameterStore,
             samples: CDSamples,
             learning_rate: float | None = None) -> Gradients:
        """One full CD parameter update.

        Parameters:
            params: Store to update.
            samples: Output of GibbsSampler.contrastive_divergence.
            learning_rate: Overrides the accumulator's learning rate for this step only.

        Returns:
            The gradients after decay, sparsity and clipping were applied.
        """
        if learning_rate is None:
            learning_rate = self.learning_rate
        averages = self.q_global, self.q_local
        gradients = self.compute(samples)
        gradients = self.apply_decay(gradients, params)
        gradients = self.apply_sparsity(gradients, samples)
        gradients = self.clip(gradients)
        if not all(torch.isfinite(grad).all() for grad in gradients):
            # sparsity averages only advance on finite batches
            self.q_global, self.q_local = averages
            raise NumericDivergence("gradients")

        w_inc, b_inc, c_inc = self.increments(gradients, learning_rate)
        params.update(w_inc, b_inc, c_inc)
        if not params.is_finite():
            raise NumericDivergence("parameters")
        return gradients

    def increments(self,
                   gradients: Gradients,
                   learning_rate: float) -> tuple[WeightMatrixFloat, HiddenVectorFloat, VisibleVectorFloat]:
        """inc = momentum * previous_inc + lr * grad with momentum, else just lr * grad."""
        if self.momentum > 0 and self.w_inc is not None:
            self.w_inc = self.momentum * self.w_inc + learning_rate * gradients.w
            self.b_inc = self.momentum * self.b_inc + learning_rate * gradients.b
            self.c_inc = self.momentum * self.c_inc + learning_rate * gradients.c
        else:
            self.w_inc = learning_rate * gradients.w
            self.b_inc = learning_rate * gradients.b
            self.c_inc = learning_rate * gradients.c
        return self.w_inc, self.b_inc, self.c_inc

    def reset_momentum(self):
        self.w_inc = self.b_inc = self.c_inc = None

    def reset_sparsity(self):
        self.q_global = self.q_local = None


def _rescale(grad: torch.Tensor,
             norm: torch.Tensor,
             bound: float) -> torch.Tensor:
    if norm > bound:
        return grad * (bound / norm)
    return grad
