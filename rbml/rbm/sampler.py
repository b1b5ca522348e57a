from typing import NamedTuple, Protocol

import torch

from .parameters import ParameterStore
from ..config import NegativePhase
from ..errors import NumericDivergence
from ..types import (HiddenBatchFloat, HiddenVectorFloat, VisibleBatchFloat, VisibleVectorFloat,
                     WeightMatrixFloat)
from ..units import UnitType, activate, sample


class LinearOperator(Protocol):
    """How visible and hidden units are connected. A dense RBM uses plain matrix products."""
    def to_hidden(self,
                  visible: VisibleBatchFloat,
                  w: WeightMatrixFloat,
                  b: HiddenVectorFloat) -> HiddenBatchFloat:
        ...

    def to_visible(self,
                   hidden: HiddenBatchFloat,
                   w: WeightMatrixFloat,
                   c: VisibleVectorFloat) -> VisibleBatchFloat:
        ...


class DenseOperator:
    def to_hidden(self,
                  visible: VisibleBatchFloat,
                  w: WeightMatrixFloat,
                  b: HiddenVectorFloat) -> HiddenBatchFloat:
        return visible @ w + b

    def to_visible(self,
                   hidden: HiddenBatchFloat,
                   w: WeightMatrixFloat,
                   c: VisibleVectorFloat) -> VisibleBatchFloat:
        return hidden @ w.T + c


class CDSamples(NamedTuple):
    """Everything a CD-k run produces. _a are activations, _s are sampled states.

    h1 stems from the data (positive phase), v2/h2 from the last Gibbs step (negative phase).
    """
    v1: VisibleBatchFloat
    h1_a: HiddenBatchFloat
    h1_s: HiddenBatchFloat
    v2_a: VisibleBatchFloat
    v2_s: VisibleBatchFloat
    h2_a: HiddenBatchFloat
    h2_s: HiddenBatchFloat


class GibbsSampler:
    def __init__(self,
                 params: ParameterStore,
                 visible_unit: UnitType,
                 hidden_unit: UnitType,
                 operator: LinearOperator | None = None,
                 stochastic_hidden: bool = False,
                 negative_phase: NegativePhase = NegativePhase.PROBABILITIES,
                 generator: torch.Generator | None = None):
        """Alternating Gibbs sampling between visible and hidden units.

        Parameters:
            params: Parameter store to read weights and biases from. The sampler never modifies it.
            visible_unit, hidden_unit: Unit types of the two sides.
            operator: Connection between the layers. Defaults to a DenseOperator.
            stochastic_hidden: If True, rectified/softmax hidden units are sampled, instead of passing their
                               activations on.
            negative_phase: Whether the hidden reconstruction is driven by visible probabilities or visible samples.
            generator: Optional random generator for reproducible chains.
        """
        self.params = params
        self.visible_unit = visible_unit
        self.hidden_unit = hidden_unit
        self.operator = DenseOperator() if operator is None else operator
        self.stochastic_hidden = stochastic_hidden
        self.negative_phase = negative_phase
        self.generator = generator

    def hidden_step(self,
                    visible: VisibleBatchFloat) -> tuple[HiddenBatchFloat, HiddenBatchFloat]:
        """Get hidden activations and sampled hidden states given visible units."""
        pre_activation = self.operator.to_hidden(visible, self.params.w, self.params.b)
        _check_finite(pre_activation, "hidden")
        h_a = activate(self.hidden_unit, pre_activation)
        h_s = sample(self.hidden_unit, h_a, pre_activation, stochastic=self.stochastic_hidden,
                     generator=self.generator)
        return h_a, h_s

    def visible_step(self,
                     hidden: HiddenBatchFloat) -> tuple[VisibleBatchFloat, VisibleBatchFloat]:
        """Get visible activations and sampled visible states given hidden units."""
        pre_activation = self.operator.to_visible(hidden, self.params.w, self.params.c)
        _check_finite(pre_activation, "visible")
        v_a = activate(self.visible_unit, pre_activation)
        v_s = sample(self.visible_unit, v_a, pre_activation, generator=self.generator)
        return v_a, v_s

    @torch.no_grad()
    def contrastive_divergence(self,
                               v0: VisibleBatchFloat,
                               k: int = 1) -> CDSamples:
        """Run k steps of Gibbs sampling starting from the data.

        The first hidden statistics (driven by the data) and the last ones (driven by the final reconstruction) are
        returned; intermediate steps are discarded. Visible reconstructions are always driven by sampled hidden states.
        Overflowing pre-activations raise NumericDivergence before anything is sampled from them.

        Parameters:
            v0: b x V batch of visible data.
            k: Number of Gibbs steps. One step means inferring the hidden units *and* reconstructing the visible ones.
        """
        if k < 1:
            raise ValueError(f"k must be at least 1, got {k}.")
        h1_a, h1_s = self.hidden_step(v0)
        v2_a, v2_s = self.visible_step(h1_s)
        h2_a, h2_s = self.hidden_step(self._negative_visible(v2_a, v2_s))
        for _ in range(k - 1):
            v2_a, v2_s = self.visible_step(h2_s)
            h2_a, h2_s = self.hidden_step(self._negative_visible(v2_a, v2_s))
        return CDSamples(v0, h1_a, h1_s, v2_a, v2_s, h2_a, h2_s)

    @torch.no_grad()
    def gibbs_chain(self,
                    initial_visible: VisibleBatchFloat,
                    n_steps: int) -> tuple[VisibleBatchFloat, HiddenBatchFloat]:
        """Run Markov chains for generation. Returns the final visible and hidden *samples*.

        Parameters:
            initial_visible: b x V batch of chain starting points. We run b chains in parallel.
            n_steps: How many Gibbs steps to run.
        """
        new_v = initial_visible.clone()
        new_h = None
        for _ in range(n_steps):
            _, new_h = self.hidden_step(new_v)
            _, new_v = self.visible_step(new_h)
        if new_h is None:
            _, new_h = self.hidden_step(new_v)
        return new_v, new_h

    def _negative_visible(self,
                          v_a: VisibleBatchFloat,
                          v_s: VisibleBatchFloat) -> VisibleBatchFloat:
        return v_a if self.negative_phase == NegativePhase.PROBABILITIES else v_s


def _check_finite(pre_activation: torch.Tensor,
                  side: str):
    """Finite parameters can still overflow, e.g. Gaussian visible units with large weights."""
    if not torch.isfinite(pre_activation).all():
        raise NumericDivergence("samples", f"Non-finite {side} pre-activations during Gibbs sampling")
