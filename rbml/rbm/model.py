import torch
from torch import nn

from .backprop import BackpropAdapter
from .gradients import GradientAccumulator
from .parameters import ParameterStore
from .sampler import CDSamples, GibbsSampler, LinearOperator
from ..config import RBMDescriptor
from ..errors import ConfigurationError
from ..types import HiddenBatchFloat, ScalarFloat, VectorBatchFloat, VisibleBatchFloat
from ..units import UnitType, activate, is_relu


class RBM(nn.Module):
    def __init__(self,
                 descriptor: RBMDescriptor,
                 operator: LinearOperator | None = None,
                 generator: torch.Generator | None = None):
        """Dense Restricted Boltzmann Machine, trainable with CD-k or usable as a backprop layer.

        This just wires the pieces together: a ParameterStore holding W, b, c, a GibbsSampler reading from it, a
        GradientAccumulator updating it, and (on demand) a BackpropAdapter sharing it.

        Parameters:
            descriptor: Sizes and hyperparameters. Already validated at this point.
            operator: Connection between visible and hidden units; defaults to dense matrix products.
            generator: Optional random generator, used for initialization and sampling.
        """
        super().__init__()
        self.descriptor = descriptor
        self.params = ParameterStore.from_descriptor(descriptor, generator)
        self.sampler = GibbsSampler(self.params, descriptor.visible_unit, descriptor.hidden_unit, operator=operator,
                                    stochastic_hidden=descriptor.stochastic_hidden,
                                    negative_phase=descriptor.negative_phase, generator=generator)
        self.accumulator = GradientAccumulator(descriptor)
        self._backprop = None
        self.last_samples = None  # never filled in dbn_only mode

    @property
    def backprop(self) -> BackpropAdapter:
        """Adapter for using this layer in backpropagation. Fails for unsupported hidden units."""
        if self._backprop is None:
            self._backprop = BackpropAdapter(self.params, self.descriptor.hidden_unit)
        return self._backprop

    def input_size(self) -> int:
        return self.descriptor.num_visible

    def output_size(self) -> int:
        return self.descriptor.num_hidden

    def parameter_count(self) -> int:
        """Number of weights, as counted by the original library (biases excluded)."""
        return self.descriptor.num_visible * self.descriptor.num_hidden

    def metric_names(self) -> list[str]:
        """Keys of the dictionary returned by train_batch."""
        if self.descriptor.free_energy:
            return ["reconstruction_error", "free_energy"]
        return ["reconstruction_error"]

    def __str__(self) -> str:
        return self.descriptor.describe()

    def forward(self,
                visible: VisibleBatchFloat) -> HiddenBatchFloat:
        return self.to_hidden_p(visible)

    def to_hidden_p(self,
                    visible: VisibleBatchFloat) -> HiddenBatchFloat:
        """Hidden activations given visible units, e.g. p(h|v) for binary units."""
        self.check_batch(visible)
        return self.sampler.hidden_step(visible)[0]

    def to_visible_p(self,
                     hidden: HiddenBatchFloat) -> VisibleBatchFloat:
        """Visible activations given hidden units, e.g. p(v|h) for binary units."""
        self.check_hidden_batch(hidden)
        return activate(self.descriptor.visible_unit,
                        self.sampler.operator.to_visible(hidden, self.params.w, self.params.c))

    def train_batch(self,
                    v0: VisibleBatchFloat,
                    k: int = 1,
                    learning_rate: float | None = None) -> dict[str, float]:
        """One CD-k update on a batch.

        Parameters:
            v0: b x V batch of training data.
            k: Number of Gibbs steps.
            learning_rate: Overrides the configured learning rate, e.g. if a driver reduced it after divergence.

        Returns:
            Dictionary with the batch's reconstruction error and, if configured, mean free energy. Both are computed
            with the parameters *before* the update.
        """
        self.check_batch(v0)
        v0 = v0.to(self.params.w.device, self.params.w.dtype)
        samples = self.sampler.contrastive_divergence(v0, k)
        metrics = {"reconstruction_error": self._squared_error(samples).item()}
        if self.descriptor.free_energy:
            with torch.no_grad():
                metrics["free_energy"] = self.free_energy(v0).mean().item()
        self.accumulator.step(self.params, samples, learning_rate)
        if not self.descriptor.dbn_only:
            self.last_samples = samples
        return metrics

    @torch.no_grad()
    def reconstruct(self,
                    visible: VisibleBatchFloat,
                    k: int = 1) -> VisibleBatchFloat:
        """Visible activations after k Gibbs steps starting from the given data."""
        self.check_batch(visible)
        return self.sampler.contrastive_divergence(visible, k).v2_a

    @torch.no_grad()
    def reconstruction_error(self,
                             visible: VisibleBatchFloat,
                             k: int = 1) -> ScalarFloat:
        """Mean squared error between data and its reconstruction."""
        self.check_batch(visible)
        return self._squared_error(self.sampler.contrastive_divergence(visible, k))

    def free_energy(self,
                    visible: VisibleBatchFloat) -> VectorBatchFloat:
        """Free energy F(v) = -log sum_h exp(-E(v, h)), per example.

        Rectified hidden units use the same softplus term as binary ones, which is the usual approximation for noisy
        rectified units.
        """
        self.check_batch(visible)
        pre_hidden = self.sampler.operator.to_hidden(visible, self.params.w, self.params.b)
        hidden_unit = self.descriptor.hidden_unit
        if hidden_unit == UnitType.BINARY or is_relu(hidden_unit):
            hidden_term = nn.functional.softplus(pre_hidden).sum(dim=1)
        elif hidden_unit == UnitType.SOFTMAX:
            hidden_term = torch.logsumexp(pre_hidden, dim=1)
        else:
            hidden_term = 0.5 * (pre_hidden**2).sum(dim=1)
        return self._visible_energy(visible) - hidden_term

    def energy(self,
               visible: VisibleBatchFloat,
               hidden: HiddenBatchFloat) -> VectorBatchFloat:
        """Joint energy E(v, h), per example."""
        self.check_batch(visible)
        self.check_hidden_batch(hidden)
        hidden_term = hidden @ self.params.b
        if self.descriptor.hidden_unit == UnitType.GAUSSIAN:
            hidden_term = hidden_term - 0.5 * (hidden**2).sum(dim=1)
        interaction = ((visible @ self.params.w) * hidden).sum(dim=1)
        return self._visible_energy(visible) - hidden_term - interaction

    @torch.no_grad()
    def generate(self,
                 n_generations: int,
                 chain_length: int) -> VisibleBatchFloat:
        """Create samples via Markov chains, returning the visible activations of the final step.

        Chains start from uniform noise for binary visible units and standard normal noise otherwise.
        """
        device = self.params.w.device
        shape = (n_generations, self.descriptor.num_visible)
        if self.descriptor.visible_unit == UnitType.BINARY:
            initial_v = torch.bernoulli(torch.full(shape, 0.5, device=device), generator=self.sampler.generator)
        else:
            initial_v = torch.randn(shape, device=device, generator=self.sampler.generator)
        _, final_h = self.sampler.gibbs_chain(initial_v, chain_length)
        return self.to_visible_p(final_h)

    def check_batch(self,
                    visible: VisibleBatchFloat):
        """Batches must be b x V; anything else is a configuration error."""
        if visible.dim() != 2 or visible.shape[1] != self.descriptor.num_visible:
            raise ConfigurationError(f"Expected a batch x {self.descriptor.num_visible} input, got "
                                     f"{tuple(visible.shape)}.")

    def check_hidden_batch(self,
                           hidden: HiddenBatchFloat):
        if hidden.dim() != 2 or hidden.shape[1] != self.descriptor.num_hidden:
            raise ConfigurationError(f"Expected a batch x {self.descriptor.num_hidden} hidden input, got "
                                     f"{tuple(hidden.shape)}.")

    def _visible_energy(self,
                        visible: VisibleBatchFloat) -> VectorBatchFloat:
        if self.descriptor.visible_unit == UnitType.BINARY:
            return -(visible @ self.params.c)
        return 0.5 * ((visible - self.params.c)**2).sum(dim=1)

    @staticmethod
    def _squared_error(samples: CDSamples) -> ScalarFloat:
        return ((samples.v1 - samples.v2_a)**2).mean()
