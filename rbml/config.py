"""Layer descriptors: sizing and hyperparameters of an RBM, resolved and validated once at construction.

Every other component (parameters, sampler, gradient accumulator, backprop adapter, trainer) takes its settings from
an RBMDescriptor instead of having them passed around individually.
"""
from __future__ import annotations

import inspect
import math
from enum import Enum

from .errors import ConfigurationError
from .units import UnitType, is_relu


class _Option(Enum):
    """Enum that also accepts its (case-insensitive) value or name when parsed."""
    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls,
              option: _Option | str) -> _Option:
        if isinstance(option, cls):
            return option
        try:
            return cls(str(option).lower())
        except ValueError:
            allowed = ", ".join(f"'{member.value}'" for member in cls)
            raise ConfigurationError(f"Invalid {cls.__name__} {option}. Allowed are {allowed}.") from None


class SparsityMethod(_Option):
    NONE = "none"
    GLOBAL_TARGET = "global_target"
    LOCAL_TARGET = "local_target"
    LEE = "lee"


class BiasMode(_Option):
    NONE = "none"
    SIMPLE = "simple"


class DecayType(_Option):
    NONE = "none"
    L1 = "l1"
    L2 = "l2"
    L1_FULL = "l1_full"
    L2_FULL = "l2_full"


class ClipMode(_Option):
    VALUE = "value"
    NORM = "norm"
    GLOBAL_NORM = "global_norm"


class NegativePhase(_Option):
    PROBABILITIES = "probabilities"
    SAMPLES = "samples"


def default_learning_rate(visible_unit: UnitType,
                          hidden_unit: UnitType) -> float:
    """Gaussian visible units and rectified hidden units need much smaller steps than binary ones."""
    gaussian_visible = visible_unit == UnitType.GAUSSIAN
    relu_hidden = is_relu(hidden_unit)
    if gaussian_visible and relu_hidden:
        return 1e-5
    elif gaussian_visible or relu_hidden:
        return 1e-3
    return 1e-1


class RBMDescriptor:
    def __init__(self,
                 num_visible: int,
                 num_hidden: int,
                 batch_size: int = 1,
                 visible_unit: UnitType | str = UnitType.BINARY,
                 hidden_unit: UnitType | str = UnitType.BINARY,
                 learning_rate: float | None = None,
                 momentum: bool = False,
                 initial_momentum: float = 0.5,
                 final_momentum: float = 0.9,
                 final_momentum_epoch: int = 6,
                 decay_type: DecayType | str = DecayType.NONE,
                 weight_cost: float = 0.0002,
                 l1_weight_cost: float | None = None,
                 sparsity_method: SparsityMethod | str = SparsityMethod.NONE,
                 bias_mode: BiasMode | str = BiasMode.NONE,
                 sparsity_target: float = 0.01,
                 sparsity_cost: float = 1.,
                 decay_rate: float = 0.99,
                 pbias: float = 0.002,
                 pbias_lambda: float = 5.,
                 clip_gradients: bool = False,
                 clip_mode: ClipMode | str = ClipMode.NORM,
                 gradient_clip: float = 5.,
                 negative_phase: NegativePhase | str = NegativePhase.PROBABILITIES,
                 stochastic_hidden: bool = False,
                 weight_std: float = 0.1,
                 init_weights: bool = False,
                 free_energy: bool = False,
                 parallel_mode: bool = False,
                 shuffle: bool = False,
                 verbose: bool = False,
                 dbn_only: bool = False):
        """Full description of a dense RBM layer.

        Parameters:
            num_visible, num_hidden: Layer dimensions. Fixed for the lifetime of the layer.
            batch_size: Mini-batch size used for CD training and for allocating SGD contexts.
            visible_unit, hidden_unit: Unit types of the two sides. Softmax visible units are not supported.
            learning_rate: Step size for CD updates. If None, a default is picked based on the unit types: 0.1 for
                           binary units, 1e-3 if visible units are Gaussian *or* hidden units are rectified, 1e-5 if
                           both.
            momentum: If True, use momentum for the CD updates.
            initial_momentum, final_momentum, final_momentum_epoch: Momentum coefficient schedule. The initial value is
                                                                    used before final_momentum_epoch, the final one
                                                                    afterwards. Only used if momentum is True.
            decay_type: Weight decay. 'l1'/'l2' decay only the weights, the '_full' variants also the biases.
            weight_cost: Decay coefficient for L2 decay.
            l1_weight_cost: Decay coefficient for L1 decay. Defaults to weight_cost.
            sparsity_method: 'global_target' and 'local_target' push the (moving average of the) mean hidden
                             activation, over all units or per unit respectively, towards sparsity_target. 'lee' is
                             the bias-only variant of Lee et al., which needs bias_mode 'simple' to do anything.
                             Requires binary hidden units.
            bias_mode: 'simple' enables the bias correction of the 'lee' sparsity method.
            sparsity_target: Target probability for the mean hidden activation.
            sparsity_cost: Strength of the target sparsity penalty.
            decay_rate: Smoothing factor of the exponential moving average of hidden activations.
            pbias, pbias_lambda: Target and strength of the 'lee' bias correction.
            clip_gradients: If True, clip gradients before forming increments.
            clip_mode: 'value' clamps each element to +-gradient_clip, 'norm' rescales each gradient tensor whose L2
                       norm exceeds gradient_clip, 'global_norm' rescales all gradients by their joint norm.
            gradient_clip: The clipping bound.
            negative_phase: Which reconstruction statistics enter the negative gradient term. 'probabilities' uses
                            the visible activation probabilities (less sampling noise, as recommended by Hinton),
                            'samples' uses the sampled visible states.
            stochastic_hidden: If True, rectified and softmax hidden units are sampled (noisy relu/one-hot draws)
                               instead of passing their activations through.
            weight_std: Standard deviation of the Gaussian weight initialization.
            init_weights: If True, drivers initialize the visible biases from the training data before training.
            free_energy: If True, report free energy in addition to the reconstruction error.
            parallel_mode: Hint for drivers that batches may be dispatched concurrently. The layer itself does no
                           thread management.
            shuffle: If True, training data is shuffled every epoch.
            verbose: If True, report on training progress.
            dbn_only: If True, the layer is only used inside a larger network and does not keep its last CD
                      samples around.
        """
        self.num_visible = num_visible
        self.num_hidden = num_hidden
        self.batch_size = batch_size
        self.visible_unit = UnitType.parse(visible_unit)
        self.hidden_unit = UnitType.parse(hidden_unit)
        self.learning_rate_is_default = learning_rate is None
        if learning_rate is None:
            learning_rate = default_learning_rate(self.visible_unit, self.hidden_unit)
        self.learning_rate = learning_rate

        self.momentum = momentum
        self.initial_momentum = initial_momentum
        self.final_momentum = final_momentum
        self.final_momentum_epoch = final_momentum_epoch

        self.decay_type = DecayType.parse(decay_type)
        self.weight_cost = weight_cost
        self.l1_weight_cost_is_default = l1_weight_cost is None
        self.l1_weight_cost = weight_cost if l1_weight_cost is None else l1_weight_cost

        self.sparsity_method = SparsityMethod.parse(sparsity_method)
        self.bias_mode = BiasMode.parse(bias_mode)
        self.sparsity_target = sparsity_target
        self.sparsity_cost = sparsity_cost
        self.decay_rate = decay_rate
        self.pbias = pbias
        self.pbias_lambda = pbias_lambda

        self.clip_gradients = clip_gradients
        self.clip_mode = ClipMode.parse(clip_mode)
        self.gradient_clip = gradient_clip

        self.negative_phase = NegativePhase.parse(negative_phase)
        self.stochastic_hidden = stochastic_hidden
        self.weight_std = weight_std
        self.init_weights = init_weights
        self.free_energy = free_energy
        self.parallel_mode = parallel_mode
        self.shuffle = shuffle
        self.verbose = verbose
        self.dbn_only = dbn_only
        self.validate()

    @property
    def has_sparsity(self) -> bool:
        return self.sparsity_method != SparsityMethod.NONE

    def validate(self):
        """Reject invalid option combinations before any layer is built."""
        for name in ["num_visible", "num_hidden", "batch_size"]:
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {value}.")
        if not isinstance(self.final_momentum_epoch, int) or self.final_momentum_epoch < 0:
            raise ConfigurationError(f"final_momentum_epoch must be a non-negative integer, got "
                                     f"{self.final_momentum_epoch}.")

        if self.visible_unit == UnitType.SOFTMAX:
            raise ConfigurationError("Softmax visible units are not supported.")
        if self.has_sparsity and self.hidden_unit != UnitType.BINARY:
            raise ConfigurationError(f"Sparsity is only supported for binary hidden units, got {self.hidden_unit}.")

        for name in ["learning_rate", "weight_cost", "l1_weight_cost", "sparsity_cost", "pbias", "pbias_lambda",
                     "weight_std"]:
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0:
                raise ConfigurationError(f"{name} must be finite and non-negative, got {value}.")
        if not math.isfinite(self.gradient_clip) or self.gradient_clip <= 0:
            raise ConfigurationError(f"gradient_clip must be finite and positive, got {self.gradient_clip}.")
        if not 0 < self.sparsity_target < 1:
            raise ConfigurationError(f"sparsity_target must be in (0, 1), got {self.sparsity_target}.")
        if not 0 <= self.decay_rate < 1:
            raise ConfigurationError(f"decay_rate must be in [0, 1), got {self.decay_rate}.")
        for name in ["initial_momentum", "final_momentum"]:
            value = getattr(self, name)
            if not 0 <= value < 1:
                raise ConfigurationError(f"{name} must be in [0, 1), got {value}.")

    def momentum_at(self,
                    epoch_ind: int) -> float:
        """Momentum coefficient for the given epoch, or 0 if momentum is disabled."""
        if not self.momentum:
            return 0.
        return self.initial_momentum if epoch_ind < self.final_momentum_epoch else self.final_momentum

    def with_options(self,
                     **changes) -> RBMDescriptor:
        """Copy with some constructor options changed. The copy is built and validated from scratch.

        Options that were left at their unit-dependent defaults (learning_rate, l1_weight_cost) are derived again, so
        changing the unit types gives the same result as constructing the descriptor directly.
        """
        options = [name for name in inspect.signature(RBMDescriptor.__init__).parameters if name != "self"]
        unknown = [name for name in changes if name not in options]
        if unknown:
            raise ConfigurationError(f"Unknown options {unknown}. Allowed are {options}.")
        kwargs = {name: getattr(self, name) for name in options}
        if self.learning_rate_is_default:
            kwargs["learning_rate"] = None
        if self.l1_weight_cost_is_default:
            kwargs["l1_weight_cost"] = None
        kwargs.update(changes)
        return RBMDescriptor(**kwargs)

    def describe(self) -> str:
        return (f"RBM: {self.num_visible}({self.visible_unit}) -> "
                f"{self.num_hidden}({self.hidden_unit})")

    def __repr__(self) -> str:
        return f"RBMDescriptor({self.describe()}, batch_size={self.batch_size}, lr={self.learning_rate:.4g})"
