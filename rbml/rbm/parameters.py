import torch
from torch import nn

from ..config import RBMDescriptor
from ..errors import ConfigurationError, MissingSnapshot
from ..types import HiddenVectorFloat, VisibleBatchFloat, VisibleVectorFloat, WeightMatrixFloat
from ..units import UnitType


class ParameterStore(nn.Module):
    def __init__(self,
                 num_visible: int,
                 num_hidden: int,
                 weight_std: float = 0.1,
                 generator: torch.Generator | None = None):
        """Weights and biases of an RBM, plus an optional backup to roll back to.

        Parameters are nn.Parameters so they move with .to(device) and show up in the state dict, but they don't
        require gradients: both CD and backprop compute their gradients explicitly and apply them through update().

        Parameters:
            num_visible, num_hidden: Dimensions. These can never change afterwards.
            weight_std: Weights are initialized from N(0, weight_std**2).
            generator: Optional random generator for reproducible initialization.
        """
        super().__init__()
        self.num_visible = num_visible
        self.num_hidden = num_hidden
        self.weight_std = weight_std
        self.generator = generator
        self.w = nn.Parameter(torch.empty(num_visible, num_hidden), requires_grad=False)
        self.b = nn.Parameter(torch.empty(num_hidden), requires_grad=False)
        self.c = nn.Parameter(torch.empty(num_visible), requires_grad=False)
        self.backup = None
        self.initialize()

    @classmethod
    def from_descriptor(cls,
                        descriptor: RBMDescriptor,
                        generator: torch.Generator | None = None) -> "ParameterStore":
        return cls(descriptor.num_visible, descriptor.num_hidden, descriptor.weight_std, generator)

    @torch.no_grad()
    def initialize(self):
        """Zero-mean Gaussian weights, zero biases."""
        self.w.copy_(torch.randn(self.w.shape, generator=self.generator, dtype=self.w.dtype).to(self.w.device)
                     * self.weight_std)
        self.b.zero_()
        self.c.zero_()

    @torch.no_grad()
    def init_visible_bias(self,
                          data: VisibleBatchFloat,
                          visible_unit: UnitType):
        """Initialize visible biases from training data.

        For binary units, we use log(p / (1 - p)) with p the fraction of times each unit is on, which makes the
        untrained model reproduce the data marginals. For Gaussian units, we simply use the data mean.
        """
        self._check_shape(data.shape[1:], (self.num_visible,), "data")
        means = data.to(self.c.device, self.c.dtype).mean(dim=0)
        if visible_unit == UnitType.BINARY:
            means = means.clamp(1e-4, 1 - 1e-4)
            self.c.copy_(torch.log(means / (1 - means)))
        else:
            self.c.copy_(means)

    @property
    def has_snapshot(self) -> bool:
        return self.backup is not None

    def snapshot(self):
        """Back up the current parameters. Any previous backup is replaced."""
        self.backup = tuple(param.detach().clone() for param in self.parameters_tuple())

    @torch.no_grad()
    def restore(self):
        """Copy the backed up parameters into the live ones. The backup is kept."""
        if self.backup is None:
            raise MissingSnapshot("Cannot restore parameters, no snapshot has been taken.")
        for backup_param, param in zip(self.backup, self.parameters_tuple()):
            param.copy_(backup_param)

    def discard_snapshot(self):
        self.backup = None

    @torch.no_grad()
    def update(self,
               delta_w: WeightMatrixFloat,
               delta_b: HiddenVectorFloat,
               delta_c: VisibleVectorFloat | None = None):
        """Additive in-place update. This is the only way training code changes the parameters."""
        self._check_shape(delta_w.shape, self.w.shape, "delta_w")
        self._check_shape(delta_b.shape, self.b.shape, "delta_b")
        self.w.add_(delta_w)
        self.b.add_(delta_b)
        if delta_c is not None:
            self._check_shape(delta_c.shape, self.c.shape, "delta_c")
            self.c.add_(delta_c)

    def is_finite(self) -> bool:
        return all(torch.isfinite(param).all().item() for param in self.parameters_tuple())

    def parameters_tuple(self) -> tuple[WeightMatrixFloat, HiddenVectorFloat, VisibleVectorFloat]:
        return self.w, self.b, self.c

    @staticmethod
    def _check_shape(actual: tuple[int, ...],
                     expected: tuple[int, ...],
                     name: str):
        if tuple(actual) != tuple(expected):
            raise ConfigurationError(f"Shape mismatch for {name}: expected {tuple(expected)}, got {tuple(actual)}.")
