"""This module uses jaxtyping to add various more specific tensor types."""
from typing import TypeAlias

from jaxtyping import Float
from torch import Tensor


VisibleBatchFloat: TypeAlias = Float[Tensor, "batch visible"]
HiddenBatchFloat: TypeAlias = Float[Tensor, "batch hidden"]
TabularBatchFloat: TypeAlias = Float[Tensor, "batch c"]

VisibleVectorFloat: TypeAlias = Float[Tensor, "visible"]
HiddenVectorFloat: TypeAlias = Float[Tensor, "hidden"]
WeightMatrixFloat: TypeAlias = Float[Tensor, "visible hidden"]

ScalarFloat: TypeAlias = Float[Tensor, ""]
VectorBatchFloat: TypeAlias = Float[Tensor, "batch"]
