"""Shared fixtures for RBM tests."""
import matplotlib
import pytest
import torch

from rbml import RBMDescriptor

matplotlib.use("Agg")


@pytest.fixture(autouse=True)
def seed():
    """Fixed seed so stochastic tests are reproducible."""
    torch.manual_seed(42)


@pytest.fixture
def generator():
    return torch.Generator().manual_seed(1234)


@pytest.fixture
def small_descriptor():
    """4 visible, 2 hidden binary units."""
    return RBMDescriptor(num_visible=4, num_hidden=2, batch_size=1)


@pytest.fixture
def binary_data():
    """Two repeated patterns, easy enough to learn in a handful of epochs."""
    patterns = torch.tensor([[1., 1., 1., 0., 0., 0.],
                             [0., 0., 0., 1., 1., 1.]])
    return patterns.repeat(32, 1)
