"""In this module you can find helpers for visualizing what an RBM has learned."""
from .filters import plot_filters
