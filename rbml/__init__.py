"""This module contains the training core of Restricted Boltzmann Machines.

RBMs can be trained standalone with Contrastive Divergence, or used as layers of a deep belief network that is
fine-tuned end-to-end with backpropagation. Everything is configured through a single RBMDescriptor, which validates
all options before a layer is built.
"""
from .config import BiasMode, ClipMode, DecayType, NegativePhase, RBMDescriptor, SparsityMethod
from .errors import ConfigurationError, MissingSnapshot, NumericDivergence
from .units import UnitType
