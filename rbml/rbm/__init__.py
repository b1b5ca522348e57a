"""This module contains dense Restricted Boltzmann Machines and everything needed to train them.

Unsupervised training uses Contrastive Divergence: GibbsSampler produces the positive and negative phase statistics,
GradientAccumulator turns them into updates (momentum, weight decay, sparsity, clipping) applied to the ParameterStore.
Alternatively, BackpropAdapter exposes the same parameters as a layer for supervised fine-tuning with SGD.

REFERENCES
CD: https://www.cs.toronto.edu/~hinton/absps/tr00-004.pdf
Practical guide to training RBMs: https://www.cs.toronto.edu/~hinton/absps/guideTR.pdf
Sparse DBNs (Lee et al.): https://papers.nips.cc/paper/3313-sparse-deep-belief-net-model-for-visual-area-v2
"""
from .backprop import BackpropAdapter, SGDContext
from .gradients import GradientAccumulator, Gradients
from .model import RBM
from .parameters import ParameterStore
from .sampler import CDSamples, DenseOperator, GibbsSampler, LinearOperator
from .trainer import CDTrainer, make_loader
from .watcher import ConsoleWatcher, RBMWatcher
