from collections import defaultdict

import numpy as np
import torch
from torch.utils.data import DataLoader, TensorDataset
from tqdm.auto import tqdm

from .model import RBM
from .watcher import ConsoleWatcher, RBMWatcher
from ..config import RBMDescriptor
from ..errors import MissingSnapshot, NumericDivergence
from ..types import VisibleBatchFloat


def make_loader(data: VisibleBatchFloat,
                descriptor: RBMDescriptor,
                num_workers: int = 0) -> DataLoader:
    """Wrap an N x V tensor in a DataLoader using the descriptor's batch size and shuffle setting."""
    return DataLoader(TensorDataset(data), batch_size=descriptor.batch_size, shuffle=descriptor.shuffle,
                      num_workers=num_workers)


class CDTrainer:
    def __init__(self,
                 rbm: RBM,
                 training_loader: DataLoader,
                 n_epochs: int,
                 k: int = 1,
                 device: str = "cpu",
                 watcher: RBMWatcher | None = None,
                 divergence_lr_factor: float = 0.5,
                 use_tqdm: bool = False):
        """Drives unsupervised Contrastive Divergence training of a single RBM.

        At the start of every epoch, the parameters are backed up. If a batch produces NaN/inf, the backup is
        restored, the learning rate is reduced and training continues with the next batch.

        Parameters:
            rbm: The model to train.
            training_loader: Yields batches, either plain tensors or tuples whose first entry is the data. Anything
                             with more than two dimensions gets flattened.
            n_epochs: Number of full iterations over the training loader.
            k: Number of Gibbs steps per CD update.
            device: Device on which all the torch stuff should happen (e.g. "cuda").
            watcher: Receives progress events. If None, a ConsoleWatcher following the descriptor's verbose flag is
                     used.
            divergence_lr_factor: The learning rate is multiplied by this after each divergence.
            use_tqdm: If True, and verbose is also True, supply per-epoch progress bars.
        """
        if k < 1:
            raise ValueError(f"k must be at least 1, got {k}.")
        if not 0 < divergence_lr_factor <= 1:
            raise ValueError(f"divergence_lr_factor must be in (0, 1], got {divergence_lr_factor}.")
        self.rbm = rbm
        self.training_loader = training_loader
        self.n_epochs = n_epochs
        self.k = k
        self.device = device
        self.watcher = ConsoleWatcher(verbose=rbm.descriptor.verbose) if watcher is None else watcher
        self.divergence_lr_factor = divergence_lr_factor
        self.use_tqdm = use_tqdm
        self.learning_rate = rbm.descriptor.learning_rate

    def train_model(self) -> dict[str, np.ndarray]:
        """The main training loop + housekeeping.

        Returns:
            Dictionary mapping each metric name to a numpy array of per-epoch averages. Also contains 'divergences',
            the number of divergent batches per epoch. Epochs without a single successful batch report NaN averages.
        """
        self.rbm.to(self.device)
        if self.rbm.descriptor.init_weights:
            self.rbm.params.init_visible_bias(self.collect_data(), self.rbm.descriptor.visible_unit)

        self.watcher.training_begin(self.rbm, self.n_epochs)
        full_metrics = defaultdict(list)
        for epoch_ind in range(self.n_epochs):
            epoch_metrics = self.train_epoch(epoch_ind)
            for key in self.rbm.metric_names():
                values = epoch_metrics[key]
                full_metrics[key].append(np.mean(values) if values else np.nan)
            full_metrics["divergences"].append(np.sum(epoch_metrics["divergences"]))
            self.watcher.epoch_end(epoch_ind, {key: float(full_metrics[key][-1]) for key in full_metrics})
        self.watcher.training_end(self.rbm)
        return {key: np.array(values) for key, values in full_metrics.items()}

    def train_epoch(self,
                    epoch_ind: int) -> defaultdict[str, list[float]]:
        """One pass over the training loader.

        Returns:
            Dictionary mapping metric names to lists of per-batch results.
        """
        self.watcher.epoch_start(epoch_ind)
        self.rbm.accumulator.momentum = self.rbm.descriptor.momentum_at(epoch_ind)
        self.rbm.params.snapshot()
        epoch_metrics = defaultdict(list)
        epoch_metrics["divergences"].append(0)

        verbose = self.rbm.descriptor.verbose
        with tqdm(total=len(self.training_loader), desc="Training", leave=False,
                  disable=not self.use_tqdm or not verbose) as progressbar:
            for batch_ind, data_batch in enumerate(self.training_loader):
                batch = self.prepare_batch(data_batch)
                try:
                    batch_metrics = self.rbm.train_batch(batch, self.k, learning_rate=self.learning_rate)
                except NumericDivergence as error:
                    self.recover(epoch_ind, batch_ind, error)
                    epoch_metrics["divergences"].append(1)
                else:
                    for key, value in batch_metrics.items():
                        epoch_metrics[key].append(value)
                    self.watcher.batch_end(epoch_ind, batch_ind, batch_metrics)
                progressbar.update(1)
        return epoch_metrics

    def recover(self,
                epoch_ind: int,
                batch_ind: int,
                error: NumericDivergence):
        """Roll back to the epoch's snapshot and continue with a smaller learning rate."""
        try:
            self.rbm.params.restore()
        except MissingSnapshot as missing:
            self.watcher.missing_snapshot(epoch_ind, missing)
        self.rbm.accumulator.reset_momentum()
        self.learning_rate *= self.divergence_lr_factor
        self.watcher.divergence(epoch_ind, batch_ind, error, self.learning_rate)

    def prepare_batch(self,
                      data_batch: VisibleBatchFloat | tuple | list) -> VisibleBatchFloat:
        if isinstance(data_batch, (tuple, list)):
            data_batch = data_batch[0]
        return data_batch.to(self.device).view(data_batch.shape[0], -1)

    def collect_data(self) -> VisibleBatchFloat:
        """The full training set as one tensor, for data-dependent initialization."""
        return torch.cat([self.prepare_batch(data_batch) for data_batch in self.training_loader])
