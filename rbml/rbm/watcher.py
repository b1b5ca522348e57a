from __future__ import annotations

from time import perf_counter
from typing import TYPE_CHECKING

from torch.utils.tensorboard import SummaryWriter

from ..errors import MissingSnapshot, NumericDivergence
from ..visualization import plot_filters

if TYPE_CHECKING:
    from .model import RBM


class RBMWatcher:
    """Receives training progress events. The base class ignores all of them.

    Subclass and override whatever you are interested in. Trainers call the hooks but never look at what they do.
    """
    def training_begin(self,
                       rbm: RBM,
                       n_epochs: int):
        pass

    def epoch_start(self,
                    epoch_ind: int):
        pass

    def batch_end(self,
                  epoch_ind: int,
                  batch_ind: int,
                  metrics: dict[str, float]):
        pass

    def epoch_end(self,
                  epoch_ind: int,
                  metrics: dict[str, float]):
        pass

    def divergence(self,
                   epoch_ind: int,
                   batch_ind: int,
                   error: NumericDivergence,
                   learning_rate: float):
        pass

    def missing_snapshot(self,
                         epoch_ind: int,
                         error: MissingSnapshot):
        pass

    def training_end(self,
                     rbm: RBM):
        pass


class ConsoleWatcher(RBMWatcher):
    def __init__(self,
                 verbose: bool = True,
                 tensorboard_logdir: str | None = None,
                 plot_filters_every: int | None = None,
                 filter_shape: tuple[int, ...] | None = None,
                 plot_n_rows: int = 10,
                 suppress_plots: bool = False):
        """Prints epoch summaries and optionally logs to TensorBoard.

        Parameters:
            verbose: If True, print progress.
            tensorboard_logdir: If given, reconstruction error (per batch and per epoch) and any other epoch metrics
                                are written to this directory. Pass None to disable logging.
            plot_filters_every: If given, plot the hidden units' weights (filters) every this many epochs. Needs
                                filter_shape.
            filter_shape: Shape each column of the weight matrix is reshaped to for plotting, e.g. (1, 28, 28).
            plot_n_rows: Plot n_rows**2 filters at most.
            suppress_plots: If True and logging to TensorBoard, figures only go to TensorBoard.
        """
        if plot_filters_every is not None and filter_shape is None:
            raise ValueError("If plot_filters_every is given, filter_shape must be given, too.")
        self.verbose = verbose
        self.writer = SummaryWriter(tensorboard_logdir) if tensorboard_logdir is not None else None
        self.plot_filters_every = plot_filters_every
        self.filter_shape = filter_shape
        self.plot_n_rows = plot_n_rows
        self.suppress_plots = suppress_plots

        self.rbm = None
        self.start_time = None
        self.global_step = 0

    def training_begin(self,
                       rbm: RBM,
                       n_epochs: int):
        self.rbm = rbm
        self.global_step = 0
        if self.verbose:
            print(f"Training {rbm} for {n_epochs} epochs.")

    def epoch_start(self,
                    epoch_ind: int):
        if self.verbose:
            print(f"Starting epoch {epoch_ind + 1}...", end=" ")
        self.start_time = perf_counter()

    def batch_end(self,
                  epoch_ind: int,
                  batch_ind: int,
                  metrics: dict[str, float]):
        if self.writer is not None:
            for key, value in metrics.items():
                self.writer.add_scalar("batch_" + key, value, self.global_step)
        self.global_step += 1

    def epoch_end(self,
                  epoch_ind: int,
                  metrics: dict[str, float]):
        time_taken = perf_counter() - self.start_time
        if self.verbose:
            print(f"\tTime taken: {time_taken:.4g} seconds")
            print("\tMetrics:")
            for key, value in metrics.items():
                print(f"\t\t{key}: {value:.6g}")
        if self.writer is not None:
            for key, value in metrics.items():
                self.writer.add_scalar(key, value, epoch_ind)
            self.writer.flush()
        if self.plot_filters_every is not None and not epoch_ind % self.plot_filters_every:
            plot_filters(self.rbm.params.w, self.filter_shape, n_rows=self.plot_n_rows,
                         title=f"Filters after epoch {epoch_ind + 1}", writer=self.writer, epoch_ind=epoch_ind,
                         suppress_plots=self.suppress_plots)

    def divergence(self,
                   epoch_ind: int,
                   batch_ind: int,
                   error: NumericDivergence,
                   learning_rate: float):
        if self.verbose:
            print(f"\n\tDivergence in epoch {epoch_ind + 1}, batch {batch_ind} ({error}). Parameters restored, "
                  f"learning rate is now {learning_rate:.6g}")

    def missing_snapshot(self,
                         epoch_ind: int,
                         error: MissingSnapshot):
        if self.verbose:
            print(f"\n\tCould not roll back in epoch {epoch_ind + 1}: {error}")

    def training_end(self,
                     rbm: RBM):
        if self.writer is not None:
            self.writer.close()
        if self.verbose:
            print("Training finished.")
