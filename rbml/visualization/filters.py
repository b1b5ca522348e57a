import numpy as np
import torch
from matplotlib import pyplot as plt
from torch.utils.tensorboard import SummaryWriter

from ..types import WeightMatrixFloat


def plot_filters(weights: WeightMatrixFloat,
                 filter_shape: tuple[int, ...],
                 n_rows: int,
                 n_cols: int | None = None,
                 title: str = "Filters",
                 figure_size: tuple[int, int] = (12, 12),
                 colormap: str = "Greys",
                 writer: SummaryWriter | None = None,
                 epoch_ind: int | None = None,
                 suppress_plots: bool = False):
    """Plot the weights of each hidden unit (one column of the weight matrix) as an image.

    Each filter is min-max scaled on its own, otherwise filters with small weights would be invisible.

    Parameters:
        weights: V x H weight matrix.
        filter_shape: Each column is reshaped to this. Either (h, w) or (c, h, w).
        n_rows: Will plot this many rows, and n_rows * n_cols many filters in total (or fewer if there are fewer
                hidden units).
        n_cols: Defaults to n_rows.
        title: Figure title, also used as the TensorBoard tag.
        figure_size: Guess what.
        colormap: Only used for single-channel filters.
        writer: If given (and epoch_ind as well), the figure is added to TensorBoard.
        epoch_ind: Step for TensorBoard.
        suppress_plots: If True, and the figure went to TensorBoard, it is closed instead of shown.
    """
    if n_cols is None:
        n_cols = n_rows
    n_filters = min(weights.shape[1], n_rows * n_cols)
    with torch.inference_mode():
        filters = weights[:, :n_filters].T.detach().cpu().numpy()
    filters = filters.reshape(n_filters, *filter_shape)
    if filters.ndim == 3:
        filters = filters[:, None]
    minima = filters.min(axis=(1, 2, 3), keepdims=True)
    maxima = filters.max(axis=(1, 2, 3), keepdims=True)
    filters = (filters - minima) / np.maximum(maxima - minima, 1e-8)

    plt.figure(figsize=figure_size)
    for ind, img in enumerate(filters):
        plt.subplot(n_rows, n_cols, ind + 1)
        img = img.transpose(1, 2, 0)
        plt.imshow(img[..., 0] if img.shape[-1] == 1 else img, vmin=0, vmax=1, cmap=colormap)
        plt.axis("off")
    plt.suptitle(title)

    if writer is not None and epoch_ind is not None:
        writer.add_figure(title, plt.gcf(), epoch_ind, close=suppress_plots)
        if suppress_plots:
            return
    plt.show()
