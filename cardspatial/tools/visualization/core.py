"""
Core visualization utilities and shared functions.

This module contains:
- Figure setup and saving
- Color palettes for cell types and clusters
- Cluster and embedding plots for the analysis stages
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import anndata as ad
import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns
from matplotlib.lines import Line2D
from mpl_toolkits.axes_grid1 import make_axes_locatable

from ...models.data import VisualizationParameters
from ...utils.adata_utils import get_spatial_coordinates, validate_obs_column
from ...utils.exceptions import DataNotFoundError

plt.ioff()

logger = logging.getLogger(__name__)

SUBPLOT_WSPACE = 0.3
SUBPLOT_HSPACE = 0.4
COLORBAR_SIZE = "5%"
COLORBAR_PAD = 0.05


# =============================================================================
# Figure Creation Utilities
# =============================================================================


def create_figure(
    figsize: Tuple[float, float] = (10, 8), dpi: int = 150
) -> Tuple[plt.Figure, plt.Axes]:
    """Create a matplotlib figure with the right size and style."""
    fig, ax = plt.subplots(figsize=figsize, dpi=dpi)
    return fig, ax


def setup_multi_panel_figure(
    n_panels: int,
    params: VisualizationParameters,
    default_title: str,
) -> Tuple[plt.Figure, np.ndarray]:
    """Sets up a multi-panel matplotlib figure.

    Args:
        n_panels: The total number of panels required.
        params: VisualizationParameters with optional layout, size and title.
        default_title: Default title for the figure if not provided in params.

    Returns:
        A tuple of (matplotlib.Figure, flattened numpy.ndarray of Axes).
    """
    if params.panel_layout:
        n_rows, n_cols = params.panel_layout
        if n_rows * n_cols < n_panels:
            n_rows = (n_panels + n_cols - 1) // n_cols
    else:
        n_cols = min(3, n_panels)
        n_rows = (n_panels + n_cols - 1) // n_cols

    if params.figure_size:
        figsize = params.figure_size
    else:
        figsize = (min(5 * n_cols, 15), min(4 * n_rows, 16))

    fig, axes = plt.subplots(
        n_rows,
        n_cols,
        figsize=figsize,
        dpi=params.dpi,
        squeeze=False,
        gridspec_kw={"wspace": SUBPLOT_WSPACE, "hspace": SUBPLOT_HSPACE},
    )
    axes = axes.flatten()

    title = params.title or default_title
    fig.suptitle(title, fontsize=16)

    for i in range(n_panels, len(axes)):
        axes[i].axis("off")

    return fig, axes


def add_colorbar(
    fig: plt.Figure,
    ax: plt.Axes,
    mappable,
    label: str = "",
) -> None:
    """Add a colorbar to an axis with consistent styling."""
    divider = make_axes_locatable(ax)
    cax = divider.append_axes("right", size=COLORBAR_SIZE, pad=COLORBAR_PAD)
    cbar = fig.colorbar(mappable, cax=cax)
    if label:
        cbar.set_label(label, fontsize=10)


def save_figure(
    fig: plt.Figure, path: Union[str, Path], dpi: Optional[int] = None
) -> Path:
    """Write a figure to disk and close it.

    Args:
        fig: Figure to save
        path: Output file; the format follows the suffix (png, pdf, svg, ...)
        dpi: Resolution override; defaults to the figure's own dpi

    Returns:
        The path that was written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fig.savefig(path, dpi=dpi or fig.dpi, bbox_inches="tight")
    finally:
        plt.close(fig)
    logger.info(f"Saved figure to {path}")
    return path


# =============================================================================
# Colormap Utilities
# =============================================================================


def get_category_colors(categories: Sequence[str]) -> Dict[str, tuple]:
    """Map categories to distinct colors (tab20, husl beyond 20)."""
    categories = list(categories)
    n = len(categories)
    palette = sns.color_palette("tab20" if n <= 20 else "husl", n_colors=max(n, 1))
    return {cat: palette[i] for i, cat in enumerate(categories)}


def default_spot_size(n_spots: int) -> float:
    """Scatter marker size that keeps dense slides readable."""
    return float(np.clip(120000 / max(n_spots, 1), 5, 120))


def _category_legend(ax: plt.Axes, colors: Dict[str, tuple]) -> None:
    handles = [
        Line2D([0], [0], marker="o", color="w", markerfacecolor=color, markersize=8)
        for color in colors.values()
    ]
    ax.legend(
        handles,
        list(colors.keys()),
        loc="upper left",
        bbox_to_anchor=(1.02, 1),
        ncol=1 if len(colors) <= 15 else 2,
        fontsize=8,
        frameon=False,
    )


def _plot_categorical(
    ax: plt.Axes,
    coords: np.ndarray,
    labels: np.ndarray,
    categories: List[str],
    params: VisualizationParameters,
) -> None:
    colors = get_category_colors(categories)
    size = params.spot_size or default_spot_size(len(coords))
    for category in categories:
        mask = labels == category
        ax.scatter(
            coords[mask, 0],
            coords[mask, 1],
            c=[colors[category]],
            s=size,
            edgecolors="none",
            label=category,
        )
    if params.show_legend:
        _category_legend(ax, colors)


# =============================================================================
# Analysis Stage Plots
# =============================================================================


def plot_spatial_clusters(
    adata: ad.AnnData,
    cluster_key: str = "leiden",
    params: Optional[VisualizationParameters] = None,
) -> plt.Figure:
    """Spots at their spatial positions colored by cluster.

    Raises:
        MissingFieldError: cluster_key is not a column of adata.obs
        DataError: adata has no spatial coordinates
    """
    if params is None:
        params = VisualizationParameters()
    validate_obs_column(adata, cluster_key, "Cluster key")

    coords = get_spatial_coordinates(adata)
    labels = adata.obs[cluster_key].astype(str).to_numpy()
    if hasattr(adata.obs[cluster_key], "cat"):
        categories = [str(c) for c in adata.obs[cluster_key].cat.categories]
        categories = [c for c in categories if c in set(labels)]
    else:
        categories = sorted(set(labels))

    fig, ax = create_figure(params.figure_size or (10, 8), dpi=params.dpi)
    _plot_categorical(ax, coords, labels, categories, params)
    ax.set_aspect("equal")
    # obsm coordinates use the image (top-left) origin
    ax.invert_yaxis()
    ax.set_xlabel("Spatial X")
    ax.set_ylabel("Spatial Y")
    ax.set_title(params.title or f"Spatial distribution of {cluster_key}")
    fig.tight_layout()
    return fig


def plot_embedding(
    adata: ad.AnnData,
    color_key: str = "leiden",
    basis: str = "X_umap",
    params: Optional[VisualizationParameters] = None,
) -> plt.Figure:
    """Scatter of a 2D embedding (UMAP by default) colored by an obs column."""
    if params is None:
        params = VisualizationParameters()
    if basis not in adata.obsm:
        raise DataNotFoundError(
            f"Embedding '{basis}' not found in adata.obsm. Run preprocessing "
            "with compute_umap=True first."
        )
    validate_obs_column(adata, color_key, "Color key")

    coords = np.asarray(adata.obsm[basis])[:, :2]
    labels = adata.obs[color_key].astype(str).to_numpy()
    categories = sorted(set(labels), key=lambda c: (len(c), c))

    fig, ax = create_figure(params.figure_size or (8, 7), dpi=params.dpi)
    _plot_categorical(ax, coords, labels, categories, params)
    name = basis.replace("X_", "").upper()
    ax.set_xlabel(f"{name} 1")
    ax.set_ylabel(f"{name} 2")
    ax.set_xticks([])
    ax.set_yticks([])
    ax.set_title(params.title or f"{name} colored by {color_key}")
    fig.tight_layout()
    return fig
