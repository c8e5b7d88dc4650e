"""
Deconvolution result visualization.

Three views of a spots x cell-types proportion table:
- scatterpie: a pie chart per spot (SPOTlight/CARD style)
- spatial_multi: one spatial panel per cell type
- dominant_type: the most abundant cell type at each spot

Coordinates are expected with a bottom-left origin (as produced by
``assemble_inputs``), so the y axis is drawn as is.
"""

import logging
from typing import List, Optional, Sequence

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from matplotlib.colors import LogNorm, Normalize, PowerNorm
from matplotlib.patches import Patch, Wedge

from ...models.data import VisualizationParameters
from ...utils.exceptions import (
    DataCompatibilityError,
    DataNotFoundError,
    ParameterError,
)
from .core import (
    add_colorbar,
    create_figure,
    default_spot_size,
    get_category_colors,
    setup_multi_panel_figure,
)

logger = logging.getLogger(__name__)

# Smallest value shown on a log color scale
LOG_FLOOR = 1e-3


def _resolve_cell_types(
    proportions: pd.DataFrame, cell_types: Optional[Sequence[str]]
) -> List[str]:
    available = [str(c) for c in proportions.columns]
    if cell_types is None:
        return available
    requested = [str(ct) for ct in dict.fromkeys(cell_types)]
    unknown = [ct for ct in requested if ct not in available]
    if unknown:
        raise DataNotFoundError(
            f"Cell type(s) {unknown} not found in deconvolution results. "
            f"Available: {available}"
        )
    if not requested:
        raise ParameterError("cell_types must name at least one cell type")
    return requested


def _spot_coordinates(
    proportions: pd.DataFrame, coordinates: pd.DataFrame
) -> np.ndarray:
    if "x" not in coordinates.columns or "y" not in coordinates.columns:
        raise DataCompatibilityError(
            f"Coordinates need 'x' and 'y' columns, got {list(coordinates.columns)}"
        )
    index = coordinates.index.astype(str)
    spots = proportions.index.astype(str)
    missing = spots.difference(index)
    if len(missing) > 0:
        raise DataCompatibilityError(
            f"{len(missing)} spots have no coordinates (e.g. {list(missing[:3])})"
        )
    coords = coordinates.set_axis(index).loc[spots, ["x", "y"]]
    return coords.to_numpy(dtype=np.float64)


def _color_norm(color_scale: str, values: np.ndarray) -> Normalize:
    vmax = float(np.nanmax(values)) if values.size else 1.0
    vmax = vmax if vmax > 0 else 1.0
    if color_scale == "sqrt":
        return PowerNorm(gamma=0.5, vmin=0.0, vmax=vmax)
    if color_scale == "log":
        return LogNorm(vmin=LOG_FLOOR, vmax=max(vmax, LOG_FLOOR * 10), clip=True)
    return Normalize(vmin=0.0, vmax=vmax)


def _pad_limits(ax: plt.Axes, coords: np.ndarray, padding: float) -> None:
    ax.set_xlim(coords[:, 0].min() - padding, coords[:, 0].max() + padding)
    ax.set_ylim(coords[:, 1].min() - padding, coords[:, 1].max() + padding)


def _cell_type_legend(ax: plt.Axes, colors: dict) -> None:
    handles = [Patch(facecolor=color, label=ct) for ct, color in colors.items()]
    ax.legend(
        handles=handles,
        bbox_to_anchor=(1.05, 1),
        loc="upper left",
        ncol=1 if len(handles) <= 15 else 2,
        fontsize=8,
        frameon=False,
    )


def plot_scatterpie(
    proportions: pd.DataFrame,
    coords: np.ndarray,
    cell_types: List[str],
    params: VisualizationParameters,
) -> plt.Figure:
    """Pie chart of cell-type composition at every spot.

    The pie radius is 2% of the coordinate range (the R scatterpie default)
    times ``params.pie_scale``. Slices below ``params.min_proportion`` are
    left out. Proportions are drawn as given, so with a subset of cell types
    the rest of each circle stays empty.
    """
    colors = get_category_colors(cell_types)
    fig, ax = create_figure(params.figure_size or (12, 10), dpi=params.dpi)

    coord_range = float(np.ptp(coords, axis=0).max()) if len(coords) > 1 else 0.0
    base_radius = coord_range * 0.02 if coord_range > 0 else 0.5
    pie_radius = base_radius * params.pie_scale

    values = proportions[cell_types].to_numpy(dtype=np.float64)
    n_drawn = 0
    for (x, y), row in zip(coords, values):
        total = row.sum()
        if total <= 0:
            continue
        start_angle = 0.0
        for cell_type, proportion in zip(cell_types, row):
            if proportion < params.min_proportion or proportion <= 0:
                continue
            angle = proportion * 360
            ax.add_patch(
                Wedge(
                    center=(x, y),
                    r=pie_radius,
                    theta1=start_angle,
                    theta2=start_angle + angle,
                    facecolor=colors[cell_type],
                    edgecolor="white",
                    linewidth=0.5,
                )
            )
            start_angle += angle
        n_drawn += 1

    _pad_limits(ax, coords, pie_radius * 2)
    ax.set_aspect("equal")
    ax.set_xlabel("Spatial X")
    ax.set_ylabel("Spatial Y")
    ax.set_title(
        params.title
        or f"Cell Type Composition ({n_drawn} spots, pie scale: {params.pie_scale:.2f})"
    )
    if params.show_legend:
        _cell_type_legend(ax, colors)
    fig.tight_layout()
    return fig


def plot_spatial_multi(
    proportions: pd.DataFrame,
    coords: np.ndarray,
    cell_types: List[str],
    params: VisualizationParameters,
) -> plt.Figure:
    """One spatial panel per cell type, colored by its proportion."""
    fig, axes = setup_multi_panel_figure(
        n_panels=len(cell_types),
        params=params,
        default_title="Cell Type Proportions",
    )
    size = params.spot_size or default_spot_size(len(coords))

    for ax, cell_type in zip(axes, cell_types):
        values = proportions[cell_type].fillna(0).to_numpy(dtype=np.float64)
        norm = _color_norm(params.color_scale, values)
        plot_values = np.maximum(values, LOG_FLOOR) if params.color_scale == "log" else values
        scatter = ax.scatter(
            coords[:, 0],
            coords[:, 1],
            c=plot_values,
            cmap=params.colormap,
            norm=norm,
            s=size,
            edgecolors="none",
        )
        ax.set_aspect("equal")
        ax.set_xticks([])
        ax.set_yticks([])
        ax.set_title(f"{cell_type}\n(mean: {values.mean():.3f})", fontsize=10)
        add_colorbar(fig, ax, scatter, label="Proportion")

    return fig


def plot_dominant_type(
    proportions: pd.DataFrame,
    coords: np.ndarray,
    cell_types: List[str],
    params: VisualizationParameters,
) -> plt.Figure:
    """Spots colored by their most abundant cell type."""
    values = proportions[cell_types].to_numpy(dtype=np.float64)
    dominant = np.asarray(cell_types, dtype=object)[values.argmax(axis=1)]
    present = [ct for ct in cell_types if (dominant == ct).any()]
    colors = get_category_colors(cell_types)

    fig, ax = create_figure(params.figure_size or (10, 8), dpi=params.dpi)
    size = params.spot_size or default_spot_size(len(coords))
    for cell_type in present:
        mask = dominant == cell_type
        ax.scatter(
            coords[mask, 0],
            coords[mask, 1],
            c=[colors[cell_type]],
            s=size,
            label=f"{cell_type} ({int(mask.sum())})",
            edgecolors="none",
        )

    ax.set_aspect("equal")
    ax.set_xlabel("Spatial X")
    ax.set_ylabel("Spatial Y")
    ax.set_title(params.title or "Dominant Cell Type Map")
    if params.show_legend:
        ax.legend(
            bbox_to_anchor=(1.05, 1),
            loc="upper left",
            ncol=1 if len(present) <= 15 else 2,
            fontsize=8,
            markerscale=0.8,
            frameon=False,
        )
    fig.tight_layout()
    return fig


def plot_deconvolution(
    proportions: pd.DataFrame,
    coordinates: pd.DataFrame,
    cell_types: Optional[Sequence[str]] = None,
    params: Optional[VisualizationParameters] = None,
) -> plt.Figure:
    """Render deconvolution proportions at their spot coordinates.

    Routes to the view selected by ``params.subtype``:
    - scatterpie: pie per spot over the requested cell types
    - spatial_multi: one panel per cell type; without an explicit list the
      ``params.max_cell_types`` most abundant types are drawn
    - dominant_type: categorical map of the argmax cell type

    Args:
        proportions: Spots x cell types, rows summing to 1
        coordinates: Spots x (x, y) with a bottom-left origin
        cell_types: Cell types to draw (default: all)
        params: Visualization parameters

    Returns:
        Matplotlib figure

    Raises:
        DataNotFoundError: A requested cell type is not a proportions column
        DataCompatibilityError: Spots are missing from the coordinates
    """
    if params is None:
        params = VisualizationParameters()
    if proportions.empty:
        raise DataNotFoundError("Deconvolution proportions are empty")

    proportions = proportions.copy()
    proportions.columns = proportions.columns.astype(str)
    selected = _resolve_cell_types(proportions, cell_types)
    coords = _spot_coordinates(proportions, coordinates)

    if params.subtype == "scatterpie":
        fig = plot_scatterpie(proportions, coords, selected, params)
    elif params.subtype == "spatial_multi":
        if cell_types is None and len(selected) > params.max_cell_types:
            selected = list(
                proportions[selected]
                .mean()
                .sort_values(ascending=False)
                .index[: params.max_cell_types]
            )
        fig = plot_spatial_multi(proportions, coords, selected, params)
    elif params.subtype == "dominant_type":
        fig = plot_dominant_type(proportions, coords, selected, params)
    else:
        raise ParameterError(
            f"Unknown deconvolution visualization type: {params.subtype}. "
            "Available: scatterpie, spatial_multi, dominant_type"
        )

    logger.info(
        f"Created {params.subtype} plot with {len(coords)} spots and "
        f"{len(selected)} cell types"
    )
    return fig
