"""
Visualization of analysis and deconvolution results.
"""

from .core import (
    add_colorbar,
    create_figure,
    get_category_colors,
    plot_embedding,
    plot_spatial_clusters,
    save_figure,
    setup_multi_panel_figure,
)
from .deconvolution import (
    plot_deconvolution,
    plot_dominant_type,
    plot_scatterpie,
    plot_spatial_multi,
)

__all__ = [
    "add_colorbar",
    "create_figure",
    "get_category_colors",
    "plot_deconvolution",
    "plot_dominant_type",
    "plot_embedding",
    "plot_scatterpie",
    "plot_spatial_clusters",
    "plot_spatial_multi",
    "save_figure",
    "setup_multi_panel_figure",
]
