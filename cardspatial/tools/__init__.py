"""
Tools for spatial transcriptomics data analysis.
"""

from .deconvolution import assemble_inputs, deconvolve, run_deconvolution
from .differential import find_marker_genes
from .preprocessing import preprocess_data
from .spatial_genes import find_spatially_variable_genes
from .visualization import plot_deconvolution, save_figure

__all__ = [
    "assemble_inputs",
    "deconvolve",
    "find_marker_genes",
    "find_spatially_variable_genes",
    "plot_deconvolution",
    "preprocess_data",
    "run_deconvolution",
    "save_figure",
]
