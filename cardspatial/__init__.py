"""
cardspatial

Spatial transcriptomics analysis with CARD cell-type deconvolution:
preprocessing, marker and spatially variable genes, deconvolution of Visium
spots against a single-cell reference, and plots of the results.
"""

__version__ = "0.1.0"

from .utils.exceptions import CardSpatialError  # noqa: F401
