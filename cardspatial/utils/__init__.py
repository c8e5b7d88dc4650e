"""
Utility functions for spatial transcriptomics data analysis.
"""

from .adata_utils import (
    # Field discovery
    get_spatial_key,
    # Data access
    get_spatial_coordinates,
    get_raw_data_source,
    to_dense,
    # Validation
    validate_adata_basics,
    validate_frame_column,
    validate_gene_overlap,
    validate_obs_column,
)
from .dependency_manager import is_available, require
from .exceptions import (
    CardSpatialError,
    DataCompatibilityError,
    DataError,
    DataNotFoundError,
    DependencyError,
    FilteringExhaustedError,
    MissingFieldError,
    ParameterError,
    ProcessingError,
)

__all__ = [
    # Exceptions
    "CardSpatialError",
    "DataError",
    "DataNotFoundError",
    "MissingFieldError",
    "DataCompatibilityError",
    "FilteringExhaustedError",
    "ParameterError",
    "ProcessingError",
    "DependencyError",
    # AnnData helpers
    "get_spatial_key",
    "get_spatial_coordinates",
    "get_raw_data_source",
    "to_dense",
    "validate_adata_basics",
    "validate_frame_column",
    "validate_gene_overlap",
    "validate_obs_column",
    # Dependencies
    "is_available",
    "require",
]
