"""
AnnData utilities for cardspatial.

This module provides:
1. Spatial key lookup
2. Data access functions (get_*)
3. Validation functions (validate_*)

One file for all AnnData-related utilities. No duplication.
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

if TYPE_CHECKING:
    import anndata as ad

from scipy import sparse

from .exceptions import DataCompatibilityError, DataError, MissingFieldError

logger = logging.getLogger(__name__)

# =============================================================================
# Constants: Field Names
# =============================================================================
ALTERNATIVE_SPATIAL_KEYS: Tuple[str, ...] = (
    "spatial",
    "X_spatial",
    "coordinates",
    "coords",
    "spatial_coords",
    "positions",
)


# =============================================================================
# Field Discovery: Find keys in AnnData
# =============================================================================
def get_spatial_key(adata: "ad.AnnData") -> Optional[str]:
    """Find spatial coordinate key in adata.obsm."""
    for key in ALTERNATIVE_SPATIAL_KEYS:
        if key in adata.obsm:
            return key
    return None


# =============================================================================
# Data Access: Get data from AnnData
# =============================================================================
def get_spatial_coordinates(adata: "ad.AnnData") -> np.ndarray:
    """
    Get spatial coordinates as an (n_obs, 2) float array.

    Checks obsm['spatial'], alternative keys, and obs['x'/'y'].

    Raises:
        DataError: If no spatial coordinates found
    """
    key = get_spatial_key(adata)
    if key is not None:
        coords = np.asarray(adata.obsm[key])
        if coords.ndim != 2 or coords.shape[1] < 2:
            raise DataCompatibilityError(
                f"adata.obsm['{key}'] must have at least 2 columns, "
                f"got shape {coords.shape}"
            )
        return coords[:, :2].astype(np.float64)

    if "x" in adata.obs and "y" in adata.obs:
        x = pd.to_numeric(adata.obs["x"], errors="coerce").values
        y = pd.to_numeric(adata.obs["y"], errors="coerce").values
        return np.column_stack([x, y]).astype(np.float64)

    raise DataError(
        "No spatial coordinates found. Expected in adata.obsm['spatial'] "
        "or adata.obs['x'/'y']"
    )


def to_dense(X: Any) -> np.ndarray:
    """Return a dense ndarray for sparse or dense input."""
    if sparse.issparse(X):
        return X.toarray()
    return np.asarray(X)


def find_common_genes(
    source_genes: Sequence[str], target_genes: Sequence[str]
) -> List[str]:
    """Genes present in both vocabularies, in source order."""
    target = set(target_genes)
    return [gene for gene in source_genes if gene in target]


# =============================================================================
# Validation: Check and validate AnnData
# =============================================================================
def validate_obs_column(
    adata: "ad.AnnData",
    column: str,
    friendly_name: Optional[str] = None,
) -> None:
    """
    Validate that a column exists in adata.obs.

    Raises:
        MissingFieldError: If column not found
    """
    validate_frame_column(adata.obs, column, friendly_name, "adata.obs")


def validate_frame_column(
    frame: pd.DataFrame,
    column: str,
    friendly_name: Optional[str] = None,
    frame_name: str = "metadata",
) -> None:
    """Validate that a column exists in a DataFrame."""
    if column not in frame.columns:
        name = friendly_name or f"Column '{column}'"
        available = ", ".join(map(str, list(frame.columns)[:10]))
        suffix = "..." if len(frame.columns) > 10 else ""
        raise MissingFieldError(
            f"{name} '{column}' not found in {frame_name}. "
            f"Available: {available}{suffix}"
        )


def validate_adata_basics(
    adata: "ad.AnnData",
    min_obs: int = 1,
    min_vars: int = 1,
) -> None:
    """Validate basic AnnData structure."""
    if adata is None:
        raise DataError("AnnData object cannot be None")
    if adata.n_obs < min_obs:
        raise DataError(f"Dataset has {adata.n_obs} observations, need {min_obs}")
    if adata.n_vars < min_vars:
        raise DataError(f"Dataset has {adata.n_vars} variables, need {min_vars}")


def validate_gene_overlap(
    common_genes: Sequence[str],
    source_n_genes: int,
    target_n_genes: int,
    min_genes: int = 10,
    source_name: str = "spatial",
    target_name: str = "reference",
) -> None:
    """Apply the intersect-and-warn gene vocabulary policy.

    Genes outside the intersection are reported at WARNING level. An empty
    intersection, or one smaller than ``min_genes``, is fatal.

    Raises:
        DataCompatibilityError: If the overlap is below ``min_genes``
    """
    n_common = len(common_genes)
    if n_common == 0 or n_common < min_genes:
        raise DataCompatibilityError(
            f"Insufficient common genes: {n_common} < {max(min_genes, 1)} required. "
            f"{source_name.capitalize()}: {source_n_genes}, "
            f"{target_name.capitalize()}: {target_n_genes} genes. "
            "Check species/gene naming convention match."
        )

    dropped_source = source_n_genes - n_common
    dropped_target = target_n_genes - n_common
    if dropped_source or dropped_target:
        logger.warning(
            f"Using {n_common} shared genes; dropped {dropped_source} "
            f"{source_name}-only and {dropped_target} {target_name}-only genes"
        )


def store_analysis_metadata(
    adata: "ad.AnnData",
    analysis_name: str,
    method: str,
    parameters: Dict[str, Any],
    results_keys: Dict[str, List[str]],
    statistics: Optional[Dict[str, Any]] = None,
) -> None:
    """Store analysis metadata in adata.uns for provenance tracking.

    Args:
        adata: AnnData object to store metadata in
        analysis_name: Name of the analysis (e.g., "preprocessing")
        method: Method name (e.g., "wilcoxon", "moran")
        parameters: Dictionary of analysis parameters
        results_keys: Dictionary mapping storage location to list of keys
            Example: {"obs": ["leiden"], "obsm": ["X_umap"]}
        statistics: Optional dictionary of quality/summary statistics
    """
    metadata = {
        "method": method,
        "parameters": parameters,
        "results_keys": results_keys,
    }
    if statistics is not None:
        metadata["statistics"] = statistics

    adata.uns[f"{analysis_name}_metadata"] = metadata


# =============================================================================
# Gene Selection Utilities
# =============================================================================
def get_highly_variable_genes(
    adata: "ad.AnnData",
    max_genes: int = 500,
    fallback_to_variance: bool = True,
) -> List[str]:
    """
    Get highly variable genes from AnnData.

    Priority order:
    1. Use precomputed HVG from adata.var['highly_variable']
    2. If fallback enabled, compute variance and return top variable genes

    Returns:
        List of gene names (may be shorter than max_genes if fewer available)
    """
    if "highly_variable" in adata.var.columns:
        hvg_genes = adata.var_names[adata.var["highly_variable"]].tolist()
        return hvg_genes[:max_genes]

    if fallback_to_variance:
        var_scores = np.asarray(to_dense(adata.X).var(axis=0)).ravel()
        top_indices = np.argsort(var_scores)[::-1][:max_genes]
        return adata.var_names[top_indices].tolist()

    return []


# =============================================================================
# Gene Name Utilities
# =============================================================================
def ensure_unique_var_names(
    adata: "ad.AnnData",
    label: str = "data",
) -> int:
    """
    Ensure gene names are unique, fixing duplicates if needed.

    Args:
        adata: AnnData object (modified in-place)
        label: Label used in the warning

    Returns:
        Number of duplicate gene names that were fixed (0 if already unique)
    """
    if adata.var_names.is_unique:
        return 0

    n_duplicates = len(adata.var_names) - len(set(adata.var_names))
    adata.var_names_make_unique()
    logger.warning(f"Found {n_duplicates} duplicate gene names in {label}, fixed")
    return n_duplicates


# =============================================================================
# Raw Counts Data Access: Unified interface for accessing raw data
# =============================================================================
class RawDataResult:
    """Result of raw data extraction."""

    def __init__(
        self,
        X: Any,  # sparse or dense matrix
        var_names: pd.Index,
        source: str,
        has_negatives: bool = False,
        has_decimals: bool = False,
    ):
        self.X = X
        self.var_names = var_names
        self.source = source
        self.has_negatives = has_negatives
        self.has_decimals = has_decimals


def _check_if_integer_counts(X, sample_n: int = 100) -> Tuple[bool, bool, bool]:
    """Check if matrix contains integer counts. Returns (is_int, has_neg, has_dec)."""
    n_rows = min(sample_n, X.shape[0])
    n_cols = min(sample_n, X.shape[1])
    sample = to_dense(X[:n_rows, :n_cols])

    if sample.size == 0:
        return True, False, False

    has_negatives = float(sample.min()) < 0
    has_decimals = not np.allclose(sample, np.round(sample), atol=1e-6)
    is_integer = not has_negatives and not has_decimals

    return is_integer, has_negatives, has_decimals


def get_raw_data_source(
    adata: "ad.AnnData",
    prefer_complete_genes: bool = True,
    require_integer_counts: bool = False,
    sample_size: int = 100,
) -> RawDataResult:
    """
    Get raw count data from AnnData using a unified priority order.

    Priority order (when prefer_complete_genes=True):
        1. adata.raw - Complete gene set, preserved before HVG filtering
        2. adata.layers["counts"] - Raw counts layer
        3. adata.X - Current expression matrix

    With prefer_complete_genes=False adata.raw is skipped, since it may have
    different dimensions than adata.

    Args:
        adata: AnnData object
        prefer_complete_genes: If True, prefer adata.raw for complete gene coverage.
        require_integer_counts: If True, raise DataError when only normalized
            data is found.
        sample_size: Number of cells/genes to sample for validation.

    Returns:
        RawDataResult with data matrix, var_names, source name, and validation info.

    Raises:
        DataError: If require_integer_counts=True and no integer counts found.
    """
    sources_tried = []

    # Source 1: adata.raw (complete gene set)
    if prefer_complete_genes and adata.raw is not None:
        raw_X = adata.raw.X
        is_int, has_neg, has_dec = _check_if_integer_counts(raw_X, sample_size)

        if is_int or not require_integer_counts:
            return RawDataResult(
                X=raw_X,
                var_names=adata.raw.var_names,
                source="raw",
                has_negatives=has_neg,
                has_decimals=has_dec,
            )
        sources_tried.append("raw (normalized, skipped)")

    # Source 2: layers["counts"]
    if "counts" in adata.layers:
        X_counts = adata.layers["counts"]
        is_int, has_neg, has_dec = _check_if_integer_counts(X_counts, sample_size)

        if is_int or not require_integer_counts:
            return RawDataResult(
                X=X_counts,
                var_names=adata.var_names,
                source="counts_layer",
                has_negatives=has_neg,
                has_decimals=has_dec,
            )
        sources_tried.append("counts_layer (normalized, skipped)")

    # Source 3: current X
    is_int, has_neg, has_dec = _check_if_integer_counts(adata.X, sample_size)

    if is_int or not require_integer_counts:
        return RawDataResult(
            X=adata.X,
            var_names=adata.var_names,
            source="current",
            has_negatives=has_neg,
            has_decimals=has_dec,
        )

    raise DataError(
        f"No raw integer counts found. Sources tried: {sources_tried + ['current (normalized)']}. "
        f"Data appears to be normalized (has_negatives={has_neg}, has_decimals={has_dec}). "
        "Deconvolution requires raw integer counts. "
        "Solutions: (1) Load unpreprocessed data, (2) Ensure adata.layers['counts'] "
        "contains raw counts, or (3) Re-run preprocessing with adata.raw preservation."
    )
