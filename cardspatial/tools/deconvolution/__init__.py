"""
Cell-type deconvolution of spatial spots against a single-cell reference.

The engines themselves are external capabilities; this package owns the
contract around them:

    deconvolve(spatial_counts, spatial_coords, ref_counts, ref_meta,
               cell_type_column, sample_column, min_gene_count,
               min_spot_count) -> proportions

Every engine is a callable
``engine(spatial_counts, spatial_coords, ref_counts, ref_meta, cell_types,
**kwargs) -> DataFrame`` receiving filtered inputs whose metadata uses the
``cellType``/``sampleInfo`` columns.
"""

import logging
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union

import anndata as ad
import pandas as pd

from ...models.analysis import DeconvolutionResult
from ...models.data import DeconvolutionParameters
from ...utils.exceptions import (
    DataCompatibilityError,
    DependencyError,
    FilteringExhaustedError,
    ParameterError,
    ProcessingError,
)
from .base import (
    CELL_TYPE_COLUMN,
    SAMPLE_COLUMN,
    CountMatrix,
    DeconvolutionInputs,
    ReferenceMetadataSchema,
    assemble_inputs,
    create_deconvolution_stats,
    filter_counts,
    flip_coordinates,
    validate_proportions,
)
from .card import check_card_available, deconvolve_card
from .nnls import build_signature_matrix, deconvolve_nnls

logger = logging.getLogger(__name__)

Engine = Callable[..., pd.DataFrame]

ENGINES: Dict[str, Engine] = {
    "card": deconvolve_card,
    "nnls": deconvolve_nnls,
}


def get_engine(engine: Union[str, Engine]) -> Tuple[str, Engine]:
    """Resolve an engine name (or pass a callable through)."""
    if callable(engine):
        return getattr(engine, "__name__", "custom"), engine
    if engine not in ENGINES:
        raise ParameterError(
            f"Unknown deconvolution engine '{engine}'. Available: {sorted(ENGINES)}"
        )
    return engine, ENGINES[engine]


def _align_metadata(ref_meta: pd.DataFrame, ref_counts: CountMatrix) -> pd.DataFrame:
    if len(ref_meta) != ref_counts.n_columns:
        raise DataCompatibilityError(
            f"Reference metadata has {len(ref_meta)} rows but the reference matrix "
            f"has {ref_counts.n_columns} cells"
        )
    missing = ref_counts.columns.difference(ref_meta.index)
    if len(missing) > 0:
        raise DataCompatibilityError(
            f"{len(missing)} reference cells have no metadata row "
            f"(e.g. {list(missing[:3])})"
        )
    return ref_meta.loc[ref_counts.columns]


def _align_coordinates(
    spatial_coords: pd.DataFrame, spatial_counts: CountMatrix
) -> pd.DataFrame:
    for axis in ("x", "y"):
        if axis not in spatial_coords.columns:
            raise DataCompatibilityError(
                f"Spatial coordinates need 'x' and 'y' columns, got {list(spatial_coords.columns)}"
            )
    coords = spatial_coords.copy()
    coords.index = coords.index.astype(str)
    if len(coords) != spatial_counts.n_columns or not coords.index.is_unique:
        raise DataCompatibilityError(
            f"Expected one coordinate row per spot ({spatial_counts.n_columns}), "
            f"got {len(coords)}"
        )
    missing = spatial_counts.columns.difference(coords.index)
    if len(missing) > 0:
        raise DataCompatibilityError(
            f"{len(missing)} spots have no coordinates (e.g. {list(missing[:3])})"
        )
    return coords.loc[spatial_counts.columns, ["x", "y"]]


def deconvolve(
    spatial_counts: CountMatrix,
    spatial_coords: pd.DataFrame,
    ref_counts: CountMatrix,
    ref_meta: pd.DataFrame,
    cell_type_column: str,
    sample_column: Optional[str],
    min_gene_count: int,
    min_spot_count: int,
    ct_select: Optional[Sequence[str]] = None,
    engine: Union[str, Engine] = "card",
    **engine_kwargs: Any,
) -> pd.DataFrame:
    """Estimate per-spot cell-type proportions.

    Args:
        spatial_counts: Genes x spots raw counts
        spatial_coords: Spots x (x, y), bottom-left origin
        ref_counts: Genes x cells counts, same gene order as spatial_counts
        ref_meta: One row per reference cell
        cell_type_column: Metadata column with cell-type labels
        sample_column: Metadata column with sample labels (None = one sample)
        min_gene_count: Genes need at least this total spatial count
        min_spot_count: Spots need at least this total over the kept genes
        ct_select: Optional subset of cell types
        engine: Engine name ('card', 'nnls') or an engine callable
        **engine_kwargs: Passed through to the engine

    Returns:
        DataFrame with one row per retained spot and one column per cell type
        (order of first appearance in the metadata); rows sum to 1.

    Raises:
        MissingFieldError: Metadata column absent (raised before the engine runs)
        DataCompatibilityError: Inputs are not aligned
        FilteringExhaustedError: No genes or spots survive the thresholds
        ProcessingError: The engine failed or returned invalid proportions
    """
    # 1. Metadata schema, before anything touches the engine
    meta = ReferenceMetadataSchema(cell_type_column, sample_column).validate(ref_meta)

    if min_gene_count < 0 or min_spot_count < 0:
        raise ParameterError(
            f"Thresholds must be non-negative (min_gene_count={min_gene_count}, "
            f"min_spot_count={min_spot_count})"
        )

    # 2. Alignment
    if not spatial_counts.genes.equals(ref_counts.genes):
        raise DataCompatibilityError(
            "Spatial and reference matrices must share the same genes in the same "
            f"order ({spatial_counts.n_genes} vs {ref_counts.n_genes} genes)"
        )
    meta = _align_metadata(meta, ref_counts)
    coords = _align_coordinates(spatial_coords, spatial_counts)

    # 3. Cell-type subset
    if ct_select is not None:
        selected = [str(ct) for ct in dict.fromkeys(ct_select)]
        unknown = [ct for ct in selected if ct not in set(meta[CELL_TYPE_COLUMN])]
        if unknown:
            raise ParameterError(f"Cell types not found in '{cell_type_column}': {unknown}")
        keep = meta[CELL_TYPE_COLUMN].isin(selected).to_numpy()
        meta = meta.loc[keep]
        ref_counts = ref_counts.subset(columns=keep)

    cell_types = list(pd.unique(meta[CELL_TYPE_COLUMN]))
    if len(cell_types) < 2:
        raise ParameterError(
            f"Deconvolution needs at least 2 cell types, found {len(cell_types)}"
        )

    # 4. Gene and spot filtering
    gene_mask, spot_mask = filter_counts(
        spatial_counts, min_gene_count, min_spot_count, ref_counts=ref_counts
    )
    spatial_counts = spatial_counts.subset(genes=gene_mask, columns=spot_mask)
    coords = coords.loc[spatial_counts.columns]
    ref_counts = ref_counts.subset(genes=gene_mask)

    empty_cells = ref_counts.column_totals() <= 0
    if empty_cells.any():
        logger.warning(
            f"Dropping {int(empty_cells.sum())} reference cells without counts "
            "on the retained genes"
        )
        ref_counts = ref_counts.subset(columns=~empty_cells)
        meta = meta.loc[ref_counts.columns]
    lost = [ct for ct in cell_types if ct not in set(meta[CELL_TYPE_COLUMN])]
    if lost:
        raise FilteringExhaustedError(
            f"No reference cells with counts remain for cell types {lost}"
        )

    # 5. Engine
    method, engine_fn = get_engine(engine)
    logger.info(
        f"Deconvolving {spatial_counts.n_columns} spots over {spatial_counts.n_genes} "
        f"genes into {len(cell_types)} cell types with {method}"
    )
    try:
        proportions = engine_fn(
            spatial_counts, coords, ref_counts, meta, cell_types, **engine_kwargs
        )
    except (DependencyError, ProcessingError):
        raise
    except Exception as e:
        raise ProcessingError(f"{method} deconvolution failed: {e}") from e

    if not isinstance(proportions, pd.DataFrame):
        raise ProcessingError(
            f"{method} returned {type(proportions).__name__}, expected a DataFrame"
        )

    # 6. Output contract
    return validate_proportions(proportions, spatial_counts.columns, cell_types, method)


def _engine_kwargs(params: DeconvolutionParameters) -> Dict[str, Any]:
    if params.method == "card":
        return {
            "imputation": params.card_imputation,
            "NumGrids": params.card_NumGrids,
            "ineibor": params.card_ineibor,
        }
    return {"target_sum": params.nnls_target_sum}


def run_deconvolution(
    spatial_adata: ad.AnnData,
    reference_adata: ad.AnnData,
    params: DeconvolutionParameters,
    reference_metadata: Optional[pd.DataFrame] = None,
    engine: Optional[Engine] = None,
) -> Tuple[pd.DataFrame, pd.DataFrame, DeconvolutionResult]:
    """Assemble inputs, deconvolve and summarize.

    Args:
        spatial_adata: Spatial AnnData with raw counts and coordinates
        reference_adata: Single-cell reference AnnData
        params: Deconvolution parameters
        reference_metadata: Optional metadata table replacing reference_adata.obs
        engine: Optional engine callable overriding params.method

    Returns:
        Tuple of (proportions, coordinates of the retained spots, result summary)
    """
    inputs = assemble_inputs(
        spatial_adata,
        reference_adata,
        cell_type_column=params.cell_type_key,
        sample_column=params.sample_key,
        ct_select=params.ct_select,
        reference_metadata=reference_metadata,
        coordinate_origin=params.coordinate_origin,
        min_common_genes=params.min_common_genes,
    )

    proportions = deconvolve(
        inputs.spatial_counts,
        inputs.spatial_coords,
        inputs.ref_counts,
        inputs.ref_meta,
        CELL_TYPE_COLUMN,
        SAMPLE_COLUMN,
        params.min_gene_count,
        params.min_spot_count,
        engine=engine if engine is not None else params.method,
        **({} if engine is not None else _engine_kwargs(params)),
    )
    coordinates = inputs.spatial_coords.loc[proportions.index]

    method = params.method if engine is None else get_engine(engine)[0]
    extra: Dict[str, Any] = {
        "min_gene_count": params.min_gene_count,
        "min_spot_count": params.min_spot_count,
        "n_reference_cells": inputs.ref_counts.n_columns,
    }
    refined = proportions.attrs.get("refined_proportions")
    if refined is not None:
        extra["imputation"] = {
            "enabled": True,
            "n_imputed_locations": len(refined),
            "resolution_increase": f"{len(refined) / len(proportions):.1f}x",
        }
    stats = create_deconvolution_stats(proportions, inputs.common_genes, method, **extra)

    result = DeconvolutionResult(
        method=method,
        cell_types=list(proportions.columns),
        n_cell_types=proportions.shape[1],
        n_spots=proportions.shape[0],
        n_spots_input=inputs.n_spots,
        n_genes=inputs.n_genes,
        statistics=stats,
    )
    return proportions, coordinates, result


__all__ = [
    "CountMatrix",
    "DeconvolutionInputs",
    "ReferenceMetadataSchema",
    "ENGINES",
    "assemble_inputs",
    "build_signature_matrix",
    "check_card_available",
    "deconvolve",
    "deconvolve_card",
    "deconvolve_nnls",
    "filter_counts",
    "flip_coordinates",
    "get_engine",
    "run_deconvolution",
    "validate_proportions",
]
