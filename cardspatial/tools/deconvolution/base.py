"""
Input assembly and result checks shared by deconvolution engines.

Design Philosophy:
- Immutable data containers (frozen dataclasses) for prepared data
- Single function API for the common case
- Metadata validated against an explicit schema before anything else runs
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd
from scipy import sparse

from ...utils.adata_utils import (
    ensure_unique_var_names,
    find_common_genes,
    get_raw_data_source,
    get_spatial_coordinates,
    to_dense,
    validate_frame_column,
    validate_gene_overlap,
)
from ...utils.exceptions import (
    DataCompatibilityError,
    DataError,
    FilteringExhaustedError,
    ParameterError,
    ProcessingError,
)

logger = logging.getLogger(__name__)

# Column names of the normalized reference metadata (CARD's conventions)
CELL_TYPE_COLUMN = "cellType"
SAMPLE_COLUMN = "sampleInfo"
DEFAULT_SAMPLE = "sample1"

CoordinateOrigin = Literal["top-left", "bottom-left"]


# =============================================================================
# Immutable Data Containers
# =============================================================================


@dataclass(frozen=True)
class CountMatrix:
    """Genes x columns (spots or cells) sparse count matrix with names.

    Attributes:
        matrix: csc_matrix of shape (n_genes, n_columns)
        genes: Gene names, one per row
        columns: Spot barcodes or cell identifiers, one per column
    """

    matrix: sparse.csc_matrix
    genes: pd.Index
    columns: pd.Index

    def __post_init__(self):
        n_rows, n_cols = self.matrix.shape
        if n_rows != len(self.genes) or n_cols != len(self.columns):
            raise DataCompatibilityError(
                f"Count matrix shape {self.matrix.shape} does not match "
                f"{len(self.genes)} gene names and {len(self.columns)} column names"
            )
        if not self.columns.is_unique:
            duplicated = self.columns[self.columns.duplicated()].unique()
            raise DataCompatibilityError(
                f"{len(duplicated)} column names are duplicated (e.g. {list(duplicated[:3])})"
            )
        if not self.genes.is_unique:
            duplicated = self.genes[self.genes.duplicated()].unique()
            raise DataCompatibilityError(
                f"{len(duplicated)} gene names are duplicated (e.g. {list(duplicated[:3])})"
            )

    @classmethod
    def from_observations(
        cls, X: Any, obs_names: Sequence[str], var_names: Sequence[str]
    ) -> "CountMatrix":
        """Build from an observations x genes matrix (AnnData orientation)."""
        if sparse.issparse(X):
            matrix = sparse.csc_matrix(X.T)
        else:
            matrix = sparse.csc_matrix(np.asarray(X).T)
        if not np.issubdtype(matrix.dtype, np.number):
            raise DataError(f"Count matrix must be numeric, got dtype {matrix.dtype}")
        return cls(
            matrix=matrix.astype(np.float64),
            genes=pd.Index(var_names, dtype=str),
            columns=pd.Index(obs_names, dtype=str),
        )

    @property
    def shape(self) -> Tuple[int, int]:
        return self.matrix.shape

    @property
    def n_genes(self) -> int:
        return self.matrix.shape[0]

    @property
    def n_columns(self) -> int:
        return self.matrix.shape[1]

    def gene_totals(self) -> np.ndarray:
        return np.asarray(self.matrix.sum(axis=1)).ravel()

    def column_totals(self) -> np.ndarray:
        return np.asarray(self.matrix.sum(axis=0)).ravel()

    def subset(
        self,
        genes: Optional[np.ndarray] = None,
        columns: Optional[np.ndarray] = None,
    ) -> "CountMatrix":
        """Subset by boolean masks (or integer indices) on genes and columns."""
        matrix = self.matrix
        gene_names = self.genes
        column_names = self.columns
        if genes is not None:
            matrix = matrix[genes, :]
            gene_names = gene_names[genes]
        if columns is not None:
            matrix = matrix[:, columns]
            column_names = column_names[columns]
        return CountMatrix(sparse.csc_matrix(matrix), gene_names, column_names)

    def reorder_genes(self, genes: Sequence[str]) -> "CountMatrix":
        """Select and order rows by gene name."""
        indexer = self.genes.get_indexer(genes)
        if (indexer < 0).any():
            raise DataCompatibilityError("Requested genes are missing from the matrix")
        return self.subset(genes=indexer)

    def to_frame(self) -> pd.DataFrame:
        """Dense genes x columns DataFrame (for small matrices and export)."""
        return pd.DataFrame(
            self.matrix.toarray(), index=self.genes, columns=self.columns
        )


@dataclass(frozen=True)
class ReferenceMetadataSchema:
    """Schema for the reference metadata table.

    The cell-type column is required. The sample column is required only when
    named; without it every cell belongs to a single sample.
    """

    cell_type_column: str
    sample_column: Optional[str] = None

    def validate(self, frame: pd.DataFrame) -> pd.DataFrame:
        """Return the metadata normalized to typed ``cellType``/``sampleInfo`` columns.

        Raises:
            MissingFieldError: If a required column is absent
            DataCompatibilityError: If cell barcodes are not unique
            DataError: If cell-type labels are missing
        """
        validate_frame_column(
            frame, self.cell_type_column, "Cell type column", "reference metadata"
        )
        if self.sample_column is not None:
            validate_frame_column(
                frame, self.sample_column, "Sample column", "reference metadata"
            )
        if not frame.index.is_unique:
            duplicated = frame.index[frame.index.duplicated()].unique()
            raise DataCompatibilityError(
                f"Reference metadata has {len(duplicated)} duplicated cell barcodes "
                f"(e.g. {list(duplicated[:3])}); make them unique before deconvolution"
            )

        labels = frame[self.cell_type_column]
        if labels.isna().any():
            raise DataError(
                f"{int(labels.isna().sum())} reference cells have no label in "
                f"'{self.cell_type_column}'"
            )

        if self.sample_column is not None:
            samples = frame[self.sample_column]
            if samples.isna().any():
                raise DataError(
                    f"{int(samples.isna().sum())} reference cells have no value in "
                    f"'{self.sample_column}'"
                )
            samples = samples.astype(str).to_numpy()
        else:
            samples = DEFAULT_SAMPLE

        return pd.DataFrame(
            {
                CELL_TYPE_COLUMN: labels.astype(str).to_numpy(),
                SAMPLE_COLUMN: samples,
            },
            index=pd.Index(frame.index.astype(str), name=frame.index.name),
        )


@dataclass(frozen=True)
class DeconvolutionInputs:
    """The four objects a deconvolution engine consumes.

    Attributes:
        spatial_counts: Genes x spots raw counts, restricted to shared genes
        spatial_coords: Spots x (x, y) with bottom-left origin, aligned to
            the spatial matrix columns
        ref_counts: Genes x cells counts, same gene order as spatial_counts
        ref_meta: One row per reference cell, columns cellType and sampleInfo
        cell_types: Distinct labels in order of first appearance
        n_spatial_genes: Spatial vocabulary size before intersection
        n_reference_genes: Reference vocabulary size before intersection

    Usage:
        inputs = assemble_inputs(spatial, ref, "cell_type")
        proportions = deconvolve(
            inputs.spatial_counts, inputs.spatial_coords,
            inputs.ref_counts, inputs.ref_meta, "cellType", "sampleInfo", 0, 0
        )
    """

    spatial_counts: CountMatrix
    spatial_coords: pd.DataFrame
    ref_counts: CountMatrix
    ref_meta: pd.DataFrame
    cell_types: List[str]
    n_spatial_genes: int
    n_reference_genes: int

    @property
    def common_genes(self) -> List[str]:
        return list(self.spatial_counts.genes)

    @property
    def n_spots(self) -> int:
        return self.spatial_counts.n_columns

    @property
    def n_cell_types(self) -> int:
        return len(self.cell_types)

    @property
    def n_genes(self) -> int:
        return self.spatial_counts.n_genes


# =============================================================================
# Coordinates
# =============================================================================


def flip_coordinates(
    coords: pd.DataFrame, origin: CoordinateOrigin = "top-left"
) -> pd.DataFrame:
    """Convert coordinates to a bottom-left origin.

    Top-left (image) coordinates become ``x' = x``, ``y' = -y``; bottom-left
    coordinates are returned unchanged.
    """
    if origin not in ("top-left", "bottom-left"):
        raise ParameterError(
            f"coordinate_origin must be 'top-left' or 'bottom-left', got '{origin}'"
        )
    flipped = coords[["x", "y"]].astype(np.float64).copy()
    if origin == "top-left":
        flipped["y"] = -flipped["y"]
    return flipped


def _spot_coordinates(spatial_adata: ad.AnnData) -> pd.DataFrame:
    try:
        coords = get_spatial_coordinates(spatial_adata)
    except DataError as e:
        raise DataCompatibilityError(str(e)) from e

    if coords.shape[0] != spatial_adata.n_obs:
        raise DataCompatibilityError(
            f"Expected one coordinate row per spot ({spatial_adata.n_obs}), "
            f"got {coords.shape[0]}"
        )
    if not np.isfinite(coords).all():
        n_bad = int((~np.isfinite(coords)).any(axis=1).sum())
        raise DataCompatibilityError(f"{n_bad} spots have missing or non-finite coordinates")

    return pd.DataFrame(
        coords, index=pd.Index(spatial_adata.obs_names, dtype=str), columns=["x", "y"]
    )


# =============================================================================
# Raw counts
# =============================================================================


def _raw_counts(adata: ad.AnnData, label: str, require_integer: bool) -> ad.AnnData:
    """Copy of adata whose X holds the best available raw counts."""
    result = get_raw_data_source(
        adata,
        prefer_complete_genes=True,
        require_integer_counts=require_integer,
        sample_size=100,
    )

    if result.has_negatives:
        raise DataError(f"{label} counts contain negative values")
    if result.has_decimals:
        logger.warning(
            f"{label}: Using non-integer data (no raw counts available). "
            "This is acceptable for reference data from technologies like Smart-seq2."
        )

    # adata.raw may carry more genes than adata; the spots are the same
    adata_copy = ad.AnnData(
        X=result.X.copy(),
        obs=adata.obs.copy(),
        var=pd.DataFrame(index=pd.Index(result.var_names).astype(str)),
    )

    # the sample check above only looks at a corner of the matrix
    values = adata_copy.X.data if sparse.issparse(adata_copy.X) else to_dense(adata_copy.X)
    if values.size and float(np.min(values)) < 0:
        raise DataError(f"{label} counts contain negative values")
    if require_integer and not np.allclose(values, np.round(values), atol=1e-6):
        raise DataError(
            f"{label} counts must be non-negative integers. "
            "Load unpreprocessed data or keep raw counts in adata.layers['counts']."
        )

    logger.info(f"{label} counts taken from '{result.source}' ({adata_copy.n_vars} genes)")
    return adata_copy


# =============================================================================
# Single Entry Point
# =============================================================================


def assemble_inputs(
    spatial_adata: ad.AnnData,
    reference_adata: ad.AnnData,
    cell_type_column: str,
    sample_column: Optional[str] = None,
    ct_select: Optional[Sequence[str]] = None,
    reference_metadata: Optional[pd.DataFrame] = None,
    coordinate_origin: CoordinateOrigin = "top-left",
    min_common_genes: int = 10,
) -> DeconvolutionInputs:
    """Build the spatial counts, coordinates, reference counts and metadata.

    Steps, in order:
    1. Validate the reference metadata schema (no partial assembly on failure)
    2. Apply the explicit cell-type subset
    3. Restore raw counts for both datasets
    4. Make gene names unique
    5. Intersect gene vocabularies (intersect-and-warn, fatal below a floor)
    6. Read spot coordinates and convert them to a bottom-left origin
    7. Convert both matrices to genes x columns csc matrices

    Args:
        spatial_adata: Spatial AnnData (spots x genes) with coordinates
        reference_adata: Single-cell reference AnnData (cells x genes)
        cell_type_column: Metadata column holding cell-type labels
        sample_column: Optional metadata column holding sample labels
        ct_select: Optional subset of cell types to keep
        reference_metadata: Metadata table to use instead of reference_adata.obs;
            must contain a row for every reference cell
        coordinate_origin: Origin of the source coordinates
        min_common_genes: Minimum number of shared genes

    Returns:
        DeconvolutionInputs with all fields populated
    """
    # 1. Metadata schema
    if reference_metadata is None:
        raw_meta = reference_adata.obs
    else:
        raw_meta = reference_metadata.copy()
        raw_meta.index = raw_meta.index.astype(str)
        missing = pd.Index(reference_adata.obs_names).difference(raw_meta.index)
        if len(missing) > 0:
            raise DataCompatibilityError(
                f"{len(missing)} reference cells have no metadata row"
            )
        raw_meta = raw_meta.loc[reference_adata.obs_names]

    schema = ReferenceMetadataSchema(cell_type_column, sample_column)
    ref_meta = schema.validate(raw_meta)

    # 2. Explicit cell-type subset
    keep_cells = np.ones(len(ref_meta), dtype=bool)
    if ct_select is not None:
        selected = [str(ct) for ct in dict.fromkeys(ct_select)]
        available = set(ref_meta[CELL_TYPE_COLUMN])
        unknown = [ct for ct in selected if ct not in available]
        if unknown:
            raise ParameterError(
                f"Cell types not found in '{cell_type_column}': {unknown}. "
                f"Available: {sorted(available)}"
            )
        keep_cells = ref_meta[CELL_TYPE_COLUMN].isin(selected).to_numpy()
        logger.info(
            f"Keeping {int(keep_cells.sum())}/{len(keep_cells)} reference cells "
            f"of {len(selected)} selected cell types"
        )

    ref_meta = ref_meta.loc[keep_cells]
    cell_types = list(pd.unique(ref_meta[CELL_TYPE_COLUMN]))
    if len(cell_types) < 2:
        raise DataError(
            f"Reference data must have at least 2 cell types, found {len(cell_types)}"
        )

    # 3. Raw counts
    spatial = _raw_counts(spatial_adata, "Spatial", require_integer=True)
    reference = _raw_counts(reference_adata, "Reference", require_integer=False)
    reference = reference[keep_cells].copy()

    # 4. Unique gene names
    ensure_unique_var_names(spatial, "spatial data")
    ensure_unique_var_names(reference, "reference data")

    # 5. Gene vocabulary
    common_genes = find_common_genes(list(spatial.var_names), list(reference.var_names))
    validate_gene_overlap(
        common_genes,
        spatial.n_vars,
        reference.n_vars,
        min_genes=min_common_genes,
        source_name="spatial",
        target_name="reference",
    )

    # 6. Coordinates
    spatial_coords = flip_coordinates(_spot_coordinates(spatial_adata), coordinate_origin)

    # 7. Matrices
    spatial_sub = spatial[:, common_genes]
    reference_sub = reference[:, common_genes]
    spatial_counts = CountMatrix.from_observations(
        spatial_sub.X, spatial_sub.obs_names, common_genes
    )
    ref_counts = CountMatrix.from_observations(
        reference_sub.X, reference_sub.obs_names, common_genes
    )
    if not spatial_coords.index.equals(spatial_counts.columns):
        raise DataCompatibilityError(
            "Spot coordinates are not aligned with the spatial count matrix columns"
        )

    logger.info(
        f"Assembled inputs: {spatial_counts.n_columns} spots, "
        f"{ref_counts.n_columns} reference cells, {len(common_genes)} shared genes, "
        f"{len(cell_types)} cell types"
    )

    return DeconvolutionInputs(
        spatial_counts=spatial_counts,
        spatial_coords=spatial_coords,
        ref_counts=ref_counts,
        ref_meta=ref_meta,
        cell_types=cell_types,
        n_spatial_genes=spatial_adata.n_vars,
        n_reference_genes=reference_adata.n_vars,
    )


# =============================================================================
# Filtering
# =============================================================================


def filter_counts(
    spatial_counts: CountMatrix,
    min_gene_count: int,
    min_spot_count: int,
    ref_counts: Optional[CountMatrix] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Masks of genes and spots that pass the count thresholds.

    Genes are kept when their total spatial count is positive and at least
    ``min_gene_count``, and, when ``ref_counts`` is given, when at least one
    reference cell expresses them. Spots are kept when their total over the
    kept genes is positive and at least ``min_spot_count``.

    Raises:
        FilteringExhaustedError: If no gene or no spot survives
    """
    gene_totals = spatial_counts.gene_totals()
    gene_mask = (gene_totals > 0) & (gene_totals >= min_gene_count)
    if ref_counts is not None:
        unexpressed = gene_mask & (ref_counts.gene_totals() <= 0)
        if unexpressed.any():
            logger.warning(
                f"Dropping {int(unexpressed.sum())} genes with no reference counts"
            )
        gene_mask &= ~unexpressed
    if not gene_mask.any():
        raise FilteringExhaustedError(
            f"No genes pass min_gene_count={min_gene_count}"
            f"{' with reference counts' if ref_counts is not None else ''} "
            f"(max gene total: {gene_totals.max() if gene_totals.size else 0:g})"
        )

    spot_totals = np.asarray(
        spatial_counts.matrix[gene_mask, :].sum(axis=0)
    ).ravel()
    spot_mask = (spot_totals > 0) & (spot_totals >= min_spot_count)
    if not spot_mask.any():
        raise FilteringExhaustedError(
            f"No spots pass min_spot_count={min_spot_count} "
            f"(max spot total: {spot_totals.max() if spot_totals.size else 0:g})"
        )

    logger.info(
        f"Filtering kept {int(gene_mask.sum())}/{gene_mask.size} genes and "
        f"{int(spot_mask.sum())}/{spot_mask.size} spots"
    )
    return gene_mask, spot_mask


# =============================================================================
# Result checks
# =============================================================================


def validate_proportions(
    proportions: pd.DataFrame,
    spots: pd.Index,
    cell_types: List[str],
    method: str,
    atol: float = 1e-6,
) -> pd.DataFrame:
    """Check an engine's output and bring it to the simplex contract.

    - Rows must be known spots and columns exactly the requested cell types
    - NaN, negative values and all-zero rows are errors
    - Rows whose sums drift beyond ``atol`` are renormalized (warning)

    Returns:
        Proportions with rows in spot order and columns in cell-type order
    """
    attrs = dict(proportions.attrs)
    proportions = proportions.copy()
    proportions.index = proportions.index.astype(str)
    proportions.columns = proportions.columns.astype(str)

    unknown_spots = proportions.index.difference(spots)
    if len(unknown_spots) > 0:
        raise ProcessingError(
            f"{method} returned {len(unknown_spots)} unknown spots "
            f"(e.g. {list(unknown_spots[:3])})"
        )
    missing_types = [ct for ct in cell_types if ct not in proportions.columns]
    extra_types = [ct for ct in proportions.columns if ct not in cell_types]
    if missing_types or extra_types:
        raise ProcessingError(
            f"{method} returned cell types {list(proportions.columns)}, "
            f"expected {cell_types}"
        )

    dropped = len(spots) - len(proportions)
    if dropped > 0:
        logger.warning(f"{method} dropped {dropped} spots during its own QC")

    returned = set(proportions.index)
    order = [spot for spot in spots if spot in returned]
    proportions = proportions.loc[order, cell_types].astype(np.float64)

    if proportions.isna().any().any():
        nan_spots = int(proportions.isna().any(axis=1).sum())
        raise ProcessingError(
            f"{method} produced NaN proportions in {nan_spots}/{len(proportions)} spots"
        )

    if (proportions < 0).any().any():
        neg_mask = proportions < 0
        raise ProcessingError(
            f"{method} produced {int(neg_mask.sum().sum())} negative values "
            f"(min: {proportions.min().min():.4f}) in "
            f"{int(neg_mask.any(axis=1).sum())} spots"
        )

    row_sums = proportions.sum(axis=1)
    zero_rows = row_sums <= 0
    if zero_rows.any():
        raise ProcessingError(
            f"{method} produced all-zero proportions for {int(zero_rows.sum())} spots "
            f"(e.g. {list(proportions.index[zero_rows.to_numpy()][:3])})"
        )

    drift = (row_sums - 1.0).abs()
    if (drift > atol).any():
        logger.warning(
            f"Renormalizing {int((drift > atol).sum())} spots whose proportions "
            f"sum to [{row_sums.min():.4f}, {row_sums.max():.4f}]"
        )
        proportions = proportions.div(row_sums, axis=0)

    proportions.index.name = "spot"
    proportions.columns.name = None
    proportions.attrs = attrs
    return proportions


# =============================================================================
# Statistics Helper
# =============================================================================


def create_deconvolution_stats(
    proportions: pd.DataFrame,
    common_genes: List[str],
    method: str,
    **method_specific_params,
) -> Dict[str, Any]:
    """Create standardized statistics dictionary for deconvolution results."""
    cell_types = list(proportions.columns)
    stats = {
        "method": method,
        "n_spots": len(proportions),
        "n_cell_types": len(cell_types),
        "cell_types": cell_types,
        "genes_used": len(common_genes),
        "mean_proportions": {
            str(k): float(v) for k, v in proportions.mean().to_dict().items()
        },
        "dominant_types": {
            str(k): int(v)
            for k, v in proportions.idxmax(axis=1).value_counts().to_dict().items()
        },
    }
    stats.update(method_specific_params)
    return stats
