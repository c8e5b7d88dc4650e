"""
Parameter and configuration models for the cardspatial pipeline.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, model_validator
from typing_extensions import Self


class PreprocessingParameters(BaseModel):
    """Preprocessing parameters model"""

    # Data filtering (user controlled)
    filter_genes_min_cells: Optional[Annotated[int, Field(gt=0)]] = (
        3  # Filter genes expressed in < N spots
    )
    filter_cells_min_genes: Optional[Annotated[int, Field(gt=0)]] = (
        30  # Filter spots expressing < N genes
    )

    normalize_target_sum: Optional[float] = Field(
        default=None,  # Adaptive default - uses median counts
        ge=1.0,
        le=1e8,
        description=(
            "Target sum for total count normalization per spot. "
            "None uses the median of total counts; 1e4 is the usual Visium choice."
        ),
    )
    scale: bool = True
    scale_max_value: Optional[float] = Field(
        default=10.0,
        ge=1.0,
        le=100.0,
        description="Clip scaled values at this many standard deviations (None = no clipping)",
    )
    n_hvgs: Annotated[int, Field(gt=0, le=5000)] = 2000
    n_pcs: Annotated[int, Field(gt=0, le=100)] = 30

    # Graph and clustering
    n_neighbors: Annotated[int, Field(gt=2, le=100)] = 15
    clustering_resolution: Annotated[float, Field(gt=0.0, le=2.0)] = 1.0
    cluster_key: str = "leiden"  # Key name for storing clustering results
    compute_umap: bool = True
    random_state: int = 0


class MarkerGeneParameters(BaseModel):
    """Marker gene (cluster vs rest) parameters model"""

    group_key: str = "leiden"  # Column in adata.obs defining the groups
    method: Literal["wilcoxon", "t-test", "t-test_overestim_var", "logreg"] = (
        "wilcoxon"
    )
    n_top_genes: Annotated[int, Field(gt=0, le=500)] = 25  # Markers kept per group
    min_cells: Annotated[int, Field(gt=0)] = (
        3  # Groups with fewer members are skipped
    )


class SpatialVariableGenesParameters(BaseModel):
    """Spatially variable genes parameters model (Moran's I)"""

    method: Literal["moran"] = "moran"

    n_top_genes: Optional[Annotated[int, Field(gt=0, le=5000)]] = (
        None  # Number of top genes to report (None = all significant)
    )
    spatial_key: str = "spatial"  # Key in obsm containing spatial coordinates
    n_neighs: Annotated[int, Field(gt=0, le=50)] = 6  # Spatial neighbours per spot
    n_perms: Optional[Annotated[int, Field(gt=0)]] = (
        None  # Permutations for empirical p-values (None = analytic only)
    )
    two_tailed: bool = False
    pval_cutoff: Annotated[float, Field(gt=0.0, le=1.0)] = 0.05
    n_jobs: Annotated[int, Field(gt=0)] = 1

    # Gene filtering
    filter_mt_genes: bool = True  # Exclude mitochondrial genes (MT-*)
    filter_ribo_genes: bool = False  # Exclude ribosomal genes (RPS*, RPL*)
    test_only_hvg: bool = True  # Restrict testing to highly variable genes
    max_genes: Optional[Annotated[int, Field(gt=0)]] = (
        3000  # Cap on genes tested (None = no cap)
    )


class DeconvolutionParameters(BaseModel):
    """Spatial deconvolution parameters model"""

    method: Literal["card", "nnls"] = "card"
    cell_type_key: str  # REQUIRED: column in the reference metadata holding cell-type labels
    sample_key: Optional[str] = (
        None  # Optional sample/batch column in the reference metadata
    )
    ct_select: Optional[List[str]] = Field(
        default=None,
        description="Restrict deconvolution to these cell types (None = all types)",
    )

    # Filtering thresholds, applied before the engine runs
    min_gene_count: Annotated[int, Field(ge=0)] = (
        100  # Minimum total spatial count for a gene to be kept
    )
    min_spot_count: Annotated[int, Field(ge=0)] = (
        5  # Minimum total count (over kept genes) for a spot to be kept
    )
    min_common_genes: Annotated[int, Field(gt=0)] = (
        10  # Minimum shared genes between spatial and reference data
    )
    coordinate_origin: Literal["top-left", "bottom-left"] = (
        "top-left"  # Origin of the source coordinates (Visium pixels are top-left)
    )

    # CARD specific parameters
    card_imputation: bool = (
        False  # Whether to perform CARD spatial imputation for higher resolution
    )
    card_NumGrids: Annotated[int, Field(gt=0)] = (
        2000  # Number of grids for CARD imputation
    )
    card_ineibor: Annotated[int, Field(gt=0)] = (
        10  # Number of neighbors for CARD imputation
    )

    # NNLS specific parameters
    nnls_target_sum: Annotated[float, Field(gt=0)] = (
        1e4  # Library size used to normalize reference cells before averaging
    )

    @model_validator(mode="after")
    def validate_ct_select(self) -> Self:
        if self.ct_select is not None:
            unique = list(dict.fromkeys(self.ct_select))
            if len(unique) < 2:
                raise ValueError(
                    "ct_select must name at least two distinct cell types "
                    f"(got {self.ct_select})"
                )
            self.ct_select = unique
        return self


class VisualizationParameters(BaseModel):
    """Deconvolution visualization parameters model"""

    model_config = {"extra": "forbid"}

    subtype: Literal["scatterpie", "spatial_multi", "dominant_type"] = "scatterpie"
    colormap: str = "viridis"  # Continuous colormap for spatial_multi
    color_scale: Literal["linear", "sqrt", "log"] = "linear"

    # Scatterpie parameters
    pie_scale: Annotated[float, Field(gt=0.0, le=10.0)] = (
        1.0  # Pie radius multiplier (base radius is 2% of coordinate range)
    )
    min_proportion: Annotated[float, Field(ge=0.0, lt=1.0)] = (
        0.01  # Slices below this proportion are not drawn
    )

    # spatial_multi parameters
    max_cell_types: Annotated[int, Field(gt=0, le=40)] = (
        12  # Panels drawn when no cell types are requested
    )
    panel_layout: Optional[Tuple[int, int]] = (
        None  # (rows, cols) - auto-determined if None
    )

    spot_size: Optional[Annotated[float, Field(gt=0.0)]] = None  # Auto if None
    figure_size: Optional[Tuple[float, float]] = None  # Auto if None
    dpi: Annotated[int, Field(gt=0, le=600)] = 150
    title: Optional[str] = None
    show_legend: bool = True


class PipelineConfig(BaseModel):
    """Configuration for one end-to-end pipeline run"""

    spatial_path: str  # Visium directory, 10x .h5 or .h5ad
    spatial_data_type: Literal["10x_visium", "h5ad", "auto"] = "auto"
    reference_path: str  # Single-cell reference .h5ad
    reference_metadata_path: Optional[str] = (
        None  # CSV with cell barcodes in the first column
    )
    output_dir: str = "cardspatial_output"

    preprocessing: PreprocessingParameters = Field(
        default_factory=PreprocessingParameters
    )
    markers: MarkerGeneParameters = Field(default_factory=MarkerGeneParameters)
    spatial_genes: SpatialVariableGenesParameters = Field(
        default_factory=SpatialVariableGenesParameters
    )
    deconvolution: DeconvolutionParameters
    visualization: VisualizationParameters = Field(
        default_factory=VisualizationParameters
    )

    run_markers: bool = True
    run_spatial_genes: bool = True
    save_figures: bool = True

    @model_validator(mode="after")
    def validate_marker_group(self) -> Self:
        """Markers default to the clustering produced by preprocessing."""
        if "group_key" not in self.markers.model_fields_set:
            self.markers.group_key = self.preprocessing.cluster_key
        return self


def load_config(path: Union[str, Path]) -> PipelineConfig:
    """Load a PipelineConfig from a JSON file."""
    with open(path, "r") as f:
        data = json.load(f)
    return PipelineConfig.model_validate(data)
