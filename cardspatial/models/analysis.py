"""
Analysis result models for spatial transcriptomics data.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class PreprocessingResult(BaseModel):
    """Result of data preprocessing"""

    n_cells: int
    n_genes: int
    n_hvgs: int
    clusters: int
    cluster_key: str
    normalize_target_sum: float  # Target sum actually used
    qc_metrics: Optional[Dict[str, Any]] = None


class MarkerGenesResult(BaseModel):
    """Result of marker gene discovery (each group vs rest)

    Attributes:
        group_key: Column in adata.obs the groups were taken from
        method: Statistical test passed to scanpy
        groups: Groups that were tested
        skipped_groups: Groups with fewer than min_cells members
        top_genes: Group -> ranked marker gene names
        table: Long-format records with group, rank, gene, score,
            logfoldchange, pval and pval_adj
    """

    group_key: str
    method: str
    groups: List[str]
    skipped_groups: List[str]
    top_genes: Dict[str, List[str]]
    table: List[Dict[str, Any]]


class SpatialVariableGenesResult(BaseModel):
    """Result of spatially variable genes identification"""

    method: str
    n_genes_analyzed: int  # Total number of genes tested
    n_significant_genes: int  # Genes below the p-value cutoff
    spatial_genes: List[str]  # Significant genes ranked by Moran's I

    gene_statistics: Dict[str, float]  # Gene name -> Moran's I
    p_values: Dict[str, float]  # Gene name -> p-value
    q_values: Dict[str, float]  # Gene name -> FDR-corrected p-value

    results_key: str  # Key in adata.uns holding the full table


class DeconvolutionResult(BaseModel):
    """Result of spatial deconvolution"""

    method: str
    cell_types: List[str]
    n_cell_types: int
    n_spots: int  # Spots that survived filtering
    n_spots_input: int
    n_genes: int  # Shared genes before count filtering
    statistics: Dict[str, Any]  # Mean proportions, dominant-type counts, ...
