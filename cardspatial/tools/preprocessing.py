"""
Preprocessing tools for spatial transcriptomics data.
"""

import logging
from typing import Optional, Tuple

import anndata as ad
import numpy as np
import scanpy as sc

from ..models.analysis import PreprocessingResult
from ..models.data import PreprocessingParameters
from ..utils.adata_utils import (
    ensure_unique_var_names,
    store_analysis_metadata,
    to_dense,
    validate_adata_basics,
)
from ..utils.exceptions import DataError, ProcessingError

logger = logging.getLogger(__name__)

MT_PREFIXES = ("MT-", "mt-")
RIBO_PREFIXES = ("RPS", "RPL", "Rps", "Rpl")
LOGNORM_LAYER = "lognorm"


def _should_use_all_genes_for_hvg(adata: ad.AnnData) -> bool:
    """
    Check if we should use all genes for HVG selection.

    Only applies to very small gene sets (e.g., targeted panels with <100
    genes) where statistical HVG selection is not meaningful.
    """
    return adata.n_vars < 100


def _safe_percent_top(n_genes: int) -> Optional[list]:
    """percent_top values that calculate_qc_metrics accepts for n_genes genes.

    scanpy's default [50, 100, 200, 500] fails when a dataset has fewer genes
    than the largest value.
    """
    default_percent_top = [50, 100, 200, 500]
    safe = [p for p in default_percent_top if p < n_genes]
    if not safe:
        safe = [v for v in (10, 20, 30) if v < n_genes]
    if n_genes > 1 and (n_genes - 1) not in safe and n_genes <= 500:
        safe.append(n_genes - 1)
    return sorted(set(safe)) if safe else None


def calculate_qc_metrics(adata: ad.AnnData) -> dict:
    """Flag mitochondrial/ribosomal genes and compute QC metrics in place."""
    adata.var["mt"] = adata.var_names.str.startswith(MT_PREFIXES)
    adata.var["ribo"] = adata.var_names.str.startswith(RIBO_PREFIXES)
    n_mt_genes = int(adata.var["mt"].sum())
    if n_mt_genes > 0:
        logger.info(f"Identified {n_mt_genes} mitochondrial genes (MT-*/mt-*)")

    percent_top = _safe_percent_top(adata.n_vars)
    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=["mt", "ribo"],
        percent_top=percent_top,
        inplace=True,
    )

    qc_metrics = {
        "n_cells_before_filtering": int(adata.n_obs),
        "n_genes_before_filtering": int(adata.n_vars),
        "median_genes_per_cell": float(np.median(adata.obs["n_genes_by_counts"])),
        "median_umi_per_cell": float(np.median(adata.obs["total_counts"])),
        "n_mt_genes": n_mt_genes,
        "n_ribo_genes": int(adata.var["ribo"].sum()),
    }
    if n_mt_genes > 0:
        qc_metrics["median_mito_pct"] = float(np.median(adata.obs["pct_counts_mt"]))
        qc_metrics["max_mito_pct"] = float(np.max(adata.obs["pct_counts_mt"]))
    return qc_metrics


def preprocess_data(
    adata: ad.AnnData,
    params: PreprocessingParameters = PreprocessingParameters(),
) -> Tuple[ad.AnnData, PreprocessingResult]:
    """Preprocess spatial transcriptomics data.

    Runs QC, filtering, normalization, log transform, HVG selection, optional
    scaling, PCA, neighbour graph, Leiden clustering and UMAP on a copy of
    the input. Raw counts are kept in ``adata.raw`` and ``layers["counts"]``.

    Args:
        adata: Spatial AnnData with raw counts in X
        params: Preprocessing parameters

    Returns:
        Tuple of (processed copy, preprocessing result summary)
    """
    validate_adata_basics(adata)
    adata = adata.copy()
    ensure_unique_var_names(adata, "data")

    X_sample = to_dense(adata.X[: min(100, adata.n_obs)])
    if X_sample.size and np.any(X_sample < 0):
        raise DataError(
            "Log normalization requires non-negative data (raw counts). "
            "Data contains negative values, suggesting it has already been "
            "log-normalized or scaled. Load raw count data instead."
        )

    # 1. QC metrics
    logger.info("Calculating QC metrics...")
    qc_metrics = calculate_qc_metrics(adata)

    # 2. Filtering
    min_cells = params.filter_genes_min_cells
    if min_cells is not None:
        logger.info(f"Filtering genes: min_cells={min_cells}")
        sc.pp.filter_genes(adata, min_cells=min_cells)

    min_genes = params.filter_cells_min_genes
    if min_genes is not None:
        logger.info(f"Filtering cells: min_genes={min_genes}")
        sc.pp.filter_cells(adata, min_genes=min_genes)

    if adata.n_obs < 3 or adata.n_vars < 2:
        raise DataError(
            f"Only {adata.n_obs} spots and {adata.n_vars} genes remain after filtering. "
            "Lower filter_genes_min_cells / filter_cells_min_genes."
        )

    qc_metrics.update(
        {
            "n_cells_after_filtering": int(adata.n_obs),
            "n_genes_after_filtering": int(adata.n_vars),
        }
    )

    # Independent AnnData for raw; `adata.raw = adata` would follow normalization
    adata.raw = ad.AnnData(
        X=adata.X.copy(),
        var=adata.var,
        obs=adata.obs.copy(),
        uns={},
    )
    adata.layers["counts"] = adata.X.copy()

    # 3. Normalize
    if params.normalize_target_sum is not None:
        target_sum = float(params.normalize_target_sum)
    else:
        target_sum = float(np.median(np.asarray(adata.X.sum(axis=1)).ravel()))
        logger.info(
            f"normalize_target_sum not specified, using median counts: {target_sum:.0f}"
        )
    if target_sum <= 0:
        raise DataError("Median total count is zero; cannot normalize")
    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)
    # marker testing needs unscaled log values
    adata.layers[LOGNORM_LAYER] = adata.X.copy()

    # 4. Highly variable genes
    if _should_use_all_genes_for_hvg(adata):
        logger.info(
            f"Small gene set detected ({adata.n_vars} genes), using all genes for analysis"
        )
        adata.var["highly_variable"] = True
    else:
        n_hvgs = min(params.n_hvgs, adata.n_vars - 1)
        if n_hvgs < 500:
            logger.warning(
                f"Using only {n_hvgs} HVGs is below the recommended minimum of 500 genes"
            )
        try:
            sc.pp.highly_variable_genes(adata, n_top_genes=n_hvgs)
        except (ValueError, IndexError) as e:
            raise ProcessingError(f"Highly variable gene selection failed: {e}") from e
    n_hvgs_found = int(adata.var["highly_variable"].sum())

    # 5. Scale
    if params.scale:
        sc.pp.scale(adata, max_value=params.scale_max_value)
        adata.X = np.nan_to_num(to_dense(adata.X), nan=0.0)

    # 6. PCA, neighbours, clustering, UMAP
    n_comps = min(params.n_pcs, adata.n_obs - 1, n_hvgs_found - 1)
    if n_comps < 1:
        raise DataError(
            f"Cannot compute PCA with {adata.n_obs} spots and {n_hvgs_found} HVGs"
        )
    sc.pp.pca(adata, n_comps=n_comps, random_state=params.random_state)

    n_neighbors = min(params.n_neighbors, adata.n_obs - 1)
    sc.pp.neighbors(
        adata,
        n_neighbors=n_neighbors,
        n_pcs=n_comps,
        random_state=params.random_state,
    )
    sc.tl.leiden(
        adata,
        resolution=params.clustering_resolution,
        key_added=params.cluster_key,
        random_state=params.random_state,
        flavor="igraph",
        n_iterations=2,
        directed=False,
    )
    if params.compute_umap:
        sc.tl.umap(adata, random_state=params.random_state)

    n_clusters = int(adata.obs[params.cluster_key].nunique())
    logger.info(
        f"Preprocessing complete: {adata.n_obs} spots, {adata.n_vars} genes, "
        f"{n_hvgs_found} HVGs, {n_clusters} clusters"
    )

    store_analysis_metadata(
        adata,
        analysis_name="preprocessing",
        method="log1p",
        parameters={
            "normalize_target_sum": target_sum,
            "n_pcs": n_comps,
            "n_neighbors": n_neighbors,
            "clustering_resolution": params.clustering_resolution,
        },
        results_keys={
            "obs": [params.cluster_key],
            "obsm": ["X_pca"] + (["X_umap"] if params.compute_umap else []),
            "layers": ["counts", LOGNORM_LAYER],
        },
        statistics=qc_metrics,
    )

    result = PreprocessingResult(
        n_cells=adata.n_obs,
        n_genes=adata.n_vars,
        n_hvgs=n_hvgs_found,
        clusters=n_clusters,
        cluster_key=params.cluster_key,
        normalize_target_sum=target_sum,
        qc_metrics=qc_metrics,
    )
    return adata, result
