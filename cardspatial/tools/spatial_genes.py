"""
Spatially variable gene identification with Moran's I.
"""

import logging
from typing import List, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import squidpy as sq

from ..models.analysis import SpatialVariableGenesResult
from ..models.data import SpatialVariableGenesParameters
from ..utils.adata_utils import (
    get_highly_variable_genes,
    get_spatial_key,
    store_analysis_metadata,
    to_dense,
)
from ..utils.exceptions import DataError, DataNotFoundError
from .preprocessing import MT_PREFIXES, RIBO_PREFIXES

logger = logging.getLogger(__name__)

MORAN_KEY = "moranI"


def _select_genes(
    adata: ad.AnnData, params: SpatialVariableGenesParameters
) -> List[str]:
    if params.test_only_hvg and "highly_variable" in adata.var.columns:
        genes = get_highly_variable_genes(
            adata, max_genes=adata.n_vars, fallback_to_variance=False
        )
    else:
        if params.test_only_hvg:
            logger.warning(
                "No highly variable genes found (run preprocessing first); testing all genes"
            )
        genes = list(adata.var_names)

    names = pd.Index(genes)
    exclude = np.zeros(len(names), dtype=bool)
    if params.filter_mt_genes:
        exclude |= names.str.startswith(MT_PREFIXES)
    if params.filter_ribo_genes:
        exclude |= names.str.startswith(RIBO_PREFIXES)
    if exclude.any():
        logger.info(f"Excluding {int(exclude.sum())} mitochondrial/ribosomal genes")
    genes = list(names[~exclude])

    if params.max_genes is not None and len(genes) > params.max_genes:
        # keep the most variable of the candidates
        variances = np.asarray(to_dense(adata[:, genes].X).var(axis=0)).ravel()
        top = np.sort(np.argsort(variances)[::-1][: params.max_genes])
        genes = [genes[i] for i in top]

    if not genes:
        raise DataError("No genes left to test for spatial autocorrelation")
    return genes


def find_spatially_variable_genes(
    adata: ad.AnnData,
    params: SpatialVariableGenesParameters = SpatialVariableGenesParameters(),
) -> Tuple[ad.AnnData, SpatialVariableGenesResult]:
    """
    Rank genes by global Moran's I spatial autocorrelation.

    Moran's I indicates whether the expression of a gene is spatially
    clustered, dispersed, or randomly distributed:
    - A value near +1.0 indicates strong clustering of similar expression values.
    - A value near -1.0 indicates dispersion (a checkerboard-like pattern).
    - A value near 0 indicates a random spatial distribution.

    Args:
        adata: Preprocessed AnnData with spatial coordinates
        params: Spatially variable gene parameters

    Returns:
        Tuple of (copy with results in uns['moranI'], result ranked by Moran's I)
    """
    spatial_key = params.spatial_key
    if spatial_key not in adata.obsm:
        spatial_key = get_spatial_key(adata)
        if spatial_key is None:
            raise DataNotFoundError(
                f"No spatial coordinates in adata.obsm['{params.spatial_key}']"
            )

    adata = adata.copy()
    genes = _select_genes(adata, params)
    logger.info(f"Analyzing {len(genes)} genes for Moran's I...")

    sq.gr.spatial_neighbors(
        adata,
        spatial_key=spatial_key,
        coord_type="generic",
        n_neighs=min(params.n_neighs, adata.n_obs - 1),
        set_diag=False,
        key_added="spatial",
    )
    sq.gr.spatial_autocorr(
        adata,
        mode="moran",
        genes=genes,
        n_perms=params.n_perms,
        two_tailed=params.two_tailed,
        n_jobs=params.n_jobs,
        show_progress_bar=False,
    )

    if MORAN_KEY not in adata.uns:
        raise DataError("squidpy did not produce Moran's I results")
    results_df = adata.uns[MORAN_KEY].dropna(subset=["I"])
    results_df = results_df.sort_values("I", ascending=False)

    pval_col = "pval_sim" if params.n_perms else "pval_norm"
    qval_col = f"{pval_col}_fdr_bh"
    pvals = results_df[pval_col]
    qvals = results_df[qval_col] if qval_col in results_df.columns else pvals

    significant = results_df[(qvals <= params.pval_cutoff) & (results_df["I"] > 0)]
    spatial_genes = [str(g) for g in significant.index]
    if params.n_top_genes is not None:
        spatial_genes = spatial_genes[: params.n_top_genes]

    store_analysis_metadata(
        adata,
        analysis_name="spatial_genes",
        method="moran",
        parameters={
            "n_neighs": params.n_neighs,
            "n_perms": params.n_perms,
            "two_tailed": params.two_tailed,
        },
        results_keys={"uns": [MORAN_KEY], "obsp": ["spatial_connectivities"]},
        statistics={
            "n_genes_analyzed": len(results_df),
            "n_significant": len(significant),
        },
    )

    logger.info(
        f"Moran's I: {len(significant)}/{len(results_df)} genes significant "
        f"at FDR <= {params.pval_cutoff}"
    )

    return adata, SpatialVariableGenesResult(
        method="moran",
        n_genes_analyzed=len(results_df),
        n_significant_genes=len(significant),
        spatial_genes=spatial_genes,
        gene_statistics={str(k): float(v) for k, v in results_df["I"].items()},
        p_values={str(k): float(v) for k, v in pvals.items()},
        q_values={str(k): float(v) for k, v in qvals.items()},
        results_key=MORAN_KEY,
    )
