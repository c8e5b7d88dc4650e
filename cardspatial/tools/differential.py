"""
Marker gene discovery for spatial clusters.
"""

import logging
from typing import Tuple

import anndata as ad
import numpy as np
import scanpy as sc

from ..models.analysis import MarkerGenesResult
from ..models.data import MarkerGeneParameters
from ..utils.adata_utils import store_analysis_metadata, validate_obs_column
from ..utils.exceptions import DataError
from .preprocessing import LOGNORM_LAYER

logger = logging.getLogger(__name__)


def find_marker_genes(
    adata: ad.AnnData,
    group_key: str = "leiden",
    method: str = "wilcoxon",
    n_top_genes: int = 25,
    min_cells: int = 3,
) -> Tuple[ad.AnnData, MarkerGenesResult]:
    """Rank marker genes for every group against the rest.

    Groups with fewer than ``min_cells`` members are skipped with a warning.
    Testing uses the log-normalized layer written by preprocessing when it is
    present, otherwise adata.X.

    Args:
        adata: Preprocessed AnnData
        group_key: Key in adata.obs for grouping spots
        method: Statistical test for rank_genes_groups
        n_top_genes: Number of markers reported per group
        min_cells: Minimum number of spots per group for testing.
            Default: 3 (minimum required for Wilcoxon test).

    Returns:
        Tuple of (copy with results in uns['rank_genes_groups'], result)
    """
    validate_obs_column(adata, group_key, "Group key")
    adata = adata.copy()

    # numba doesn't support float16
    if hasattr(adata.X, "dtype") and adata.X.dtype == np.float16:
        adata.X = adata.X.astype(np.float32)

    group_sizes = adata.obs[group_key].astype(str).value_counts()
    valid_groups = group_sizes[group_sizes >= min_cells]
    skipped_groups = group_sizes[group_sizes < min_cells]

    if len(skipped_groups) > 0:
        skipped_list = ", ".join(f"{g} ({n})" for g, n in skipped_groups.items())
        logger.warning(
            f"Skipped {len(skipped_groups)} group(s) with <{min_cells} cells: {skipped_list}"
        )

    if len(valid_groups) == 0:
        all_sizes = ", ".join(f"{g}: {n}" for g, n in group_sizes.items())
        raise DataError(
            f"All groups have <{min_cells} cells. Cannot perform {method} test. "
            f"Group sizes: {all_sizes}"
        )
    if len(valid_groups) < 2:
        raise DataError(
            f"Marker testing needs at least 2 groups with >= {min_cells} cells, "
            f"found {len(valid_groups)}"
        )

    mask = adata.obs[group_key].astype(str).isin(valid_groups.index).to_numpy()
    adata_filtered = adata[mask].copy()
    adata_filtered.obs[group_key] = (
        adata_filtered.obs[group_key].astype(str).astype("category")
    )

    layer = LOGNORM_LAYER if LOGNORM_LAYER in adata_filtered.layers else None
    n_genes = min(n_top_genes, adata_filtered.n_vars)
    sc.tl.rank_genes_groups(
        adata_filtered,
        groupby=group_key,
        method=method,
        n_genes=n_genes,
        reference="rest",
        use_raw=False,
        layer=layer,
    )

    table = sc.get.rank_genes_groups_df(adata_filtered, group=None)
    if "group" not in table.columns:
        table.insert(0, "group", str(valid_groups.index[0]))
    table["group"] = table["group"].astype(str)
    table["rank"] = table.groupby("group").cumcount() + 1
    columns = [
        c
        for c in ["group", "rank", "names", "scores", "logfoldchanges", "pvals", "pvals_adj"]
        if c in table.columns
    ]
    table = table[columns].rename(
        columns={
            "names": "gene",
            "scores": "score",
            "logfoldchanges": "logfoldchange",
            "pvals": "pval",
            "pvals_adj": "pval_adj",
        }
    )

    groups = list(adata_filtered.obs[group_key].cat.categories)
    top_genes = {
        group: table.loc[table["group"] == group, "gene"].astype(str).tolist()
        for group in groups
    }

    # Copy results back to the returned adata
    adata.uns["rank_genes_groups"] = adata_filtered.uns["rank_genes_groups"]
    store_analysis_metadata(
        adata,
        analysis_name="differential_expression",
        method=method,
        parameters={
            "group_key": group_key,
            "comparison_type": "all_groups",
            "n_top_genes": n_genes,
            "min_cells": min_cells,
        },
        results_keys={"uns": ["rank_genes_groups"]},
        statistics={
            "n_groups": len(groups),
            "n_cells_analyzed": int(adata_filtered.n_obs),
            "n_genes_analyzed": int(adata_filtered.n_vars),
        },
    )

    logger.info(f"Found markers for {len(groups)} groups in '{group_key}'")
    return adata, MarkerGenesResult(
        group_key=group_key,
        method=method,
        groups=groups,
        skipped_groups=[str(g) for g in skipped_groups.index],
        top_genes=top_genes,
        table=table.to_dict(orient="records"),
    )


def find_marker_genes_with_params(
    adata: ad.AnnData, params: MarkerGeneParameters
) -> Tuple[ad.AnnData, MarkerGenesResult]:
    """find_marker_genes driven by a MarkerGeneParameters model."""
    return find_marker_genes(
        adata,
        group_key=params.group_key,
        method=params.method,
        n_top_genes=params.n_top_genes,
        min_cells=params.min_cells,
    )
