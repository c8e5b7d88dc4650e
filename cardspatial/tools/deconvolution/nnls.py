"""
Signature-matrix deconvolution with non-negative least squares.

A pure-Python engine for environments without R: every cell type is summarized
by its mean library-size-normalized reference profile, and each spot is
solved as a non-negative mixture of those profiles.
"""

import logging
from typing import List

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.optimize import nnls

from ...utils.exceptions import DataError
from .base import CELL_TYPE_COLUMN, CountMatrix

logger = logging.getLogger(__name__)


def build_signature_matrix(
    ref_counts: CountMatrix,
    ref_meta: pd.DataFrame,
    cell_types: List[str],
    target_sum: float = 1e4,
) -> pd.DataFrame:
    """Mean normalized expression per cell type (genes x cell types).

    Cells are scaled to ``target_sum`` total counts before averaging. Cells
    without counts on the given genes are ignored.
    """
    totals = ref_counts.column_totals()
    has_counts = totals > 0
    scale = np.zeros_like(totals)
    scale[has_counts] = target_sum / totals[has_counts]
    normalized = sparse.csc_matrix(ref_counts.matrix @ sparse.diags(scale))

    labels = ref_meta.loc[ref_counts.columns, CELL_TYPE_COLUMN].to_numpy()
    signature = np.zeros((ref_counts.n_genes, len(cell_types)))
    for j, cell_type in enumerate(cell_types):
        members = (labels == cell_type) & has_counts
        if not members.any():
            raise DataError(f"Cell type '{cell_type}' has no reference cells with counts")
        signature[:, j] = np.asarray(normalized[:, members].mean(axis=1)).ravel()

    return pd.DataFrame(signature, index=ref_counts.genes, columns=cell_types)


def deconvolve_nnls(
    spatial_counts: CountMatrix,
    spatial_coords: pd.DataFrame,
    ref_counts: CountMatrix,
    ref_meta: pd.DataFrame,
    cell_types: List[str],
    target_sum: float = 1e4,
) -> pd.DataFrame:
    """Per-spot NNLS against the reference signature matrix.

    Coordinates are accepted for interface compatibility; this engine does
    not use spatial smoothing.

    Returns:
        Spots x cell types proportions (rows sum to 1 where the fit is non-zero)
    """
    signature = build_signature_matrix(ref_counts, ref_meta, cell_types, target_sum)
    S = signature.to_numpy()

    spot_totals = spatial_counts.column_totals()
    results = np.zeros((spatial_counts.n_columns, len(cell_types)))
    for i in range(spatial_counts.n_columns):
        b = spatial_counts.matrix[:, i].toarray().ravel()
        if spot_totals[i] > 0:
            b = b * (target_sum / spot_totals[i])
        weights, _ = nnls(S, b)
        total = weights.sum()
        if total > 0:
            results[i] = weights / total

    logger.info(
        f"NNLS deconvolution finished for {spatial_counts.n_columns} spots "
        f"against {len(cell_types)} cell-type signatures"
    )
    return pd.DataFrame(results, index=spatial_counts.columns, columns=cell_types)
