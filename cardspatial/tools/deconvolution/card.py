"""
CARD (Conditional AutoRegressive-based Deconvolution) engine.

CARD runs in R and is reached through rpy2. Matrices are handed over as
sparse dgCMatrix objects by anndata2ri; metadata and coordinates go through
pandas2ri.
"""

import logging
from typing import List, Tuple

import numpy as np
import pandas as pd

from ...utils.dependency_manager import is_available, require
from ...utils.exceptions import DependencyError
from .base import CELL_TYPE_COLUMN, SAMPLE_COLUMN, CountMatrix

logger = logging.getLogger(__name__)


def check_card_available() -> Tuple[bool, str]:
    """Check if the CARD R package is reachable through rpy2.

    Returns:
        Tuple of (is_available, error_message)
    """
    for dep in ("rpy2", "anndata2ri"):
        if not is_available(dep):
            return (
                False,
                f"{dep} is not installed. Install with 'pip install cardspatial[r]' to use CARD",
            )

    import rpy2.robjects as ro
    from rpy2.rinterface_lib.embedded import RRuntimeError

    try:
        ro.r("R.version.string")
    except RRuntimeError as e:
        return False, f"R is not accessible: {e}"

    try:
        ro.r("suppressPackageStartupMessages(library(CARD))")
    except RRuntimeError as e:
        return (
            False,
            f"CARD R package is not installed: {e}. "
            "Install with: devtools::install_github('YingMa0107/CARD')",
        )

    return True, ""


def _parse_grid_names(names: List[str]) -> pd.DataFrame:
    """Refined locations are named 'XxY', e.g. '4.1x8.3'."""
    coords = []
    for name in names:
        x_val, y_val = name.split("x", 1)
        coords.append([float(x_val), float(y_val)])
    return pd.DataFrame(np.array(coords), index=names, columns=["x", "y"])


def deconvolve_card(
    spatial_counts: CountMatrix,
    spatial_coords: pd.DataFrame,
    ref_counts: CountMatrix,
    ref_meta: pd.DataFrame,
    cell_types: List[str],
    imputation: bool = False,
    NumGrids: int = 2000,
    ineibor: int = 10,
) -> pd.DataFrame:
    """Deconvolve spatial data with CARD.

    CARD models spatial correlation in cell-type composition across tissue
    locations with a conditional autoregressive prior. Gene and spot
    thresholds have already been applied by the caller, so CARD's own QC runs
    with ``minCountGene=0`` and ``minCountSpot=0``.

    Imputation (``imputation=True``) predicts compositions on a finer grid of
    ``NumGrids`` locations. The refined table and its coordinates are attached
    to the result as ``attrs["refined_proportions"]`` and
    ``attrs["refined_coordinates"]``.

    Args:
        spatial_counts: Genes x spots raw counts
        spatial_coords: Spots x (x, y)
        ref_counts: Genes x cells counts (same genes as spatial_counts)
        ref_meta: Reference metadata with cellType and sampleInfo columns
        cell_types: Cell types to deconvolve (ct.select)
        imputation: Whether to run CARD.imputation
        NumGrids: Number of grid points for imputation
        ineibor: Number of neighbors for imputation

    Returns:
        Spots x cell types proportions

    Raises:
        DependencyError: If rpy2, anndata2ri, R or CARD is not available
    """
    available, error_message = check_card_available()
    if not available:
        raise DependencyError(f"CARD is not available: {error_message}")

    anndata2ri = require("anndata2ri", "CARD deconvolution")
    import rpy2.robjects as ro
    from rpy2.robjects import numpy2ri, pandas2ri
    from rpy2.robjects.conversion import localconverter

    logger.info(
        f"Running CARD on {spatial_counts.n_columns} spots, "
        f"{ref_counts.n_columns} reference cells, {spatial_counts.n_genes} genes"
    )

    # genes x columns, as CARD expects
    with localconverter(ro.default_converter + anndata2ri.converter):
        ro.globalenv["sc_count"] = ref_counts.matrix
        ro.globalenv["spatial_count"] = spatial_counts.matrix
        ro.globalenv["gene_names_ref"] = ro.StrVector(list(ref_counts.genes))
        ro.globalenv["cell_names"] = ro.StrVector(list(ref_counts.columns))
        ro.globalenv["gene_names_spatial"] = ro.StrVector(list(spatial_counts.genes))
        ro.globalenv["spot_names"] = ro.StrVector(list(spatial_counts.columns))
        ro.globalenv["ct_select"] = ro.StrVector(list(cell_types))

        ro.r(
            """
            rownames(sc_count) <- gene_names_ref
            colnames(sc_count) <- cell_names
            rownames(spatial_count) <- gene_names_spatial
            colnames(spatial_count) <- spot_names
            """
        )

    sc_meta = ref_meta[[CELL_TYPE_COLUMN, SAMPLE_COLUMN]].copy()
    spatial_location = spatial_coords.loc[spatial_counts.columns, ["x", "y"]]

    with localconverter(ro.default_converter + pandas2ri.converter):
        ro.globalenv["sc_meta"] = ro.conversion.py2rpy(sc_meta)
        ro.globalenv["spatial_location"] = ro.conversion.py2rpy(spatial_location)

    # CARD prints progress messages (## QC, ## create); keep them off stdout
    ro.r(
        """
    capture.output(
        CARD_obj <- createCARDObject(
            sc_count = sc_count,
            sc_meta = sc_meta,
            spatial_count = spatial_count,
            spatial_location = spatial_location,
            ct.varname = "cellType",
            ct.select = ct_select,
            sample.varname = "sampleInfo",
            minCountGene = 0,
            minCountSpot = 0
        ),
        file = nullfile()
    )
    """
    )
    ro.r(
        """
    capture.output(
        CARD_obj <- CARD_deconvolution(CARD_object = CARD_obj),
        file = nullfile()
    )
    """
    )

    with localconverter(ro.default_converter + numpy2ri.converter):
        row_names = [str(n) for n in ro.r("rownames(CARD_obj@Proportion_CARD)")]
        col_names = [str(n) for n in ro.r("colnames(CARD_obj@Proportion_CARD)")]
        proportions_array = np.array(ro.r("CARD_obj@Proportion_CARD"))

    proportions = pd.DataFrame(proportions_array, index=row_names, columns=col_names)

    if imputation:
        ro.r(
            f"""
        capture.output(
            CARD_impute <- CARD.imputation(
                CARD_object = CARD_obj,
                NumGrids = {int(NumGrids)},
                ineibor = {int(ineibor)}
            ),
            file = nullfile()
        )
        """
        )
        with localconverter(ro.default_converter + numpy2ri.converter):
            grid_names = [str(n) for n in ro.r("rownames(CARD_impute@refined_prop)")]
            grid_types = [str(n) for n in ro.r("colnames(CARD_impute@refined_prop)")]
            refined_array = np.array(ro.r("CARD_impute@refined_prop"))

        proportions.attrs["refined_proportions"] = pd.DataFrame(
            refined_array, index=grid_names, columns=grid_types
        )
        proportions.attrs["refined_coordinates"] = _parse_grid_names(grid_names)
        logger.info(
            f"CARD imputation: {len(grid_names)} refined locations "
            f"from {len(row_names)} spots"
        )

    return proportions
