"""
Data loading utilities for spatial and single-cell reference data.

Includes:
- Loading spatial formats (H5AD, 10x H5, MTX, Visium directories)
- Loading a single-cell reference with an optional metadata table
"""

import json
import logging
import os
from typing import Literal, Optional

import pandas as pd
from anndata import AnnData

from .adata_utils import ensure_unique_var_names
from .exceptions import DataCompatibilityError, DataError, DataNotFoundError

logger = logging.getLogger(__name__)

TISSUE_POSITION_COLUMNS = [
    "barcode",
    "in_tissue",
    "array_row",
    "array_col",
    "pxl_row_in_fullres",
    "pxl_col_in_fullres",
]
TISSUE_POSITION_FILES = ("tissue_positions.csv", "tissue_positions_list.csv")


def _detect_data_type(data_path: str) -> str:
    if os.path.isfile(data_path):
        if data_path.endswith(".h5ad"):
            return "h5ad"
        if data_path.endswith(".h5"):
            logger.info("Auto-detected as 10x H5 file, using 10x_visium loader")
            return "10x_visium"
        return "other"
    if os.path.isdir(data_path) and (
        os.path.exists(os.path.join(data_path, "filtered_feature_bc_matrix"))
        or os.path.exists(os.path.join(data_path, "filtered_feature_bc_matrix.h5"))
    ):
        return "10x_visium"
    return "other"


def load_spatial_data(
    data_path: str,
    data_type: Literal["10x_visium", "h5ad", "auto"] = "auto",
) -> AnnData:
    """Load spatial transcriptomics data.

    Args:
        data_path: Path to the data file or directory
        data_type: Type of spatial data. If 'auto', it is determined from the
            file extension or directory structure.

    Returns:
        AnnData with counts in X and pixel coordinates in obsm['spatial']
    """
    if not os.path.exists(data_path):
        raise DataNotFoundError(f"Data path not found: {data_path}")

    if data_type == "auto":
        data_type = _detect_data_type(data_path)

    import scanpy as sc

    if data_type == "10x_visium":
        if os.path.isdir(data_path):
            adata = _read_visium_directory(data_path)
        elif data_path.endswith(".h5"):
            logger.info(f"Loading 10x H5 file: {data_path}")
            adata = sc.read_10x_h5(data_path)
            spatial_path = _find_spatial_folder(data_path)
            if spatial_path:
                adata = _add_spatial_info_to_adata(adata, spatial_path)
            else:
                logger.info("No spatial folder found. Loading expression data only.")
        else:
            adata = sc.read_h5ad(data_path)
    elif data_type in ("h5ad", "other"):
        try:
            adata = sc.read_h5ad(data_path)
        except (OSError, KeyError) as e:
            raise DataError(f"Error loading {data_type} data: {e}") from e
    else:
        raise DataError(f"Unsupported data type: {data_type}")

    if "spatial" not in adata.obsm:
        logger.warning(
            f"{data_path} does not contain spatial coordinates in obsm['spatial']"
        )

    ensure_unique_var_names(adata, "spatial data")
    logger.info(f"Loaded spatial data: {adata.n_obs} spots x {adata.n_vars} genes")
    return adata


def _read_visium_directory(data_path: str) -> AnnData:
    """Read a Space Ranger output directory (H5 or MTX matrix)."""
    import scanpy as sc

    h5_path = os.path.join(data_path, "filtered_feature_bc_matrix.h5")
    mtx_dir = os.path.join(data_path, "filtered_feature_bc_matrix")

    if os.path.exists(h5_path):
        adata = sc.read_10x_h5(h5_path)
    elif os.path.isdir(mtx_dir):
        adata = sc.read_10x_mtx(mtx_dir, var_names="gene_symbols", cache=False)
    else:
        raise DataError(
            f"Directory {data_path} does not have the expected 10x Visium structure"
        )

    spatial_dir = os.path.join(data_path, "spatial")
    if os.path.isdir(spatial_dir):
        adata = _add_spatial_info_to_adata(adata, spatial_dir)
    else:
        logger.warning(f"No spatial folder in {data_path}")
    return adata


def _find_spatial_folder(h5_path: str) -> Optional[str]:
    """
    Find the spatial information folder for a given H5 file.

    Search strategy:
    1. Same directory 'spatial' folder
    2. Parent directory 'spatial' folder
    3. Same name prefix spatial folder
    """
    base_dir = os.path.dirname(h5_path)
    base_name = os.path.splitext(os.path.basename(h5_path))[0]

    candidates = [
        os.path.join(base_dir, "spatial"),
        os.path.join(base_dir, "..", "spatial"),
        os.path.join(base_dir, f"{base_name}_spatial"),
        os.path.join(base_dir, base_name.replace("_filtered_feature_bc_matrix", "_spatial")),
    ]

    for candidate in candidates:
        candidate = os.path.normpath(candidate)
        if os.path.isdir(candidate) and _find_positions_file(candidate):
            logger.info(f"Found spatial folder at: {candidate}")
            return candidate

    logger.warning(f"No spatial folder found for {h5_path}")
    return None


def _find_positions_file(spatial_path: str) -> Optional[str]:
    for name in TISSUE_POSITION_FILES:
        path = os.path.join(spatial_path, name)
        if os.path.exists(path):
            return path
    return None


def read_tissue_positions(positions_file: str) -> pd.DataFrame:
    """Read a tissue positions table, with or without header, indexed by barcode."""
    with open(positions_file, "r") as f:
        first_line = f.readline().strip()

    if first_line.startswith("barcode"):
        positions = pd.read_csv(positions_file)
    else:
        positions = pd.read_csv(positions_file, header=None)
        if len(positions.columns) == 6:
            positions.columns = TISSUE_POSITION_COLUMNS
        elif len(positions.columns) == 5:
            # Some datasets don't have the 'in_tissue' column
            positions.columns = [c for c in TISSUE_POSITION_COLUMNS if c != "in_tissue"]
            positions["in_tissue"] = 1
        else:
            raise DataError(
                f"Unexpected tissue positions format in {positions_file}: "
                f"{len(positions.columns)} columns"
            )

    positions["barcode"] = positions["barcode"].astype(str)
    return positions.set_index("barcode")


def _add_spatial_info_to_adata(adata: AnnData, spatial_path: str) -> AnnData:
    """
    Add pixel coordinates and scalefactors from a Visium 'spatial' folder.

    Coordinates are stored as (x, y) = (pxl_col, pxl_row) in the image
    convention, i.e. with a top-left origin.
    """
    positions_file = _find_positions_file(spatial_path)
    if positions_file is None:
        raise DataNotFoundError(f"No tissue positions file in {spatial_path}")

    positions = read_tissue_positions(positions_file)
    positions = positions[positions["in_tissue"] == 1]

    missing = adata.obs_names.difference(positions.index)
    if len(missing) == len(adata.obs_names):
        raise DataCompatibilityError(
            f"No matching barcodes between expression data and {positions_file}. "
            "Check the barcode format (with or without -1 suffix)."
        )
    if len(missing) > 0:
        logger.warning(
            f"{len(missing)} spots have no in-tissue position and are dropped"
        )
        adata = adata[adata.obs_names.isin(positions.index)].copy()

    adata.obsm["spatial"] = positions.loc[
        adata.obs_names, ["pxl_col_in_fullres", "pxl_row_in_fullres"]
    ].to_numpy(dtype=float)

    scalefactors_path = os.path.join(spatial_path, "scalefactors_json.json")
    if os.path.exists(scalefactors_path):
        with open(scalefactors_path, "r") as f:
            adata.uns["spatial"] = {"scalefactors": json.load(f)}

    return adata


def load_reference_data(
    data_path: str,
    metadata_path: Optional[str] = None,
) -> AnnData:
    """Load a single-cell reference dataset.

    Args:
        data_path: Path to an .h5ad file (cells x genes)
        metadata_path: Optional CSV whose first column holds cell barcodes;
            its columns replace the obs of the reference, aligned by barcode.

    Returns:
        Reference AnnData with metadata in obs
    """
    if not os.path.exists(data_path):
        raise DataNotFoundError(f"Reference path not found: {data_path}")

    import scanpy as sc

    if data_path.endswith(".h5"):
        adata = sc.read_10x_h5(data_path)
    else:
        adata = sc.read_h5ad(data_path)

    if not adata.obs_names.is_unique:
        n_duplicates = len(adata.obs_names) - len(set(adata.obs_names))
        if metadata_path is not None:
            raise DataCompatibilityError(
                f"Reference has {n_duplicates} duplicated cell barcodes, so rows of "
                f"{metadata_path} cannot be matched to cells"
            )
        adata.obs_names_make_unique()
        logger.warning(
            f"Found {n_duplicates} duplicate cell barcodes in reference data, made unique"
        )

    if metadata_path is not None:
        if not os.path.exists(metadata_path):
            raise DataNotFoundError(f"Reference metadata not found: {metadata_path}")
        meta = pd.read_csv(metadata_path, index_col=0)
        meta.index = meta.index.astype(str)
        if not meta.index.is_unique:
            raise DataCompatibilityError(
                f"{metadata_path} lists some cell barcodes more than once"
            )
        missing = adata.obs_names.difference(meta.index)
        if len(missing) > 0:
            raise DataCompatibilityError(
                f"{len(missing)} reference cells have no metadata row in "
                f"{metadata_path} (e.g. {list(missing[:3])})"
            )
        adata.obs = meta.loc[adata.obs_names].copy()

    ensure_unique_var_names(adata, "reference data")
    logger.info(f"Loaded reference: {adata.n_obs} cells x {adata.n_vars} genes")
    return adata
