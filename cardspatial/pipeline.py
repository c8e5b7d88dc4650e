"""
End-to-end spatial analysis and deconvolution run.

Stages run in order and each consumes the output of the previous one:
load -> preprocess -> markers -> spatially variable genes -> deconvolution
-> figures. Deconvolution works on the loaded (unprocessed) spatial data,
since it needs raw counts for every spot.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import pandas as pd

from .models.analysis import (
    DeconvolutionResult,
    MarkerGenesResult,
    SpatialVariableGenesResult,
)
from .models.data import PipelineConfig
from .tools.deconvolution import Engine, run_deconvolution
from .tools.differential import find_marker_genes_with_params
from .tools.preprocessing import preprocess_data
from .tools.spatial_genes import find_spatially_variable_genes
from .tools.visualization import (
    plot_deconvolution,
    plot_embedding,
    plot_spatial_clusters,
    save_figure,
)
from .utils.data_loader import load_reference_data, load_spatial_data

logger = logging.getLogger(__name__)

PROPORTIONS_FILE = "proportions.csv"
REFINED_PROPORTIONS_FILE = "refined_proportions.csv"
MARKERS_FILE = "marker_genes.csv"
SPATIAL_GENES_FILE = "spatially_variable_genes.csv"
SUMMARY_FILE = "summary.json"


def _spatial_genes_table(result: SpatialVariableGenesResult) -> pd.DataFrame:
    table = pd.DataFrame(
        {
            "moran_I": pd.Series(result.gene_statistics, dtype=float),
            "pval": pd.Series(result.p_values, dtype=float),
            "qval": pd.Series(result.q_values, dtype=float),
        }
    )
    table.index.name = "gene"
    table["significant"] = table.index.isin(result.spatial_genes)
    return table.sort_values("moran_I", ascending=False)


def _write_proportions(
    proportions: pd.DataFrame, coordinates: pd.DataFrame, path: Path
) -> None:
    table = coordinates.join(proportions)
    table.index.name = "spot"
    table.to_csv(path)


def run_pipeline(
    config: PipelineConfig, engine: Optional[Engine] = None
) -> Dict[str, Any]:
    """Run every stage and write the results to ``config.output_dir``.

    Args:
        config: Pipeline configuration
        engine: Optional deconvolution engine callable overriding
            ``config.deconvolution.method``

    Returns:
        Run summary (also written to summary.json) with the stage results and
        the paths of every file written
    """
    output_dir = Path(config.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    outputs: Dict[str, str] = {}

    # 1. Load
    spatial = load_spatial_data(config.spatial_path, config.spatial_data_type)
    reference = load_reference_data(
        config.reference_path, config.reference_metadata_path
    )

    # 2. Preprocess
    processed, preprocessing = preprocess_data(spatial, config.preprocessing)

    # 3. Markers
    markers: Optional[MarkerGenesResult] = None
    if config.run_markers:
        processed, markers = find_marker_genes_with_params(processed, config.markers)
        path = output_dir / MARKERS_FILE
        pd.DataFrame(markers.table).to_csv(path, index=False)
        outputs["marker_genes"] = str(path)

    # 4. Spatially variable genes
    spatial_genes: Optional[SpatialVariableGenesResult] = None
    if config.run_spatial_genes:
        processed, spatial_genes = find_spatially_variable_genes(
            processed, config.spatial_genes
        )
        path = output_dir / SPATIAL_GENES_FILE
        _spatial_genes_table(spatial_genes).to_csv(path)
        outputs["spatially_variable_genes"] = str(path)

    # 5. Deconvolution
    proportions, coordinates, deconvolution = run_deconvolution(
        spatial, reference, config.deconvolution, engine=engine
    )
    path = output_dir / PROPORTIONS_FILE
    _write_proportions(proportions, coordinates, path)
    outputs["proportions"] = str(path)

    refined = proportions.attrs.get("refined_proportions")
    if refined is not None:
        refined_coords = proportions.attrs.get("refined_coordinates")
        table = refined if refined_coords is None else refined_coords.join(refined)
        path = output_dir / REFINED_PROPORTIONS_FILE
        table.to_csv(path)
        outputs["refined_proportions"] = str(path)

    # 6. Figures
    if config.save_figures:
        outputs.update(
            _save_figures(config, processed, proportions, coordinates, output_dir)
        )

    summary = _build_summary(
        config, preprocessing, markers, spatial_genes, deconvolution, outputs
    )
    path = output_dir / SUMMARY_FILE
    with open(path, "w") as f:
        json.dump(summary, f, indent=2, default=str)
    summary["outputs"]["summary"] = str(path)

    logger.info(f"Pipeline finished, results in {output_dir}")
    return summary


def _save_figures(
    config: PipelineConfig,
    processed,
    proportions: pd.DataFrame,
    coordinates: pd.DataFrame,
    output_dir: Path,
) -> Dict[str, str]:
    viz = config.visualization
    cluster_key = config.preprocessing.cluster_key
    written: Dict[str, str] = {}

    fig = plot_deconvolution(proportions, coordinates, params=viz)
    written["deconvolution_figure"] = str(
        save_figure(fig, output_dir / f"deconvolution_{viz.subtype}.png", viz.dpi)
    )

    plain = viz.model_copy(update={"title": None})
    fig = plot_spatial_clusters(processed, cluster_key, params=plain)
    written["clusters_figure"] = str(
        save_figure(fig, output_dir / "spatial_clusters.png", viz.dpi)
    )

    if "X_umap" in processed.obsm:
        fig = plot_embedding(processed, cluster_key, params=plain)
        written["umap_figure"] = str(save_figure(fig, output_dir / "umap.png", viz.dpi))

    return written


def _build_summary(
    config: PipelineConfig,
    preprocessing,
    markers: Optional[MarkerGenesResult],
    spatial_genes: Optional[SpatialVariableGenesResult],
    deconvolution: DeconvolutionResult,
    outputs: Dict[str, str],
) -> Dict[str, Any]:
    summary: Dict[str, Any] = {
        "config": config.model_dump(mode="json"),
        "preprocessing": preprocessing.model_dump(mode="json"),
        "deconvolution": deconvolution.model_dump(mode="json"),
        "outputs": dict(outputs),
    }
    if markers is not None:
        # full table is in marker_genes.csv
        summary["markers"] = markers.model_dump(mode="json", exclude={"table"})
    if spatial_genes is not None:
        summary["spatial_genes"] = spatial_genes.model_dump(
            mode="json", exclude={"gene_statistics", "p_values", "q_values"}
        )
    return summary
