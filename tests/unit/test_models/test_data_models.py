"""
Test Pydantic data models (cardspatial.models.data)

These tests verify that parameter model validation works correctly.
"""
import json

import pytest
from pydantic import ValidationError

from cardspatial.models.analysis import DeconvolutionResult
from cardspatial.models.data import (
    DeconvolutionParameters,
    MarkerGeneParameters,
    PipelineConfig,
    PreprocessingParameters,
    SpatialVariableGenesParameters,
    VisualizationParameters,
    load_config,
)


# ========== PreprocessingParameters Tests ==========

@pytest.mark.unit
class TestPreprocessingParameters:
    def test_defaults(self):
        params = PreprocessingParameters()
        assert params.filter_genes_min_cells == 3
        assert params.normalize_target_sum is None
        assert params.cluster_key == "leiden"

    def test_filter_can_be_disabled(self):
        params = PreprocessingParameters(filter_cells_min_genes=None)
        assert params.filter_cells_min_genes is None

    @pytest.mark.parametrize(
        "field,value",
        [("n_neighbors", 2), ("n_pcs", 0), ("clustering_resolution", 0.0)],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            PreprocessingParameters(**{field: value})


# ========== Analysis stage parameter Tests ==========

@pytest.mark.unit
def test_marker_method_must_be_known():
    with pytest.raises(ValidationError):
        MarkerGeneParameters(method="anova")


@pytest.mark.unit
def test_spatial_genes_defaults():
    params = SpatialVariableGenesParameters()
    assert params.method == "moran"
    assert params.n_perms is None
    assert params.filter_mt_genes


# ========== DeconvolutionParameters Tests ==========

@pytest.mark.unit
class TestDeconvolutionParameters:
    def test_cell_type_key_required(self):
        with pytest.raises(ValidationError):
            DeconvolutionParameters()

    def test_defaults(self):
        params = DeconvolutionParameters(cell_type_key="cell_type")
        assert params.method == "card"
        assert params.min_gene_count == 100
        assert params.min_spot_count == 5
        assert params.coordinate_origin == "top-left"
        assert params.sample_key is None

    def test_negative_thresholds_rejected(self):
        with pytest.raises(ValidationError):
            DeconvolutionParameters(cell_type_key="ct", min_gene_count=-1)
        with pytest.raises(ValidationError):
            DeconvolutionParameters(cell_type_key="ct", min_spot_count=-1)

    def test_ct_select_deduplicated(self):
        params = DeconvolutionParameters(
            cell_type_key="ct", ct_select=["A", "B", "A"]
        )
        assert params.ct_select == ["A", "B"]

    def test_ct_select_needs_two_types(self):
        with pytest.raises(ValidationError, match="at least two"):
            DeconvolutionParameters(cell_type_key="ct", ct_select=["A", "A"])

    def test_unknown_engine(self):
        with pytest.raises(ValidationError):
            DeconvolutionParameters(cell_type_key="ct", method="rctd")

    def test_unknown_origin(self):
        with pytest.raises(ValidationError):
            DeconvolutionParameters(cell_type_key="ct", coordinate_origin="center")


# ========== VisualizationParameters Tests ==========

@pytest.mark.unit
class TestVisualizationParameters:
    def test_defaults(self):
        params = VisualizationParameters()
        assert params.subtype == "scatterpie"
        assert params.color_scale == "linear"

    def test_extra_fields_forbidden(self):
        with pytest.raises(ValidationError):
            VisualizationParameters(not_a_field=1)

    def test_pie_scale_positive(self):
        with pytest.raises(ValidationError):
            VisualizationParameters(pie_scale=0)


# ========== PipelineConfig Tests ==========

@pytest.mark.unit
class TestPipelineConfig:
    def _config(self, **kwargs):
        data = {
            "spatial_path": "spatial.h5ad",
            "reference_path": "ref.h5ad",
            "deconvolution": {"cell_type_key": "cell_type"},
        }
        data.update(kwargs)
        return PipelineConfig.model_validate(data)

    def test_minimal(self):
        config = self._config()
        assert config.output_dir == "cardspatial_output"
        assert config.run_markers

    def test_marker_group_follows_cluster_key(self):
        config = self._config(preprocessing={"cluster_key": "clusters"})
        assert config.markers.group_key == "clusters"

    def test_explicit_marker_group_kept(self):
        config = self._config(
            preprocessing={"cluster_key": "clusters"},
            markers={"group_key": "domain"},
        )
        assert config.markers.group_key == "domain"

    def test_deconvolution_required(self):
        with pytest.raises(ValidationError):
            PipelineConfig(spatial_path="a", reference_path="b")

    def test_load_config(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(
            json.dumps(
                {
                    "spatial_path": "spatial.h5ad",
                    "reference_path": "ref.h5ad",
                    "deconvolution": {"cell_type_key": "ct", "method": "nnls"},
                    "visualization": {"subtype": "dominant_type"},
                }
            )
        )
        config = load_config(path)
        assert config.deconvolution.method == "nnls"
        assert config.visualization.subtype == "dominant_type"


@pytest.mark.unit
def test_deconvolution_result_serializes():
    result = DeconvolutionResult(
        method="nnls",
        cell_types=["A", "B"],
        n_cell_types=2,
        n_spots=4,
        n_spots_input=5,
        n_genes=50,
        statistics={"mean_proportions": {"A": 0.5, "B": 0.5}},
    )
    dumped = result.model_dump(mode="json")
    assert dumped["n_spots"] == 4
    assert dumped["statistics"]["mean_proportions"]["A"] == 0.5
