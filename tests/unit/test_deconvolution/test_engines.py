"""
Test the deconvolution engines (NNLS in Python, CARD through R)
"""
import numpy as np
import pandas as pd
import pytest

from cardspatial.tools.deconvolution import (
    assemble_inputs,
    build_signature_matrix,
    check_card_available,
    deconvolve,
    deconvolve_card,
    deconvolve_nnls,
)
from cardspatial.tools.deconvolution.base import CELL_TYPE_COLUMN, SAMPLE_COLUMN
from cardspatial.tools.deconvolution.card import _parse_grid_names
from cardspatial.utils.exceptions import DataError, DependencyError


@pytest.fixture
def inputs(spatial_adata, reference_adata):
    return assemble_inputs(spatial_adata, reference_adata, "cell_type", "sample")


# ========== NNLS engine ==========

@pytest.mark.unit
class TestSignatureMatrix:
    def test_shape_and_scale(self, inputs):
        signature = build_signature_matrix(
            inputs.ref_counts, inputs.ref_meta, inputs.cell_types, target_sum=1e4
        )
        assert signature.shape == (50, 3)
        assert list(signature.columns) == inputs.cell_types
        # every normalized cell sums to target_sum, so do the type means
        np.testing.assert_allclose(signature.sum(axis=0).to_numpy(), 1e4)

    def test_marker_blocks(self, inputs):
        signature = build_signature_matrix(
            inputs.ref_counts, inputs.ref_meta, inputs.cell_types
        )
        # gene_0 .. gene_15 are up-regulated in TypeA
        assert signature.loc["gene_0"].idxmax() == "TypeA"
        assert signature.loc["gene_20"].idxmax() == "TypeB"
        assert signature.loc["gene_40"].idxmax() == "TypeC"

    def test_type_without_cells(self, inputs):
        with pytest.raises(DataError, match="TypeZ"):
            build_signature_matrix(
                inputs.ref_counts, inputs.ref_meta, inputs.cell_types + ["TypeZ"]
            )


@pytest.mark.unit
class TestNNLSEngine:
    def test_recovers_pure_spots(self, inputs):
        signature = build_signature_matrix(
            inputs.ref_counts, inputs.ref_meta, inputs.cell_types
        )
        # spots built from a single signature each
        from cardspatial.tools.deconvolution import CountMatrix

        pure = np.round(signature.to_numpy().T / 10)
        spatial = CountMatrix.from_observations(
            pure, ["pA", "pB", "pC"], list(signature.index)
        )
        coords = pd.DataFrame({"x": [0.0, 1.0, 2.0], "y": 0.0}, index=spatial.columns)

        proportions = deconvolve_nnls(
            spatial, coords, inputs.ref_counts, inputs.ref_meta, inputs.cell_types
        )
        assert proportions.loc["pA"].idxmax() == "TypeA"
        assert proportions.loc["pB"].idxmax() == "TypeB"
        assert proportions.loc["pC"].idxmax() == "TypeC"
        assert proportions.loc["pA", "TypeA"] > 0.9

    def test_through_contract(self, inputs):
        proportions = deconvolve(
            inputs.spatial_counts,
            inputs.spatial_coords,
            inputs.ref_counts,
            inputs.ref_meta,
            CELL_TYPE_COLUMN,
            SAMPLE_COLUMN,
            0,
            0,
            engine="nnls",
            target_sum=1e3,
        )
        assert proportions.shape == (10, 3)
        np.testing.assert_allclose(proportions.sum(axis=1), 1.0, atol=1e-6)
        assert (proportions >= 0).all().all()


# ========== CARD engine ==========

@pytest.mark.unit
def test_parse_grid_names():
    coords = _parse_grid_names(["4.1x8.3", "-2x10"])
    assert list(coords.columns) == ["x", "y"]
    np.testing.assert_allclose(coords.loc["4.1x8.3"], [4.1, 8.3])
    np.testing.assert_allclose(coords.loc["-2x10"], [-2.0, 10.0])


@pytest.mark.unit
def test_card_unavailable_raises_dependency_error(inputs, monkeypatch):
    from cardspatial.tools.deconvolution import card

    monkeypatch.setattr(
        card, "check_card_available", lambda: (False, "rpy2 is not installed")
    )
    with pytest.raises(DependencyError, match="rpy2 is not installed"):
        deconvolve_card(
            inputs.spatial_counts,
            inputs.spatial_coords,
            inputs.ref_counts,
            inputs.ref_meta,
            inputs.cell_types,
        )


@pytest.mark.requires_r
@pytest.mark.slow
def test_card_deconvolution(inputs):
    available, message = check_card_available()
    if not available:
        pytest.skip(message)

    proportions = deconvolve(
        inputs.spatial_counts,
        inputs.spatial_coords,
        inputs.ref_counts,
        inputs.ref_meta,
        CELL_TYPE_COLUMN,
        SAMPLE_COLUMN,
        0,
        0,
        engine="card",
    )
    assert proportions.shape[1] == 3
    assert len(proportions) <= 10
    np.testing.assert_allclose(proportions.sum(axis=1), 1.0, atol=1e-6)
