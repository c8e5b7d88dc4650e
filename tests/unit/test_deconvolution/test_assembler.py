"""
Test input assembly (cardspatial.tools.deconvolution.base)
"""
import logging

import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from cardspatial.tools.deconvolution.base import (
    CELL_TYPE_COLUMN,
    DEFAULT_SAMPLE,
    SAMPLE_COLUMN,
    CountMatrix,
    ReferenceMetadataSchema,
    assemble_inputs,
    flip_coordinates,
)
from cardspatial.utils.exceptions import (
    DataCompatibilityError,
    DataError,
    MissingFieldError,
    ParameterError,
)
from tests.fixtures.mock_adata import create_reference_adata, create_spatial_adata


# ========== CountMatrix Tests ==========

@pytest.mark.unit
class TestCountMatrix:
    def test_from_observations_transposes(self):
        X = np.array([[1, 0, 2], [3, 4, 0]])
        counts = CountMatrix.from_observations(X, ["s1", "s2"], ["g1", "g2", "g3"])
        assert counts.shape == (3, 2)
        assert counts.matrix.format == "csc"
        np.testing.assert_array_equal(counts.gene_totals(), [4, 4, 2])
        np.testing.assert_array_equal(counts.column_totals(), [3, 7])

    def test_shape_mismatch(self):
        with pytest.raises(DataCompatibilityError):
            CountMatrix(sparse.csc_matrix(np.ones((2, 2))), pd.Index(["g"]), pd.Index(["a", "b"]))

    def test_subset_and_reorder(self):
        X = np.arange(6).reshape(2, 3)
        counts = CountMatrix.from_observations(X, ["s1", "s2"], ["g1", "g2", "g3"])
        sub = counts.subset(genes=np.array([True, False, True]), columns=np.array([False, True]))
        assert list(sub.genes) == ["g1", "g3"]
        assert list(sub.columns) == ["s2"]
        np.testing.assert_array_equal(sub.matrix.toarray(), [[3], [5]])

        reordered = counts.reorder_genes(["g3", "g1"])
        assert list(reordered.to_frame().index) == ["g3", "g1"]
        with pytest.raises(DataCompatibilityError):
            counts.reorder_genes(["g9"])

    def test_duplicate_columns_rejected(self):
        with pytest.raises(DataCompatibilityError, match="column names are duplicated"):
            CountMatrix.from_observations(np.ones((2, 3)), ["c1", "c1"], ["g1", "g2", "g3"])

    def test_duplicate_genes_rejected(self):
        with pytest.raises(DataCompatibilityError, match="gene names are duplicated"):
            CountMatrix.from_observations(np.ones((2, 2)), ["c1", "c2"], ["g1", "g1"])


# ========== Coordinates Tests ==========

@pytest.mark.unit
class TestFlipCoordinates:
    def test_top_left_negates_y(self):
        coords = pd.DataFrame({"x": [1.0, 2.0], "y": [3.0, -4.0]}, index=["a", "b"])
        flipped = flip_coordinates(coords, "top-left")
        assert list(flipped["x"]) == [1.0, 2.0]
        assert list(flipped["y"]) == [-3.0, 4.0]
        # the input is left untouched
        assert list(coords["y"]) == [3.0, -4.0]

    def test_bottom_left_unchanged(self):
        coords = pd.DataFrame({"x": [1.0], "y": [3.0]}, index=["a"])
        pd.testing.assert_frame_equal(flip_coordinates(coords, "bottom-left"), coords)

    def test_unknown_origin(self):
        coords = pd.DataFrame({"x": [1.0], "y": [3.0]})
        with pytest.raises(ParameterError):
            flip_coordinates(coords, "center")


# ========== Metadata Schema Tests ==========

@pytest.mark.unit
class TestReferenceMetadataSchema:
    def test_normalizes_columns(self):
        frame = pd.DataFrame(
            {"ct": ["A", "B"], "donor": [1, 2], "other": [0, 0]}, index=["c1", "c2"]
        )
        meta = ReferenceMetadataSchema("ct", "donor").validate(frame)
        assert list(meta.columns) == [CELL_TYPE_COLUMN, SAMPLE_COLUMN]
        assert list(meta[SAMPLE_COLUMN]) == ["1", "2"]

    def test_default_sample(self):
        frame = pd.DataFrame({"ct": ["A", "B"]}, index=["c1", "c2"])
        meta = ReferenceMetadataSchema("ct").validate(frame)
        assert (meta[SAMPLE_COLUMN] == DEFAULT_SAMPLE).all()

    def test_missing_cell_type_column(self):
        with pytest.raises(MissingFieldError, match="not_there"):
            ReferenceMetadataSchema("not_there").validate(pd.DataFrame({"ct": ["A"]}))

    def test_missing_sample_column(self):
        with pytest.raises(MissingFieldError):
            ReferenceMetadataSchema("ct", "donor").validate(pd.DataFrame({"ct": ["A"]}))

    def test_missing_labels(self):
        frame = pd.DataFrame({"ct": ["A", None]})
        with pytest.raises(DataError, match="no label"):
            ReferenceMetadataSchema("ct").validate(frame)


# ========== assemble_inputs Tests ==========

@pytest.mark.unit
class TestAssembleInputs:
    def test_four_objects(self, spatial_adata, reference_adata):
        inputs = assemble_inputs(spatial_adata, reference_adata, "cell_type", "sample")

        assert inputs.spatial_counts.shape == (50, 10)
        assert inputs.ref_counts.shape == (50, 30)
        assert list(inputs.spatial_coords.columns) == ["x", "y"]
        assert inputs.spatial_coords.index.equals(inputs.spatial_counts.columns)
        assert inputs.ref_meta.index.equals(inputs.ref_counts.columns)
        assert list(inputs.ref_meta.columns) == [CELL_TYPE_COLUMN, SAMPLE_COLUMN]
        assert inputs.cell_types == ["TypeA", "TypeB", "TypeC"]
        assert inputs.spatial_counts.genes.equals(inputs.ref_counts.genes)

    def test_counts_match_source(self, spatial_adata, reference_adata):
        inputs = assemble_inputs(spatial_adata, reference_adata, "cell_type")
        np.testing.assert_array_equal(
            inputs.spatial_counts.matrix.toarray(), spatial_adata.X.toarray().T
        )

    def test_coordinates_flipped(self, spatial_adata, reference_adata):
        inputs = assemble_inputs(spatial_adata, reference_adata, "cell_type")
        source = spatial_adata.obsm["spatial"]
        np.testing.assert_array_equal(inputs.spatial_coords["x"], source[:, 0])
        np.testing.assert_array_equal(inputs.spatial_coords["y"], -source[:, 1])

    def test_bottom_left_coordinates_kept(self, spatial_adata, reference_adata):
        inputs = assemble_inputs(
            spatial_adata, reference_adata, "cell_type", coordinate_origin="bottom-left"
        )
        np.testing.assert_array_equal(
            inputs.spatial_coords["y"], spatial_adata.obsm["spatial"][:, 1]
        )

    def test_missing_cell_type_column_first(self, reference_adata):
        # spatial data is unusable too; the schema error must win
        spatial = create_spatial_adata()
        del spatial.obsm["spatial"]
        with pytest.raises(MissingFieldError):
            assemble_inputs(spatial, reference_adata, "celltype_missing")

    def test_ct_select(self, spatial_adata, reference_adata):
        inputs = assemble_inputs(
            spatial_adata, reference_adata, "cell_type", ct_select=["TypeC", "TypeA"]
        )
        assert inputs.n_cell_types == 2
        assert set(inputs.cell_types) == {"TypeA", "TypeC"}
        assert inputs.ref_counts.n_columns == 20
        assert set(inputs.ref_meta[CELL_TYPE_COLUMN]) == {"TypeA", "TypeC"}

    def test_ct_select_unknown(self, spatial_adata, reference_adata):
        with pytest.raises(ParameterError, match="TypeZ"):
            assemble_inputs(
                spatial_adata, reference_adata, "cell_type", ct_select=["TypeA", "TypeZ"]
            )

    def test_single_cell_type_rejected(self, spatial_adata):
        reference = create_reference_adata(cell_types=("Only",))
        with pytest.raises(DataError, match="at least 2 cell types"):
            assemble_inputs(spatial_adata, reference, "cell_type")

    def test_external_metadata(self, spatial_adata, reference_adata):
        meta = pd.DataFrame(
            {"label": ["X", "Y"] * 15}, index=reference_adata.obs_names[::-1]
        )
        inputs = assemble_inputs(
            spatial_adata, reference_adata, "label", reference_metadata=meta
        )
        assert inputs.cell_types == ["Y", "X"]
        assert inputs.ref_meta.index.equals(inputs.ref_counts.columns)

    def test_external_metadata_missing_cells(self, spatial_adata, reference_adata):
        meta = pd.DataFrame({"label": ["X", "Y"]}, index=["cell_0", "cell_1"])
        with pytest.raises(DataCompatibilityError):
            assemble_inputs(spatial_adata, reference_adata, "label", reference_metadata=meta)

    def test_partial_gene_overlap_warns(self, reference_adata, caplog):
        spatial = create_spatial_adata(n_genes=60)
        with caplog.at_level(logging.WARNING):
            inputs = assemble_inputs(spatial, reference_adata, "cell_type")
        assert inputs.n_genes == 50
        assert "dropped 10 spatial-only" in caplog.text

    def test_no_gene_overlap(self, reference_adata):
        spatial = create_spatial_adata(gene_prefix="other")
        with pytest.raises(DataCompatibilityError, match="Insufficient common genes"):
            assemble_inputs(spatial, reference_adata, "cell_type")

    def test_gene_overlap_below_floor(self, reference_adata):
        spatial = create_spatial_adata(n_genes=8)
        with pytest.raises(DataCompatibilityError):
            assemble_inputs(spatial, reference_adata, "cell_type", min_common_genes=10)
        inputs = assemble_inputs(spatial, reference_adata, "cell_type", min_common_genes=5)
        assert inputs.n_genes == 8

    def test_spatial_counts_must_be_integers(self, spatial_adata, reference_adata):
        spatial_adata.X = spatial_adata.X.toarray() * 0.5 + 0.25
        with pytest.raises(DataError):
            assemble_inputs(spatial_adata, reference_adata, "cell_type")

    def test_raw_counts_preferred(self, spatial_adata, reference_adata):
        expected = spatial_adata.X.toarray().T
        spatial_adata.layers["counts"] = spatial_adata.X.copy()
        spatial_adata.X = np.log1p(spatial_adata.X.toarray())
        inputs = assemble_inputs(spatial_adata, reference_adata, "cell_type")
        np.testing.assert_array_equal(inputs.spatial_counts.matrix.toarray(), expected)

    def test_normalized_reference_accepted(self, spatial_adata, reference_adata, caplog):
        reference_adata.X = reference_adata.X.multiply(0.5).tocsr()
        with caplog.at_level(logging.WARNING):
            inputs = assemble_inputs(spatial_adata, reference_adata, "cell_type")
        assert inputs.ref_counts.n_columns == 30
        assert "non-integer data" in caplog.text

    def test_missing_coordinates(self, reference_adata):
        spatial = create_spatial_adata()
        del spatial.obsm["spatial"]
        with pytest.raises(DataCompatibilityError):
            assemble_inputs(spatial, reference_adata, "cell_type")

    def test_non_finite_coordinates(self, spatial_adata, reference_adata):
        spatial_adata.obsm["spatial"][0, 1] = np.nan
        with pytest.raises(DataCompatibilityError, match="non-finite"):
            assemble_inputs(spatial_adata, reference_adata, "cell_type")

    def test_duplicate_reference_barcodes(self, spatial_adata, reference_adata):
        reference_adata.obs_names = [f"cell_{i % 15}" for i in range(reference_adata.n_obs)]
        with pytest.raises(DataCompatibilityError, match="15 duplicated cell barcodes"):
            assemble_inputs(spatial_adata, reference_adata, "cell_type", "sample")

    def test_raw_with_extra_genes(self, spatial_adata, reference_adata):
        full = spatial_adata.copy()
        spatial_adata.raw = full
        trimmed = spatial_adata[:, :20].copy()
        trimmed.X = np.log1p(trimmed.X.toarray())
        inputs = assemble_inputs(trimmed, reference_adata, "cell_type")
        assert inputs.n_genes == 50
        np.testing.assert_array_equal(
            inputs.spatial_counts.matrix.toarray(), full.X.toarray().T
        )
