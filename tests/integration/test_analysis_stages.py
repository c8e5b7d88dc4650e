"""
Integration tests for the scanpy/squidpy analysis stages

Runs preprocessing, marker genes and Moran's I on a synthetic slide with a
left and a right spatial domain.
"""
import pytest

from cardspatial.models.data import (
    PreprocessingParameters,
    SpatialVariableGenesParameters,
)
from cardspatial.tools.differential import find_marker_genes
from cardspatial.tools.preprocessing import LOGNORM_LAYER, preprocess_data
from cardspatial.tools.spatial_genes import find_spatially_variable_genes
from cardspatial.utils.exceptions import DataError, MissingFieldError

PARAMS = PreprocessingParameters(n_hvgs=200, n_pcs=10, compute_umap=False)


@pytest.fixture
def processed(domain_adata):
    adata, _ = preprocess_data(domain_adata, PARAMS)
    return adata


@pytest.mark.integration
@pytest.mark.slow
class TestPreprocessing:
    def test_outputs(self, domain_adata):
        adata, result = preprocess_data(domain_adata, PARAMS)

        assert result.n_cells == adata.n_obs == 200
        assert result.n_hvgs == int(adata.var["highly_variable"].sum())
        assert result.clusters == adata.obs["leiden"].nunique()
        assert "counts" in adata.layers
        assert LOGNORM_LAYER in adata.layers
        assert "X_pca" in adata.obsm
        assert adata.raw is not None
        assert result.qc_metrics["n_mt_genes"] == 2

    def test_input_untouched(self, domain_adata):
        before = domain_adata.X.copy()
        preprocess_data(domain_adata, PARAMS)
        assert (domain_adata.X != before).nnz == 0
        assert "leiden" not in domain_adata.obs

    def test_median_target_sum(self, domain_adata):
        _, result = preprocess_data(domain_adata, PARAMS)
        totals = domain_adata.X.sum(axis=1)
        assert result.normalize_target_sum > 0
        assert totals.min() <= result.normalize_target_sum <= totals.max()

    def test_negative_values_rejected(self, domain_adata):
        domain_adata.X = domain_adata.X.toarray() - 5
        with pytest.raises(DataError, match="non-negative"):
            preprocess_data(domain_adata, PARAMS)

    def test_umap(self, domain_adata):
        params = PARAMS.model_copy(update={"compute_umap": True})
        adata, _ = preprocess_data(domain_adata, params)
        assert adata.obsm["X_umap"].shape == (200, 2)


@pytest.mark.integration
@pytest.mark.slow
class TestMarkerGenes:
    def test_domain_markers(self, processed):
        adata, result = find_marker_genes(processed, group_key="domain", n_top_genes=10)

        assert result.groups == ["left", "right"]
        assert "rank_genes_groups" in adata.uns
        left_block = {f"gene_{j}" for j in range(30)}
        right_block = {f"gene_{j}" for j in range(30, 60)}
        assert set(result.top_genes["left"]) <= left_block
        assert set(result.top_genes["right"]) <= right_block
        assert len(result.table) == 20
        assert {"group", "rank", "gene", "score"} <= set(result.table[0])

    def test_small_groups_skipped(self, processed):
        processed.obs["group"] = ["a"] * 99 + ["b"] * 99 + ["c"] * 2
        _, result = find_marker_genes(processed, group_key="group", min_cells=3)
        assert result.skipped_groups == ["c"]
        assert result.groups == ["a", "b"]

    def test_single_group_rejected(self, processed):
        processed.obs["group"] = "a"
        with pytest.raises(DataError, match="at least 2 groups"):
            find_marker_genes(processed, group_key="group")

    def test_missing_key(self, processed):
        with pytest.raises(MissingFieldError):
            find_marker_genes(processed, group_key="nope")


@pytest.mark.integration
@pytest.mark.slow
class TestSpatialGenes:
    def test_domain_genes_detected(self, processed):
        adata, result = find_spatially_variable_genes(
            processed, SpatialVariableGenesParameters(test_only_hvg=False)
        )

        assert "moranI" in adata.uns
        assert result.n_genes_analyzed == len(result.gene_statistics)
        top = set(result.spatial_genes[:20])
        assert top <= {f"gene_{j}" for j in range(60)}
        assert "MT-CO1" not in result.gene_statistics
        assert "MT-ND1" not in result.gene_statistics

    def test_ranked_by_moran(self, processed):
        _, result = find_spatially_variable_genes(
            processed, SpatialVariableGenesParameters(test_only_hvg=False, n_top_genes=5)
        )
        stats = [result.gene_statistics[g] for g in result.spatial_genes]
        assert len(stats) <= 5
        assert stats == sorted(stats, reverse=True)

    def test_keep_mt_genes(self, processed):
        params = SpatialVariableGenesParameters(test_only_hvg=False, filter_mt_genes=False)
        _, result = find_spatially_variable_genes(processed, params)
        assert "MT-CO1" in result.gene_statistics

    def test_max_genes(self, processed):
        params = SpatialVariableGenesParameters(test_only_hvg=False, max_genes=50)
        _, result = find_spatially_variable_genes(processed, params)
        assert result.n_genes_analyzed <= 50
