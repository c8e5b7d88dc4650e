"""
pytest configuration and global fixtures

This file defines shared fixtures and configuration for all tests.
"""
import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest


# ========== Pytest Configuration ==========

def pytest_configure(config):
    """Configure pytest markers"""
    config.addinivalue_line("markers", "unit: Unit tests (fast)")
    config.addinivalue_line("markers", "integration: Integration tests (slower)")
    config.addinivalue_line("markers", "slow: Slow tests (>5 seconds)")
    config.addinivalue_line("markers", "requires_r: Tests requiring R environment")


# ========== AnnData Fixtures ==========

@pytest.fixture
def spatial_adata():
    """10 spots x 50 genes with integer counts and top-left coordinates"""
    from tests.fixtures.mock_adata import create_spatial_adata
    return create_spatial_adata(n_spots=10, n_genes=50)


@pytest.fixture
def reference_adata():
    """30 cells x 50 genes, 3 cell types, 2 samples"""
    from tests.fixtures.mock_adata import create_reference_adata
    return create_reference_adata(n_cells=30, n_genes=50)


@pytest.fixture
def domain_adata():
    """200 spots x 300 genes with two spatial domains"""
    from tests.fixtures.mock_adata import create_domain_adata
    return create_domain_adata()


@pytest.fixture
def proportions():
    """Random 10 x 3 proportion table (rows on the simplex)"""
    from tests.fixtures.mock_adata import make_proportions
    return make_proportions()


@pytest.fixture
def coordinates():
    """Bottom-left coordinates matching the proportions fixture"""
    from tests.fixtures.mock_adata import make_coordinates
    return make_coordinates()


# ========== Engine Fakes ==========

class FakeEngine:
    """Deconvolution engine double that records its calls.

    Returns uniform proportions over the given cell types, or the result of
    ``fn`` when one is supplied.
    """

    __name__ = "fake"

    def __init__(self, fn=None):
        self.fn = fn
        self.calls = []

    def __call__(self, spatial_counts, spatial_coords, ref_counts, ref_meta, cell_types, **kwargs):
        self.calls.append(
            {
                "spatial_counts": spatial_counts,
                "spatial_coords": spatial_coords,
                "ref_counts": ref_counts,
                "ref_meta": ref_meta,
                "cell_types": list(cell_types),
                "kwargs": kwargs,
            }
        )
        if self.fn is not None:
            return self.fn(spatial_counts, cell_types)
        n = len(cell_types)
        return pd.DataFrame(
            np.full((spatial_counts.n_columns, n), 1.0 / n),
            index=spatial_counts.columns,
            columns=cell_types,
        )


@pytest.fixture
def fake_engine():
    """Fresh FakeEngine returning uniform proportions"""
    return FakeEngine()


# ========== Utility Fixtures ==========

@pytest.fixture(autouse=True)
def close_figures():
    """Close matplotlib figures created by a test"""
    yield
    plt.close("all")


@pytest.fixture
def temp_output_dir(tmp_path):
    """Create temporary output directory"""
    output_dir = tmp_path / "output"
    output_dir.mkdir()
    return str(output_dir)
