"""
Command-line interface tests
"""
import json
import os

import pytest
from click.testing import CliRunner

from cardspatial.__main__ import cli
from tests.fixtures.mock_adata import create_domain_adata, create_reference_adata


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def input_files(tmp_path):
    spatial_path = tmp_path / "spatial.h5ad"
    reference_path = tmp_path / "reference.h5ad"
    create_domain_adata().write_h5ad(spatial_path)
    create_reference_adata(n_cells=60, n_genes=300).write_h5ad(reference_path)
    return str(spatial_path), str(reference_path)


@pytest.fixture
def fast_config(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "spatial_path": "unused.h5ad",
                "reference_path": "unused.h5ad",
                "preprocessing": {"n_hvgs": 200, "n_pcs": 10, "compute_umap": False},
                "deconvolution": {"cell_type_key": "cell_type"},
                "run_markers": False,
                "run_spatial_genes": False,
                "save_figures": False,
            }
        )
    )
    return str(path)


def _run_args(input_files, output_dir, *extra):
    spatial_path, reference_path = input_files
    return [
        "run",
        "--spatial", spatial_path,
        "--reference", reference_path,
        "--engine", "nnls",
        "--min-gene-count", "0",
        "--min-spot-count", "0",
        "--output-dir", output_dir,
        "--log-level", "WARNING",
        *extra,
    ]


@pytest.mark.integration
@pytest.mark.slow
class TestRunCommand:
    def test_run(self, runner, input_files, fast_config, temp_output_dir):
        result = runner.invoke(
            cli, _run_args(input_files, temp_output_dir, "--config", fast_config)
        )
        assert result.exit_code == 0, result.output
        assert "Deconvolved 200 spots into 3 cell types with nnls" in result.output
        assert os.path.exists(os.path.join(temp_output_dir, "proportions.csv"))

    def test_options_override_config(self, runner, input_files, fast_config, temp_output_dir):
        result = runner.invoke(
            cli,
            _run_args(
                input_files,
                temp_output_dir,
                "--config", fast_config,
                "--ct-select", "TypeA",
                "--ct-select", "TypeB",
            ),
        )
        assert result.exit_code == 0, result.output
        with open(os.path.join(temp_output_dir, "summary.json")) as f:
            summary = json.load(f)
        assert summary["deconvolution"]["cell_types"] == ["TypeA", "TypeB"]
        assert summary["config"]["deconvolution"]["ct_select"] == ["TypeA", "TypeB"]

    def test_missing_column_exits(self, runner, input_files, fast_config, temp_output_dir):
        result = runner.invoke(
            cli,
            _run_args(
                input_files,
                temp_output_dir,
                "--config", fast_config,
                "--cell-type-column", "nope",
            ),
        )
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_missing_required_settings(self, runner, temp_output_dir):
        result = runner.invoke(cli, ["run", "--output-dir", temp_output_dir])
        assert result.exit_code == 2
        assert "Invalid configuration" in result.output

    def test_single_ct_select_rejected(self, runner, input_files, fast_config, temp_output_dir):
        result = runner.invoke(
            cli,
            _run_args(
                input_files, temp_output_dir, "--config", fast_config, "--ct-select", "TypeA"
            ),
        )
        assert result.exit_code == 2


@pytest.mark.integration
class TestDepsCommand:
    def test_json(self, runner):
        result = runner.invoke(cli, ["deps", "--format", "json"])
        assert result.exit_code == 0, result.output
        report = json.loads(result.stdout)
        assert "numpy" in report["critical_dependencies"]
        assert "CARD" in report["r_packages"]

    def test_table(self, runner):
        result = runner.invoke(cli, ["deps"])
        assert result.exit_code == 0
        assert "Critical Dependencies" in result.output
