"""
test_cli.py - Tests for the command line interface

Uses typer's CliRunner; every command runs inside a temporary directory.
"""

import pandas as pd
from typer.testing import CliRunner

from temporal_factor_lab import __version__
from temporal_factor_lab.cli import app

runner = CliRunner()


def _generate(tmp_path):
    result = runner.invoke(app, [
        "generate", "--features", "20", "--time-points", "4", "--replicates", "3",
        "--output-dir", str(tmp_path), "--seed", "0",
    ])
    assert result.exit_code == 0, result.output
    return tmp_path / "matrix.csv", tmp_path / "times.csv"


class TestGenerate:

    def test_writes_matrix_and_times(self, tmp_path):
        matrix, times = _generate(tmp_path)

        frame = pd.read_csv(matrix, index_col=0)
        assert frame.shape == (20, 12)
        covariates = pd.read_csv(times)
        assert list(covariates.columns) == ["sample", "time"]
        assert covariates["sample"].tolist() == frame.columns.tolist()


class TestFit:

    def test_fit_and_export_ranking(self, tmp_path):
        matrix, times = _generate(tmp_path)
        out = tmp_path / "ranking.csv"

        result = runner.invoke(app, [
            "fit", str(matrix), str(times), "--factors", "2",
            "--convergence", "fast", "--seed", "0", "--top-n", "5", "--output", str(out),
        ])

        assert result.exit_code == 0, result.output
        assert "Factor1" in result.output
        ranking = pd.read_csv(out)
        assert list(ranking.columns) == ["factor", "rank", "feature", "loading"]
        assert len(ranking) == 10

    def test_missing_covariate_fails(self, tmp_path):
        matrix, times = _generate(tmp_path)
        covariates = pd.read_csv(times)
        covariates.iloc[1:].to_csv(times, index=False)

        result = runner.invoke(app, ["fit", str(matrix), str(times), "--factors", "2"])

        assert result.exit_code == 1
        assert "No covariate value" in result.output

    def test_too_many_factors_fails(self, tmp_path):
        matrix, times = _generate(tmp_path)
        result = runner.invoke(app, ["fit", str(matrix), str(times), "--factors", "12"])
        assert result.exit_code == 1
        assert "at least" in result.output

    def test_missing_file(self, tmp_path):
        result = runner.invoke(app, ["fit", str(tmp_path / "nope.csv"), str(tmp_path / "t.csv")])
        assert result.exit_code == 1
        assert "File not found" in result.output


class TestVersion:

    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output
