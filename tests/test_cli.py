import json
import os

import numpy as np
import pandas as pd
from click.testing import CliRunner

from banksyscope.cli import main
from banksyscope.io import read_coordinates, read_expression
from banksyscope.logging_utils import close_logger
from conftest import make_tissue


def _write_inputs(tmp_path, n_cells=150):
    X, coords, _ = make_tissue(n_cells, 9)
    cells = [f"c{i}" for i in range(n_cells)]
    expr = pd.DataFrame(X, index=cells, columns=[f"g{j}" for j in range(X.shape[1])])
    expr_path = tmp_path / "expr.csv"
    expr.to_csv(expr_path)
    # shuffled rows: coordinates are aligned by cell ID
    order = np.random.default_rng(0).permutation(n_cells)
    xy = pd.DataFrame({"cell_id": np.array(cells)[order], "x": coords[order, 0], "y": coords[order, 1]})
    coords_path = tmp_path / "coords.csv"
    xy.to_csv(coords_path, index=False)
    return expr_path, coords_path, X, coords


def test_read_helpers(tmp_path):
    expr_path, coords_path, X, coords = _write_inputs(tmp_path)
    M, cells, genes = read_expression(str(expr_path))
    np.testing.assert_allclose(M, X)
    assert cells[0] == "c0" and genes[-1] == "g8"
    df = read_coordinates(str(coords_path), ["x", "y"], index_col="cell_id")
    np.testing.assert_allclose(df.loc[cells].to_numpy(), coords)


def test_read_coordinates_missing_columns(tmp_path):
    p = tmp_path / "bad.csv"
    pd.DataFrame({"x": [0.0], "z": [1.0]}).to_csv(p, index=False)
    try:
        read_coordinates(str(p), ["x", "y"])
    except ValueError as e:
        assert "['y']" in str(e)
    else:
        raise AssertionError("expected ValueError")


def test_cli_end_to_end(tmp_path):
    expr_path, coords_path, _, _ = _write_inputs(tmp_path)
    out = tmp_path / "out"
    runner = CliRunner()
    res = runner.invoke(main, [
        "--expression", str(expr_path),
        "--coords", str(coords_path),
        "--cell-id-column", "cell_id",
        "--out-dir", str(out),
        "--k-geom", "6", "--k-geom", "10",
        "--lambda", "0.0", "--lambda", "0.2",
        "--resolution", "1.0",
        "--k-neighbors", "10",
        "--n-pcs", "8",
        "--seed", "1000",
        "--n-jobs", "1",
        "--log-level", "WARNING",
    ])
    close_logger()
    assert res.exit_code == 0, res.output
    labels = pd.read_csv(out / "labels.csv", index_col="cell_id")
    assert labels.shape == (150, 2)
    assert labels.index[0] == "c0"
    cmp_ = pd.read_csv(out / "comparison_ari.csv", index_col=0)
    assert np.all(np.diag(cmp_.to_numpy()) == 1.0)
    with open(out / "run_state.json", encoding="utf-8") as f:
        state = json.load(f)
    assert state["grid"]["seed"] == 1000
    assert state["failed"] == {}
    assert os.path.exists(out / "banksyscope.log")


def test_cli_rejects_bad_lambda(tmp_path):
    expr_path, coords_path, _, _ = _write_inputs(tmp_path, 40)
    res = CliRunner().invoke(main, [
        "--expression", str(expr_path),
        "--coords", str(coords_path),
        "--cell-id-column", "cell_id",
        "--out-dir", str(tmp_path / "out"),
        "--lambda", "2.0",
    ])
    close_logger()
    assert res.exit_code == 2
    assert "lambda" in res.output
