import pytest

from banksyscope.config import (
    DEFAULT_PARAMS,
    fingerprint_stage,
    fingerprint_stages,
    load_params_yaml,
    section,
)
from banksyscope.exceptions import ConfigurationError
from banksyscope.pipeline import GridSpec


def test_yaml_overrides_are_deep_merged(tmp_path):
    p = tmp_path / "params.yaml"
    p.write_text("reduce:\n  n_pcs: 12\ngrid:\n  lambdas: [0.0, 0.5]\n", encoding="utf-8")
    cfg = load_params_yaml(str(p))
    assert cfg["reduce"]["n_pcs"] == 12
    assert cfg["reduce"]["svd_solver"] == DEFAULT_PARAMS["reduce"]["svd_solver"]
    assert cfg["grid"]["lambdas"] == [0.0, 0.5]
    assert cfg["grid"]["k_neighbors"] == DEFAULT_PARAMS["grid"]["k_neighbors"]


def test_env_var_points_to_params(tmp_path, monkeypatch):
    p = tmp_path / "alt.yaml"
    p.write_text("compare:\n  metric: nmi\n", encoding="utf-8")
    monkeypatch.setenv("BANKSYSCOPE_PARAMS", str(p))
    assert load_params_yaml()["compare"]["metric"] == "nmi"


def test_missing_or_malformed_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_params_yaml(str(tmp_path / "missing.yaml"))
    p = tmp_path / "list.yaml"
    p.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="mapping"):
        load_params_yaml(str(p))


def test_defaults_are_not_mutated():
    cfg = load_params_yaml()
    cfg["reduce"]["n_pcs"] = 99
    assert DEFAULT_PARAMS["reduce"]["n_pcs"] == 20
    assert section(None, "reduce")["n_pcs"] == 20


def test_fingerprints_change_only_for_their_stage():
    a = load_params_yaml()
    b = load_params_yaml()
    b["cluster"]["snn_prune"] = 0.1
    assert fingerprint_stage(a, "reduce") == fingerprint_stage(b, "reduce")
    assert fingerprint_stage(a, "cluster") != fingerprint_stage(b, "cluster")
    assert set(fingerprint_stages(a)) == {"features", "assemble", "reduce", "cluster", "harmonize"}


def test_grid_from_config_with_overrides():
    cfg = load_params_yaml()
    g = GridSpec.from_config(cfg, lambdas=[0.0, 0.2], seed=1000, algorithm=None)
    assert g.lambda_values == [0.0, 0.2]
    assert g.seed == 1000
    assert g.algorithms == [cfg["grid"]["algorithm"]]
