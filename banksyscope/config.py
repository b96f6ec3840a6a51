import os
import copy
import yaml
import json
import hashlib
from typing import Any, Dict, Optional, Tuple

from .exceptions import ConfigurationError


def _workspace_root() -> str:
    return os.path.dirname(os.path.dirname(__file__))


def _params_path() -> str:
    env = os.environ.get("BANKSYSCOPE_PARAMS", "").strip()
    if env:
        return env
    root = _workspace_root()
    return os.path.join(root, 'config', 'params.yaml')


DEFAULT_PARAMS: Dict[str, Any] = {
    'grid': {
        'k_geom': [15, 30],
        'use_harmonic': True,
        'lambdas': [0.2],
        'k_neighbors': 50,
        'resolutions': [1.0],
        'algorithm': 'leiden',
        'seed': 1234,
    },
    'features': {
        'decay': 'scaled_gaussian',
        'center_harmonics': True,
    },
    'reduce': {
        'n_pcs': 20,
        'svd_solver': 'auto',
        'exact_max_cells': 20000,
        'compute_umap': False,
        'umap_n_neighbors': 15,
        'umap_min_dist': 0.3,
    },
    'cluster': {
        'snn_prune': 1.0 / 15.0,
        'leiden_flavor': 'leidenalg',
        'leiden_n_iterations': -1,
        'kmeans_n_init': 10,
        'kmeans_max_iter': 300,
        'mclust_covariance_type': 'full',
        'mclust_max_iter': 200,
        'mclust_reg_covar': 1e-6,
    },
    'harmonize': {
        'min_overlap': 0.0,
    },
    'compare': {
        'metric': 'ari',
    },
    'runtime': {
        'n_jobs': 1,
        'backend': None,
    },
    'io': {
        'final_format': 'csv',
        'h5ad_compression': 'lzf',
        'write_h5ad': False,
        'log_name': 'banksyscope',
        'log_max_mb': 5,
    },
}


def _deep_update(base: Dict[str, Any], upd: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in upd.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _deep_update(base[k], v)
        else:
            base[k] = v
    return base


def load_params_yaml(path: Optional[str] = None) -> Dict[str, Any]:
    """Load params YAML (explicit path, `$BANKSYSCOPE_PARAMS` or `config/params.yaml`).

    The file is deep-merged over `DEFAULT_PARAMS`; a missing default file yields
    the defaults. An explicitly requested file that cannot be read is an error.
    """
    cfg = copy.deepcopy(DEFAULT_PARAMS)
    p = path or _params_path()
    if not os.path.isfile(p):
        if path:
            raise ConfigurationError(f"Config file not found: {path}")
        return cfg
    with open(p, 'r', encoding='utf-8') as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Config file {p} must contain a mapping, got {type(loaded).__name__}")
    return _deep_update(cfg, loaded)


def section(cfg: Optional[Dict[str, Any]], name: str) -> Dict[str, Any]:
    """Return one config section, falling back to the defaults."""
    base = copy.deepcopy(DEFAULT_PARAMS.get(name, {}))
    if cfg and isinstance(cfg.get(name), dict):
        base.update(cfg[name])
    return base


# Map config keys to pipeline stages; a stage fingerprint changes only when
# one of its keys changes.
STAGE_PARAM_MAP: Dict[str, Tuple[str, ...]] = {
    'features': (
        'grid.k_geom', 'grid.use_harmonic', 'features.decay', 'features.center_harmonics',
    ),
    'assemble': (
        'grid.lambdas', 'grid.use_harmonic',
    ),
    'reduce': (
        'grid.seed', 'reduce.n_pcs', 'reduce.svd_solver', 'reduce.exact_max_cells',
        'reduce.compute_umap', 'reduce.umap_n_neighbors', 'reduce.umap_min_dist',
    ),
    'cluster': (
        'grid.k_neighbors', 'grid.resolutions', 'grid.algorithm', 'grid.seed',
        'cluster.snn_prune', 'cluster.leiden_flavor', 'cluster.leiden_n_iterations',
        'cluster.kmeans_n_init', 'cluster.kmeans_max_iter',
        'cluster.mclust_covariance_type', 'cluster.mclust_max_iter', 'cluster.mclust_reg_covar',
    ),
    'harmonize': (
        'harmonize.min_overlap',
    ),
}


def _get_by_path(cfg: Dict[str, Any], dotted: str) -> Any:
    cur: Any = cfg
    for part in dotted.split('.'):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return None
    return cur


def _subset(cfg: Dict[str, Any], keys: Tuple[str, ...]) -> Dict[str, Any]:
    return {k: _get_by_path(cfg, k) for k in keys}


def stage_config_subset(cfg: Dict[str, Any], stage: str) -> Dict[str, Any]:
    return _subset(cfg, STAGE_PARAM_MAP.get(stage, ()))


def _digest(sub: Dict[str, Any]) -> str:
    payload = json.dumps(sub, ensure_ascii=False, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def fingerprint_stage(cfg: Dict[str, Any], stage: str) -> str:
    return _digest(stage_config_subset(cfg, stage))


def fingerprint_stages(cfg: Dict[str, Any]) -> Dict[str, str]:
    return {s: fingerprint_stage(cfg, s) for s in STAGE_PARAM_MAP}


# Settings the cached embeddings and labelings of a GridResult depend on.
# lambda, use_harmonic, k_neighbors, resolution and algorithm are left out:
# they key the cache entries themselves, so a grid may grow along them.
RESUME_PARAM_KEYS: Tuple[str, ...] = (
    'grid.k_geom', 'grid.seed', 'features.decay', 'features.center_harmonics',
    'reduce.n_pcs', 'reduce.svd_solver', 'reduce.exact_max_cells',
    'reduce.compute_umap', 'reduce.umap_n_neighbors', 'reduce.umap_min_dist',
    'cluster.snn_prune', 'cluster.leiden_flavor', 'cluster.leiden_n_iterations',
    'cluster.kmeans_n_init', 'cluster.kmeans_max_iter',
    'cluster.mclust_covariance_type', 'cluster.mclust_max_iter', 'cluster.mclust_reg_covar',
)


def fingerprint_resume(cfg: Dict[str, Any]) -> str:
    return _digest(_subset(cfg, RESUME_PARAM_KEYS))
