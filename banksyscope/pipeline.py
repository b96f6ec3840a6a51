from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union
from collections import OrderedDict
from dataclasses import dataclass
import itertools
import logging
import os
import time

import numpy as np
import pandas as pd
import anndata as ad
from joblib import Parallel, delayed

from .assemble import AugmentedMatrix, assemble_grid, check_lambda
from .cluster import CLUSTERERS, ClusterParams, get_clusterer
from .compare import compare_labelings
from .config import fingerprint_resume, fingerprint_stages, load_params_yaml, section
from .exceptions import ConfigurationError, InputMismatchError
from .harmonize import HarmonizationReport, harmonize_labelings
from .neighbors import (
    DECAY_KERNELS,
    FeatureMatrix,
    NeighborCache,
    as_coordinates,
    as_expression,
    check_aligned,
    compute_neighborhood_features,
    normalize_k_geom,
)
from .reduce import Embedding, reduce_matrix
from .seeding import SALT_CLUSTER, derive_seed
from .types import COUNT_ALGORITHMS, STATUS_FAILED, ClusterLabeling, ParameterCombo

_log = logging.getLogger("banksyscope")


def _as_list(v) -> list:
    if isinstance(v, (str, bytes)) or np.isscalar(v):
        return [v]
    return list(v)


def _unique(seq: Sequence) -> list:
    return list(OrderedDict.fromkeys(seq))


@dataclass
class GridSpec:
    """Parameter grid; `combos()` is the explicit cross-product."""
    k_geom: Union[int, Sequence[int]] = (15, 30)
    use_harmonic: Union[bool, Sequence[bool]] = True
    lambdas: Union[float, Sequence[float]] = (0.2,)
    k_neighbors: Union[int, Sequence[int]] = 50
    resolutions: Union[float, Sequence[float]] = (1.0,)
    algorithm: Union[str, Sequence[str]] = 'leiden'
    seed: int = 1234

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]] = None, **overrides) -> 'GridSpec':
        g = section(cfg, 'grid')
        g.update({k: v for k, v in overrides.items() if v is not None})
        return cls(
            k_geom=g['k_geom'],
            use_harmonic=g['use_harmonic'],
            lambdas=g['lambdas'],
            k_neighbors=g['k_neighbors'],
            resolutions=g['resolutions'],
            algorithm=g['algorithm'],
            seed=int(g['seed']),
        )

    @property
    def k_geom_tuple(self) -> Tuple[int, ...]:
        return normalize_k_geom(self.k_geom)

    @property
    def harmonic_options(self) -> List[bool]:
        return _unique(bool(h) for h in _as_list(self.use_harmonic))

    @property
    def lambda_values(self) -> List[float]:
        return _unique(float(l) for l in _as_list(self.lambdas))

    @property
    def k_neighbor_values(self) -> List[int]:
        return _unique(int(k) for k in _as_list(self.k_neighbors))

    @property
    def resolution_values(self) -> List[float]:
        return _unique(float(r) for r in _as_list(self.resolutions))

    @property
    def algorithms(self) -> List[str]:
        return _unique(str(a).lower() for a in _as_list(self.algorithm))

    def validate(self) -> 'GridSpec':
        normalize_k_geom(self.k_geom)
        if not self.harmonic_options:
            raise ConfigurationError("use_harmonic must be a flag or a non-empty list of flags")
        if not self.lambda_values:
            raise ConfigurationError("At least one lambda value is required")
        for l in self.lambda_values:
            check_lambda(l)
        ks = self.k_neighbor_values
        if not ks or any(k <= 0 for k in ks):
            raise ConfigurationError(f"k_neighbors must be positive integers, got {ks}")
        res = self.resolution_values
        if not res or any((not np.isfinite(r)) or r <= 0 for r in res):
            raise ConfigurationError(f"resolutions must be positive, got {res}")
        algos = self.algorithms
        if not algos:
            raise ConfigurationError("At least one clustering algorithm is required")
        for a in algos:
            if a not in CLUSTERERS:
                raise ConfigurationError(f"Unknown clustering algorithm '{a}'; choose from {sorted(CLUSTERERS)}")
            if a in COUNT_ALGORITHMS and any(not float(r).is_integer() for r in res):
                raise ConfigurationError(f"{a} reads resolutions as cluster counts; got non-integer values {res}")
        if int(self.seed) < 0:
            raise ConfigurationError(f"seed must be non-negative, got {self.seed}")
        return self

    def combos(self) -> List[ParameterCombo]:
        kg = self.k_geom_tuple
        return [
            ParameterCombo(kg, h, lam, k, r, a, int(self.seed))
            for h, lam, k, a, r in itertools.product(
                self.harmonic_options, self.lambda_values, self.k_neighbor_values,
                self.algorithms, self.resolution_values,
            )
        ]

    def to_config(self) -> Dict[str, Any]:
        return {
            'k_geom': list(self.k_geom_tuple),
            'use_harmonic': self.harmonic_options,
            'lambdas': self.lambda_values,
            'k_neighbors': self.k_neighbor_values,
            'resolutions': self.resolution_values,
            'algorithm': self.algorithms,
            'seed': int(self.seed),
        }


class GridResult:
    """Embeddings keyed by (lambda, use_harmonic); labelings keyed by ParameterCombo."""

    def __init__(self, n_cells: int, cell_names: Optional[Sequence[str]] = None):
        self.n_cells = int(n_cells)
        self.cell_names = [str(c) for c in cell_names] if cell_names is not None else None
        self.embeddings: Dict[Tuple[float, bool], Embedding] = {}
        self.labelings: Dict[ParameterCombo, ClusterLabeling] = {}
        self.fingerprints: Dict[str, str] = {}
        # settings every cached embedding and labeling was computed with
        self.resume_fingerprint: Optional[str] = None
        self.harmonization: Optional[HarmonizationReport] = None

    def __getitem__(self, combo: ParameterCombo) -> ClusterLabeling:
        return self.labelings[combo]

    def __contains__(self, combo: object) -> bool:
        return combo in self.labelings

    def __iter__(self) -> Iterator[ParameterCombo]:
        return iter(self.labelings)

    def __len__(self) -> int:
        return len(self.labelings)

    def embedding(self, lambda_param: float, use_harmonic: bool) -> Embedding:
        return self.embeddings[(float(lambda_param), bool(use_harmonic))]

    def labels(self, combo: ParameterCombo) -> np.ndarray:
        lab = self.labelings[combo]
        if not lab.ok:
            raise KeyError(f"{combo.name} failed: {lab.error}")
        return lab.labels

    def successful(self) -> List[ClusterLabeling]:
        return [l for l in self.labelings.values() if l.ok]

    def failed(self) -> List[ClusterLabeling]:
        return [l for l in self.labelings.values() if not l.ok]

    def find(self, **fields) -> List[ClusterLabeling]:
        """Labelings whose combo matches every given field, e.g. find(lambda_param=0.2)."""
        out = []
        for combo, lab in self.labelings.items():
            if all(getattr(combo, k) == v for k, v in fields.items()):
                out.append(lab)
        return out

    def _index(self) -> pd.Index:
        if self.cell_names is not None:
            return pd.Index(self.cell_names)
        return pd.RangeIndex(self.n_cells)

    def labels_frame(self) -> pd.DataFrame:
        """Cells x successful combos, ready to join onto a per-cell metadata table."""
        cols = {l.name: l.labels for l in self.successful()}
        return pd.DataFrame(cols, index=self._index())

    def compare(self, metric: str = 'ari', combos: Optional[Sequence[ParameterCombo]] = None) -> pd.DataFrame:
        labs = [self.labelings[c] for c in combos] if combos is not None else list(self.labelings.values())
        return compare_labelings(labs, metric=metric)

    def harmonize(
        self,
        reference: Union[None, str, ParameterCombo, ClusterLabeling] = None,
        combos: Optional[Sequence[ParameterCombo]] = None,
        min_overlap: float = 0.0,
    ) -> HarmonizationReport:
        labs = [self.labelings[c] for c in combos] if combos is not None else list(self.labelings.values())
        self.harmonization = harmonize_labelings(labs, reference=reference, min_overlap=min_overlap)
        return self.harmonization

    def to_anndata(self, adata: Optional[ad.AnnData] = None) -> ad.AnnData:
        """Write label columns to `obs` and embeddings to `obsm`."""
        if adata is None:
            adata = ad.AnnData(obs=pd.DataFrame(index=self._index().astype(str)))
        if adata.n_obs != self.n_cells:
            raise InputMismatchError(f"AnnData has {adata.n_obs} cells, results have {self.n_cells}")
        for l in self.successful():
            adata.obs[l.name] = pd.Categorical(l.labels)
        for emb in self.embeddings.values():
            adata.obsm[f"X_{emb.name}"] = emb.pcs
            if emb.umap is not None:
                adata.obsm[f"X_umap_M{int(emb.use_harmonic)}_lam{emb.lambda_param:g}"] = emb.umap
        adata.uns['banksyscope'] = {
            'fingerprints': dict(self.fingerprints),
            'failed': {l.name: str(l.error) for l in self.failed()},
        }
        return adata


def _preferred_n_jobs(cfg: Optional[Dict[str, Any]] = None) -> int:
    """Worker count: $BANKSYSCOPE_N_JOBS, then runtime.n_jobs, then ~1/3 of the CPUs."""
    v_raw = os.environ.get("BANKSYSCOPE_N_JOBS", "").strip()
    if v_raw:
        try:
            v = int(v_raw)
            if v > 0:
                return v
        except ValueError:
            _log.warning("Ignoring non-integer BANKSYSCOPE_N_JOBS=%r", v_raw)
    rt = section(cfg, 'runtime')
    if rt.get('n_jobs'):
        return int(rt['n_jobs'])
    cpu = max(1, os.cpu_count() or 4)
    return max(1, min(32, cpu // 3 if cpu >= 3 else 1))


def _joblib_backend(cfg: Optional[Dict[str, Any]] = None) -> str:
    # 'loky' unless overridden by $BANKSYSCOPE_JOBLIB_BACKEND or runtime.backend
    env = os.environ.get("BANKSYSCOPE_JOBLIB_BACKEND", "").strip()
    if env:
        return env
    return str(section(cfg, 'runtime').get('backend') or 'loky')


def _reduce_task(matrix: AugmentedMatrix, seed: int, red: Dict[str, Any]) -> Embedding:
    return reduce_matrix(
        matrix,
        n_components=int(red['n_pcs']),
        seed=seed,
        svd_solver=str(red['svd_solver']),
        exact_max_cells=int(red['exact_max_cells']),
        compute_umap=bool(red['compute_umap']),
        umap_n_neighbors=int(red['umap_n_neighbors']),
        umap_min_dist=float(red['umap_min_dist']),
    )


def _failed(combo: ParameterCombo, err: BaseException) -> ClusterLabeling:
    return ClusterLabeling(combo, None, status=STATUS_FAILED, error=f"{type(err).__name__}: {err}")


def _cluster_group(pcs: np.ndarray, combos: List[ParameterCombo], options: Dict[str, Any]) -> List[ClusterLabeling]:
    """Combos sharing (embedding, k_neighbors, algorithm); the graph is built once."""
    first = combos[0]
    clusterer = get_clusterer(first.algorithm, options)
    try:
        prepared = clusterer.prepare(pcs, first.k_neighbors)
    except Exception as e:
        return [_failed(c, e) for c in combos]
    out = []
    for c in combos:
        params = ClusterParams(c.k_neighbors, c.resolution)
        try:
            clusterer.check_params(params)
            labels = clusterer.partition(prepared, params, derive_seed(c.seed, SALT_CLUSTER, c.algorithm))
            out.append(ClusterLabeling(c, labels))
        except Exception as e:
            out.append(_failed(c, e))
    return out


def run_grid(
    expression,
    coords=None,
    grid: Optional[GridSpec] = None,
    config: Optional[Dict[str, Any]] = None,
    n_jobs: Optional[int] = None,
    backend: Optional[str] = None,
    progress_callback: Optional[Callable[[str], None]] = None,
    result: Optional[GridResult] = None,
    gene_names: Optional[Sequence[str]] = None,
    cell_names: Optional[Sequence[str]] = None,
) -> GridResult:
    """Feature -> Assemble -> Reduce -> Cluster over every combo of `grid`.

    Results are stored in `result` as they finish, so an interrupted run keeps
    every completed combo; passing the same `result` again skips them. Reusing a
    result computed under other k_geom, seed, feature, reduce or cluster settings
    raises InputMismatchError.
    A combo that fails is recorded as failed and its siblings continue.
    An AnnData `expression` supplies gene and cell names, and
    `obsm["spatial"]` when `coords` is omitted.
    """
    cfg = config if config is not None else load_params_yaml()
    grid = grid if grid is not None else GridSpec.from_config(cfg)
    grid.validate()
    feat = section(cfg, 'features')
    red = section(cfg, 'reduce')
    clu = section(cfg, 'cluster')
    if feat['decay'] not in DECAY_KERNELS:
        raise ConfigurationError(f"Unknown decay kernel '{feat['decay']}'; choose from {DECAY_KERNELS}")
    if int(red['n_pcs']) <= 0:
        raise ConfigurationError(f"reduce.n_pcs must be positive, got {red['n_pcs']}")

    if isinstance(expression, ad.AnnData):
        adata = expression
        if coords is None:
            if "spatial" not in adata.obsm:
                raise InputMismatchError("No coordinates given and adata.obsm has no 'spatial' entry")
            coords = adata.obsm["spatial"]
        gene_names = gene_names if gene_names is not None else list(adata.var_names)
        cell_names = cell_names if cell_names is not None else list(adata.obs_names)
        expression = adata.X
    elif coords is None:
        raise InputMismatchError("Spatial coordinates are required for a plain expression matrix")
    X = as_expression(expression)
    C = as_coordinates(np.asarray(coords))
    check_aligned(X, C)
    if gene_names is not None and len(gene_names) != X.shape[1]:
        raise InputMismatchError(f"{len(gene_names)} gene names for {X.shape[1]} genes")
    if result is None:
        result = GridResult(X.shape[0], cell_names=cell_names)
    elif result.n_cells != X.shape[0]:
        raise InputMismatchError(f"Existing result holds {result.n_cells} cells, inputs have {X.shape[0]}")

    run_cfg = dict(cfg)
    run_cfg.update({'grid': grid.to_config(), 'features': feat, 'reduce': red, 'cluster': clu})
    resume_fp = fingerprint_resume(run_cfg)
    if result.resume_fingerprint is not None and result.resume_fingerprint != resume_fp:
        raise InputMismatchError(
            "Existing result was computed with different k_geom, seed, feature, reduce or "
            "cluster settings; its embeddings and labels cannot be reused. Start a new GridResult."
        )
    result.resume_fingerprint = resume_fp
    result.fingerprints = fingerprint_stages(run_cfg)
    n_jobs = int(n_jobs) if n_jobs else _preferred_n_jobs(cfg)
    backend = backend or _joblib_backend(cfg)

    def _notify(desc: str):
        _log.info(desc)
        if progress_callback:
            progress_callback(desc)

    combos = [c for c in grid.combos() if not (c in result.labelings and result.labelings[c].ok)]
    t0 = time.perf_counter()
    _log.info("Grid: %d combos to run (%d already done), n_jobs=%d backend=%s",
              len(combos), len(grid.combos()) - len(combos), n_jobs, backend)
    if not combos:
        return result

    needed = _unique(c.embedding_key for c in combos)
    todo = [k for k in needed if k not in result.embeddings]
    if todo:
        # 1) neighborhood features, one KD-tree search shared by every k_geom level
        _notify("Neighborhood features")
        features: Dict[int, FeatureMatrix] = compute_neighborhood_features(
            X, C, grid.k_geom_tuple,
            use_harmonic=any(k[1] for k in todo),
            decay=str(feat['decay']),
            center_harmonics=bool(feat['center_harmonics']),
            cache=NeighborCache(C),
        )

        # 2) augmented matrices per (lambda, harmonic)
        _notify("Assemble BANKSY matrices")
        matrices = assemble_grid(
            X, features, _unique(k[0] for k in todo), _unique(k[1] for k in todo), gene_names=gene_names,
        )
        del features

        # 3) embeddings
        _notify(f"Reduce {len(todo)} matrices")
        par = Parallel(n_jobs=min(n_jobs, len(todo)), backend=backend, return_as="generator")
        for emb in par(delayed(_reduce_task)(matrices[k], int(grid.seed), red) for k in todo):
            result.embeddings[emb.key] = emb
            _notify(f"Embedding {emb.name} done")
        del matrices

    # 4) clustering, grouped so each SNN graph is built once
    groups: Dict[Tuple, List[ParameterCombo]] = OrderedDict()
    for c in combos:
        groups.setdefault((c.embedding_key, c.k_neighbors, c.algorithm), []).append(c)
    _notify(f"Cluster {len(combos)} combos in {len(groups)} groups")
    par = Parallel(n_jobs=min(n_jobs, len(groups)), backend=backend, return_as="generator")
    tasks = (delayed(_cluster_group)(result.embeddings[key[0]].pcs, cs, clu) for key, cs in groups.items())
    for labelings in par(tasks):
        for lab in labelings:
            result.labelings[lab.combo] = lab
            if lab.ok:
                _log.info("%s: %d clusters", lab.name, lab.n_clusters)
            else:
                _log.error("%s failed: %s", lab.name, lab.error)
        _notify(f"Clustered {len(result.labelings)}/{len(grid.combos())}")

    n_fail = len(result.failed())
    _log.info("Grid finished in %.2fs: %d ok, %d failed", time.perf_counter() - t0, len(result.successful()), n_fail)
    return result


def run_banksy(
    adata: ad.AnnData,
    grid: Optional[GridSpec] = None,
    config: Optional[Dict[str, Any]] = None,
    coord_key: str = 'spatial',
    layer: Optional[str] = None,
    write_to_adata: bool = True,
    **kwargs,
) -> GridResult:
    """AnnData front end: expression from `layer`/X, coordinates from `obsm[coord_key]`."""
    if coord_key not in adata.obsm:
        raise InputMismatchError(f"adata.obsm has no '{coord_key}' coordinates")
    cfg = config if config is not None else load_params_yaml()
    grid = grid or GridSpec.from_config(cfg)
    X = adata.layers[layer] if layer else adata.X
    result = run_grid(
        X,
        np.asarray(adata.obsm[coord_key]),
        grid,
        config=cfg,
        gene_names=list(adata.var_names),
        cell_names=list(adata.obs_names),
        **kwargs,
    )
    if write_to_adata:
        result.to_anndata(adata)
    return result
