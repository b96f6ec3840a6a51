"""Spatial neighbor search and neighborhood feature matrices.

H_0 is the decay-weighted mean of each cell's spatial neighbors. H_m (m >= 1)
is the magnitude of the m-th azimuthal Fourier harmonic of the neighborhood:

    H_m[i] = | sum_j w_ij * exp(i * m * theta_ij) * (x_j - mu_i) |

where theta_ij is the azimuth of neighbor j around cell i (first two coordinate
axes), w_ij are the row-normalized decay weights of the same neighbor set and
mu_i is the weighted neighborhood mean. Everything here is deterministic.
"""
from typing import Dict, List, Optional, Sequence, Tuple, Union
from dataclasses import dataclass
import logging

import numpy as np
import scipy.sparse as sp
from sklearn.neighbors import KDTree

from .exceptions import ConfigurationError, InputMismatchError

_log = logging.getLogger("banksyscope")

DECAY_KERNELS: Tuple[str, ...] = ('scaled_gaussian', 'reciprocal', 'ranked', 'uniform')


@dataclass
class NeighborSet:
    """Per-cell neighbors sorted by (distance, index); self excluded."""
    indices: np.ndarray
    distances: np.ndarray
    k_requested: int

    @property
    def n_cells(self) -> int:
        return int(self.indices.shape[0])

    @property
    def k(self) -> int:
        return int(self.indices.shape[1])

    def for_cell(self, i: int) -> List[Tuple[int, float]]:
        return [(int(j), float(d)) for j, d in zip(self.indices[i], self.distances[i])]

    def head(self, k: int) -> 'NeighborSet':
        """First-k slice; valid because rows are fully ordered."""
        if int(k) <= 0:
            raise ConfigurationError(f"k must be positive, got {k}")
        k_eff = min(int(k), self.k)
        return NeighborSet(self.indices[:, :k_eff], self.distances[:, :k_eff], int(k))


@dataclass
class FeatureMatrix:
    m: int
    k_geom: int
    values: np.ndarray

    @property
    def name(self) -> str:
        return 'nbr' if self.m == 0 else f'm{self.m}'


def as_coordinates(coords) -> np.ndarray:
    C = np.asarray(coords, dtype=np.float64)
    if C.ndim != 2 or C.shape[1] not in (2, 3):
        raise InputMismatchError(f"Spatial coordinates must be cells x 2 or cells x 3, got shape {C.shape}")
    if not np.all(np.isfinite(C)):
        raise InputMismatchError("Spatial coordinates contain NaN or infinite values")
    return C


def as_expression(X) -> np.ndarray:
    """Dense float64 cells x genes copy of an expression matrix."""
    if sp.issparse(X):
        X = X.toarray()
    X = np.array(X, dtype=np.float64)
    if X.ndim != 2:
        raise InputMismatchError(f"Expression matrix must be 2-D (cells x genes), got shape {X.shape}")
    if X.size and np.nanmin(X) < 0:
        _log.warning("Expression matrix has negative entries; expected normalized non-negative values")
    X[~np.isfinite(X)] = 0.0
    return X


def check_aligned(X: np.ndarray, coords: np.ndarray) -> None:
    if X.shape[0] != coords.shape[0]:
        raise InputMismatchError(
            f"Expression has {X.shape[0]} cells but coordinates have {coords.shape[0]} rows"
        )


def build_kdtree(points: np.ndarray) -> KDTree:
    n = points.shape[0]
    leaf = max(20, min(64, n // 10 if n >= 100 else 20))
    return KDTree(points, leaf_size=leaf)


def kdtree_query(kdt: KDTree, points: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
    """Query with tuned params; returns (indices, distances) sorted by (distance, index)."""
    n = points.shape[0]
    k = max(1, min(int(k), n))
    # breadth_first/sort_results improve determinism
    dist, ind = kdt.query(points, k=k, return_distance=True, breadth_first=True, sort_results=True)
    ind = np.asarray(ind, dtype=np.int64)
    dist = np.asarray(dist, dtype=np.float64)
    order = np.lexsort((ind, dist), axis=-1)
    return np.take_along_axis(ind, order, axis=1), np.take_along_axis(dist, order, axis=1)


def _resolve_boundary_ties(kdt: KDTree, points: np.ndarray, ind: np.ndarray, dist: np.ndarray, width: int) -> None:
    """Re-pick rows whose cut-off distance is shared by cells outside the window.

    The KD-tree picks an arbitrary subset of equidistant candidates at the
    boundary; here every candidate within the boundary radius is collected and
    the lowest indices win.
    """
    tied = np.flatnonzero(dist[:, width - 1] == dist[:, width])
    for i in tied:
        r = np.nextafter(dist[i, width - 1], np.inf)
        cand, cd = kdt.query_radius(points[i:i + 1], r=r, return_distance=True)
        cand = np.asarray(cand[0], dtype=np.int64)
        cd = np.asarray(cd[0], dtype=np.float64)
        order = np.lexsort((cand, cd))[:width]
        ind[i, :width] = cand[order]
        dist[i, :width] = cd[order]


def find_neighbors(coords, k: int) -> NeighborSet:
    """k nearest spatial neighbors of every cell, excluding the cell itself.

    When fewer than k other cells exist every available cell is returned.
    """
    C = as_coordinates(coords)
    if int(k) <= 0:
        raise ConfigurationError(f"k_geom must be positive, got {k}")
    n = C.shape[0]
    k_eff = min(int(k), n - 1)
    if k_eff < int(k):
        _log.warning("Requested %d spatial neighbors but only %d other cells exist; using all of them", int(k), max(k_eff, 0))
    if k_eff <= 0:
        return NeighborSet(np.zeros((n, 0), np.int64), np.zeros((n, 0), np.float64), int(k))

    width = k_eff + 1
    kdt = build_kdtree(C)
    ind, dist = kdtree_query(kdt, C, min(n, width + 1))
    if ind.shape[1] > width:
        _resolve_boundary_ties(kdt, C, ind, dist, width)
    ind = ind[:, :width]
    dist = dist[:, :width]

    is_self = ind == np.arange(n, dtype=np.int64)[:, None]
    # self can fall outside the window only behind coincident lower-index cells
    is_self[~is_self.any(axis=1), -1] = True
    keep = ~is_self
    return NeighborSet(ind[keep].reshape(n, k_eff), dist[keep].reshape(n, k_eff), int(k))


class NeighborCache:
    """One KD-tree search at the largest requested k, sliced for smaller k."""

    def __init__(self, coords):
        self.coords = as_coordinates(coords)
        self._base: Optional[NeighborSet] = None
        self._sets: Dict[int, NeighborSet] = {}

    def prefetch(self, ks: Sequence[int]) -> None:
        if ks:
            self.get(max(int(k) for k in ks))

    def get(self, k: int) -> NeighborSet:
        k = int(k)
        if k in self._sets:
            return self._sets[k]
        n = self.coords.shape[0]
        if self._base is None or (self._base.k < min(k, n - 1)):
            self._base = find_neighbors(self.coords, k)
        ns = self._base.head(k)
        self._sets[k] = ns
        return ns


def _decay_weights(dist: np.ndarray, decay: str) -> np.ndarray:
    n, k = dist.shape
    if decay == 'uniform':
        return np.ones_like(dist)
    if decay == 'ranked':
        return np.tile(np.arange(k, 0, -1, dtype=np.float64), (n, 1))
    if decay == 'reciprocal':
        pos = dist[dist > 0]
        eps = (float(np.median(pos)) * 1e-3) if pos.size else 1.0
        return 1.0 / (dist + eps)
    if decay == 'scaled_gaussian':
        sigma = np.median(dist, axis=1, keepdims=True)
        flat = (sigma[:, 0] <= 0)
        sigma[flat] = 1.0
        w = np.exp(-(dist ** 2) / (2.0 * sigma ** 2))
        w[flat] = 1.0
        return w
    raise ConfigurationError(f"Unknown decay kernel '{decay}'; choose from {DECAY_KERNELS}")


def neighbor_weights(neighbors: NeighborSet, decay: str = 'scaled_gaussian') -> np.ndarray:
    """Dense n x k row-normalized weights, non-increasing along rank."""
    if neighbors.k == 0:
        return np.zeros_like(neighbors.distances)
    w = _decay_weights(neighbors.distances, decay)
    s = w.sum(axis=1, keepdims=True)
    s[s <= 0] = 1.0
    return w / s


def _to_csr(neighbors: NeighborSet, w: np.ndarray) -> sp.csr_matrix:
    n, k = neighbors.indices.shape
    rows = np.repeat(np.arange(n, dtype=np.int64), k)
    return sp.csr_matrix((w.ravel(), (rows, neighbors.indices.ravel())), shape=(n, n))


def spatial_weights(neighbors: NeighborSet, decay: str = 'scaled_gaussian') -> sp.csr_matrix:
    """Sparse row-stochastic neighbor weight matrix (all-zero rows for isolated cells)."""
    return _to_csr(neighbors, neighbor_weights(neighbors, decay))


def azimuthal_weights(coords, neighbors: NeighborSet, m: int, decay: str = 'scaled_gaussian') -> Tuple[sp.csr_matrix, sp.csr_matrix]:
    """Real and imaginary parts of w_ij * exp(i * m * theta_ij)."""
    C = as_coordinates(coords)
    w = neighbor_weights(neighbors, decay)
    idx = neighbors.indices
    dx = C[idx, 0] - C[:, None, 0]
    dy = C[idx, 1] - C[:, None, 1]
    theta = np.arctan2(dy, dx)
    return _to_csr(neighbors, w * np.cos(m * theta)), _to_csr(neighbors, w * np.sin(m * theta))


def _harmonic_ks(k_geom: Sequence[int]) -> List[int]:
    ks = [int(k) for k in k_geom[1:]]
    return ks if ks else [int(k_geom[-1])]


def normalize_k_geom(k_geom: Union[int, Sequence[int]]) -> Tuple[int, ...]:
    ks = (int(k_geom),) if np.isscalar(k_geom) else tuple(int(k) for k in k_geom)
    if not ks:
        raise ConfigurationError("k_geom must list at least one neighbor count")
    bad = [k for k in ks if k <= 0]
    if bad:
        raise ConfigurationError(f"k_geom values must be positive, got {list(ks)}")
    return ks


def compute_neighborhood_features(
    expression,
    coords,
    k_geom: Union[int, Sequence[int]],
    use_harmonic: bool = False,
    decay: str = 'scaled_gaussian',
    center_harmonics: bool = True,
    cache: Optional[NeighborCache] = None,
) -> Dict[int, FeatureMatrix]:
    """Build {m: FeatureMatrix}; m=0 always, m=1.. only when `use_harmonic`."""
    if decay not in DECAY_KERNELS:
        raise ConfigurationError(f"Unknown decay kernel '{decay}'; choose from {DECAY_KERNELS}")
    ks = normalize_k_geom(k_geom)
    X = expression if isinstance(expression, np.ndarray) and expression.dtype == np.float64 else as_expression(expression)
    C = as_coordinates(coords)
    check_aligned(X, C)
    if cache is None:
        cache = NeighborCache(C)
    elif cache.coords.shape != C.shape:
        raise InputMismatchError("Neighbor cache was built for a different coordinate table")

    harmonic_ks = _harmonic_ks(ks) if use_harmonic else []
    cache.prefetch([ks[0]] + harmonic_ks)

    out: Dict[int, FeatureMatrix] = {}
    nb0 = cache.get(ks[0])
    W0 = spatial_weights(nb0, decay)
    out[0] = FeatureMatrix(0, ks[0], np.asarray(W0 @ X))
    _log.debug("H_0 built with k=%d (effective %d)", ks[0], nb0.k)

    for m, k in enumerate(harmonic_ks, start=1):
        nb = cache.get(k)
        Wre, Wim = azimuthal_weights(C, nb, m, decay)
        re = np.asarray(Wre @ X)
        im = np.asarray(Wim @ X)
        if center_harmonics:
            mu = np.asarray(spatial_weights(nb, decay) @ X)
            re -= np.asarray(Wre.sum(axis=1)).reshape(-1, 1) * mu
            im -= np.asarray(Wim.sum(axis=1)).reshape(-1, 1) * mu
        out[m] = FeatureMatrix(m, k, np.sqrt(re ** 2 + im ** 2))
        _log.debug("H_%d built with k=%d (effective %d)", m, k, nb.k)
    return out
