"""Shared-neighbor graphs and the selectable clustering algorithms.

Every algorithm implements the same interface: `fit(embedding, params, seed)`
returns a contiguous integer label vector (0 = largest cluster). Graph-based
algorithms split this into `prepare` (build the SNN graph once per embedding
and k) and `partition` (one call per resolution).
"""
from typing import Any, Dict, Optional, Type
from dataclasses import dataclass
import logging
import warnings

import numpy as np
import pandas as pd
import scipy.sparse as sp

from .exceptions import ClusteringFailedError, ConfigurationError
from .neighbors import build_kdtree, kdtree_query

_log = logging.getLogger("banksyscope")


@dataclass(frozen=True)
class ClusterParams:
    k_neighbors: int
    resolution: float


def relabel_by_size(labels: np.ndarray) -> np.ndarray:
    """Map labels to 0..C-1 by decreasing cluster size, ties by first occurrence."""
    labels = np.asarray(labels).ravel()
    if labels.size == 0:
        return labels.astype(np.int64)
    _, first_idx, inv, counts = np.unique(labels, return_index=True, return_inverse=True, return_counts=True)
    order = np.lexsort((first_idx, -counts))
    rank = np.empty_like(order)
    rank[order] = np.arange(order.size)
    return rank[np.asarray(inv).ravel()].astype(np.int64)


def build_snn_graph(embedding: np.ndarray, k_neighbors: int, prune: float = 1.0 / 15.0) -> sp.csr_matrix:
    """Shared-nearest-neighbor graph weighted by Jaccard overlap of kNN sets.

    Each cell's neighbor set includes itself. Edges with Jaccard below `prune`
    are dropped, self loops removed; the result is symmetric.
    """
    X = np.asarray(embedding, dtype=np.float64)
    n = X.shape[0]
    if int(k_neighbors) <= 0:
        raise ConfigurationError(f"k_neighbors must be positive, got {k_neighbors}")
    k = min(int(k_neighbors), n)
    if k < int(k_neighbors):
        _log.warning("Requested %d graph neighbors but only %d cells exist; using all of them", int(k_neighbors), n)
    if n == 0:
        return sp.csr_matrix((0, 0), dtype=np.float64)

    ind, _ = kdtree_query(build_kdtree(X), X, k)
    own = np.arange(n, dtype=np.int64)
    has_self = (ind == own[:, None]).any(axis=1)
    ind[~has_self, -1] = own[~has_self]

    rows = np.repeat(own, k)
    A = sp.csr_matrix((np.ones(n * k, dtype=np.float64), (rows, ind.ravel())), shape=(n, n))
    S = (A @ A.T).tocoo()
    jac = S.data / (2.0 * k - S.data)
    keep = (S.row != S.col) & (jac >= float(prune))
    G = sp.csr_matrix((jac[keep], (S.row[keep], S.col[keep])), shape=(n, n))
    G.eliminate_zeros()
    G.sort_indices()
    return G


class Clusterer:
    """Base class; subclasses are registered in CLUSTERERS by `name`."""
    name = 'base'
    uses_graph = False

    def __init__(self, options: Optional[Dict[str, Any]] = None):
        self.options = dict(options or {})

    def check_params(self, params: ClusterParams) -> None:
        if int(params.k_neighbors) <= 0:
            raise ConfigurationError(f"k_neighbors must be positive, got {params.k_neighbors}")

    def prepare(self, embedding: np.ndarray, k_neighbors: int) -> Any:
        return np.asarray(embedding, dtype=np.float64)

    def partition(self, prepared: Any, params: ClusterParams, seed: int) -> np.ndarray:
        raise NotImplementedError

    def fit(self, embedding: np.ndarray, params: ClusterParams, seed: int) -> np.ndarray:
        self.check_params(params)
        return self.partition(self.prepare(embedding, params.k_neighbors), params, seed)


class GraphClusterer(Clusterer):
    uses_graph = True

    def check_params(self, params: ClusterParams) -> None:
        super().check_params(params)
        r = float(params.resolution)
        if not np.isfinite(r) or r <= 0:
            raise ConfigurationError(f"resolution must be positive, got {params.resolution}")

    def prepare(self, embedding: np.ndarray, k_neighbors: int) -> sp.csr_matrix:
        prune = float(self.options.get('snn_prune', 1.0 / 15.0))
        return build_snn_graph(embedding, k_neighbors, prune=prune)


class LeidenClusterer(GraphClusterer):
    name = 'leiden'

    def _run(self, graph: sp.csr_matrix, resolution: float, seed: int, flavor: str) -> np.ndarray:
        import anndata as ad
        import scanpy as sc

        n = graph.shape[0]
        n_iter = int(self.options.get('leiden_n_iterations', -1))
        if flavor == 'igraph' and n_iter < 0:
            n_iter = 2
        adata = ad.AnnData(obs=pd.DataFrame(index=[str(i) for i in range(n)]))
        sc.tl.leiden(
            adata,
            resolution=float(resolution),
            random_state=int(seed),
            adjacency=graph,
            key_added='leiden',
            directed=False,
            use_weights=True,
            n_iterations=n_iter,
            flavor=flavor,
        )
        return adata.obs['leiden'].astype(int).to_numpy()

    def partition(self, prepared: sp.csr_matrix, params: ClusterParams, seed: int) -> np.ndarray:
        flavor = str(self.options.get('leiden_flavor', 'leidenalg')).lower()
        try:
            labels = self._run(prepared, params.resolution, seed, flavor)
        except Exception as e:
            if flavor == 'leidenalg':
                raise ClusteringFailedError(f"Leiden failed: {e}") from e
            _log.warning(f"Leiden({flavor}) failed: {e}; falling back to 'leidenalg' flavor.")
            try:
                labels = self._run(prepared, params.resolution, seed, 'leidenalg')
            except Exception as e2:
                raise ClusteringFailedError(f"Leiden fallback failed: {e2}") from e2
        return relabel_by_size(labels)


class LouvainClusterer(GraphClusterer):
    name = 'louvain'

    def partition(self, prepared: sp.csr_matrix, params: ClusterParams, seed: int) -> np.ndarray:
        import networkx as nx

        n = prepared.shape[0]
        g = nx.from_scipy_sparse_array(prepared, edge_attribute='weight')
        comms = nx.community.louvain_communities(g, weight='weight', resolution=float(params.resolution), seed=int(seed))
        labels = np.empty(n, dtype=np.int64)
        for ci, members in enumerate(comms):
            labels[sorted(members)] = ci
        return relabel_by_size(labels)


class _CountClusterer(Clusterer):
    """Centroid and mixture modes: `resolution` is the number of clusters."""

    def check_params(self, params: ClusterParams) -> None:
        super().check_params(params)
        r = float(params.resolution)
        if not r.is_integer() or r < 1:
            raise ConfigurationError(f"{self.name} needs a positive integer cluster count as resolution, got {params.resolution}")

    def n_clusters(self, X: np.ndarray, params: ClusterParams) -> int:
        k = int(params.resolution)
        if k > X.shape[0]:
            _log.warning("%s: %d clusters requested for %d cells; using %d", self.name, k, X.shape[0], X.shape[0])
            k = X.shape[0]
        return k


class KMeansClusterer(_CountClusterer):
    name = 'kmeans'

    def partition(self, prepared: np.ndarray, params: ClusterParams, seed: int) -> np.ndarray:
        from sklearn.cluster import KMeans

        km = KMeans(
            n_clusters=self.n_clusters(prepared, params),
            init='k-means++',
            n_init=int(self.options.get('kmeans_n_init', 10)),
            max_iter=int(self.options.get('kmeans_max_iter', 300)),
            random_state=int(seed),
        )
        return relabel_by_size(km.fit_predict(prepared))


class MixtureClusterer(_CountClusterer):
    name = 'mclust'

    def partition(self, prepared: np.ndarray, params: ClusterParams, seed: int) -> np.ndarray:
        from sklearn.exceptions import ConvergenceWarning
        from sklearn.mixture import GaussianMixture

        gmm = GaussianMixture(
            n_components=self.n_clusters(prepared, params),
            covariance_type=str(self.options.get('mclust_covariance_type', 'full')),
            max_iter=int(self.options.get('mclust_max_iter', 200)),
            reg_covar=float(self.options.get('mclust_reg_covar', 1e-6)),
            random_state=int(seed),
        )
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", category=ConvergenceWarning)
                gmm.fit(prepared)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise ClusteringFailedError(f"Gaussian mixture failed: {e}") from e
        if not gmm.converged_:
            raise ClusteringFailedError(
                f"Gaussian mixture did not converge within {gmm.max_iter} iterations"
            )
        return relabel_by_size(gmm.predict(prepared))


CLUSTERERS: Dict[str, Type[Clusterer]] = {
    'leiden': LeidenClusterer,
    'louvain': LouvainClusterer,
    'kmeans': KMeansClusterer,
    'mclust': MixtureClusterer,
}


def get_clusterer(name: str, options: Optional[Dict[str, Any]] = None) -> Clusterer:
    key = str(name).lower()
    if key not in CLUSTERERS:
        raise ConfigurationError(f"Unknown clustering algorithm '{name}'; choose from {sorted(CLUSTERERS)}")
    return CLUSTERERS[key](options)


def cluster_embedding(
    embedding: np.ndarray,
    k_neighbors: int,
    resolution: float,
    algorithm: str = 'leiden',
    seed: int = 0,
    options: Optional[Dict[str, Any]] = None,
) -> np.ndarray:
    return get_clusterer(algorithm, options).fit(embedding, ClusterParams(int(k_neighbors), float(resolution)), seed)
