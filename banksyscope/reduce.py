from typing import Optional, Tuple
from dataclasses import dataclass
import logging

import numpy as np
from sklearn.decomposition import PCA

from .assemble import AugmentedMatrix
from .exceptions import ConfigurationError
from .seeding import SALT_PCA, SALT_UMAP, derive_seed

_log = logging.getLogger("banksyscope")

SVD_SOLVERS = ('auto', 'full', 'randomized')


@dataclass
class Embedding:
    lambda_param: float
    use_harmonic: bool
    pcs: np.ndarray
    explained_variance_ratio: np.ndarray
    seed: int
    umap: Optional[np.ndarray] = None

    @property
    def key(self) -> Tuple[float, bool]:
        return (self.lambda_param, self.use_harmonic)

    @property
    def name(self) -> str:
        return f"pca_M{int(self.use_harmonic)}_lam{self.lambda_param:g}"


def _fix_signs(pcs: np.ndarray, components: np.ndarray) -> np.ndarray:
    # largest-|loading| entry of every component is made positive
    idx = np.argmax(np.abs(components), axis=1)
    signs = np.sign(components[np.arange(components.shape[0]), idx])
    signs[signs == 0] = 1.0
    return pcs * signs[None, :]


def run_pca(
    X: np.ndarray,
    n_components: int = 20,
    seed: int = 0,
    svd_solver: str = 'auto',
    exact_max_cells: int = 20000,
) -> Tuple[np.ndarray, np.ndarray]:
    """Top principal components of X (cells x features).

    'auto' uses an exact SVD up to `exact_max_cells` cells and a randomized
    solver seeded with `seed` beyond that. Returns (pcs, explained_variance_ratio).
    """
    if svd_solver not in SVD_SOLVERS:
        raise ConfigurationError(f"Unknown svd_solver '{svd_solver}'; choose from {SVD_SOLVERS}")
    if int(n_components) <= 0:
        raise ConfigurationError(f"n_components must be positive, got {n_components}")
    X = np.asarray(X, dtype=np.float64)
    n, p = X.shape
    n_comp = int(min(int(n_components), n, p))
    if n_comp < int(n_components):
        _log.warning("Requested %d PCs but matrix is %dx%d; using %d", int(n_components), n, p, n_comp)
    solver = svd_solver
    if solver == 'auto':
        solver = 'full' if n <= int(exact_max_cells) else 'randomized'
    pca = PCA(n_components=n_comp, svd_solver=solver, random_state=int(seed))
    pcs = pca.fit_transform(X)
    pcs = _fix_signs(pcs, pca.components_)
    return np.ascontiguousarray(pcs), np.asarray(pca.explained_variance_ratio_, dtype=np.float64)


def run_umap(
    pcs: np.ndarray,
    seed: int = 0,
    n_neighbors: int = 15,
    min_dist: float = 0.3,
    n_components: int = 2,
) -> np.ndarray:
    """2-D visualization layout of a PCA embedding; never used for clustering."""
    import umap  # lazy import (numba start-up cost)

    n = pcs.shape[0]
    nn = max(2, min(int(n_neighbors), n - 1))
    reducer = umap.UMAP(
        n_neighbors=nn,
        min_dist=float(min_dist),
        n_components=int(n_components),
        random_state=int(seed),
        transform_seed=int(seed),
    )
    return np.asarray(reducer.fit_transform(pcs), dtype=np.float32)


def reduce_matrix(
    augmented: AugmentedMatrix,
    n_components: int = 20,
    seed: int = 0,
    svd_solver: str = 'auto',
    exact_max_cells: int = 20000,
    compute_umap: bool = False,
    umap_n_neighbors: int = 15,
    umap_min_dist: float = 0.3,
) -> Embedding:
    pcs, evr = run_pca(
        augmented.values,
        n_components=n_components,
        seed=derive_seed(seed, SALT_PCA),
        svd_solver=svd_solver,
        exact_max_cells=exact_max_cells,
    )
    emb = Embedding(augmented.lambda_param, augmented.use_harmonic, pcs, evr, int(seed))
    if compute_umap:
        emb.umap = run_umap(pcs, seed=derive_seed(seed, SALT_UMAP), n_neighbors=umap_n_neighbors, min_dist=umap_min_dist)
    _log.info("Reduced %s to %d PCs (explained variance %.3f)", emb.name, pcs.shape[1], float(evr.sum()))
    return emb
