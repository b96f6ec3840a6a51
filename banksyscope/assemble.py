from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from dataclasses import dataclass, field
import logging

import numpy as np
from sklearn.preprocessing import StandardScaler

from .exceptions import ConfigurationError, InputMismatchError
from .neighbors import FeatureMatrix

_log = logging.getLogger("banksyscope")


@dataclass
class AugmentedMatrix:
    lambda_param: float
    use_harmonic: bool
    values: np.ndarray
    block_names: List[str]
    block_scales: List[float]
    feature_names: List[str] = field(default_factory=list)

    @property
    def key(self) -> Tuple[float, bool]:
        return (self.lambda_param, self.use_harmonic)

    def block(self, name: str) -> np.ndarray:
        """View of one scaled block (own / nbr / m1 ...)."""
        i = self.block_names.index(name)
        g = self.values.shape[1] // len(self.block_names)
        return self.values[:, i * g:(i + 1) * g]


def check_lambda(lambda_param: float) -> float:
    lam = float(lambda_param)
    if not np.isfinite(lam) or lam < 0.0 or lam > 1.0:
        raise ConfigurationError(f"lambda must lie in [0, 1], got {lambda_param}")
    return lam


def zscore_block(X: np.ndarray) -> np.ndarray:
    """Per-gene z-score across cells; zero-variance genes become 0."""
    Z = StandardScaler(with_mean=True, with_std=True).fit_transform(np.asarray(X, dtype=np.float64))
    Z[~np.isfinite(Z)] = 0.0
    return Z


def block_scales(lambda_param: float, n_neighbor_blocks: int) -> List[float]:
    lam = check_lambda(lambda_param)
    own = float(np.sqrt(1.0 - lam))
    if n_neighbor_blocks <= 0:
        return [own]
    nbr = float(np.sqrt(lam / n_neighbor_blocks))
    return [own] + [nbr] * int(n_neighbor_blocks)


def _active_levels(features: Dict[int, FeatureMatrix], use_harmonic: bool) -> List[int]:
    if 0 not in features:
        raise InputMismatchError("Neighborhood features must include the local mean (m=0)")
    levels = [0]
    if use_harmonic:
        extra = sorted(m for m in features if m > 0)
        if not extra:
            raise ConfigurationError("use_harmonic requested but no harmonic features were computed")
        levels += extra
    return levels


def _feature_names(gene_names: Optional[Sequence[str]], n_genes: int, block_names: List[str]) -> List[str]:
    genes = [str(g) for g in gene_names] if gene_names is not None else [f"g{i}" for i in range(n_genes)]
    out = list(genes)
    for b in block_names[1:]:
        out += [f"{g}.{b}" for g in genes]
    return out


def _stack(
    own_z: np.ndarray,
    nbr_z: Dict[int, np.ndarray],
    names: Dict[int, str],
    lambda_param: float,
    use_harmonic: bool,
    levels: List[int],
    gene_names: Optional[Sequence[str]],
) -> AugmentedMatrix:
    scales = block_scales(lambda_param, len(levels))
    blocks = [own_z * scales[0]] + [nbr_z[m] * s for m, s in zip(levels, scales[1:])]
    block_names = ['own'] + [names[m] for m in levels]
    return AugmentedMatrix(
        lambda_param=float(lambda_param),
        use_harmonic=bool(use_harmonic),
        values=np.hstack(blocks),
        block_names=block_names,
        block_scales=scales,
        feature_names=_feature_names(gene_names, own_z.shape[1], block_names),
    )


def assemble_banksy_matrix(
    expression: np.ndarray,
    features: Dict[int, FeatureMatrix],
    lambda_param: float,
    use_harmonic: bool = False,
    gene_names: Optional[Sequence[str]] = None,
) -> AugmentedMatrix:
    """Stack z-scored own expression and neighborhood blocks under weight lambda.

    own is scaled by sqrt(1 - lambda), each active neighborhood block by
    sqrt(lambda / n_active). At lambda=0 the neighborhood blocks are all zero.
    """
    check_lambda(lambda_param)
    levels = _active_levels(features, use_harmonic)
    X = np.asarray(expression, dtype=np.float64)
    for m in levels:
        if features[m].values.shape != X.shape:
            raise InputMismatchError(
                f"Feature H_{m} has shape {features[m].values.shape}, expression has {X.shape}"
            )
    own_z = zscore_block(X)
    nbr_z = {m: zscore_block(features[m].values) for m in levels}
    names = {m: features[m].name for m in levels}
    return _stack(own_z, nbr_z, names, lambda_param, use_harmonic, levels, gene_names)


def assemble_grid(
    expression: np.ndarray,
    features: Dict[int, FeatureMatrix],
    lambdas: Iterable[float],
    harmonic_options: Iterable[bool] = (False,),
    gene_names: Optional[Sequence[str]] = None,
) -> Dict[Tuple[float, bool], AugmentedMatrix]:
    """One AugmentedMatrix per (lambda, use_harmonic); z-scores computed once."""
    lambdas = [check_lambda(l) for l in lambdas]
    harmonic_options = [bool(h) for h in harmonic_options]
    X = np.asarray(expression, dtype=np.float64)
    own_z = zscore_block(X)
    nbr_z: Dict[int, np.ndarray] = {}
    out: Dict[Tuple[float, bool], AugmentedMatrix] = {}
    for use_h in harmonic_options:
        levels = _active_levels(features, use_h)
        for m in levels:
            if m not in nbr_z:
                nbr_z[m] = zscore_block(features[m].values)
        names = {m: features[m].name for m in levels}
        for lam in lambdas:
            out[(lam, use_h)] = _stack(own_z, nbr_z, names, lam, use_h, levels, gene_names)
            _log.debug("Assembled BANKSY matrix lambda=%s harmonic=%s shape=%s", lam, use_h, out[(lam, use_h)].values.shape)
    return out
