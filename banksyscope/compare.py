from typing import Callable, Dict, List, Mapping, Sequence, Tuple, Union
import itertools
import logging

import numpy as np
import pandas as pd
from sklearn.metrics import adjusted_mutual_info_score, adjusted_rand_score, normalized_mutual_info_score

from .exceptions import ConfigurationError, InputMismatchError
from .types import ClusterLabeling

_log = logging.getLogger("banksyscope")

# metric name -> (score function, identity value)
METRICS: Dict[str, Tuple[Callable[[np.ndarray, np.ndarray], float], float]] = {
    'ari': (adjusted_rand_score, 1.0),
    'nmi': (normalized_mutual_info_score, 1.0),
    'ami': (adjusted_mutual_info_score, 1.0),
}

LabelSource = Union[Mapping[str, np.ndarray], Sequence[ClusterLabeling], Mapping[object, ClusterLabeling]]


def _named_labels(labelings: LabelSource) -> List[Tuple[str, np.ndarray]]:
    if isinstance(labelings, Mapping):
        items = list(labelings.items())
        if items and isinstance(items[0][1], ClusterLabeling):
            seq = [v for _, v in items]
        else:
            return [(str(k), np.asarray(v).ravel()) for k, v in items]
    else:
        seq = list(labelings)
    out = []
    for l in seq:
        if not l.ok:
            _log.warning("Compare: skipping failed labeling %s", l.name)
            continue
        out.append((l.name, np.asarray(l.labels).ravel()))
    return out


def score_pair(a: np.ndarray, b: np.ndarray, metric: str = 'ari') -> float:
    key = str(metric).lower()
    if key not in METRICS:
        raise ConfigurationError(f"Unknown comparison metric '{metric}'; choose from {sorted(METRICS)}")
    a = np.asarray(a).ravel()
    b = np.asarray(b).ravel()
    if a.shape != b.shape:
        raise InputMismatchError(f"Cannot compare labelings of length {a.size} and {b.size}")
    return float(METRICS[key][0](a, b))


def compare_labelings(labelings: LabelSource, metric: str = 'ari') -> pd.DataFrame:
    """Symmetric agreement matrix over two or more labelings; diagonal is 1.0."""
    key = str(metric).lower()
    if key not in METRICS:
        raise ConfigurationError(f"Unknown comparison metric '{metric}'; choose from {sorted(METRICS)}")
    named = _named_labels(labelings)
    if len(named) < 2:
        raise ConfigurationError(f"Need at least two labelings to compare, got {len(named)}")
    lengths = {v.size for _, v in named}
    if len(lengths) > 1:
        raise InputMismatchError(f"Labelings have different lengths: {sorted(lengths)}")

    names = [n for n, _ in named]
    n = len(named)
    M = np.empty((n, n), dtype=np.float64)
    np.fill_diagonal(M, METRICS[key][1])
    for i, j in itertools.combinations(range(n), 2):
        s = score_pair(named[i][1], named[j][1], key)
        M[i, j] = M[j, i] = s
    return pd.DataFrame(M, index=names, columns=names)
