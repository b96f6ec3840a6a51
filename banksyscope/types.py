from typing import List, Optional, Tuple
from dataclasses import dataclass, field

import numpy as np


COUNT_ALGORITHMS: Tuple[str, ...] = ('kmeans', 'mclust')

STATUS_OK = 'ok'
STATUS_FAILED = 'failed'


@dataclass(frozen=True)
class ParameterCombo:
    """One run through Reduce -> Cluster.

    For the centroid and mixture algorithms `resolution` holds the number of
    clusters.
    """
    k_geom: Tuple[int, ...]
    use_harmonic: bool
    lambda_param: float
    k_neighbors: int
    resolution: float
    algorithm: str
    seed: int

    @property
    def embedding_key(self) -> Tuple[float, bool]:
        return (self.lambda_param, self.use_harmonic)

    @property
    def name(self) -> str:
        kg = '-'.join(str(k) for k in self.k_geom)
        if self.algorithm in COUNT_ALGORITHMS:
            gran = f"nc{int(self.resolution)}"
        else:
            gran = f"res{self.resolution:g}"
        return (
            f"clust_kg{kg}_M{int(self.use_harmonic)}_lam{self.lambda_param:g}"
            f"_k{self.k_neighbors}_{gran}_{self.algorithm}_s{self.seed}"
        )


@dataclass
class ClusterLabeling:
    combo: ParameterCombo
    labels: Optional[np.ndarray]
    status: str = STATUS_OK
    error: Optional[str] = None
    reference: Optional[str] = None
    notes: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.combo.name

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK and self.labels is not None

    @property
    def n_clusters(self) -> int:
        return int(np.unique(self.labels).size) if self.ok else 0
