__version__ = "0.1.0"

from .exceptions import BanksyScopeError, ClusteringFailedError, ConfigurationError, InputMismatchError
from .neighbors import NeighborCache, NeighborSet, FeatureMatrix, find_neighbors, compute_neighborhood_features
from .assemble import AugmentedMatrix, assemble_banksy_matrix, assemble_grid
from .reduce import Embedding, reduce_matrix, run_pca
from .cluster import CLUSTERERS, build_snn_graph, cluster_embedding, get_clusterer
from .types import ClusterLabeling, ParameterCombo
from .harmonize import harmonize_labelings, match_labels
from .compare import compare_labelings
from .pipeline import GridResult, GridSpec, run_banksy, run_grid
