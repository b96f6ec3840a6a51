import numpy as np
import pytest
from sklearn.metrics import adjusted_rand_score

from banksyscope.assemble import assemble_banksy_matrix
from banksyscope.cluster import (
    ClusterParams,
    MixtureClusterer,
    build_snn_graph,
    cluster_embedding,
    get_clusterer,
    relabel_by_size,
)
from banksyscope.exceptions import ClusteringFailedError, ConfigurationError
from banksyscope.neighbors import compute_neighborhood_features
from banksyscope.reduce import run_pca


@pytest.fixture
def embedding(tissue):
    X, coords, domain = tissue
    feats = compute_neighborhood_features(X, coords, [8, 12], use_harmonic=True)
    aug = assemble_banksy_matrix(X, feats, 0.8, use_harmonic=True)
    pcs, _ = run_pca(aug.values, 10, seed=0)
    return pcs, domain


def _contiguous(labels):
    u = np.unique(labels)
    return labels.min() == 0 and np.array_equal(u, np.arange(u.size))


def test_relabel_by_size():
    out = relabel_by_size(np.array([5, 5, 2, 2, 2, 9]))
    assert out.tolist() == [1, 1, 0, 0, 0, 2]


def test_relabel_ties_follow_first_occurrence():
    assert relabel_by_size(np.array([7, 3, 7, 3])).tolist() == [0, 1, 0, 1]


def test_snn_graph_symmetric_without_self_loops(embedding):
    pcs, _ = embedding
    G = build_snn_graph(pcs, 15)
    assert G.shape == (pcs.shape[0], pcs.shape[0])
    assert (G - G.T).count_nonzero() == 0
    assert G.diagonal().sum() == 0
    assert G.data.min() >= 1.0 / 15.0
    assert G.data.max() <= 1.0


def test_snn_graph_k_clamped(caplog):
    pts = np.random.default_rng(0).normal(size=(5, 3))
    with caplog.at_level("WARNING", logger="banksyscope"):
        G = build_snn_graph(pts, 50)
    # every cell shares the whole set, Jaccard 1 everywhere off the diagonal
    np.testing.assert_allclose(G.toarray(), 1.0 - np.eye(5))
    assert "only 5 cells" in caplog.text


@pytest.mark.parametrize("algorithm,resolution", [("leiden", 1.0), ("louvain", 1.0), ("kmeans", 3), ("mclust", 3)])
def test_deterministic_contiguous_labels(embedding, algorithm, resolution):
    pcs, _ = embedding
    a = cluster_embedding(pcs, 15, resolution, algorithm=algorithm, seed=42)
    b = cluster_embedding(pcs, 15, resolution, algorithm=algorithm, seed=42)
    np.testing.assert_array_equal(a, b)
    assert a.shape == (pcs.shape[0],)
    assert _contiguous(a)
    counts = np.bincount(a)
    assert np.all(np.diff(counts) <= 0)


def test_count_modes_return_requested_clusters(embedding):
    pcs, domain = embedding
    labels = cluster_embedding(pcs, 15, 3, algorithm="kmeans", seed=0)
    assert np.unique(labels).size == 3
    assert adjusted_rand_score(domain, labels) > 0.5


def test_higher_resolution_gives_more_clusters(embedding):
    pcs, _ = embedding
    coarse = cluster_embedding(pcs, 15, 0.2, algorithm="leiden", seed=1)
    fine = cluster_embedding(pcs, 15, 3.0, algorithm="leiden", seed=1)
    assert np.unique(fine).size > np.unique(coarse).size


def test_mixture_non_convergence_raises(embedding):
    pcs, _ = embedding
    clusterer = MixtureClusterer({"mclust_max_iter": 1})
    with pytest.raises(ClusteringFailedError, match="did not converge"):
        clusterer.fit(pcs, ClusterParams(15, 4), seed=0)


def test_kmeans_cluster_count_clamped(caplog):
    pts = np.random.default_rng(0).normal(size=(4, 2))
    with caplog.at_level("WARNING", logger="banksyscope"):
        labels = cluster_embedding(pts, 3, 10, algorithm="kmeans", seed=0)
    assert np.unique(labels).size == 4


@pytest.mark.parametrize("algorithm,resolution", [("leiden", 0.0), ("louvain", -1.0), ("kmeans", 2.5), ("mclust", 0)])
def test_bad_resolution(embedding, algorithm, resolution):
    pcs, _ = embedding
    with pytest.raises(ConfigurationError):
        cluster_embedding(pcs, 15, resolution, algorithm=algorithm)


def test_unknown_algorithm():
    with pytest.raises(ConfigurationError, match="Unknown clustering algorithm"):
        get_clusterer("spectral")
