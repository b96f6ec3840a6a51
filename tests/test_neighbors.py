import numpy as np
import pytest
import scipy.sparse as sp

from banksyscope.exceptions import ConfigurationError, InputMismatchError
from banksyscope.neighbors import (
    NeighborCache,
    azimuthal_weights,
    compute_neighborhood_features,
    find_neighbors,
    neighbor_weights,
    spatial_weights,
)


def test_neighbors_exclude_self_and_are_sorted(tissue):
    _, coords, _ = tissue
    nb = find_neighbors(coords, 8)
    assert nb.indices.shape == (coords.shape[0], 8)
    assert not (nb.indices == np.arange(coords.shape[0])[:, None]).any()
    assert np.all(np.diff(nb.distances, axis=1) >= 0)


def test_fewer_cells_than_k_returns_all_available(caplog):
    coords = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 2.0], [3.0, 3.0]])
    with caplog.at_level("WARNING", logger="banksyscope"):
        nb = find_neighbors(coords, 10)
    assert nb.k == 3
    assert nb.k_requested == 10
    for i in range(4):
        assert sorted(nb.indices[i].tolist()) == sorted(set(range(4)) - {i})
    assert "only 3 other cells" in caplog.text


def test_single_cell_has_no_neighbors():
    nb = find_neighbors(np.array([[1.0, 2.0]]), 5)
    assert nb.k == 0
    assert spatial_weights(nb).nnz == 0


def test_equidistant_ties_prefer_lower_index():
    # cell 0 at the centre, four cells at distance 1
    coords = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [-1.0, 0.0], [0.0, -1.0], [5.0, 5.0]])
    nb = find_neighbors(coords, 2)
    assert nb.indices[0].tolist() == [1, 2]
    again = find_neighbors(coords, 2)
    np.testing.assert_array_equal(nb.indices, again.indices)


def test_invalid_inputs():
    with pytest.raises(ConfigurationError):
        find_neighbors(np.zeros((5, 2)), 0)
    with pytest.raises(InputMismatchError, match="cells x 2"):
        find_neighbors(np.zeros((5, 4)), 2)
    with pytest.raises(InputMismatchError, match="NaN"):
        find_neighbors(np.array([[0.0, np.nan], [1.0, 1.0]]), 1)


@pytest.mark.parametrize("decay", ["scaled_gaussian", "reciprocal", "ranked", "uniform"])
def test_weights_row_normalized_and_non_increasing(tissue, decay):
    _, coords, _ = tissue
    nb = find_neighbors(coords, 10)
    w = neighbor_weights(nb, decay)
    np.testing.assert_allclose(w.sum(axis=1), 1.0)
    assert np.all(np.diff(w, axis=1) <= 1e-12)
    W = spatial_weights(nb, decay)
    assert sp.issparse(W)
    np.testing.assert_allclose(np.asarray(W.sum(axis=1)).ravel(), 1.0)


def test_unknown_decay():
    with pytest.raises(ConfigurationError, match="decay"):
        compute_neighborhood_features(np.ones((4, 2)), np.random.default_rng(0).normal(size=(4, 2)), 2, decay="box")


def test_cache_reuses_single_search(tissue):
    _, coords, _ = tissue
    cache = NeighborCache(coords)
    cache.prefetch([5, 12])
    small = cache.get(5)
    direct = find_neighbors(coords, 5)
    np.testing.assert_array_equal(small.indices, direct.indices)
    np.testing.assert_allclose(small.distances, direct.distances)


def test_local_mean_matches_manual(small_tissue):
    X, coords, _ = small_tissue
    feats = compute_neighborhood_features(X, coords, 6, decay="uniform")
    assert list(feats) == [0]
    nb = find_neighbors(coords, 6)
    np.testing.assert_allclose(feats[0].values[7], X[nb.indices[7]].mean(axis=0))


def test_harmonic_features(small_tissue):
    X, coords, _ = small_tissue
    feats = compute_neighborhood_features(X, coords, [6, 10], use_harmonic=True)
    assert sorted(feats) == [0, 1]
    assert feats[1].k_geom == 10
    assert feats[1].name == "m1"
    assert feats[1].values.shape == X.shape
    assert np.all(feats[1].values >= 0)


def test_harmonic_zero_for_symmetric_uniform_neighborhood():
    # four equidistant neighbors with equal expression cancel exactly
    coords = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [-1.0, 0.0], [0.0, -1.0]])
    X = np.array([[0.0], [2.0], [2.0], [2.0], [2.0]])
    feats = compute_neighborhood_features(X, coords, [4, 4], use_harmonic=True, decay="uniform")
    assert feats[1].values[0, 0] == pytest.approx(0.0, abs=1e-12)


def test_harmonic_detects_gradient():
    coords = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [-1.0, 0.0], [0.0, -1.0]])
    X = np.array([[0.0], [4.0], [0.0], [0.0], [0.0]])
    feats = compute_neighborhood_features(X, coords, [4, 4], use_harmonic=True, decay="uniform")
    # the azimuth terms of a symmetric cross sum to zero, so centering leaves |1/4 * 4|
    assert feats[1].values[0, 0] == pytest.approx(1.0)


def test_azimuthal_weights_shapes(small_tissue):
    _, coords, _ = small_tissue
    nb = find_neighbors(coords, 5)
    re, im = azimuthal_weights(coords, nb, 1)
    assert re.shape == im.shape == (coords.shape[0], coords.shape[0])
    mag = np.sqrt(re.toarray() ** 2 + im.toarray() ** 2)
    np.testing.assert_allclose(mag.sum(axis=1), 1.0)


def test_row_mismatch():
    with pytest.raises(InputMismatchError, match="coordinates have"):
        compute_neighborhood_features(np.ones((5, 3)), np.zeros((4, 2)), 2)
