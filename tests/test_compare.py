import numpy as np
import pytest

from banksyscope.compare import compare_labelings, score_pair
from banksyscope.exceptions import ConfigurationError, InputMismatchError
from banksyscope.types import STATUS_FAILED, ClusterLabeling, ParameterCombo


@pytest.mark.parametrize("metric", ["ari", "nmi"])
def test_diagonal_is_exactly_one(metric):
    rng = np.random.default_rng(0)
    labs = {f"l{i}": rng.integers(0, 4, size=150) for i in range(3)}
    M = compare_labelings(labs, metric=metric)
    assert list(M.index) == ["l0", "l1", "l2"]
    assert np.all(np.diag(M.to_numpy()) == 1.0)
    np.testing.assert_array_equal(M.to_numpy(), M.to_numpy().T)


def test_self_agreement_and_random_permutations():
    rng = np.random.default_rng(11)
    base = np.repeat(np.arange(5), 400)
    a = rng.permutation(base)
    b = rng.permutation(base)
    assert score_pair(a, a, "ari") == pytest.approx(1.0)
    assert abs(score_pair(a, b, "ari")) < 0.01


def test_label_ids_do_not_matter():
    a = np.array([0, 0, 1, 1, 2, 2])
    assert score_pair(a, (a + 1) % 3, "ari") == pytest.approx(1.0)
    assert score_pair(a, (a + 1) % 3, "nmi") == pytest.approx(1.0)


def test_failed_labelings_are_skipped():
    combo = ParameterCombo((15,), False, 0.2, 50, 1.0, "leiden", 1)
    labs = [
        ClusterLabeling(combo, np.array([0, 1, 1, 0])),
        ClusterLabeling(ParameterCombo((15,), False, 0.2, 50, 2.0, "leiden", 1), np.array([0, 1, 2, 0])),
        ClusterLabeling(ParameterCombo((15,), False, 0.2, 50, 3.0, "leiden", 1), None, status=STATUS_FAILED),
    ]
    M = compare_labelings(labs)
    assert M.shape == (2, 2)


def test_errors():
    with pytest.raises(ConfigurationError, match="at least two"):
        compare_labelings({"a": np.zeros(3)})
    with pytest.raises(ConfigurationError, match="metric"):
        compare_labelings({"a": np.zeros(3), "b": np.zeros(3)}, metric="fmi")
    with pytest.raises(InputMismatchError):
        compare_labelings({"a": np.zeros(3), "b": np.zeros(4)})
