import logging

import numpy as np
import pytest


def pytest_addoption(parser):
    parser.addoption("--runslow", action="store_true", default=False, help="run slow end-to-end tests")


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: full-size end-to-end runs (enable with --runslow)")


def pytest_collection_modifyitems(config, items):
    if config.getoption("--runslow"):
        return
    skip_slow = pytest.mark.skip(reason="needs --runslow")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


def make_tissue(n_cells: int = 300, n_genes: int = 12, n_domains: int = 3, seed: int = 0):
    """Cells on a jittered square lattice split into vertical bands; each band
    up-regulates its own gene set. Returns (expression, coords, domain)."""
    rng = np.random.default_rng(seed)
    side = int(np.ceil(np.sqrt(n_cells)))
    gx, gy = np.meshgrid(np.arange(side, dtype=float), np.arange(side, dtype=float))
    coords = np.column_stack([gx.ravel(), gy.ravel()])[:n_cells]
    coords += rng.uniform(-0.2, 0.2, size=coords.shape)
    domain = np.minimum((coords[:, 0] / side * n_domains).astype(int), n_domains - 1)
    X = rng.poisson(1.0, size=(n_cells, n_genes)).astype(float)
    per = max(1, n_genes // n_domains)
    for d in range(n_domains):
        X[domain == d, d * per:(d + 1) * per] += rng.poisson(3.0, size=((domain == d).sum(), per))
    return np.log1p(X), coords, domain


@pytest.fixture
def tissue():
    return make_tissue()


@pytest.fixture
def small_tissue():
    return make_tissue(n_cells=120, n_genes=9, n_domains=3, seed=1)


@pytest.fixture(autouse=True)
def _banksyscope_logs_propagate():
    # setup_logger() disables propagation; keep caplog working across tests
    logger = logging.getLogger("banksyscope")
    yield
    logger.propagate = True
