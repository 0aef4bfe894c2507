"""
Pytest configuration and fixtures for the blood integration tests.
"""

import pytest
from pathlib import Path
import sys

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import anndata as ad
from scipy import sparse

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from blood_integration.config.datasets import DatasetConfig, QCThresholds
from blood_integration.config.settings import reset_settings
from blood_integration.data.dataset import CELL_TYPE_KEY, Dataset

MT_GENES = ["MT-CO1", "MT-ND1", "MT-ATP6"]
RIBO_GENES = ["RPS3", "RPL5"]
N_GROUPS = 3
MARKERS_PER_GROUP = 20


@pytest.fixture(autouse=True)
def fresh_settings():
    """Drop cached settings so environment overrides never leak between tests."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def project_root():
    """Return project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def sample_settings(tmp_path):
    """Return settings rooted in a temporary directory."""
    from blood_integration.config.settings import Settings
    return Settings(base_dir=tmp_path)


def make_counts(n_cells=100, n_genes=200, n_high_mt=0, seed=0, depth=1.0, with_mt=True, labels=False):
    """
    Synthetic cells x genes Poisson counts with three marker-defined groups.

    The last ``n_high_mt`` cells get heavy mitochondrial expression (about
    60% of their counts) so a 20% threshold removes exactly them.
    """
    rng = np.random.default_rng(seed)
    special = (MT_GENES if with_mt else []) + RIBO_GENES
    genes = special + [f"GENE{i}" for i in range(n_genes - len(special))]

    groups = np.arange(n_cells) % N_GROUPS
    rates = np.full((n_cells, n_genes), 1.0 * depth)
    first_marker = len(special)
    for group in range(N_GROUPS):
        start = first_marker + group * MARKERS_PER_GROUP
        rates[np.ix_(groups == group, np.arange(start, start + MARKERS_PER_GROUP))] = 10.0 * depth

    if with_mt and n_high_mt:
        rates[n_cells - n_high_mt:, : len(MT_GENES)] = 100.0

    counts = rng.poisson(rates).astype(np.float32)
    adata = ad.AnnData(
        X=sparse.csr_matrix(counts),
        obs=pd.DataFrame(index=[f"cell{i}" for i in range(n_cells)]),
        var=pd.DataFrame(index=genes),
    )
    if labels:
        adata.obs[CELL_TYPE_KEY] = pd.Categorical([f"type{g}" for g in groups])
    return adata


@pytest.fixture
def thresholds():
    """Bounds every synthetic cell passes on gene counts."""
    return QCThresholds(min_genes=50, max_genes=199, max_pct_mt=20.0)


@pytest.fixture
def make_dataset(thresholds):
    """Factory building a named synthetic Dataset."""

    def _make(name, n_cells=100, n_high_mt=0, seed=0, depth=1.0, n_genes=200, labels=False, with_mt=True):
        adata = make_counts(
            n_cells=n_cells,
            n_genes=n_genes,
            n_high_mt=n_high_mt,
            seed=seed,
            depth=depth,
            with_mt=with_mt,
            labels=labels,
        )
        return Dataset(name, adata, DatasetConfig(name, thresholds=thresholds))

    return _make


@pytest.fixture
def normalized_pair(make_dataset):
    """Two filtered-size, independently normalized datasets with a depth difference."""
    from blood_integration.data.preprocessing import normalize_dataset

    first = normalize_dataset(make_dataset("pbmc_a", n_cells=80, seed=1), n_top_genes=100)
    second = normalize_dataset(make_dataset("pbmc_b", n_cells=90, seed=2, depth=1.5), n_top_genes=100)
    return [first, second]
