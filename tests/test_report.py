"""
Unit tests for composition reports and integration metrics.
"""

import json

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from blood_integration.analysis.clustering import CLUSTER_KEY
from blood_integration.analysis.report import (
    CompositionReport,
    batch_mixing_score,
    build_report,
    cluster_purity,
    cross_tabulate,
)
from blood_integration.data.dataset import CELL_TYPE_KEY, ORIGIN_KEY
from blood_integration.exceptions import ConfigError
from blood_integration.integration.base import IntegratedRepresentation


def clustered_representation(sizes=None, n_clusters=5, labels=False, seed=0):
    """80 + 90 filtered cells spread over ``n_clusters`` clusters."""
    sizes = sizes or {"pbmc3k": 80, "pbmc10k": 90}
    rng = np.random.default_rng(seed)
    origins = np.concatenate([[name] * n for name, n in sizes.items()])
    n_cells = len(origins)
    clusters = np.arange(n_cells) % n_clusters

    obs = pd.DataFrame(
        {
            ORIGIN_KEY: pd.Categorical(origins, categories=list(sizes)),
            CLUSTER_KEY: pd.Categorical(clusters, categories=list(range(n_clusters))),
        },
        index=[f"cell{i}" for i in range(n_cells)],
    )
    if labels:
        obs[CELL_TYPE_KEY] = pd.Categorical([f"type{c}" for c in clusters])

    adata = ad.AnnData(X=np.zeros((n_cells, 1), dtype=np.float32), obs=obs)
    return IntegratedRepresentation(adata, rng.normal(size=(n_cells, 4)), "anchor", {"knn": 20, "features": ["A"]})


class TestCrossTabulate:
    """Cluster x label counts."""

    def test_counts_and_orders(self):
        table = cross_tabulate([0, 0, 1, 2], ["a", "b", "a", "a"], cluster_order=[0, 1, 2, 3], label_order=["b", "a", "c"])
        assert table.shape == (4, 3)
        assert list(table.columns) == ["b", "a", "c"]
        assert table.loc[0, "a"] == 1 and table.loc[0, "b"] == 1
        assert table.loc[3].sum() == 0
        assert table["c"].sum() == 0

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            cross_tabulate([0, 1], ["a"])


class TestBuildReport:
    """Reports built from clustered representations."""

    def test_five_clusters_two_origins(self):
        report = build_report(clustered_representation())

        assert report.composition.shape == (5, 2)
        assert report.total_cells == 170
        assert report.origin_sizes().to_dict() == {"pbmc3k": 80, "pbmc10k": 90}
        assert report.cluster_sizes().sum() == 170
        assert report.origins == ["pbmc3k", "pbmc10k"]
        assert report.n_clusters == 5
        assert report.cell_types is None

    def test_row_sums_are_cluster_sizes(self):
        representation = clustered_representation()
        report = build_report(representation)
        expected = representation.adata.obs[CLUSTER_KEY].value_counts().sort_index()
        assert report.cluster_sizes().tolist() == expected.tolist()

    def test_empty_cluster_kept(self):
        representation = clustered_representation()
        obs = representation.adata.obs
        obs[CLUSTER_KEY] = obs[CLUSTER_KEY].cat.add_categories([5])
        report = build_report(representation)
        assert report.n_clusters == 6
        assert report.composition.loc[5].sum() == 0

    def test_fractions_sum_to_one(self):
        fractions = build_report(clustered_representation()).fractions()
        np.testing.assert_allclose(fractions.sum(axis=1), 1.0)

    def test_metrics(self):
        report = build_report(clustered_representation(labels=True))
        assert 0.0 <= report.metrics["batch_mixing"] <= 2.0
        assert report.metrics["n_clusters"] == 5
        assert report.metrics["ari"] == pytest.approx(1.0)
        assert report.metrics["purity"] == pytest.approx(1.0)
        assert report.cell_types.shape == (5, 5)

    def test_without_metrics(self):
        report = build_report(clustered_representation(), compute_metrics=False)
        assert report.metrics == {}

    def test_requires_clusters(self):
        representation = clustered_representation()
        del representation.adata.obs[CLUSTER_KEY]
        with pytest.raises(ConfigError, match="cluster"):
            build_report(representation)

    def test_plot_data(self):
        report = build_report(clustered_representation())
        assert list(report.plot_data.columns) == ["anchor_1", "anchor_2", CLUSTER_KEY, ORIGIN_KEY]
        assert len(report.plot_data) == 170

    def test_save(self, tmp_path):
        report = build_report(clustered_representation(labels=True), gene_overlap={"n_shared": 1})
        out_dir = report.save(tmp_path / "anchor")

        composition = pd.read_csv(out_dir / "composition.csv", index_col=0)
        assert composition.values.sum() == 170
        assert (out_dir / "cell_types.csv").exists()
        assert (out_dir / "plot_data.csv").exists()

        summary = json.loads((out_dir / "summary.json").read_text())
        assert summary["strategy"] == "anchor"
        assert summary["cells_per_origin"] == {"pbmc3k": 80, "pbmc10k": 90}
        assert summary["gene_overlap"] == {"n_shared": 1}
        assert "features" not in summary["params"]


class TestMetrics:
    """Stand-alone metric helpers."""

    def test_single_origin_mixing_is_nan(self):
        assert np.isnan(batch_mixing_score(np.zeros((4, 2)), ["a"] * 4))

    def test_separated_origins_mix_poorly(self):
        embedding = np.vstack([np.zeros((10, 2)), np.full((10, 2), 100.0)])
        embedding += np.random.default_rng(0).normal(scale=0.1, size=embedding.shape)
        origins = ["a"] * 10 + ["b"] * 10
        assert batch_mixing_score(embedding, origins) < 0.1

    def test_cluster_purity(self):
        assert cluster_purity([0, 0, 1, 1], ["x", "y", "z", "z"]) == pytest.approx(0.75)


class TestCompositionReport:
    """Report container."""

    def test_summary(self):
        composition = pd.DataFrame({"a": [3, 0], "b": [1, 2]}, index=pd.Index([0, 1], name=CLUSTER_KEY))
        report = CompositionReport("alignment", composition, metrics={"batch_mixing": 0.5})
        summary = report.summary()
        assert summary["n_clusters"] == 2
        assert summary["total_cells"] == 6
        assert summary["cells_per_origin"] == {"a": 3, "b": 3}
