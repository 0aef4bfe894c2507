"""
Composition reports: how the cells of each cluster split across datasets.

Also computes a few integration quality metrics (batch mixing silhouette and,
where external cell-type labels exist, agreement between clusters and labels).
"""

import json
import logging
from pathlib import Path
from typing import Dict, Optional, Sequence, Union

import numpy as np
import pandas as pd
from sklearn.metrics import adjusted_rand_score, normalized_mutual_info_score, silhouette_score

from blood_integration.analysis.clustering import CLUSTER_KEY
from blood_integration.data.dataset import CELL_TYPE_KEY, ORIGIN_KEY
from blood_integration.exceptions import ConfigError
from blood_integration.integration.base import IntegratedRepresentation

logger = logging.getLogger(__name__)

SILHOUETTE_SAMPLE_SIZE = 5000


def cross_tabulate(
    clusters: Sequence,
    labels: Sequence,
    cluster_order: Optional[Sequence] = None,
    label_order: Optional[Sequence] = None,
    label_name: str = ORIGIN_KEY,
) -> pd.DataFrame:
    """
    Count cells per (cluster, label) pair.

    Every cluster and label in the given orders gets a row/column, even when
    its count is zero.
    """
    clusters = pd.Series(np.asarray(clusters), name=CLUSTER_KEY)
    labels = pd.Series(np.asarray(labels), name=label_name)
    if len(clusters) != len(labels):
        raise ValueError(f"{len(clusters)} cluster ids but {len(labels)} labels")

    table = pd.crosstab(clusters, labels)
    if cluster_order is None:
        cluster_order = sorted(clusters.unique())
    if label_order is None:
        label_order = sorted(labels.unique())

    table = table.reindex(index=list(cluster_order), columns=list(label_order), fill_value=0)
    table.index.name = CLUSTER_KEY
    table.columns.name = label_name
    return table.astype(int)


def batch_mixing_score(embedding, origins, random_state: int = 0) -> float:
    """1 - silhouette of the origin labels; higher means better mixed."""
    origins = np.asarray(origins)
    n_origins = len(np.unique(origins))
    if n_origins < 2 or n_origins >= len(origins):
        return float("nan")
    sample_size = min(len(origins), SILHOUETTE_SAMPLE_SIZE)
    return 1.0 - float(silhouette_score(embedding, origins, sample_size=sample_size, random_state=random_state))


def cluster_purity(clusters, labels) -> float:
    """Fraction of cells carrying the majority label of their cluster."""
    table = pd.crosstab(np.asarray(clusters), np.asarray(labels))
    if table.values.sum() == 0:
        return float("nan")
    return float(table.max(axis=1).sum() / table.values.sum())


class CompositionReport:
    """
    Cluster x origin cross-tabulation of one integration run.

    Attributes
    ----------
    strategy : str
        Integration strategy that produced the clusters.
    composition : pandas.DataFrame
        Cells per cluster (rows) and origin (columns).
    cell_types : pandas.DataFrame or None
        Cells per cluster and external cell-type label, when labels exist.
    metrics : dict
        Integration quality metrics.
    gene_overlap : dict or None
        Shared-gene diagnostic of the run.
    plot_data : pandas.DataFrame
        Per-cell 2-D coordinates, cluster and origin for a plotting layer.
    """

    def __init__(
        self,
        strategy: str,
        composition: pd.DataFrame,
        cell_types: Optional[pd.DataFrame] = None,
        metrics: Optional[Dict[str, float]] = None,
        gene_overlap: Optional[dict] = None,
        plot_data: Optional[pd.DataFrame] = None,
        params: Optional[dict] = None,
    ):
        self.strategy = strategy
        self.composition = composition
        self.cell_types = cell_types
        self.metrics = dict(metrics or {})
        self.gene_overlap = gene_overlap
        self.plot_data = plot_data
        self.params = dict(params or {})

    @property
    def n_clusters(self):
        return self.composition.shape[0]

    @property
    def origins(self):
        return list(self.composition.columns)

    @property
    def total_cells(self):
        return int(self.composition.values.sum())

    def cluster_sizes(self) -> pd.Series:
        return self.composition.sum(axis=1)

    def origin_sizes(self) -> pd.Series:
        return self.composition.sum(axis=0)

    def fractions(self) -> pd.DataFrame:
        """Share of each origin within each cluster."""
        sizes = self.cluster_sizes().replace(0, np.nan)
        return self.composition.div(sizes, axis=0).fillna(0.0)

    def summary(self) -> dict:
        return {
            "strategy": self.strategy,
            "n_clusters": self.n_clusters,
            "total_cells": self.total_cells,
            "cells_per_origin": {str(k): int(v) for k, v in self.origin_sizes().items()},
            "metrics": self.metrics,
            "gene_overlap": self.gene_overlap,
            "params": {k: v for k, v in self.params.items() if k != "features"},
        }

    def save(self, out_dir: Union[str, Path]) -> Path:
        """Write the tables as CSV and the summary as JSON to ``out_dir``."""
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)

        self.composition.to_csv(out_dir / "composition.csv")
        if self.cell_types is not None:
            self.cell_types.to_csv(out_dir / "cell_types.csv")
        if self.plot_data is not None:
            self.plot_data.to_csv(out_dir / "plot_data.csv")
        with open(out_dir / "summary.json", "w") as f:
            json.dump(self.summary(), f, indent=2, default=str)

        logger.info(f"Saved {self.strategy} report to {out_dir}")
        return out_dir

    def __repr__(self):
        return f"CompositionReport(strategy={self.strategy!r}, n_clusters={self.n_clusters}, total_cells={self.total_cells})"


def plot_coordinates(representation: IntegratedRepresentation, cluster_key: str = CLUSTER_KEY) -> pd.DataFrame:
    """
    Per-cell data a plotting layer needs.

    Uses UMAP coordinates when present, otherwise the first two components
    of the integrated embedding.
    """
    adata = representation.adata
    if "X_umap" in adata.obsm:
        coords, basis = adata.obsm["X_umap"][:, :2], "umap"
    else:
        coords, basis = representation.embedding[:, :2], representation.strategy

    data = pd.DataFrame(coords, index=adata.obs_names, columns=[f"{basis}_1", f"{basis}_2"])
    data[CLUSTER_KEY] = adata.obs[cluster_key].values
    data[ORIGIN_KEY] = adata.obs[ORIGIN_KEY].values
    if CELL_TYPE_KEY in adata.obs.columns:
        data[CELL_TYPE_KEY] = adata.obs[CELL_TYPE_KEY].values
    return data


def integration_metrics(representation: IntegratedRepresentation, cluster_key: str = CLUSTER_KEY, random_state: int = 0) -> dict:
    obs = representation.adata.obs
    metrics = {
        "batch_mixing": batch_mixing_score(representation.embedding, obs[ORIGIN_KEY], random_state),
        "n_clusters": int(obs[cluster_key].nunique()),
    }

    if CELL_TYPE_KEY in obs.columns:
        labeled = obs[CELL_TYPE_KEY].notna().values
        if labeled.any():
            clusters = obs[cluster_key].values[labeled]
            cell_types = obs[CELL_TYPE_KEY].astype(str).values[labeled]
            metrics["ari"] = float(adjusted_rand_score(cell_types, clusters))
            metrics["nmi"] = float(normalized_mutual_info_score(cell_types, clusters))
            metrics["purity"] = cluster_purity(clusters, cell_types)
    return metrics


def build_report(
    representation: IntegratedRepresentation,
    gene_overlap: Optional[dict] = None,
    cluster_key: str = CLUSTER_KEY,
    compute_metrics: bool = True,
    random_state: int = 0,
) -> CompositionReport:
    """
    Cross-tabulate clusters against origin (and cell type, if labelled).

    Row sums are cluster sizes; column sums are the number of cells each
    dataset contributed after filtering.
    """
    obs = representation.adata.obs
    if cluster_key not in obs.columns:
        raise ConfigError(f"No '{cluster_key}' column; cluster the representation first")

    cluster_order = list(obs[cluster_key].cat.categories) if hasattr(obs[cluster_key], "cat") else None
    origin_order = list(obs[ORIGIN_KEY].cat.categories)
    composition = cross_tabulate(obs[cluster_key], obs[ORIGIN_KEY], cluster_order, origin_order)

    cell_types = None
    if CELL_TYPE_KEY in obs.columns and obs[CELL_TYPE_KEY].notna().any():
        labeled = obs[obs[CELL_TYPE_KEY].notna()]
        cell_types = cross_tabulate(
            labeled[cluster_key], labeled[CELL_TYPE_KEY].astype(str), cluster_order, label_name=CELL_TYPE_KEY
        )

    metrics = integration_metrics(representation, cluster_key, random_state) if compute_metrics else {}

    report = CompositionReport(
        representation.strategy,
        composition,
        cell_types=cell_types,
        metrics=metrics,
        gene_overlap=gene_overlap,
        plot_data=plot_coordinates(representation, cluster_key),
        params=representation.params,
    )
    logger.info(
        f"{representation.strategy}: {report.n_clusters} clusters x {len(report.origins)} origins, "
        f"{report.total_cells} cells; batch mixing {metrics.get('batch_mixing', float('nan')):.3f}"
    )
    return report
