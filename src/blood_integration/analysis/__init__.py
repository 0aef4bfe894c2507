"""Clustering and composition reporting."""

from blood_integration.analysis.clustering import CLUSTER_KEY, cluster_cells, compute_umap
from blood_integration.analysis.report import CompositionReport, build_report, cross_tabulate

__all__ = [
    "CLUSTER_KEY",
    "cluster_cells",
    "compute_umap",
    "CompositionReport",
    "build_report",
    "cross_tabulate",
]
