"""Loading, quality control and per-dataset preprocessing."""

from blood_integration.data.dataset import Dataset, ORIGIN_KEY, CELL_TYPE_KEY
from blood_integration.data.loading import load_counts, load_dataset, load_datasets, read_cell_labels
from blood_integration.data.preprocessing import (
    GeneOverlap,
    annotate_qc,
    filter_cells,
    intersect_genes,
    merge_datasets,
    normalize_dataset,
    select_integration_features,
    shared_genes,
)

__all__ = [
    "Dataset",
    "ORIGIN_KEY",
    "CELL_TYPE_KEY",
    "load_counts",
    "load_dataset",
    "load_datasets",
    "read_cell_labels",
    "GeneOverlap",
    "annotate_qc",
    "filter_cells",
    "intersect_genes",
    "merge_datasets",
    "normalize_dataset",
    "select_integration_features",
    "shared_genes",
]
