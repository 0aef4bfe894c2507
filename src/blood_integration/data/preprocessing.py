"""
Per-dataset quality control, filtering, normalization and feature selection.

Every function here works on one dataset at a time, or intersects gene sets
across datasets. Nothing is normalized after merging: ``merge_datasets`` only
concatenates matrices that were normalized independently.
"""

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc

from blood_integration.config.datasets import QCThresholds
from blood_integration.config.settings import get_settings
from blood_integration.data.dataset import CELL_TYPE_KEY, ORIGIN_KEY, Dataset
from blood_integration.exceptions import ConfigError, EmptyResultError

logger = logging.getLogger(__name__)

COUNTS_LAYER = "counts"
QC_COLUMNS = ("n_genes_by_counts", "total_counts", "pct_counts_mt", "pct_counts_ribo")


def annotate_qc(dataset: Dataset) -> Dataset:
    """
    Compute per-cell QC metrics in place.

    Adds ``n_genes_by_counts``, ``total_counts``, ``pct_counts_mt`` and
    ``pct_counts_ribo`` to ``obs``. Mitochondrial and ribosomal genes are
    matched by the name prefixes configured for the dataset. Percentages are
    0.0 when no gene matches or a cell has no counts.
    """
    adata = dataset.adata
    config = dataset.config

    adata.var["mt"] = adata.var_names.str.startswith(tuple(config.mt_prefixes))
    adata.var["ribo"] = adata.var_names.str.startswith(tuple(config.ribo_prefixes))

    n_mt = int(adata.var["mt"].sum())
    if n_mt == 0:
        logger.warning(
            f"{dataset.name}: no genes match mitochondrial prefixes {config.mt_prefixes}"
        )

    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=["mt", "ribo"],
        percent_top=None,
        log1p=False,
        inplace=True,
    )

    for column in ("pct_counts_mt", "pct_counts_ribo"):
        adata.obs[column] = adata.obs[column].astype(float).fillna(0.0)

    dataset.mark_qc_fresh()
    logger.info(
        f"{dataset.name}: QC on {adata.n_obs} cells "
        f"({n_mt} mitochondrial, {int(adata.var['ribo'].sum())} ribosomal genes), "
        f"median genes/cell {adata.obs['n_genes_by_counts'].median():.0f}, "
        f"median mt% {adata.obs['pct_counts_mt'].median():.2f}"
    )
    return dataset


def qc_mask(obs: pd.DataFrame, thresholds: QCThresholds) -> pd.Series:
    """Boolean mask of cells strictly inside the QC bounds."""
    n_genes = obs["n_genes_by_counts"]
    return (
        (n_genes > thresholds.min_genes)
        & (n_genes < thresholds.max_genes)
        & (obs["pct_counts_mt"] < thresholds.max_pct_mt)
    )


def filter_cells(dataset: Dataset, thresholds: Optional[QCThresholds] = None) -> Dataset:
    """
    Drop cells outside the dataset's QC bounds.

    Parameters
    ----------
    dataset : Dataset
        Dataset to filter. QC metrics are recomputed first if stale.
    thresholds : QCThresholds, optional
        Overrides the thresholds of the dataset config.

    Returns
    -------
    Dataset
        A new Dataset owning the filtered matrix.

    Raises
    ------
    EmptyResultError
        If no cell passes the filter.
    """
    thresholds = thresholds or dataset.config.thresholds
    if not dataset.qc_fresh:
        annotate_qc(dataset)

    keep = qc_mask(dataset.adata.obs, thresholds)
    n_keep = int(keep.sum())
    if n_keep == 0:
        raise EmptyResultError(
            f"{dataset.name}: no cells pass {thresholds} (out of {dataset.n_cells})"
        )

    logger.info(
        f"{dataset.name}: kept {n_keep}/{dataset.n_cells} cells "
        f"({thresholds.min_genes} < genes < {thresholds.max_genes}, mt% < {thresholds.max_pct_mt})"
    )
    filtered = dataset.adata[keep.values].copy()
    return dataset.with_adata(filtered, qc_fresh=True)


class GeneOverlap:
    """Diagnostic describing how much of each gene set survives intersection."""

    def __init__(self, shared: Sequence[str], gene_sets: dict):
        union = set()
        for genes in gene_sets.values():
            union.update(genes)

        self.shared = list(shared)
        self.n_shared = len(self.shared)
        self.n_union = len(union)
        self.jaccard = self.n_shared / self.n_union if self.n_union else 0.0
        self.retained = {
            name: (self.n_shared / len(genes) if len(genes) else 0.0)
            for name, genes in gene_sets.items()
        }

    def to_dict(self):
        return {
            "n_shared": self.n_shared,
            "n_union": self.n_union,
            "jaccard": self.jaccard,
            "retained": dict(self.retained),
        }

    def __repr__(self):
        return f"GeneOverlap(n_shared={self.n_shared}, n_union={self.n_union}, jaccard={self.jaccard:.3f})"


def shared_genes(*gene_lists: Iterable[str]) -> List[str]:
    """
    Genes present in every list, in the order of the first list.

    As a set the result does not depend on argument order, and intersecting
    it again with any input list returns it unchanged.
    """
    if not gene_lists:
        return []
    first = list(dict.fromkeys(gene_lists[0]))
    others = [set(genes) for genes in gene_lists[1:]]
    return [gene for gene in first if all(gene in other for other in others)]


def intersect_genes(datasets: List[Dataset]) -> Tuple[List[Dataset], GeneOverlap]:
    """
    Restrict every dataset to the genes shared by all of them.

    Returns the restricted datasets (same gene order in each) and a
    :class:`GeneOverlap` diagnostic. QC metrics of restricted datasets are
    marked stale.
    """
    gene_sets = {ds.name: list(ds.adata.var_names) for ds in datasets}
    shared = shared_genes(*gene_sets.values())
    overlap = GeneOverlap(shared, gene_sets)

    if not shared:
        raise EmptyResultError(f"Datasets {list(gene_sets)} share no genes")

    retained = ", ".join(f"{name} {frac:.1%}" for name, frac in overlap.retained.items())
    logger.info(f"Shared genes: {overlap.n_shared}/{overlap.n_union} (Jaccard {overlap.jaccard:.3f}); retained {retained}")

    restricted = []
    for ds in datasets:
        if list(ds.adata.var_names) == shared:
            restricted.append(ds)
            continue
        restricted.append(ds.with_adata(ds.adata[:, shared].copy(), qc_fresh=False))
    return restricted, overlap


def normalize_dataset(
    dataset: Dataset,
    target_sum: Optional[float] = None,
    n_top_genes: Optional[int] = None,
) -> Dataset:
    """
    Normalize one dataset on its own and flag its highly variable genes.

    Raw counts are kept in ``layers["counts"]``; ``X`` becomes
    log1p(counts / total * target_sum). Variable genes are selected with the
    Seurat dispersion method and stored in ``var["highly_variable"]``.
    """
    settings = get_settings()
    target_sum = settings.NORM_TARGET_SUM if target_sum is None else target_sum
    n_top_genes = settings.N_TOP_GENES if n_top_genes is None else n_top_genes
    if not target_sum > 0:
        raise ConfigError(f"target_sum must be positive, got {target_sum}")
    if n_top_genes < 1:
        raise ConfigError(f"n_top_genes must be at least 1, got {n_top_genes}")

    adata = dataset.adata
    adata.layers[COUNTS_LAYER] = adata.X.copy()

    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)

    n_top = min(n_top_genes, adata.n_vars)
    sc.pp.highly_variable_genes(adata, flavor="seurat", n_top_genes=n_top)
    adata.var["dispersions_norm"] = adata.var["dispersions_norm"].fillna(-np.inf)

    logger.info(f"{dataset.name}: normalized to {target_sum:g} counts/cell, {int(adata.var['highly_variable'].sum())} variable genes")
    return dataset


def select_integration_features(datasets: List[Dataset], n_features: Optional[int] = None) -> List[str]:
    """
    Rank genes by how many datasets call them highly variable.

    Ties are broken by the mean of each dataset's dispersion rank. Only genes
    present in every dataset are considered.
    """
    n_features = get_settings().N_TOP_GENES if n_features is None else n_features
    genes = shared_genes(*(ds.adata.var_names for ds in datasets))
    if not genes:
        raise EmptyResultError("Datasets share no genes to select integration features from")

    n_variable = pd.Series(0, index=genes, dtype=int)
    ranks = []
    for ds in datasets:
        var = ds.adata.var.loc[genes]
        if "highly_variable" not in var.columns:
            raise ConfigError(f"{ds.name} has no variable genes; normalize it first")
        n_variable += var["highly_variable"].astype(int)
        ranks.append(var["dispersions_norm"].rank(ascending=False, method="average"))

    table = pd.DataFrame({"n_variable": n_variable, "mean_rank": pd.concat(ranks, axis=1).mean(axis=1)})
    table = table.sort_values(["n_variable", "mean_rank"], ascending=[False, True], kind="mergesort")
    features = table.index[: min(n_features, len(table))].tolist()

    logger.info(
        f"Selected {len(features)} integration features "
        f"({int((table.loc[features, 'n_variable'] == len(datasets)).sum())} variable in all datasets)"
    )
    return features


def merge_datasets(datasets: List[Dataset]) -> ad.AnnData:
    """
    Concatenate datasets without touching their values.

    Cell identifiers are suffixed with the dataset name so barcodes shared by
    two datasets stay distinct. Cells keep their dataset order. Cell-type
    labels survive when only some datasets carry them; unlabeled cells get a
    missing label.
    """
    names = [ds.name for ds in datasets]
    merged = ad.concat(
        [ds.adata for ds in datasets],
        join="inner",
        keys=names,
        index_unique="-",
    )
    merged.obs[ORIGIN_KEY] = pd.Categorical(merged.obs[ORIGIN_KEY].astype(str), categories=names)

    if any(CELL_TYPE_KEY in ds.adata.obs.columns for ds in datasets):
        labels = []
        for ds in datasets:
            obs = ds.adata.obs
            if CELL_TYPE_KEY in obs.columns:
                labels.append(obs[CELL_TYPE_KEY].astype(object).to_numpy())
            else:
                labels.append(np.full(ds.adata.n_obs, np.nan, dtype=object))
        merged.obs[CELL_TYPE_KEY] = pd.Categorical(np.concatenate(labels))
    logger.info(f"Merged {len(datasets)} datasets: {merged.n_obs} cells, {merged.n_vars} genes")
    return merged
