"""
Readers for the count-matrix formats used by public blood scRNA-seq datasets.

Handles 10x HDF5 containers (including multi-modal ones), 10x MTX
directories, h5ad files and plain delimited genes x cells tables.
"""

import logging
from pathlib import Path
from typing import List, Optional, Union

import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData
from scipy import sparse

from blood_integration.config.datasets import DatasetConfig
from blood_integration.data.dataset import CELL_TYPE_KEY, Dataset
from blood_integration.exceptions import LoadError

logger = logging.getLogger(__name__)

FORMATS = ("10x_h5", "mtx", "h5ad", "text")
TEXT_SUFFIXES = (".csv", ".tsv", ".txt")


def detect_format(path: Union[str, Path]) -> str:
    """Infer the input format from a file or directory path."""
    path = Path(path)
    if path.is_dir():
        if list(path.glob("matrix.mtx*")) or list(path.glob("*matrix.mtx*")):
            return "mtx"
        raise LoadError(f"Directory {path} does not contain a matrix.mtx file")

    suffixes = [s.lower() for s in path.suffixes]
    if suffixes and suffixes[-1] == ".gz":
        suffixes = suffixes[:-1]
    suffix = suffixes[-1] if suffixes else ""

    if suffix == ".h5":
        return "10x_h5"
    if suffix == ".h5ad":
        return "h5ad"
    if suffix == ".mtx":
        return "mtx"
    if suffix in TEXT_SUFFIXES:
        return "text"
    raise LoadError(f"Cannot infer format of {path}; pass one of {', '.join(FORMATS)}")


def _select_modality(adata: AnnData, modality: str, path: Path) -> AnnData:
    """Keep the features of one modality from a (possibly multi-modal) 10x container."""
    if "feature_types" not in adata.var.columns:
        # Legacy single-modality files carry gene expression only
        if modality != "Gene Expression":
            raise LoadError(f"{path} holds gene expression only, '{modality}' requested")
        return adata

    mask = (adata.var["feature_types"] == modality).values
    if not mask.any():
        available = sorted(adata.var["feature_types"].unique())
        raise LoadError(f"{path} has no '{modality}' features (available: {available})")

    if not mask.all():
        logger.info(f"Keeping {int(mask.sum())}/{adata.n_vars} '{modality}' features from {path.name}")
    return adata[:, mask].copy()


def _read_text_table(path: Path) -> AnnData:
    """Read a genes x cells delimited table, optionally gzip compressed."""
    suffixes = [s.lower() for s in path.suffixes if s.lower() != ".gz"]
    sep = "," if suffixes and suffixes[-1] == ".csv" else "\t"

    df = pd.read_csv(path, sep=sep, index_col=0, compression="infer")
    if df.empty:
        raise LoadError(f"{path} contains no counts")

    try:
        df = df.apply(pd.to_numeric, errors="raise")
    except (ValueError, TypeError) as e:
        raise LoadError(f"{path} contains non-numeric counts: {e}", cause=e) from e

    if df.isna().any().any():
        raise LoadError(f"{path} contains missing values")

    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)

    # Rows are genes, columns are cells
    return AnnData(
        X=sparse.csr_matrix(df.T.values.astype(np.float32)),
        obs=pd.DataFrame(index=df.columns),
        var=pd.DataFrame(index=df.index),
    )


def _validate_counts(adata: AnnData, path: Path) -> AnnData:
    """Enforce the count-matrix invariants on a freshly read AnnData."""
    if adata.n_obs == 0 or adata.n_vars == 0:
        raise LoadError(f"{path} is empty ({adata.n_obs} cells, {adata.n_vars} genes)")

    if adata.obs_names.duplicated().any():
        duplicates = adata.obs_names[adata.obs_names.duplicated()].unique()[:5].tolist()
        raise LoadError(f"{path} has duplicate cell identifiers, e.g. {duplicates}")

    if not sparse.issparse(adata.X):
        adata.X = sparse.csr_matrix(adata.X)
    elif adata.X.format != "csr":
        adata.X = adata.X.tocsr()
    if adata.X.dtype != np.float32:
        adata.X = adata.X.astype(np.float32)

    values = adata.X.data
    if values.size:
        if values.min() < 0:
            raise LoadError(f"{path} contains negative counts")
        if not np.allclose(values, np.round(values)):
            logger.warning(f"{path} contains non-integer values; treating them as counts")

    adata.var_names_make_unique()
    return adata


def load_counts(
    path: Union[str, Path],
    file_format: Optional[str] = None,
    modality: str = "Gene Expression",
) -> AnnData:
    """
    Load a count matrix as a cells x genes AnnData with a CSR matrix.

    Parameters
    ----------
    path : str or Path
        File or 10x MTX directory.
    file_format : str, optional
        One of ``10x_h5``, ``mtx``, ``h5ad``, ``text``. Inferred when None.
    modality : str
        Feature type kept from multi-modal 10x containers.

    Returns
    -------
    AnnData

    Raises
    ------
    LoadError
        If the input is missing, malformed or lacks the requested modality.
    """
    path = Path(path)
    if not path.exists():
        raise LoadError(f"Input not found: {path}")

    file_format = file_format or detect_format(path)
    if file_format not in FORMATS:
        raise LoadError(f"Unsupported format '{file_format}'; expected one of {', '.join(FORMATS)}")

    logger.info(f"Loading {file_format} counts from {path}")

    try:
        if file_format == "10x_h5":
            adata = sc.read_10x_h5(path, gex_only=False)
            adata = _select_modality(adata, modality, path)
        elif file_format == "mtx":
            mtx_dir = path if path.is_dir() else path.parent
            adata = sc.read_10x_mtx(mtx_dir, var_names="gene_symbols", gex_only=False)
            adata = _select_modality(adata, modality, path)
        elif file_format == "h5ad":
            adata = sc.read_h5ad(path)
        else:
            adata = _read_text_table(path)
    except LoadError:
        raise
    except (OSError, KeyError, ValueError, pd.errors.ParserError) as e:
        raise LoadError(f"Could not read {path}: {e}", cause=e) from e

    adata = _validate_counts(adata, path)
    logger.info(f"Loaded {adata.n_obs} cells, {adata.n_vars} genes from {path.name}")
    return adata


def read_cell_labels(path: Union[str, Path]) -> pd.Series:
    """
    Read an externally supplied cell-type table.

    The first column holds cell identifiers and the second the label; the
    delimiter is inferred from the file suffix.
    """
    path = Path(path)
    if not path.exists():
        raise LoadError(f"Label table not found: {path}")

    suffixes = [s.lower() for s in path.suffixes if s.lower() != ".gz"]
    sep = "," if suffixes and suffixes[-1] == ".csv" else "\t"
    try:
        table = pd.read_csv(path, sep=sep, index_col=0, compression="infer")
    except (OSError, ValueError, pd.errors.ParserError) as e:
        raise LoadError(f"Could not read label table {path}: {e}", cause=e) from e

    if table.shape[1] < 1:
        raise LoadError(f"Label table {path} needs a cell id column and a label column")

    labels = table.iloc[:, 0].astype(str)
    labels.index = labels.index.astype(str)
    labels.name = CELL_TYPE_KEY
    return labels


def attach_cell_labels(adata: AnnData, labels: pd.Series) -> AnnData:
    """Join cell-type labels onto ``obs``; unlabeled cells get NaN."""
    matched = labels.reindex(adata.obs_names)
    n_matched = int(matched.notna().sum())
    if n_matched == 0:
        logger.warning("No cell identifiers in the label table match the count matrix")
    else:
        logger.info(f"Attached cell-type labels to {n_matched}/{adata.n_obs} cells")
    adata.obs[CELL_TYPE_KEY] = pd.Categorical(matched.values)
    return adata


def load_dataset(config: DatasetConfig) -> Dataset:
    """Load one dataset described by a :class:`DatasetConfig`."""
    if config.path is None:
        raise LoadError(f"Dataset '{config.name}' has no input path")

    adata = load_counts(config.path, config.file_format, config.modality)
    if config.labels_path is not None:
        adata = attach_cell_labels(adata, read_cell_labels(config.labels_path))

    return Dataset(config.name, adata, config)


def load_datasets(configs: List[DatasetConfig]) -> List[Dataset]:
    """Load several datasets in order."""
    return [load_dataset(config) for config in configs]
