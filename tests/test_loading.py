"""
Unit tests for count-matrix loading and the Dataset container.
"""

from unittest.mock import patch

import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from blood_integration.config.datasets import DatasetConfig
from blood_integration.data.dataset import CELL_TYPE_KEY, ORIGIN_KEY, Dataset
from blood_integration.data.loading import (
    _select_modality,
    _validate_counts,
    attach_cell_labels,
    detect_format,
    load_counts,
    load_dataset,
    read_cell_labels,
)
from blood_integration.exceptions import ConfigError, LoadError


@pytest.fixture
def count_table():
    """Genes x cells table as shipped by GEO whole-blood submissions."""
    return pd.DataFrame(
        [[0, 3, 1], [5, 0, 2], [1, 1, 0], [0, 0, 4]],
        index=["CD3E", "MS4A1", "MT-CO1", "LYZ"],
        columns=["AAAC-1", "AAAG-1", "AAAT-1"],
    )


class TestDetectFormat:
    """Format inference from paths."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("pbmc.h5", "10x_h5"),
            ("pbmc.h5ad", "h5ad"),
            ("matrix.mtx.gz", "mtx"),
            ("counts.csv", "text"),
            ("counts.tsv.gz", "text"),
            ("counts.txt", "text"),
        ],
    )
    def test_file_suffixes(self, tmp_path, name, expected):
        assert detect_format(tmp_path / name) == expected

    def test_mtx_directory(self, tmp_path):
        (tmp_path / "matrix.mtx.gz").touch()
        assert detect_format(tmp_path) == "mtx"

    def test_directory_without_matrix(self, tmp_path):
        with pytest.raises(LoadError):
            detect_format(tmp_path)

    def test_unknown_suffix(self, tmp_path):
        with pytest.raises(LoadError, match="Cannot infer"):
            detect_format(tmp_path / "counts.xlsx")


class TestLoadCounts:
    """Reading each supported format."""

    def test_csv_is_transposed(self, tmp_path, count_table):
        path = tmp_path / "counts.csv"
        count_table.to_csv(path)

        adata = load_counts(path)

        assert adata.shape == (3, 4)
        assert list(adata.obs_names) == ["AAAC-1", "AAAG-1", "AAAT-1"]
        assert list(adata.var_names) == ["CD3E", "MS4A1", "MT-CO1", "LYZ"]
        assert adata.X.format == "csr"
        assert adata.X.dtype == np.float32
        assert adata.X[1, 0] == 3

    def test_gzipped_tsv(self, tmp_path, count_table):
        path = tmp_path / "counts.tsv.gz"
        count_table.to_csv(path, sep="\t", compression="gzip")

        adata = load_counts(path)

        assert adata.shape == (3, 4)
        np.testing.assert_array_equal(adata.X.toarray(), count_table.T.values)

    def test_h5ad(self, tmp_path):
        source = ad.AnnData(
            X=sparse.csc_matrix(np.array([[1, 0], [2, 3]], dtype=np.int64)),
            obs=pd.DataFrame(index=["c1", "c2"]),
            var=pd.DataFrame(index=["CD3E", "LYZ"]),
        )
        path = tmp_path / "pbmc.h5ad"
        source.write_h5ad(path)

        adata = load_counts(path)

        assert adata.X.format == "csr"
        assert adata.X.dtype == np.float32

    def test_missing_file(self, tmp_path):
        with pytest.raises(LoadError, match="not found"):
            load_counts(tmp_path / "absent.h5")

    def test_unsupported_format(self, tmp_path, count_table):
        path = tmp_path / "counts.csv"
        count_table.to_csv(path)
        with pytest.raises(LoadError, match="Unsupported"):
            load_counts(path, file_format="loom")

    def test_negative_counts(self, tmp_path, count_table):
        count_table.iloc[0, 0] = -1
        path = tmp_path / "counts.csv"
        count_table.to_csv(path)
        with pytest.raises(LoadError, match="negative"):
            load_counts(path)

    def test_non_numeric_counts(self, tmp_path, count_table):
        table = count_table.astype(object)
        table.iloc[1, 1] = "many"
        path = tmp_path / "counts.csv"
        table.to_csv(path)
        with pytest.raises(LoadError):
            load_counts(path)

    def test_malformed_h5(self, tmp_path):
        path = tmp_path / "broken.h5"
        path.write_bytes(b"not an hdf5 file")
        with pytest.raises(LoadError) as excinfo:
            load_counts(path)
        assert excinfo.value.cause is not None

    def test_multimodal_h5_keeps_gene_expression(self, tmp_path):
        path = tmp_path / "pbmc10k_protein.h5"
        path.touch()
        multimodal = ad.AnnData(
            X=sparse.csr_matrix(np.ones((4, 3), dtype=np.float32)),
            obs=pd.DataFrame(index=[f"c{i}" for i in range(4)]),
            var=pd.DataFrame(
                {"feature_types": ["Gene Expression", "Gene Expression", "Antibody Capture"]},
                index=["CD3E", "LYZ", "CD3_TotalSeqB"],
            ),
        )

        with patch("blood_integration.data.loading.sc.read_10x_h5", return_value=multimodal):
            adata = load_counts(path)

        assert list(adata.var_names) == ["CD3E", "LYZ"]

    def test_missing_modality(self, tmp_path):
        path = tmp_path / "adt_only.h5"
        path.touch()
        adt_only = ad.AnnData(
            X=sparse.csr_matrix(np.ones((2, 2), dtype=np.float32)),
            obs=pd.DataFrame(index=["c1", "c2"]),
            var=pd.DataFrame({"feature_types": ["Antibody Capture"] * 2}, index=["CD3", "CD19"]),
        )

        with patch("blood_integration.data.loading.sc.read_10x_h5", return_value=adt_only):
            with pytest.raises(LoadError, match="Gene Expression"):
                load_counts(path)


class TestValidateCounts:
    """Count-matrix invariants."""

    def test_duplicate_cells(self, tmp_path):
        adata = ad.AnnData(
            X=np.ones((2, 2), dtype=np.float32),
            obs=pd.DataFrame(index=["c1", "c2"]),
            var=pd.DataFrame(index=["g1", "g2"]),
        )
        adata.obs_names = ["c1", "c1"]
        with pytest.raises(LoadError, match="duplicate"):
            _validate_counts(adata, tmp_path / "dup.h5ad")

    def test_empty(self, tmp_path):
        adata = ad.AnnData(X=np.zeros((0, 3), dtype=np.float32))
        with pytest.raises(LoadError, match="empty"):
            _validate_counts(adata, tmp_path / "empty.h5ad")

    def test_duplicate_genes_made_unique(self, tmp_path):
        adata = ad.AnnData(
            X=np.ones((2, 2), dtype=np.float32),
            obs=pd.DataFrame(index=["c1", "c2"]),
            var=pd.DataFrame(index=["g1", "g2"]),
        )
        adata.var_names = ["CD3E", "CD3E"]
        adata = _validate_counts(adata, tmp_path / "x.h5ad")
        assert adata.var_names.is_unique

    def test_legacy_container_other_modality(self, tmp_path):
        adata = ad.AnnData(X=np.ones((2, 2), dtype=np.float32))
        with pytest.raises(LoadError, match="gene expression only"):
            _select_modality(adata, "Antibody Capture", tmp_path / "legacy.h5")


class TestCellLabels:
    """External cell-type annotations."""

    def test_attach_labels(self, tmp_path, count_table):
        counts = tmp_path / "counts.csv"
        count_table.to_csv(counts)
        labels = tmp_path / "labels.csv"
        pd.DataFrame({"cell": ["AAAC-1", "AAAT-1"], "label": ["T cell", "B cell"]}).to_csv(labels, index=False)

        dataset = load_dataset(DatasetConfig("wb", path=counts, labels_path=labels))

        assert dataset.has_cell_types
        obs = dataset.adata.obs
        assert obs.loc["AAAC-1", CELL_TYPE_KEY] == "T cell"
        assert pd.isna(obs.loc["AAAG-1", CELL_TYPE_KEY])

    def test_unmatched_labels(self):
        adata = ad.AnnData(X=np.ones((2, 1), dtype=np.float32), obs=pd.DataFrame(index=["c1", "c2"]))
        attach_cell_labels(adata, pd.Series(["T cell"], index=["other"]))
        assert adata.obs[CELL_TYPE_KEY].isna().all()

    def test_missing_label_table(self, tmp_path):
        with pytest.raises(LoadError):
            read_cell_labels(tmp_path / "labels.tsv")


class TestDataset:
    """Origin labelling of Dataset objects."""

    def test_origin_assigned(self, count_table, tmp_path):
        path = tmp_path / "counts.csv"
        count_table.to_csv(path)
        dataset = load_dataset(DatasetConfig("pbmc3k", path=path))

        assert dataset.origin == "pbmc3k"
        assert (dataset.adata.obs[ORIGIN_KEY] == "pbmc3k").all()
        assert dataset.n_cells == 3 and dataset.n_genes == 4
        assert not dataset.qc_fresh

    def test_origin_cannot_be_reassigned(self):
        adata = ad.AnnData(X=np.ones((2, 1), dtype=np.float32), obs=pd.DataFrame(index=["c1", "c2"]))
        Dataset("pbmc3k", adata)
        with pytest.raises(ConfigError, match="reassigned"):
            Dataset("pbmc10k", adata)

    def test_config_name_must_match(self):
        adata = ad.AnnData(X=np.ones((2, 1), dtype=np.float32))
        with pytest.raises(ConfigError):
            Dataset("pbmc3k", adata, DatasetConfig("pbmc10k"))

    def test_load_dataset_without_path(self):
        with pytest.raises(LoadError, match="no input path"):
            load_dataset(DatasetConfig("pbmc3k"))

    def test_with_adata_keeps_name(self, make_dataset):
        dataset = make_dataset("pbmc3k", n_cells=10)
        dataset.mark_qc_fresh()
        subset = dataset.with_adata(dataset.adata[:5].copy())
        assert subset.name == "pbmc3k"
        assert subset.config is dataset.config
        assert subset.qc_fresh
        assert not dataset.with_adata(dataset.adata.copy(), qc_fresh=False).qc_fresh
