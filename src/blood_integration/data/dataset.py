"""
The Dataset container passed between pipeline stages.
"""

import logging
from typing import Optional

import pandas as pd
from anndata import AnnData

from blood_integration.config.datasets import DatasetConfig
from blood_integration.exceptions import ConfigError

logger = logging.getLogger(__name__)

ORIGIN_KEY = "origin"
CELL_TYPE_KEY = "cell_type"


class Dataset:
    """
    A named count matrix with per-cell metadata.

    The dataset name is written to ``obs["origin"]`` for every cell when the
    dataset is created and is never rewritten afterwards. Stages hand a
    Dataset on through :meth:`with_adata`, which keeps the name and config but
    takes ownership of a new AnnData.

    Parameters
    ----------
    name : str
        Origin label of the dataset.
    adata : AnnData
        Cells x genes count matrix.
    config : DatasetConfig, optional
        Loading and filtering configuration. A default config is built from
        the global settings when omitted.
    """

    def __init__(self, name: str, adata: AnnData, config: Optional[DatasetConfig] = None):
        if config is not None and config.name != name:
            raise ConfigError(f"Config for '{config.name}' passed to dataset '{name}'")

        if ORIGIN_KEY in adata.obs.columns:
            existing = adata.obs[ORIGIN_KEY].astype(str)
            if not (existing == name).all():
                others = sorted(set(existing) - {name})
                raise ConfigError(
                    f"Dataset '{name}' already carries origin labels {others}; "
                    "origin labels cannot be reassigned"
                )

        adata.obs[ORIGIN_KEY] = pd.Categorical([name] * adata.n_obs, categories=[name])

        self.name = name
        self.adata = adata
        self.config = config or DatasetConfig(name)
        self._qc_fresh = False

    @property
    def origin(self):
        return self.name

    @property
    def n_cells(self):
        return self.adata.n_obs

    @property
    def n_genes(self):
        return self.adata.n_vars

    @property
    def qc_fresh(self):
        """True when the QC metrics in ``obs`` match the current matrix."""
        return self._qc_fresh

    @property
    def has_cell_types(self):
        return CELL_TYPE_KEY in self.adata.obs.columns and self.adata.obs[CELL_TYPE_KEY].notna().any()

    def mark_qc_fresh(self):
        self._qc_fresh = True

    def mark_qc_stale(self):
        self._qc_fresh = False

    def with_adata(self, adata: AnnData, qc_fresh: Optional[bool] = None) -> "Dataset":
        """
        Return a Dataset owning ``adata`` under the same name and config.

        QC freshness carries over unless ``qc_fresh`` says otherwise.
        """
        dataset = Dataset(self.name, adata, self.config)
        dataset._qc_fresh = self._qc_fresh if qc_fresh is None else qc_fresh
        return dataset

    def __repr__(self):
        return f"Dataset(name={self.name!r}, n_cells={self.n_cells}, n_genes={self.n_genes})"
