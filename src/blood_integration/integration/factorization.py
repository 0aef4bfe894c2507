"""
Joint matrix factorization with LIGER (integrative NMF).

The raw counts of each dataset are normalized, scaled without centering and
factorized into shared and dataset-specific factors by alternating
non-negative least squares; the shared factor loadings are then quantile
normalized per origin.

Requires the optional ``pyliger`` dependency (``pip install
blood-sc-integration[liger]``).
"""

import importlib.util
import logging
from typing import List

import anndata as ad
import numpy as np
import pandas as pd
from scipy import optimize, sparse

from blood_integration.data.dataset import Dataset
from blood_integration.data.preprocessing import COUNTS_LAYER, merge_datasets, shared_genes
from blood_integration.exceptions import ConfigError, ConvergenceError
from blood_integration.integration.base import (
    IntegratedRepresentation,
    IntegrationStrategy,
    check_components,
    check_range,
    register_strategy,
)

logger = logging.getLogger(__name__)

# Cells per dataset used to measure how far the factorization is from its optimum
CONVERGENCE_SAMPLE = 500


def _gene_loadings(matrix, n_genes: int) -> np.ndarray:
    """Orient a factor matrix as genes x k."""
    matrix = np.asarray(matrix, dtype=np.float64)
    return matrix if matrix.shape[0] == n_genes else matrix.T


def refit_change(scaled, loadings, shared, specific, value_lambda, max_cells=None, seed=0) -> float:
    """
    Relative objective decrease of one more cell-factor update of an iNMF fit.

    The iNMF objective of dataset ``i`` is
    ``||X_i - H_i (W + V_i)^T||^2 + lambda ||H_i V_i^T||^2``. Each cell's row
    of ``H_i`` is refitted by non-negative least squares with ``W`` and
    ``V_i`` held fixed; a converged fit barely improves.

    Parameters
    ----------
    scaled : list of array-like
        Scaled expression ``X_i`` (cells x genes) per dataset.
    loadings : list of array-like
        Cell factor loadings ``H_i`` (cells x k) per dataset.
    shared : array-like
        Shared gene factors ``W`` (genes x k, either orientation).
    specific : list of array-like
        Dataset-specific gene factors ``V_i`` (genes x k, either orientation).
    value_lambda : float
        Weight of the dataset-specific term.
    max_cells : int, optional
        Refit at most this many randomly chosen cells per dataset.
    """
    rng = np.random.default_rng(seed)
    before = after = 0.0

    for X, H, V in zip(scaled, loadings, specific):
        X = X.toarray() if sparse.issparse(X) else np.asarray(X, dtype=np.float64)
        H = np.asarray(H, dtype=np.float64)
        W = _gene_loadings(shared, X.shape[1])
        V = _gene_loadings(V, X.shape[1])

        rows = np.arange(X.shape[0])
        if max_cells is not None and len(rows) > max_cells:
            rows = np.sort(rng.choice(rows, size=max_cells, replace=False))

        design = np.vstack([W + V, np.sqrt(value_lambda) * V])
        padding = np.zeros(V.shape[0])
        for row in rows:
            target = np.concatenate([X[row], padding])
            before += float(np.sum((target - design @ H[row]) ** 2))
            after += optimize.nnls(design, target)[1] ** 2

    if before == 0:
        return 0.0
    return max((before - after) / ((before + after) / 2), 0.0)


@register_strategy
class FactorizationStrategy(IntegrationStrategy):
    """
    Integrative NMF followed by quantile normalization (LIGER).

    Parameters
    ----------
    value_lambda : float
        Regularization weight of the dataset-specific factors.
    max_iters : int
        Maximum alternating least squares iterations.
    thresh : float
        Convergence threshold on the relative change of the objective.
    var_thresh : float
        Variance threshold LIGER uses when selecting its genes.
    """

    name = "factorization"
    defaults = {"value_lambda": 5.0, "max_iters": 30, "thresh": 1e-4, "var_thresh": 0.1}

    def validate(self, params):
        params["value_lambda"] = check_range("value_lambda", params["value_lambda"], 0, 100, low_inclusive=False)
        params["max_iters"] = check_range("max_iters", params["max_iters"], 1, 1000, integer=True)
        params["thresh"] = check_range("thresh", params["thresh"], 0, 1, low_inclusive=False, high_inclusive=False)
        params["var_thresh"] = check_range("var_thresh", params["var_thresh"], 0, low_inclusive=False)
        return params

    def check_available(self):
        if importlib.util.find_spec("pyliger") is None:
            raise ConfigError(
                "The factorization strategy needs pyliger; install it with "
                "'pip install blood-sc-integration[liger]'"
            )

    def _liger_input(self, dataset: Dataset, genes: List[str]) -> ad.AnnData:
        """Raw counts of one dataset in the layout pyliger expects."""
        adata = dataset.adata
        counts = adata.layers[COUNTS_LAYER] if COUNTS_LAYER in adata.layers else adata.X
        idx = adata.var_names.get_indexer(genes)
        liger_input = ad.AnnData(
            X=counts[:, idx].tocsr(),
            obs=pd.DataFrame(index=adata.obs_names.copy()),
            var=pd.DataFrame(index=pd.Index(genes)),
        )
        liger_input.uns["sample_name"] = dataset.name
        return liger_input

    def _check_converged(self, liger):
        """Raise ConvergenceError when the ALS fit stopped short of its optimum."""
        genes = list(liger.var_genes)
        scaled, loadings, specific = [], [], []
        for liger_data in liger.adata_list:
            X = liger_data.layers["scale_data"]
            if X.shape[1] != len(genes):
                X = X[:, liger_data.var_names.get_indexer(genes)]
            scaled.append(X)
            loadings.append(liger_data.obsm["H"])
            specific.append(liger_data.varm["V"])

        change = refit_change(
            scaled,
            loadings,
            liger.W,
            specific,
            self.params["value_lambda"],
            max_cells=CONVERGENCE_SAMPLE,
            seed=self.params["random_state"],
        )
        logger.debug(f"LIGER relative objective change after ALS: {change:.3g}")
        if not np.isfinite(change) or change > self.params["thresh"]:
            raise ConvergenceError(
                f"LIGER did not converge within {self.params['max_iters']} iterations "
                f"(relative objective change {change:.3g} > {self.params['thresh']:g})"
            )

    def integrate(self, datasets: List[Dataset], n_components: int) -> IntegratedRepresentation:
        self.check_available()
        import pyliger

        genes = shared_genes(*(ds.adata.var_names for ds in datasets))
        n_components = check_components(n_components, min(ds.n_cells for ds in datasets), len(genes))

        logger.info(
            f"LIGER iNMF on {len(datasets)} datasets, k={n_components}, "
            f"lambda={self.params['value_lambda']}"
        )
        liger = pyliger.create_liger([self._liger_input(ds, genes) for ds in datasets], remove_missing=False)
        pyliger.normalize(liger)
        pyliger.select_genes(liger, var_thresh=self.params["var_thresh"])
        pyliger.scale_not_center(liger)
        pyliger.optimize_ALS(
            liger,
            k=n_components,
            value_lambda=self.params["value_lambda"],
            thresh=self.params["thresh"],
            max_iters=self.params["max_iters"],
            rand_seed=self.params["random_state"],
        )
        self._check_converged(liger)
        pyliger.quantile_norm(liger)

        loadings = []
        for ds, liger_data in zip(datasets, liger.adata_list):
            h_norm = np.asarray(liger_data.obsm["H_norm"], dtype=np.float64)
            loadings.append(pd.DataFrame(h_norm, index=[f"{cell}-{ds.name}" for cell in liger_data.obs_names]))
        loadings = pd.concat(loadings)
        del liger

        if not np.isfinite(loadings.values).all():
            raise ConvergenceError(
                f"LIGER produced non-finite factor loadings after {self.params['max_iters']} iterations"
            )

        merged = merge_datasets(datasets)
        kept = merged.obs_names.isin(loadings.index)
        if not kept.all():
            logger.warning(f"LIGER dropped {int((~kept).sum())} cells without expression of its genes")
            merged = merged[kept].copy()

        embedding = loadings.loc[merged.obs_names].values
        return IntegratedRepresentation(merged, embedding, self.name, dict(self.params))
