"""
Embedding alignment with Harmony.

The merged, independently normalized datasets are scaled and reduced with
PCA; Harmony then iteratively moves cells towards origin-balanced soft
cluster centroids until its objective stops improving.
"""

import logging
from typing import List

import harmonypy
import numpy as np
import scanpy as sc

from blood_integration.data.dataset import ORIGIN_KEY, Dataset
from blood_integration.data.preprocessing import merge_datasets, select_integration_features
from blood_integration.exceptions import ConvergenceError
from blood_integration.integration.base import (
    IntegratedRepresentation,
    IntegrationStrategy,
    check_components,
    check_range,
    register_strategy,
)

logger = logging.getLogger(__name__)


def objective_change(objective) -> float:
    """
    Relative decrease between the last two values of an objective history.

    An objective that rose counts as settled. A history with fewer than two
    values has not been shown to settle and counts as an infinite change.
    """
    objective = np.asarray(objective, dtype=np.float64).ravel()
    if len(objective) < 2:
        return float("inf")
    previous, last = objective[-2], objective[-1]
    if previous == 0:
        return 0.0 if last == 0 else float("inf")
    return max(float((previous - last) / abs(previous)), 0.0)


@register_strategy
class AlignmentStrategy(IntegrationStrategy):
    """
    Soft k-means correction of a PCA embedding conditioned on origin (Harmony).

    Parameters
    ----------
    theta : float
        Diversity penalty; higher values push clusters towards equal origin
        composition.
    max_iter : int
        Harmony iterations allowed before giving up.
    epsilon : float
        Harmony stops once the relative change of its objective falls below
        this value.
    max_value : float
        Clip for scaled expression values before PCA.
    """

    name = "alignment"
    defaults = {"theta": 2.0, "max_iter": 10, "epsilon": 1e-4, "max_value": 10.0}

    def validate(self, params):
        params["theta"] = check_range("theta", params["theta"], 0, 10)
        params["max_iter"] = check_range("max_iter", params["max_iter"], 1, 100, integer=True)
        params["epsilon"] = check_range("epsilon", params["epsilon"], 0, 1, low_inclusive=False, high_inclusive=False)
        params["max_value"] = check_range("max_value", params["max_value"], 0, low_inclusive=False)
        return params

    def integrate(self, datasets: List[Dataset], n_components: int) -> IntegratedRepresentation:
        features = select_integration_features(datasets, self.params["n_features"])
        merged = merge_datasets(datasets)
        n_components = check_components(n_components, merged.n_obs, len(features))

        work = merged[:, features].copy()
        sc.pp.scale(work, max_value=self.params["max_value"])
        sc.tl.pca(work, n_comps=n_components, svd_solver="arpack", random_state=self.params["random_state"])
        pca = work.obsm["X_pca"]
        del work

        logger.info(f"Harmony on {pca.shape[0]} cells x {n_components} PCs, theta={self.params['theta']}")
        ho = harmonypy.run_harmony(
            pca,
            merged.obs[[ORIGIN_KEY]],
            ORIGIN_KEY,
            theta=self.params["theta"],
            max_iter_harmony=self.params["max_iter"],
            epsilon_harmony=self.params["epsilon"],
            random_state=self.params["random_state"],
            verbose=False,
        )

        change = objective_change(ho.objective_harmony)
        if change >= self.params["epsilon"]:
            raise ConvergenceError(
                f"Harmony did not converge within {self.params['max_iter']} iterations "
                f"(relative objective change {change:.3g} >= {self.params['epsilon']:g})"
            )

        corrected = np.asarray(ho.Z_corr, dtype=np.float64)
        merged.obsm["X_pca"] = pca
        return IntegratedRepresentation(merged, corrected, self.name, dict(self.params, features=features))
