"""
Anchor-based integration with Scanorama.

Scanorama matches mutual nearest neighbours ("anchors") between datasets in
a shared reduced space and uses them to compute smoothed correction vectors
before returning the joint embedding.
"""

import logging
from typing import List

import numpy as np
import scanorama

from blood_integration.data.dataset import Dataset
from blood_integration.data.preprocessing import merge_datasets, select_integration_features
from blood_integration.integration.base import (
    IntegratedRepresentation,
    IntegrationStrategy,
    check_components,
    check_range,
    register_strategy,
)

logger = logging.getLogger(__name__)


@register_strategy
class AnchorStrategy(IntegrationStrategy):
    """
    Mutual-nearest-neighbour anchors and correction (Scanorama).

    Parameters
    ----------
    knn : int
        Neighbours searched when matching anchors.
    sigma : float
        Width of the Gaussian kernel smoothing the correction vectors.
    alpha : float
        Minimum alignment score for two datasets to be merged.
    approx : bool
        Use approximate nearest neighbours.
    """

    name = "anchor"
    defaults = {"knn": 20, "sigma": 15.0, "alpha": 0.10, "approx": True}

    def validate(self, params):
        params["knn"] = check_range("knn", params["knn"], 1, 200, integer=True)
        params["sigma"] = check_range("sigma", params["sigma"], 0, low_inclusive=False)
        params["alpha"] = check_range("alpha", params["alpha"], 0, 1, high_inclusive=False)
        params["approx"] = bool(params["approx"])
        return params

    def integrate(self, datasets: List[Dataset], n_components: int) -> IntegratedRepresentation:
        features = select_integration_features(datasets, self.params["n_features"])
        n_components = check_components(
            n_components, sum(ds.n_cells for ds in datasets), len(features)
        )

        smallest = min(ds.n_cells for ds in datasets)
        knn = min(self.params["knn"], smallest - 1)
        if knn < self.params["knn"]:
            logger.warning(f"Reducing knn from {self.params['knn']} to {knn} for a {smallest}-cell dataset")

        adatas = [ds.adata[:, features].copy() for ds in datasets]
        logger.info(
            f"Scanorama on {len(adatas)} datasets, {len(features)} features, "
            f"dimred={n_components}, knn={knn}"
        )
        scanorama.integrate_scanpy(
            adatas,
            dimred=n_components,
            knn=knn,
            sigma=self.params["sigma"],
            alpha=self.params["alpha"],
            approx=self.params["approx"],
            seed=self.params["random_state"],
            verbose=False,
        )

        embedding = np.vstack([adata.obsm["X_scanorama"] for adata in adatas])
        del adatas

        merged = merge_datasets(datasets)
        return IntegratedRepresentation(merged, embedding, self.name, dict(self.params, knn=knn, features=features))
