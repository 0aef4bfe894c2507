"""
Graph-based clustering of an integrated embedding.
"""

import logging

import pandas as pd
import scanpy as sc

from blood_integration.integration.base import EMBEDDING_KEY, IntegratedRepresentation, check_range
from blood_integration.exceptions import ConfigError

logger = logging.getLogger(__name__)

CLUSTER_KEY = "cluster"
ALGORITHMS = ("leiden", "louvain")


def validate_clustering_params(n_neighbors, resolution, algorithm):
    """Check clustering parameters; returns them normalized."""
    n_neighbors = check_range("n_neighbors", n_neighbors, 2, 200, integer=True)
    resolution = check_range("resolution", resolution, 0, 10, low_inclusive=False)
    if algorithm not in ALGORITHMS:
        raise ConfigError(f"Unknown clustering algorithm '{algorithm}'; choose from {', '.join(ALGORITHMS)}")
    return n_neighbors, resolution, algorithm


def cluster_cells(
    representation: IntegratedRepresentation,
    n_neighbors: int = 10,
    resolution: float = 1.0,
    algorithm: str = "leiden",
    random_state: int = 0,
    key_added: str = CLUSTER_KEY,
) -> IntegratedRepresentation:
    """
    Build a kNN graph on the integrated embedding and detect communities.

    Parameters
    ----------
    representation : IntegratedRepresentation
        Output of an integration strategy.
    n_neighbors : int
        Neighbours per cell in the kNN graph.
    resolution : float
        Resolution of the modularity-based community detection.
    algorithm : {"leiden", "louvain"}
        Community detection algorithm. Louvain needs the ``louvain`` extra.
    random_state : int
        Seed; cluster ids are only stable across runs for a fixed seed.
    key_added : str
        ``obs`` column receiving the integer cluster ids.

    Returns
    -------
    IntegratedRepresentation
        The same object, with ``obs[key_added]`` set.
    """
    n_neighbors, resolution, algorithm = validate_clustering_params(n_neighbors, resolution, algorithm)
    adata = representation.adata
    if n_neighbors >= adata.n_obs:
        raise ConfigError(f"n_neighbors ({n_neighbors}) must be lower than the number of cells ({adata.n_obs})")

    sc.pp.neighbors(adata, n_neighbors=n_neighbors, use_rep=EMBEDDING_KEY, random_state=random_state)

    if algorithm == "leiden":
        sc.tl.leiden(
            adata,
            resolution=resolution,
            random_state=random_state,
            key_added=key_added,
            flavor="igraph",
            n_iterations=2,
            directed=False,
        )
    else:
        sc.tl.louvain(adata, resolution=resolution, random_state=random_state, key_added=key_added)

    labels = adata.obs[key_added].astype(int)
    adata.obs[key_added] = pd.Categorical(labels, categories=sorted(labels.unique()))

    sizes = adata.obs[key_added].value_counts().sort_index()
    logger.info(
        f"{algorithm.capitalize()} found {len(sizes)} clusters on {representation.strategy} embedding "
        f"(sizes {sizes.min()}-{sizes.max()})"
    )
    return representation


def compute_umap(representation: IntegratedRepresentation, random_state: int = 0) -> IntegratedRepresentation:
    """Add 2-D UMAP coordinates (``obsm["X_umap"]``) for plotting; needs the kNN graph."""
    adata = representation.adata
    if "neighbors" not in adata.uns:
        raise ConfigError("Cluster the representation before computing UMAP coordinates")
    sc.tl.umap(adata, random_state=random_state)
    return representation
