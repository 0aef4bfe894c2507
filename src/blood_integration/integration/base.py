"""
Common interface of the integration strategies.

A strategy takes per-dataset normalized :class:`Dataset` objects and a target
dimensionality and returns an :class:`IntegratedRepresentation`. Strategies
register themselves by name; :func:`get_strategy` builds one from its
identifier and validates its parameters before any data is touched.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Type

import numpy as np
from anndata import AnnData

from blood_integration.config.settings import get_settings
from blood_integration.data.dataset import ORIGIN_KEY, Dataset
from blood_integration.exceptions import ConfigError

logger = logging.getLogger(__name__)

EMBEDDING_KEY = "X_integrated"
MIN_COMPONENTS = 2
MAX_COMPONENTS = 100


class IntegratedRepresentation:
    """
    Merged cells with a joint low-dimensional embedding.

    Attributes
    ----------
    adata : AnnData
        Merged cells; the embedding is ``obsm["X_integrated"]`` and the
        dataset of each cell is ``obs["origin"]``.
    strategy : str
        Identifier of the strategy that produced the embedding.
    params : dict
        Parameters the strategy ran with.
    """

    def __init__(self, adata: AnnData, embedding: np.ndarray, strategy: str, params: Optional[dict] = None):
        embedding = np.asarray(embedding, dtype=np.float64)
        if embedding.ndim != 2 or embedding.shape[0] != adata.n_obs:
            raise ValueError(
                f"Embedding of shape {embedding.shape} does not match {adata.n_obs} cells"
            )

        adata.obsm[EMBEDDING_KEY] = embedding
        adata.uns["integration"] = {"strategy": strategy, "n_components": embedding.shape[1]}

        self.adata = adata
        self.strategy = strategy
        self.params = dict(params or {})

    @property
    def embedding(self) -> np.ndarray:
        return self.adata.obsm[EMBEDDING_KEY]

    @property
    def n_components(self) -> int:
        return self.embedding.shape[1]

    @property
    def n_cells(self) -> int:
        return self.adata.n_obs

    @property
    def origins(self):
        return self.adata.obs[ORIGIN_KEY]

    def __repr__(self):
        return f"IntegratedRepresentation(strategy={self.strategy!r}, n_cells={self.n_cells}, n_components={self.n_components})"


def check_range(name, value, low=None, high=None, low_inclusive=True, high_inclusive=True, integer=False):
    """Raise ConfigError unless ``value`` lies within the given bounds."""
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be numeric, got {value!r}", cause=e) from e
    if np.isnan(number):
        raise ConfigError(f"{name} must not be NaN")
    if integer:
        if isinstance(value, bool) or not number.is_integer():
            raise ConfigError(f"{name} must be an integer, got {value!r}")
        number = int(number)
    value = number

    if low is not None and (value < low if low_inclusive else value <= low):
        raise ConfigError(f"{name} must be {'>=' if low_inclusive else '>'} {low}, got {value}")
    if high is not None and (value > high if high_inclusive else value >= high):
        raise ConfigError(f"{name} must be {'<=' if high_inclusive else '<'} {high}, got {value}")
    return value


def check_components(n_components, n_cells=None, n_features=None):
    """Validate the embedding dimensionality, optionally against the data size."""
    n_components = check_range("n_components", n_components, MIN_COMPONENTS, MAX_COMPONENTS, integer=True)
    if n_cells is not None and n_components >= n_cells:
        raise ConfigError(f"n_components ({n_components}) must be lower than the number of cells ({n_cells})")
    if n_features is not None and n_components >= n_features:
        raise ConfigError(f"n_components ({n_components}) must be lower than the number of features ({n_features})")
    return n_components


class IntegrationStrategy(ABC):
    """
    Base class of the integration strategies.

    Subclasses set ``name``, list their parameters with defaults in
    ``defaults`` and implement :meth:`validate` and :meth:`integrate`.
    """

    name: str = None
    defaults: Dict[str, object] = {}

    def __init__(self, **params):
        unknown = set(params) - set(self.defaults) - {"n_features", "random_state"}
        if unknown:
            raise ConfigError(f"Unknown parameters for strategy '{self.name}': {sorted(unknown)}")

        settings = get_settings()
        merged = {"n_features": settings.N_TOP_GENES, "random_state": settings.RANDOM_STATE}
        merged.update(self.defaults)
        merged.update({key: value for key, value in params.items() if value is not None})

        merged["n_features"] = check_range("n_features", merged["n_features"], 50, 10000, integer=True)
        merged["random_state"] = check_range("random_state", merged["random_state"], 0, integer=True)
        self.params = self.validate(merged)

    def validate(self, params: dict) -> dict:
        """Check strategy specific parameters; return the validated dict."""
        return params

    def check_available(self):
        """Raise ConfigError if a library the strategy needs is missing."""

    @abstractmethod
    def integrate(self, datasets: List[Dataset], n_components: int) -> IntegratedRepresentation:
        """Integrate per-dataset normalized datasets into a joint embedding."""

    def __repr__(self):
        return f"{type(self).__name__}({self.params})"


_STRATEGIES: Dict[str, Type[IntegrationStrategy]] = {}


def register_strategy(cls: Type[IntegrationStrategy]) -> Type[IntegrationStrategy]:
    """Class decorator adding a strategy to the registry under ``cls.name``."""
    if not cls.name:
        raise ValueError(f"{cls.__name__} has no strategy name")
    _STRATEGIES[cls.name] = cls
    return cls


def available_strategies() -> List[str]:
    return sorted(_STRATEGIES)


def get_strategy(name: str, **params) -> IntegrationStrategy:
    """
    Instantiate a registered strategy.

    Raises
    ------
    ConfigError
        For an unknown identifier or out-of-range parameters.
    """
    try:
        cls = _STRATEGIES[name]
    except KeyError:
        raise ConfigError(
            f"Unknown integration strategy '{name}'; choose from {', '.join(available_strategies())}"
        ) from None
    return cls(**params)
