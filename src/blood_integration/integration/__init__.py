"""Integration strategies; importing this package registers all of them."""

from blood_integration.integration.base import (
    EMBEDDING_KEY,
    IntegratedRepresentation,
    IntegrationStrategy,
    available_strategies,
    get_strategy,
    register_strategy,
)
from blood_integration.integration.anchor import AnchorStrategy
from blood_integration.integration.alignment import AlignmentStrategy
from blood_integration.integration.factorization import FactorizationStrategy

__all__ = [
    "EMBEDDING_KEY",
    "IntegratedRepresentation",
    "IntegrationStrategy",
    "available_strategies",
    "get_strategy",
    "register_strategy",
    "AnchorStrategy",
    "AlignmentStrategy",
    "FactorizationStrategy",
]
