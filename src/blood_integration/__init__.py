"""
Blood scRNA-seq Integration Comparison

Quality control, per-dataset normalization and side-by-side comparison of
anchor-based (Scanorama), embedding-alignment (Harmony) and joint
factorization (LIGER) integration of peripheral and whole-blood
single-cell RNA-seq datasets.
"""

__version__ = "0.1.0"
__author__ = "Blood Integration Research Team"

# Import key components for easy access
from blood_integration.config import DatasetConfig, QCThresholds, get_settings
from blood_integration.exceptions import (
    PipelineError,
    LoadError,
    ConfigError,
    ConvergenceError,
    EmptyResultError,
)
from blood_integration.pipeline import IntegrationPipeline, Stage, compare_strategies

__all__ = [
    "DatasetConfig",
    "QCThresholds",
    "get_settings",
    "PipelineError",
    "LoadError",
    "ConfigError",
    "ConvergenceError",
    "EmptyResultError",
    "IntegrationPipeline",
    "Stage",
    "compare_strategies",
]
