"""Configuration management for blood scRNA-seq integration."""

from blood_integration.config.settings import Settings, get_settings
from blood_integration.config.datasets import QCThresholds, DatasetConfig, load_manifest

__all__ = ["Settings", "get_settings", "QCThresholds", "DatasetConfig", "load_manifest"]
