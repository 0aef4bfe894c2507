"""Plotting and logging helpers."""

from blood_integration.utils.logging_utils import setup_logging
from blood_integration.utils.plot_manager import PlotManager, PlotContext

__all__ = ["setup_logging", "PlotManager", "PlotContext"]
