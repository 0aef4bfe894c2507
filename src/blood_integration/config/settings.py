"""
Centralized configuration settings for the blood scRNA-seq integration comparison.
"""

from pathlib import Path
from typing import Optional
import os


def _split_env(name: str, default: str) -> tuple:
    """Read a comma separated environment variable into a tuple of strings."""
    return tuple(item.strip() for item in os.getenv(name, default).split(",") if item.strip())


class Settings:
    """Global settings for the integration pipeline."""

    def __init__(self, base_dir: Optional[Path] = None, create_dirs: bool = True):
        """
        Initialize settings.

        Parameters
        ----------
        base_dir : Path, optional
            Base directory for the project. Defaults to project root.
        create_dirs : bool
            Create the data and results directories on initialization.
        """
        if base_dir is None:
            # Auto-detect project root (where pyproject.toml or setup.py exists)
            current = Path(__file__).resolve()
            for parent in current.parents:
                if (parent / "pyproject.toml").exists() or (parent / "setup.py").exists():
                    base_dir = parent
                    break
            else:
                base_dir = Path.cwd()

        self.BASE_DIR = Path(base_dir)

        # Data directories
        self.DATA_DIR = self.BASE_DIR / "data"
        self.RAW_DATA_DIR = self.DATA_DIR / "raw"
        self.PROCESSED_DATA_DIR = self.DATA_DIR / "processed"
        self.METADATA_DIR = self.DATA_DIR / "metadata"

        # Results directories
        self.RESULTS_DIR = self.BASE_DIR / "results"
        self.REPORTS_DIR = self.RESULTS_DIR / "reports"
        self.PLOTS_DIR = self.RESULTS_DIR / "plots"

        if create_dirs:
            self._create_directories()

        # QC parameters (defaults, overridden per dataset by the manifest)
        self.QC_MIN_GENES = int(os.getenv("QC_MIN_GENES", "200"))
        self.QC_MAX_GENES = int(os.getenv("QC_MAX_GENES", "2500"))
        self.QC_MAX_MT_PERCENT = float(os.getenv("QC_MAX_MT_PERCENT", "20"))

        # Gene naming conventions vary by species and annotation
        self.MT_PREFIXES = _split_env("MT_PREFIXES", "MT-")
        self.RIBO_PREFIXES = _split_env("RIBO_PREFIXES", "RPS,RPL")

        # Normalization and feature selection
        self.NORM_TARGET_SUM = float(os.getenv("NORM_TARGET_SUM", "10000"))
        self.N_TOP_GENES = int(os.getenv("N_TOP_GENES", "2000"))

        # Integration parameters
        self.INTEGRATION_METHOD = os.getenv("INTEGRATION_METHOD", "alignment")
        self.N_COMPONENTS = int(os.getenv("N_COMPONENTS", "30"))

        # Clustering parameters
        self.N_NEIGHBORS = int(os.getenv("N_NEIGHBORS", "10"))
        self.CLUSTER_RESOLUTION = float(os.getenv("CLUSTER_RESOLUTION", "1.0"))
        self.CLUSTER_ALGORITHM = os.getenv("CLUSTER_ALGORITHM", "leiden")
        self.RANDOM_STATE = int(os.getenv("RANDOM_STATE", "0"))

        # Plotting parameters
        self.PLOT_DPI = int(os.getenv("PLOT_DPI", "300"))
        self.PLOT_FORMAT = os.getenv("PLOT_FORMAT", "pdf,png").split(",")

        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        # Public datasets: name -> (description, url, format)
        self.DATASETS = {
            "pbmc3k": (
                "10x Genomics 3k PBMCs, v1 chemistry",
                "https://cf.10xgenomics.com/samples/cell-exp/1.1.0/pbmc3k/"
                "pbmc3k_filtered_gene_bc_matrices.tar.gz",
                "mtx",
            ),
            "pbmc10k_v3": (
                "10x Genomics 10k PBMCs, v3 chemistry",
                "https://cf.10xgenomics.com/samples/cell-exp/3.0.0/pbmc_10k_v3/"
                "pbmc_10k_v3_filtered_feature_bc_matrix.h5",
                "10x_h5",
            ),
            "pbmc10k_protein_v3": (
                "10x Genomics 10k PBMCs with TotalSeq-B antibodies (multi-modal)",
                "https://cf.10xgenomics.com/samples/cell-exp/3.0.0/pbmc_10k_protein_v3/"
                "pbmc_10k_protein_v3_filtered_feature_bc_matrix.h5",
                "10x_h5",
            ),
        }

    def _create_directories(self):
        """Create necessary directories if they don't exist."""
        directories = [
            self.DATA_DIR,
            self.RAW_DATA_DIR,
            self.PROCESSED_DATA_DIR,
            self.METADATA_DIR,
            self.RESULTS_DIR,
            self.REPORTS_DIR,
            self.PLOTS_DIR,
        ]

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)

    def get_raw_data_path(self, dataset_name: str) -> Path:
        """Get path to raw data for a dataset."""
        return self.RAW_DATA_DIR / dataset_name

    def get_processed_data_path(self, dataset_name: str, suffix: str = "filtered") -> Path:
        """Get path to processed data file."""
        return self.PROCESSED_DATA_DIR / f"{dataset_name}_{suffix}.h5ad"

    def get_report_dir(self, strategy: str) -> Path:
        """Get directory for the composition report of one strategy."""
        return self.REPORTS_DIR / strategy


# Global settings instance
_settings: Optional[Settings] = None


def get_settings(base_dir: Optional[Path] = None) -> Settings:
    """
    Get global settings instance (singleton pattern).

    Parameters
    ----------
    base_dir : Path, optional
        Base directory for the project. Only used on first call.

    Returns
    -------
    Settings
        Global settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings(base_dir, create_dirs=False)
    return _settings


def reset_settings():
    """Drop the cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
