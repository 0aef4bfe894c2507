"""
Per-dataset configuration: QC thresholds and input locations.

Different protocols have different expected distributions of detected genes
and mitochondrial content, so every dataset carries its own thresholds.
"""

import json
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

from blood_integration.config.settings import get_settings
from blood_integration.exceptions import ConfigError

logger = logging.getLogger(__name__)


class QCThresholds:
    """
    Cell filtering bounds for one dataset.

    A cell is kept when ``min_genes < n_genes_by_counts < max_genes`` and
    ``pct_counts_mt < max_pct_mt``.
    """

    def __init__(self, min_genes: int, max_genes: int, max_pct_mt: float = 20.0):
        if min_genes < 0:
            raise ConfigError(f"min_genes must be non-negative, got {min_genes}")
        if min_genes >= max_genes:
            raise ConfigError(
                f"min_genes ({min_genes}) must be lower than max_genes ({max_genes})"
            )
        if not 0 < max_pct_mt <= 100:
            raise ConfigError(f"max_pct_mt must be in (0, 100], got {max_pct_mt}")

        self.min_genes = int(min_genes)
        self.max_genes = int(max_genes)
        self.max_pct_mt = float(max_pct_mt)

    @classmethod
    def from_settings(cls, settings=None):
        settings = settings or get_settings()
        return cls(settings.QC_MIN_GENES, settings.QC_MAX_GENES, settings.QC_MAX_MT_PERCENT)

    def to_dict(self):
        return {
            "min_genes": self.min_genes,
            "max_genes": self.max_genes,
            "max_pct_mt": self.max_pct_mt,
        }

    def __eq__(self, other):
        return isinstance(other, QCThresholds) and self.to_dict() == other.to_dict()

    def __repr__(self):
        return (
            f"QCThresholds(min_genes={self.min_genes}, max_genes={self.max_genes}, "
            f"max_pct_mt={self.max_pct_mt})"
        )


class DatasetConfig:
    """
    Where to load one dataset from and how to filter it.

    Parameters
    ----------
    name : str
        Origin label assigned to every cell of the dataset.
    path : str or Path, optional
        Input file or 10x MTX directory. May be omitted for datasets that are
        passed to the pipeline already loaded.
    thresholds : QCThresholds, optional
        Filtering bounds. Defaults to the global settings.
    file_format : str, optional
        One of ``10x_h5``, ``mtx``, ``h5ad``, ``text``. Inferred from the
        path when omitted.
    modality : str
        Feature type kept from multi-modal 10x containers.
    labels_path : str or Path, optional
        Delimited table mapping cell id to an externally supplied cell type.
    mt_prefixes, ribo_prefixes : sequence of str, optional
        Gene name prefixes; default to the global settings.
    """

    def __init__(
        self,
        name: str,
        path: Optional[Union[str, Path]] = None,
        thresholds: Optional[QCThresholds] = None,
        file_format: Optional[str] = None,
        modality: str = "Gene Expression",
        labels_path: Optional[Union[str, Path]] = None,
        mt_prefixes: Optional[Sequence[str]] = None,
        ribo_prefixes: Optional[Sequence[str]] = None,
    ):
        if not name:
            raise ConfigError("Dataset name must be a non-empty string")
        settings = get_settings()

        self.name = str(name)
        self.path = Path(path) if path is not None else None
        self.thresholds = thresholds or QCThresholds.from_settings(settings)
        self.file_format = file_format
        self.modality = modality
        self.labels_path = Path(labels_path) if labels_path is not None else None
        self.mt_prefixes = tuple(mt_prefixes) if mt_prefixes else settings.MT_PREFIXES
        self.ribo_prefixes = tuple(ribo_prefixes) if ribo_prefixes else settings.RIBO_PREFIXES

    @classmethod
    def from_dict(cls, entry: dict, base_dir: Optional[Path] = None):
        """Build a config from one manifest entry, resolving relative paths."""
        if "name" not in entry:
            raise ConfigError(f"Manifest entry is missing 'name': {entry}")

        defaults = QCThresholds.from_settings()
        thresholds = QCThresholds(
            entry.get("min_genes", defaults.min_genes),
            entry.get("max_genes", defaults.max_genes),
            entry.get("max_pct_mt", defaults.max_pct_mt),
        )

        def resolve(value):
            if value is None:
                return None
            value = Path(value)
            if base_dir is not None and not value.is_absolute():
                value = base_dir / value
            return value

        return cls(
            entry["name"],
            path=resolve(entry.get("path")),
            thresholds=thresholds,
            file_format=entry.get("format"),
            modality=entry.get("modality", "Gene Expression"),
            labels_path=resolve(entry.get("labels")),
            mt_prefixes=entry.get("mt_prefixes"),
            ribo_prefixes=entry.get("ribo_prefixes"),
        )

    def __repr__(self):
        return f"DatasetConfig(name={self.name!r}, path={self.path!r}, thresholds={self.thresholds!r})"


def load_manifest(manifest_path: Union[str, Path]) -> List[DatasetConfig]:
    """
    Read a JSON dataset manifest.

    The manifest holds ``{"datasets": [{"name": ..., "path": ..., ...}]}``;
    relative paths are resolved against the manifest's directory.
    """
    manifest_path = Path(manifest_path)
    try:
        with open(manifest_path) as f:
            manifest = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Manifest not found: {manifest_path}", cause=e) from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Manifest is not valid JSON: {manifest_path}: {e}", cause=e) from e

    entries = manifest.get("datasets") if isinstance(manifest, dict) else None
    if not entries:
        raise ConfigError(f"Manifest {manifest_path} lists no datasets")

    configs = [DatasetConfig.from_dict(entry, base_dir=manifest_path.parent) for entry in entries]

    names = [config.name for config in configs]
    if len(set(names)) != len(names):
        raise ConfigError(f"Dataset names must be unique, got {names}")

    logger.info(f"Loaded manifest with {len(configs)} datasets: {', '.join(names)}")
    return configs
