"""
Integration pipeline runner.

Runs load -> annotate QC -> filter -> restrict genes -> normalize ->
integrate -> cluster -> report for a group of datasets and one integration
strategy. Stages run strictly in order; a failure in any of them aborts the
run with a :class:`PipelineError` naming the stage, and no partial result is
returned.
"""

import gc
import logging
from contextlib import contextmanager
from enum import Enum
from typing import Dict, List, Optional, Sequence

from blood_integration.analysis.clustering import cluster_cells, compute_umap, validate_clustering_params
from blood_integration.analysis.report import CompositionReport, build_report
from blood_integration.config.datasets import DatasetConfig
from blood_integration.config.settings import get_settings
from blood_integration.data.dataset import Dataset
from blood_integration.data.loading import load_dataset
from blood_integration.data.preprocessing import annotate_qc, filter_cells, intersect_genes, normalize_dataset
from blood_integration.exceptions import ConfigError, PipelineError
from blood_integration.integration import get_strategy
from blood_integration.integration.base import check_components, check_range

logger = logging.getLogger(__name__)


class Stage(Enum):
    """Pipeline stages in execution order."""

    LOAD = "load"
    QC = "annotate_qc"
    FILTER = "filter"
    RESTRICT = "restrict_genes"
    NORMALIZE = "normalize"
    INTEGRATE = "integrate"
    CLUSTER = "cluster"
    REPORT = "report"


class IntegrationPipeline:
    """
    Compare-ready integration of two or more datasets with one strategy.

    All parameters are validated when the pipeline is built, before any data
    is read.

    Parameters
    ----------
    configs : list of DatasetConfig, optional
        Datasets to load. Not needed when calling :meth:`run_datasets`.
    strategy : str
        ``anchor``, ``alignment`` or ``factorization``.
    strategy_params : dict, optional
        Strategy specific parameters (see each strategy class).
    n_components : int
        Dimensionality of the integrated embedding.
    n_neighbors, resolution, cluster_algorithm
        Clustering parameters.
    n_top_genes : int
        Variable genes selected per dataset.
    target_sum : float
        Counts per cell after normalization.
    restrict_genes : bool
        Intersect gene sets even when they already agree.
    umap : bool
        Also compute UMAP coordinates for plotting.
    random_state : int
        Seed for PCA, integration and clustering.
    plot_manager : PlotManager, optional
        When given, QC violin plots are rendered for every dataset.
    """

    def __init__(
        self,
        configs: Optional[Sequence[DatasetConfig]] = None,
        strategy: Optional[str] = None,
        strategy_params: Optional[dict] = None,
        n_components: Optional[int] = None,
        n_neighbors: Optional[int] = None,
        resolution: Optional[float] = None,
        cluster_algorithm: Optional[str] = None,
        n_top_genes: Optional[int] = None,
        target_sum: Optional[float] = None,
        restrict_genes: bool = True,
        umap: bool = False,
        random_state: Optional[int] = None,
        plot_manager=None,
    ):
        settings = get_settings()

        self.configs = list(configs or [])
        names = [config.name for config in self.configs]
        if len(set(names)) != len(names):
            raise ConfigError(f"Dataset names must be unique, got {names}")

        self.random_state = check_range(
            "random_state", settings.RANDOM_STATE if random_state is None else random_state, 0, integer=True
        )
        self.n_components = check_components(settings.N_COMPONENTS if n_components is None else n_components)
        self.n_top_genes = check_range("n_top_genes", settings.N_TOP_GENES if n_top_genes is None else n_top_genes, 50, 10000, integer=True)
        self.target_sum = check_range("target_sum", settings.NORM_TARGET_SUM if target_sum is None else target_sum, 0, low_inclusive=False)
        self.n_neighbors, self.resolution, self.cluster_algorithm = validate_clustering_params(
            settings.N_NEIGHBORS if n_neighbors is None else n_neighbors,
            settings.CLUSTER_RESOLUTION if resolution is None else resolution,
            cluster_algorithm or settings.CLUSTER_ALGORITHM,
        )
        self.restrict_genes = restrict_genes
        self.umap = umap
        self.plot_manager = plot_manager

        params = dict(strategy_params or {})
        params.setdefault("n_features", self.n_top_genes)
        params.setdefault("random_state", self.random_state)
        self.strategy = get_strategy(strategy or settings.INTEGRATION_METHOD, **params)
        self.strategy.check_available()

        self.completed: List[Stage] = []
        self.representation = None

    @property
    def state(self) -> Optional[Stage]:
        """Last stage that completed, or None before the run starts."""
        return self.completed[-1] if self.completed else None

    @contextmanager
    def _stage(self, stage: Stage):
        logger.info(f"[{self.strategy.name}] stage: {stage.value}")
        try:
            yield
        except PipelineError as e:
            if e.stage is None:
                e.stage = stage.value
            logger.error(f"[{self.strategy.name}] {stage.value} failed: {e}")
            raise
        except Exception as e:
            logger.error(f"[{self.strategy.name}] {stage.value} failed: {type(e).__name__}: {e}")
            raise PipelineError(f"{type(e).__name__}: {e}", stage=stage.value, cause=e) from e
        self.completed.append(stage)

    def run(self) -> CompositionReport:
        """Load the configured datasets and run every stage."""
        if len(self.configs) < 2:
            raise ConfigError(f"Integration needs at least two datasets, got {len(self.configs)}")

        self.completed = []
        with self._stage(Stage.LOAD):
            datasets = [load_dataset(config) for config in self.configs]
        return self._process(datasets)

    def run_datasets(self, datasets: List[Dataset]) -> CompositionReport:
        """
        Run every stage after loading on datasets already in memory.

        The pipeline takes ownership of the datasets; their matrices are
        modified and released during the run.
        """
        if len(datasets) < 2:
            raise ConfigError(f"Integration needs at least two datasets, got {len(datasets)}")
        names = [ds.name for ds in datasets]
        if len(set(names)) != len(names):
            raise ConfigError(f"Dataset names must be unique, got {names}")

        self.completed = [Stage.LOAD]
        return self._process(list(datasets))

    def _process(self, datasets: List[Dataset]) -> CompositionReport:
        with self._stage(Stage.QC):
            for ds in datasets:
                annotate_qc(ds)
                if self.plot_manager is not None:
                    self.plot_manager.plot_qc_violin(ds.adata, ds.name, thresholds=ds.config.thresholds)

        with self._stage(Stage.FILTER):
            datasets = [filter_cells(ds) for ds in datasets]
            gc.collect()

        overlap = None
        with self._stage(Stage.RESTRICT):
            gene_sets = [list(ds.adata.var_names) for ds in datasets]
            if self.restrict_genes or any(genes != gene_sets[0] for genes in gene_sets[1:]):
                datasets, overlap = intersect_genes(datasets)
                overlap = overlap.to_dict()
            del gene_sets

        with self._stage(Stage.NORMALIZE):
            datasets = [normalize_dataset(ds, self.target_sum, self.n_top_genes) for ds in datasets]

        with self._stage(Stage.INTEGRATE):
            representation = self.strategy.integrate(datasets, self.n_components)
            del datasets
            gc.collect()

        with self._stage(Stage.CLUSTER):
            cluster_cells(
                representation,
                n_neighbors=self.n_neighbors,
                resolution=self.resolution,
                algorithm=self.cluster_algorithm,
                random_state=self.random_state,
            )
            if self.umap:
                compute_umap(representation, random_state=self.random_state)

        with self._stage(Stage.REPORT):
            report = build_report(representation, gene_overlap=overlap, random_state=self.random_state)
            report.params.update(
                n_components=self.n_components,
                n_neighbors=self.n_neighbors,
                resolution=self.resolution,
                cluster_algorithm=self.cluster_algorithm,
            )

        self.representation = representation
        return report


def compare_strategies(
    configs: Sequence[DatasetConfig],
    strategies: Sequence[str] = ("anchor", "alignment", "factorization"),
    strategy_params: Optional[Dict[str, dict]] = None,
    plot_manager=None,
    **pipeline_kwargs,
) -> Dict[str, CompositionReport]:
    """
    Run the full pipeline once per strategy on freshly loaded data.

    Every pipeline is built (and so validated) before the first one runs.
    QC plots, when requested, are drawn by the first pipeline only.
    """
    strategy_params = strategy_params or {}
    pipelines = {}
    for i, name in enumerate(strategies):
        pipelines[name] = IntegrationPipeline(
            configs,
            strategy=name,
            strategy_params=strategy_params.get(name),
            plot_manager=plot_manager if i == 0 else None,
            **pipeline_kwargs,
        )

    reports = {}
    for name, pipeline in pipelines.items():
        logger.info(f"Running {name} integration")
        reports[name] = pipeline.run()
        pipeline.representation = None
        gc.collect()
    return reports
