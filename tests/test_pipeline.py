"""
Integration tests for the pipeline runner and the command-line entry point.
"""

import importlib.util
import json
from unittest.mock import patch

import pytest

from blood_integration.config.datasets import DatasetConfig, QCThresholds
from blood_integration.data.dataset import Dataset
from blood_integration.exceptions import ConfigError, ConvergenceError, EmptyResultError, PipelineError
from blood_integration.integration.alignment import AlignmentStrategy
from blood_integration.pipeline import IntegrationPipeline, Stage, compare_strategies

from conftest import make_counts

PIPELINE_KWARGS = {
    "n_components": 10,
    "n_neighbors": 10,
    "n_top_genes": 100,
    "strategy_params": {"max_iter": 50},
}


@pytest.fixture
def pbmc_pair(make_dataset):
    """Two datasets of 100 and 120 cells, 20 and 30 of them with high mitochondrial content."""
    return [
        make_dataset("pbmc3k", n_cells=100, n_high_mt=20, seed=1, labels=True),
        make_dataset("pbmc10k", n_cells=120, n_high_mt=30, seed=2, depth=1.5, labels=True),
    ]


@pytest.fixture
def manifest(tmp_path, thresholds):
    """Manifest pointing at two h5ad files on disk."""
    entries = []
    for name, n_cells, n_high_mt, seed in (("pbmc3k", 100, 20, 1), ("wb", 120, 30, 2)):
        path = tmp_path / f"{name}.h5ad"
        make_counts(n_cells=n_cells, n_high_mt=n_high_mt, seed=seed).write_h5ad(path)
        entries.append({"name": name, "path": path.name, **thresholds.to_dict()})

    path = tmp_path / "datasets.json"
    path.write_text(json.dumps({"datasets": entries}))
    return path


class TestPipelineConstruction:
    """Validation happens before any data is touched."""

    def test_unknown_strategy(self):
        with pytest.raises(ConfigError, match="Unknown integration strategy"):
            IntegrationPipeline([DatasetConfig("a", path="/nonexistent.h5")], strategy="bbknn")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"n_components": 1},
            {"n_components": 101},
            {"n_neighbors": 1},
            {"resolution": -1},
            {"cluster_algorithm": "kmeans"},
            {"n_top_genes": 10},
            {"strategy_params": {"theta": 20}},
        ],
    )
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ConfigError):
            IntegrationPipeline(strategy="alignment", **kwargs)

    def test_duplicate_names(self):
        with pytest.raises(ConfigError, match="unique"):
            IntegrationPipeline([DatasetConfig("a"), DatasetConfig("a")])

    def test_needs_two_datasets(self):
        pipeline = IntegrationPipeline([DatasetConfig("a", path="/nonexistent.h5")])
        with pytest.raises(ConfigError, match="at least two"):
            pipeline.run()
        assert pipeline.state is None

    def test_default_strategy_from_settings(self, monkeypatch):
        monkeypatch.setenv("INTEGRATION_METHOD", "anchor")
        assert IntegrationPipeline().strategy.name == "anchor"


class TestPipelineRun:
    """End-to-end runs on synthetic blood datasets."""

    def test_run_datasets(self, pbmc_pair):
        pipeline = IntegrationPipeline(strategy="alignment", **PIPELINE_KWARGS)
        report = pipeline.run_datasets(pbmc_pair)

        assert pipeline.completed == list(Stage)
        assert pipeline.state is Stage.REPORT
        assert report.strategy == "alignment"
        assert report.total_cells == 170
        assert report.origin_sizes().to_dict() == {"pbmc3k": 80, "pbmc10k": 90}
        assert report.composition.shape == (report.n_clusters, 2)
        assert report.gene_overlap["n_shared"] == 200
        assert report.params["n_components"] == 10
        assert {"batch_mixing", "ari", "nmi", "purity"} <= set(report.metrics)
        assert pipeline.representation.embedding.shape == (170, 10)

    def test_run_from_manifest(self, manifest):
        from blood_integration.config.datasets import load_manifest

        pipeline = IntegrationPipeline(load_manifest(manifest), strategy="alignment", **PIPELINE_KWARGS)
        report = pipeline.run()

        assert report.origin_sizes().to_dict() == {"pbmc3k": 80, "wb": 90}
        assert pipeline.completed[0] is Stage.LOAD

    def test_filter_failure_names_stage(self, make_dataset):
        strict = QCThresholds(5000, 6000)
        datasets = [
            make_dataset("pbmc3k", n_cells=50, seed=1),
            Dataset("wb", make_counts(n_cells=50, seed=2), DatasetConfig("wb", thresholds=strict)),
        ]
        pipeline = IntegrationPipeline(strategy="alignment", **PIPELINE_KWARGS)

        with pytest.raises(EmptyResultError) as excinfo:
            pipeline.run_datasets(datasets)

        assert excinfo.value.stage == "filter"
        assert "[filter]" in str(excinfo.value)
        assert pipeline.state is Stage.QC
        assert pipeline.representation is None

    def test_convergence_failure_names_stage(self, pbmc_pair):
        kwargs = dict(PIPELINE_KWARGS, strategy_params={"max_iter": 1, "epsilon": 1e-12})
        pipeline = IntegrationPipeline(strategy="alignment", **kwargs)

        with pytest.raises(ConvergenceError) as excinfo:
            pipeline.run_datasets(pbmc_pair)

        assert excinfo.value.stage == "integrate"
        assert pipeline.state is Stage.NORMALIZE

    def test_partial_labels_reported(self, make_dataset):
        datasets = [
            make_dataset("pbmc3k", n_cells=100, n_high_mt=20, seed=1, labels=True),
            make_dataset("pbmc10k", n_cells=120, n_high_mt=30, seed=2, depth=1.5),
        ]
        report = IntegrationPipeline(strategy="anchor", **dict(PIPELINE_KWARGS, strategy_params={})).run_datasets(datasets)

        assert report.cell_types is not None
        assert report.cell_types.values.sum() == 80
        assert {"ari", "nmi", "purity"} <= set(report.metrics)

    @pytest.mark.parametrize("kwargs", [{"resolution": 0}, {"n_components": 0}, {"n_neighbors": 0}, {"target_sum": 0}])
    def test_explicit_zero_rejected(self, kwargs):
        with pytest.raises(ConfigError):
            IntegrationPipeline(strategy="alignment", **kwargs)

    def test_foreign_errors_wrapped(self, pbmc_pair):
        pipeline = IntegrationPipeline(strategy="alignment", **PIPELINE_KWARGS)

        with patch.object(AlignmentStrategy, "integrate", side_effect=RuntimeError("out of memory")):
            with pytest.raises(PipelineError) as excinfo:
                pipeline.run_datasets(pbmc_pair)

        error = excinfo.value
        assert error.stage == "integrate"
        assert isinstance(error.cause, RuntimeError)
        assert error.__cause__ is error.cause

    def test_load_failure_names_stage(self, tmp_path):
        configs = [DatasetConfig("a", path=tmp_path / "a.h5ad"), DatasetConfig("b", path=tmp_path / "b.h5ad")]
        pipeline = IntegrationPipeline(configs, strategy="alignment", **PIPELINE_KWARGS)
        with pytest.raises(PipelineError) as excinfo:
            pipeline.run()
        assert excinfo.value.stage == "load"

    def test_qc_plots(self, pbmc_pair, tmp_path, monkeypatch):
        from blood_integration.utils.plot_manager import PlotManager

        monkeypatch.setenv("PLOT_FORMAT", "png")
        plot_manager = PlotManager(base_dir=tmp_path, dpi=50)
        IntegrationPipeline(strategy="alignment", plot_manager=plot_manager, **PIPELINE_KWARGS).run_datasets(pbmc_pair)

        assert (tmp_path / "quality_control" / "pbmc3k_qc_metrics.png").exists()
        assert (tmp_path / "quality_control" / "pbmc10k_qc_metrics.png").exists()


class TestCompareStrategies:
    """Side-by-side runs."""

    def test_validates_all_before_running(self, manifest):
        from blood_integration.config.datasets import load_manifest

        with patch.object(IntegrationPipeline, "run") as run:
            with pytest.raises(ConfigError):
                compare_strategies(load_manifest(manifest), strategies=["alignment", "bogus"])
        run.assert_not_called()

    def test_reports_per_strategy(self, manifest):
        from blood_integration.config.datasets import load_manifest

        reports = compare_strategies(
            load_manifest(manifest),
            strategies=["alignment", "anchor"],
            strategy_params={"alignment": {"max_iter": 50}, "anchor": {"knn": 10}},
            n_components=10,
            n_top_genes=100,
        )

        assert list(reports) == ["alignment", "anchor"]
        for report in reports.values():
            assert report.total_cells == 170
            assert report.origin_sizes().to_dict() == {"pbmc3k": 80, "wb": 90}


class TestCommandLine:
    """run_pipeline.py entry point."""

    @staticmethod
    def _load_cli(project_root):
        spec = importlib.util.spec_from_file_location("run_pipeline", project_root / "run_pipeline.py")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module

    def test_writes_reports(self, project_root, manifest, tmp_path, monkeypatch):
        monkeypatch.setenv("N_TOP_GENES", "100")
        cli = self._load_cli(project_root)
        output = tmp_path / "reports"

        exit_code = cli.main([
            "--manifest", str(manifest),
            "--strategy", "anchor",
            "--n-components", "10",
            "--output", str(output),
        ])

        assert exit_code == 0
        summary = json.loads((output / "anchor" / "summary.json").read_text())
        assert summary["total_cells"] == 170

    def test_reports_failing_stage(self, project_root, tmp_path, capsys):
        cli = self._load_cli(project_root)
        manifest = tmp_path / "datasets.json"
        manifest.write_text(json.dumps({"datasets": [
            {"name": "a", "path": "a.h5ad"},
            {"name": "b", "path": "b.h5ad"},
        ]}))

        exit_code = cli.main(["--manifest", str(manifest), "--strategy", "alignment", "--output", str(tmp_path)])

        assert exit_code == 1
        assert "stage 'load'" in capsys.readouterr().out
