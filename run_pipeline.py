#!/usr/bin/env python3
"""
Main Pipeline for the Blood scRNA-seq Integration Comparison
Runs QC, per-dataset normalization, integration, clustering and composition
reporting for every requested integration strategy.
"""

import sys
from pathlib import Path
import argparse

# Ensure package is importable
sys.path.insert(0, str(Path(__file__).parent / "src"))

from blood_integration.config.datasets import load_manifest
from blood_integration.config.settings import get_settings
from blood_integration.exceptions import PipelineError
from blood_integration.integration import available_strategies, get_strategy
from blood_integration.pipeline import compare_strategies
from blood_integration.utils.logging_utils import setup_logging
from blood_integration.utils.plot_manager import PlotContext, PlotManager


def parse_args(argv=None):
    settings = get_settings()
    parser = argparse.ArgumentParser(description='Blood scRNA-seq Integration Comparison Pipeline')
    parser.add_argument('--manifest', required=True,
                        help='JSON manifest listing datasets, paths and QC thresholds')
    parser.add_argument('--strategy', action='append', choices=available_strategies(),
                        help='Integration strategy to run (repeatable; default: all)')
    parser.add_argument('--n-components', type=int, default=settings.N_COMPONENTS,
                        help='Dimensionality of the integrated embedding')
    parser.add_argument('--n-neighbors', type=int, default=settings.N_NEIGHBORS,
                        help='Neighbours in the clustering kNN graph')
    parser.add_argument('--resolution', type=float, default=settings.CLUSTER_RESOLUTION,
                        help='Clustering resolution')
    parser.add_argument('--cluster-algorithm', default=settings.CLUSTER_ALGORITHM,
                        choices=['leiden', 'louvain'], help='Community detection algorithm')
    parser.add_argument('--output', default=str(settings.REPORTS_DIR),
                        help='Directory for composition reports')
    parser.add_argument('--plots', action='store_true',
                        help='Render QC, embedding and composition plots')
    parser.add_argument('--log-level', default=settings.LOG_LEVEL,
                        help='Logging level')
    return parser.parse_args(argv)


def installed_strategies():
    """Registered strategies whose libraries are importable."""
    installed = []
    for name in available_strategies():
        try:
            get_strategy(name).check_available()
        except PipelineError as e:
            print(f"⚠ Skipping {name}: {e}")
            continue
        installed.append(name)
    return installed


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_level)

    strategies = args.strategy or installed_strategies()

    print(f"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                 BLOOD scRNA-seq INTEGRATION COMPARISON PIPELINE              ║
╚══════════════════════════════════════════════════════════════════════════════╝

Strategies: {', '.join(strategies)}
Manifest:   {args.manifest}
""")

    plot_manager = PlotManager() if args.plots else None

    try:
        configs = load_manifest(args.manifest)
        reports = compare_strategies(
            configs,
            strategies=strategies,
            n_components=args.n_components,
            n_neighbors=args.n_neighbors,
            resolution=args.resolution,
            cluster_algorithm=args.cluster_algorithm,
            umap=args.plots,
            plot_manager=plot_manager,
        )
    except PipelineError as e:
        stage = e.stage or 'setup'
        print(f"\n✗ Pipeline failed at stage '{stage}': {e}")
        if e.cause is not None:
            print(f"  Cause: {type(e.cause).__name__}: {e.cause}")
        return 1

    output_dir = Path(args.output)
    for name, report in reports.items():
        report.save(output_dir / name)
        print(f"\n{'='*60}")
        print(f"{name.upper()}: {report.n_clusters} clusters, {report.total_cells} cells")
        print(f"{'='*60}")
        print(report.composition.to_string())
        for metric, value in report.metrics.items():
            print(f"  {metric}: {value:.3f}" if isinstance(value, float) else f"  {metric}: {value}")

    if plot_manager is not None:
        for name, report in reports.items():
            plot_manager.plot_embedding(report.plot_data, name)
            plot_manager.plot_composition(report)
        plot_manager.plot_strategy_comparison(reports)

        first = next(iter(reports.values()))
        with PlotContext(plot_manager, 'cells_per_dataset', 'qc', 'Cells per dataset after filtering') as (fig, ax):
            sizes = first.origin_sizes()
            ax.bar(sizes.index.astype(str), sizes.values, color='#8fb8de')
            ax.set_ylabel('cells after QC')
            ax.set_title('Dataset Sizes')

    print(f"""
\n{'='*80}
PIPELINE EXECUTION SUMMARY
{'='*80}

Completed strategies: {len(reports)}/{len(strategies)}
Reports saved in: {output_dir}
""" + (f"Plots saved in: {get_settings().PLOTS_DIR}\n" if args.plots else ""))
    return 0


if __name__ == "__main__":
    sys.exit(main())
