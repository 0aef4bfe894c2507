#!/usr/bin/env python3
"""
Plot Management System for the blood scRNA-seq integration comparison.
Centralized plot saving with organized directory structure, plus the QC,
embedding and composition figures of an integration run.
"""

from pathlib import Path
import logging
from datetime import datetime

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

from blood_integration.config.settings import get_settings
from blood_integration.data.dataset import ORIGIN_KEY

logger = logging.getLogger(__name__)

QC_METRICS = ["n_genes_by_counts", "total_counts", "pct_counts_mt", "pct_counts_ribo"]


class PlotManager:
    """Centralized plot management system"""

    def __init__(self, base_dir=None, dpi=None, figsize=(8, 6)):
        settings = get_settings()
        self.base_dir = Path(base_dir) if base_dir else settings.PLOTS_DIR
        self.dpi = dpi or settings.PLOT_DPI
        self.figsize = figsize

        # Create organized directory structure
        self.directories = {
            'qc': self.base_dir / 'quality_control',
            'integration': self.base_dir / 'integration',
            'clustering': self.base_dir / 'clustering',
            'composition': self.base_dir / 'composition',
            'supplementary': self.base_dir / 'supplementary'
        }

        for dir_path in self.directories.values():
            dir_path.mkdir(parents=True, exist_ok=True)

        # Create plot manifest file
        self.manifest_file = self.base_dir / 'plot_manifest.txt'
        if not self.manifest_file.exists():
            with open(self.manifest_file, 'w') as f:
                f.write(f"# Plot Manifest - Created {datetime.now()}\n")
                f.write("# Format: timestamp | category | filename | description\n\n")

    def save_plot(self, fig, filename, category='supplementary', description='',
                  file_formats=None, close_fig=True):
        """
        Save plot to organized directory structure

        Parameters:
        -----------
        fig : matplotlib.figure.Figure
            The figure to save
        filename : str
            Filename without extension
        category : str
            Plot category (qc, integration, clustering, composition, ...)
        description : str
            Plot description for manifest
        file_formats : list
            File formats to save; defaults to Settings.PLOT_FORMAT
        close_fig : bool
            Whether to close figure after saving
        """
        file_formats = file_formats or get_settings().PLOT_FORMAT

        if category not in self.directories:
            logger.warning(f"Unknown category '{category}'. Using 'supplementary'")
            category = 'supplementary'

        save_dir = self.directories[category]
        saved_files = []

        try:
            for fmt in file_formats:
                filepath = save_dir / f"{filename}.{fmt}"
                fig.savefig(
                    filepath,
                    dpi=self.dpi,
                    bbox_inches='tight',
                    format=fmt,
                    facecolor='white',
                    edgecolor='none'
                )
                saved_files.append(str(filepath))
                logger.info(f"Saved plot: {filepath}")
        finally:
            if close_fig:
                plt.close(fig)

        self._update_manifest(category, filename, description, saved_files)
        return saved_files

    def create_figure(self, figsize=None, **kwargs):
        """Create a new figure with default settings"""
        fig, ax = plt.subplots(figsize=figsize or self.figsize, **kwargs)
        return fig, ax

    def create_subplots(self, nrows=1, ncols=1, figsize=None, **kwargs):
        """Create subplots with default settings"""
        if figsize is None:
            # Adjust figsize based on number of subplots
            width, height = self.figsize
            figsize = (width * ncols, height * nrows)

        fig, axes = plt.subplots(nrows=nrows, ncols=ncols, figsize=figsize, squeeze=False, **kwargs)
        return fig, axes

    def _update_manifest(self, category, filename, description, saved_files):
        """Update plot manifest file"""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        with open(self.manifest_file, 'a') as f:
            f.write(f"{timestamp} | {category} | {filename} | {description}\n")
            for file_path in saved_files:
                f.write(f"    -> {file_path}\n")

    def list_plots(self, category=None):
        """List all plots in a category or all categories"""
        if category:
            if category in self.directories:
                return sorted(self.directories[category].glob("*"))
            return []
        all_plots = []
        for cat_dir in self.directories.values():
            all_plots.extend(sorted(cat_dir.glob("*")))
        return all_plots

    def plot_qc_violin(self, adata, dataset_name, metrics=None, thresholds=None):
        """Violin plots of per-cell QC metrics for one dataset."""
        metrics = [m for m in (metrics or QC_METRICS) if m in adata.obs.columns]
        if not metrics:
            raise ValueError(f"{dataset_name} has no QC metrics; annotate QC first")

        fig, axes = self.create_subplots(1, len(metrics), figsize=(3.5 * len(metrics), 4))
        for ax, metric in zip(axes[0], metrics):
            sns.violinplot(y=adata.obs[metric].astype(float), ax=ax, color='#8fb8de', inner=None, cut=0)
            sns.stripplot(y=adata.obs[metric].astype(float), ax=ax, color='black', size=1, alpha=0.3, jitter=0.4)
            ax.set_title(metric)
            ax.set_ylabel('')

        if thresholds is not None:
            if 'n_genes_by_counts' in metrics:
                ax = axes[0][metrics.index('n_genes_by_counts')]
                ax.axhline(thresholds.min_genes, color='red', linestyle='--', linewidth=1)
                ax.axhline(thresholds.max_genes, color='red', linestyle='--', linewidth=1)
            if 'pct_counts_mt' in metrics:
                axes[0][metrics.index('pct_counts_mt')].axhline(
                    thresholds.max_pct_mt, color='red', linestyle='--', linewidth=1
                )

        fig.suptitle(f'Quality Control Metrics - {dataset_name}')
        fig.tight_layout()
        return self.save_plot(fig, f'{dataset_name}_qc_metrics', 'qc',
                              f'Quality control metrics for {dataset_name}')

    def plot_embedding(self, plot_data, strategy, color_by=(ORIGIN_KEY, 'cluster')):
        """Scatter of 2-D coordinates from a report's plot data, one panel per colouring."""
        x_col, y_col = plot_data.columns[:2]
        color_by = [c for c in color_by if c in plot_data.columns]

        fig, axes = self.create_subplots(1, len(color_by), figsize=(6 * len(color_by), 5))
        for ax, column in zip(axes[0], color_by):
            sns.scatterplot(data=plot_data, x=x_col, y=y_col, hue=plot_data[column].astype(str),
                            s=4, linewidth=0, ax=ax, rasterized=True)
            ax.set_title(f'{strategy}: {column}')
            ax.legend(loc='center left', bbox_to_anchor=(1.0, 0.5), fontsize=7, markerscale=2, frameon=False)

        fig.tight_layout()
        return self.save_plot(fig, f'{strategy}_embedding', 'integration',
                              f'{strategy} embedding coloured by {", ".join(color_by)}')

    def plot_composition(self, report):
        """Stacked bars of origin fractions per cluster."""
        fractions = report.fractions()
        fig, ax = self.create_figure(figsize=(max(6, 0.4 * len(fractions)), 4))
        fractions.plot(kind='bar', stacked=True, ax=ax, width=0.85)
        ax.set_xlabel('cluster')
        ax.set_ylabel('fraction of cells')
        ax.set_title(f'Cluster composition - {report.strategy}')
        ax.legend(title=ORIGIN_KEY, loc='center left', bbox_to_anchor=(1.0, 0.5), frameon=False)
        return self.save_plot(fig, f'{report.strategy}_composition', 'composition',
                              f'Origin composition of {report.strategy} clusters')

    def plot_strategy_comparison(self, reports):
        """Batch mixing score per strategy."""
        scores = pd.Series({name: r.metrics.get('batch_mixing') for name, r in reports.items()}, dtype=float)
        fig, ax = self.create_figure(figsize=(1.5 * len(scores) + 2, 4))
        sns.barplot(x=scores.index, y=scores.values, ax=ax, color='#8fb8de')
        ax.set_ylabel('batch mixing (1 - silhouette)')
        ax.set_title('Integration strategy comparison')
        return self.save_plot(fig, 'strategy_comparison', 'composition',
                              'Batch mixing score per integration strategy')


# Context manager for plot saving
class PlotContext:
    """Context manager for automatic plot saving"""

    def __init__(self, plot_manager, filename, category='supplementary', description='',
                 file_formats=None, figsize=None):
        self.plot_manager = plot_manager
        self.filename = filename
        self.category = category
        self.description = description
        self.file_formats = file_formats
        self.figsize = figsize
        self.fig = None
        self.ax = None

    def __enter__(self):
        self.fig, self.ax = self.plot_manager.create_figure(figsize=self.figsize)
        return self.fig, self.ax

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:  # No exception occurred
            self.plot_manager.save_plot(
                self.fig, self.filename, self.category,
                self.description, self.file_formats, close_fig=True
            )
        else:
            plt.close(self.fig)
