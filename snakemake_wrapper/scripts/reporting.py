#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
reporting.py
============

Figure output for the pipeline stages.

Stages never write images themselves. They hand the data to a
``FigureReporter`` together with the stage name, and the reporter owns file
naming (``<stage>_<name>.<format>``), the output directory and matplotlib
state. A reporter created without a directory draws nothing, which is what
the tests use.
"""

import os
import logging

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import scanpy as sc

logger = logging.getLogger(__name__)


QC_METRICS = [
    ('total_counts', 'UMI Counts per Cell'),
    ('n_genes_by_counts', 'Genes per Cell'),
    ('pct_counts_mt', '% Mitochondrial'),
    ('pct_counts_ribo', '% Ribosomal'),
]


class FigureReporter:
    """
    Save pipeline figures under one directory.

    Parameters
    ----------
    figures_dir : str or None
        Output directory. ``None`` disables every plot.
    dpi : int
        Resolution of raster formats.
    formats : sequence of str
        File extensions to write each figure in (e.g. ``['png', 'pdf']``).
    """

    def __init__(self, figures_dir=None, dpi=150, formats=('png',)):
        self.figures_dir = figures_dir
        self.dpi = dpi
        self.formats = list(formats)
        self.saved = []

    @property
    def enabled(self):
        return self.figures_dir is not None

    def save(self, fig, stage, name):
        """Write ``fig`` in every format and close it."""
        paths = []
        if not self.enabled:
            plt.close(fig)
            return paths

        os.makedirs(self.figures_dir, exist_ok=True)
        for fmt in self.formats:
            path = os.path.join(self.figures_dir, f'{stage}_{name}.{fmt}')
            fig.savefig(path, dpi=self.dpi, bbox_inches='tight')
            paths.append(path)
        plt.close(fig)

        logger.info(f"  Saved figure: {paths[0]}")
        self.saved.extend(paths)
        return paths

    def qc_violins(self, adata, stage, sample_key='sample_id'):
        """Violin plots of the four QC metrics per sample."""
        if not self.enabled:
            return []

        metrics = [(key, title) for key, title in QC_METRICS if key in adata.obs.columns]
        fig, axes = plt.subplots(1, len(metrics), figsize=(5 * len(metrics), 5))
        if len(metrics) == 1:
            axes = [axes]

        for ax, (key, title) in zip(axes, metrics):
            sc.pl.violin(adata, key, groupby=sample_key, ax=ax, show=False)
            ax.set_title(title)
            ax.tick_params(axis='x', rotation=90)

        plt.tight_layout()
        return self.save(fig, stage, 'qc_violin')

    def doublet_umap(self, adata, sample_index, sample):
        """UMAP of one sample coloured by its doublet call."""
        if not self.enabled:
            return []

        fig, ax = plt.subplots(figsize=(7, 6))
        sc.pl.umap(
            adata,
            color='doublet_class',
            palette={'Singlet': 'lightgray', 'Doublet': 'red'},
            title=f'{sample}: doublet calls',
            frameon=False,
            ax=ax,
            show=False,
        )
        return self.save(fig, 'doublets', f'sample_{sample_index}')

    def embedding(self, adata, stage, color, title=None, name=None, legend_loc='on data'):
        """UMAP coloured by one ``obs`` column."""
        if not self.enabled:
            return []

        fig, ax = plt.subplots(figsize=(10, 8))
        sc.pl.umap(
            adata,
            color=color,
            legend_loc=legend_loc,
            legend_fontsize=8,
            legend_fontoutline=2,
            frameon=False,
            title=title or color,
            ax=ax,
            show=False,
        )
        return self.save(fig, stage, name or f'umap_{color}')

    def feature_plots(self, adata, stage, genes, name='feature_plots'):
        """UMAPs coloured by the RNA-layer expression of ``genes``."""
        if not self.enabled or not genes:
            return []

        sc.pl.umap(adata, color=genes, use_raw=adata.raw is not None, ncols=4,
                   frameon=False, show=False)
        return self.save(plt.gcf(), stage, name)

    def violins(self, adata, stage, genes, groupby, name='violin_plots'):
        """Violin plots of ``genes`` grouped by ``groupby``."""
        if not self.enabled or not genes:
            return []

        sc.pl.violin(adata, keys=genes, groupby=groupby, use_raw=adata.raw is not None,
                     rotation=90, show=False)
        return self.save(plt.gcf(), stage, name)

    def marker_heatmap(self, adata, stage, genes, groupby, name='marker_heatmap'):
        """Heatmap of ``genes`` on the active (integrated) layer."""
        if not self.enabled or not genes:
            return []

        sc.pl.heatmap(adata, var_names=genes, groupby=groupby, use_raw=False,
                      swap_axes=True, show_gene_labels=len(genes) <= 100, show=False)
        return self.save(plt.gcf(), stage, name)

    def probability_plots(self, adata, stage, prob_columns, groupby):
        """Per-class probability violins, plus UMAPs when an embedding exists."""
        if not self.enabled or not prob_columns:
            return []

        paths = []
        sc.pl.violin(adata, keys=prob_columns, groupby=groupby, rotation=90, show=False)
        paths.extend(self.save(plt.gcf(), stage, 'probability_violin'))

        if 'X_umap' in adata.obsm:
            sc.pl.umap(adata, color=prob_columns, ncols=4, frameon=False,
                       color_map='viridis', show=False)
            paths.extend(self.save(plt.gcf(), stage, 'probability_umap'))

        return paths
