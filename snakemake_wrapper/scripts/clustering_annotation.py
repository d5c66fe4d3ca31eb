#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
clustering_annotation.py
========================

Clustering of the integrated dataset, manual cell type annotation and marker
detection.

This script performs:
1. Scaling and PCA of the integrated layer
2. Neighbor graph, Leiden clustering and UMAP
3. Marker-gene scoring per cluster to suggest cell type labels
4. Relabeling of clusters from the configured cluster -> label map
5. One-vs-rest differential expression on the RNA layer
6. Marker heatmap, feature plots and per-sample cluster composition

Usage:
    Called via Snakemake rule with snakemake.input/output/params

    Or standalone:
    python clustering_annotation.py --input adata_integrated.h5ad --output-dir /path/to/output
"""

import os
import sys
import logging
import argparse

import pandas as pd
import scanpy as sc
import yaml

from snakemake_wrapper.scripts.parameters import (
    DEFAULT_ANNOTATION_PARAMS,
    DEFAULT_CLUSTERING_PARAMS,
    DEFAULT_MARKER_PARAMS,
    DEFAULT_REPORT_PARAMS,
    merge_params,
)
from snakemake_wrapper.scripts.reporting import FigureReporter

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# =============================================================================
# Reduction and Clustering
# =============================================================================

def reduce_and_cluster(adata, n_pcs=50, n_neighbors=30, resolution=0.15, random_seed=0):
    """
    Reduce and cluster the integrated layer.

    Parameters
    ----------
    adata : AnnData
        Integrated dataset (integrated values in X)
    n_pcs : int
        Number of principal components
    n_neighbors : int
        Neighbors of the kNN graph
    resolution : float
        Leiden resolution
    random_seed : int
        Seed of PCA, neighbors, Leiden and UMAP

    Returns
    -------
    AnnData
        With ``X_pca``/``X_umap`` in obsm and cluster ids in ``obs['leiden']``
    """
    logger.info("Reducing and clustering the integrated layer...")

    sc.pp.scale(adata, max_value=10)
    n_comps = min(n_pcs, adata.n_vars - 1, adata.n_obs - 1)
    sc.tl.pca(adata, n_comps=n_comps, random_state=random_seed)
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_comps, random_state=random_seed)
    sc.tl.leiden(adata, resolution=resolution, random_state=random_seed, key_added='leiden')
    sc.tl.umap(adata, random_state=random_seed)

    counts = adata.obs['leiden'].value_counts().sort_index()
    logger.info(f"  Found {len(counts)} clusters at resolution {resolution}")
    for cluster, n in counts.items():
        logger.info(f"    Cluster {cluster}: {n} cells")
    return adata


# =============================================================================
# Annotation
# =============================================================================

def annotate_clusters(adata, cluster_labels, cluster_key='leiden', key_added='celltype',
                      fallback='Unassigned', strict=False):
    """
    Assign a cell type label to every cell from its cluster.

    Parameters
    ----------
    adata : AnnData
        Clustered dataset
    cluster_labels : dict
        Cluster id -> label. Keys are compared as strings.
    cluster_key : str
        obs column holding the cluster ids
    key_added : str
        obs column receiving the labels
    fallback : str
        Label of clusters missing from ``cluster_labels``
    strict : bool
        Raise instead of falling back when a cluster has no label

    Returns
    -------
    AnnData
        With a categorical ``obs[key_added]``
    """
    if cluster_key not in adata.obs.columns:
        raise KeyError(f"Cluster column '{cluster_key}' not found in obs")

    mapping = {str(cluster): str(label) for cluster, label in (cluster_labels or {}).items()}
    clusters = adata.obs[cluster_key].astype(str)
    present = sorted(clusters.unique(), key=lambda c: (len(c), c))

    unmapped = [cluster for cluster in present if cluster not in mapping]
    if unmapped:
        message = f"Clusters without a label: {unmapped}"
        if strict:
            raise ValueError(message)
        logger.warning(f"{message}; labelled '{fallback}'")

    unused = sorted(set(mapping) - set(present))
    if unused:
        logger.warning(f"Labels given for clusters not present: {unused}")

    labels = clusters.map(lambda cluster: mapping.get(cluster, fallback))
    adata.obs[key_added] = pd.Categorical(labels)

    for label, n in adata.obs[key_added].value_counts().items():
        logger.info(f"  {label}: {n} cells")
    return adata


def suggest_cluster_labels(adata, marker_genes, cluster_key='leiden', random_seed=0):
    """
    Suggest a cell type for every cluster from marker gene scores.

    Each cell type of ``marker_genes`` is scored per cell on the RNA layer
    with ``sc.tl.score_genes``; the cluster median of every score is
    reported and the best one is the suggestion. Nothing is written to the
    annotation.

    Returns
    -------
    pd.DataFrame
        Clusters x cell type median scores, plus ``suggested_label``
    """
    gene_names = adata.raw.var_names if adata.raw is not None else adata.var_names
    score_columns = {}

    for celltype, genes in (marker_genes or {}).items():
        present = [gene for gene in genes if gene in gene_names]
        if not present:
            logger.warning(f"  No marker genes of {celltype} found, skipping")
            continue
        column = f'score_{celltype}'
        sc.tl.score_genes(adata, present, score_name=column,
                          use_raw=adata.raw is not None, random_state=random_seed)
        score_columns[column] = celltype

    if not score_columns:
        logger.warning("No cell type could be scored; no label suggestions")
        return pd.DataFrame()

    medians = adata.obs.groupby(cluster_key, observed=True)[list(score_columns)].median()
    medians = medians.rename(columns=score_columns)
    medians['suggested_label'] = medians.idxmax(axis=1)
    medians.index = medians.index.astype(str)

    adata.obs.drop(columns=list(score_columns), inplace=True)

    for cluster, label in medians['suggested_label'].items():
        logger.info(f"  Cluster {cluster}: suggested {label}")
    return medians


# =============================================================================
# Markers
# =============================================================================

def find_all_markers(adata, groupby='leiden', method='wilcoxon'):
    """
    One-vs-rest differential expression of every group on the RNA layer.

    Groups with a single cell cannot be tested and are skipped.

    Returns
    -------
    pd.DataFrame
        Columns ``group``, ``gene``, ``scores``, ``logfoldchanges``,
        ``pvals``, ``pvals_adj``
    """
    logger.info(f"Finding markers for each '{groupby}' group ({method})...")

    sizes = adata.obs[groupby].value_counts()
    testable = [str(group) for group in sizes.index if sizes[group] > 1]
    skipped = [str(group) for group in sizes.index if sizes[group] <= 1]
    if skipped:
        logger.warning(f"  Groups with a single cell skipped: {skipped}")
    if not testable:
        raise ValueError(f"No '{groupby}' group has enough cells for marker detection")

    adata.obs[groupby] = adata.obs[groupby].astype(str).astype('category')
    sc.tl.rank_genes_groups(
        adata,
        groupby=groupby,
        groups=testable,
        reference='rest',
        method=method,
        use_raw=adata.raw is not None,
    )

    markers = sc.get.rank_genes_groups_df(adata, group=testable)
    if 'group' not in markers.columns:
        markers.insert(0, 'group', testable[0])
    markers = markers.rename(columns={'names': 'gene'})
    markers['group'] = markers['group'].astype(str)
    logger.info(f"  {len(markers)} gene/group statistics")
    return markers


def top_markers(markers, n=50):
    """Top ``n`` genes of every group by log fold change."""
    ordered = markers.sort_values('logfoldchanges', ascending=False, kind='mergesort')
    top = ordered.groupby('group', sort=False).head(n)
    return top.sort_values('group', kind='mergesort').reset_index(drop=True)


def heatmap_genes(adata, top):
    """Unique top marker genes present in the integrated layer, in table order."""
    genes = list(dict.fromkeys(top['gene']))
    present = [gene for gene in genes if gene in adata.var_names]
    missing = len(genes) - len(present)
    if missing:
        logger.warning(f"  {missing} marker genes are not integration features, dropped from the heatmap")
    return present


def cluster_summary(adata, sample_key='sample_id', cluster_key='leiden', label_key='celltype'):
    """Cells per cluster (and label) per sample."""
    rows = [adata.obs[cluster_key]]
    if label_key in adata.obs.columns:
        rows.append(adata.obs[label_key])
    return pd.crosstab(rows, adata.obs[sample_key], margins=True, margins_name='total')


# =============================================================================
# Main Pipeline Function
# =============================================================================

def run_cluster_annotation_pipeline(
    input_path,
    output_adata_path,
    output_markers_path,
    output_top_markers_path,
    output_suggestions_path,
    output_summary_path,
    figures_dir=None,
    clustering_params=None,
    annotation_params=None,
    marker_params=None,
    sample_key='sample_id',
    random_seed=0,
    report_params=None,
):
    """Run clustering, annotation and marker detection."""
    clustering_params = merge_params(DEFAULT_CLUSTERING_PARAMS, clustering_params)
    annotation_params = merge_params(DEFAULT_ANNOTATION_PARAMS, annotation_params)
    marker_params = merge_params(DEFAULT_MARKER_PARAMS, marker_params)
    report_params = merge_params(DEFAULT_REPORT_PARAMS, report_params)
    reporter = FigureReporter(figures_dir, **report_params)

    logger.info("=" * 60)
    logger.info("Starting Clustering and Annotation")
    logger.info("=" * 60)

    adata = sc.read_h5ad(input_path)

    adata = reduce_and_cluster(
        adata,
        n_pcs=clustering_params['n_pcs'],
        n_neighbors=clustering_params['n_neighbors'],
        resolution=clustering_params['resolution'],
        random_seed=random_seed,
    )
    reporter.embedding(adata, 'clusters', 'leiden', title='Leiden clusters')
    reporter.embedding(adata, 'clusters', sample_key, title='Sample', legend_loc='right margin')

    cluster_key = annotation_params['cluster_key']
    label_key = annotation_params['key_added']
    marker_genes = annotation_params['marker_genes']

    suggestions = suggest_cluster_labels(adata, marker_genes, cluster_key=cluster_key,
                                         random_seed=random_seed)

    adata = annotate_clusters(
        adata,
        annotation_params['cluster_labels'],
        cluster_key=cluster_key,
        key_added=label_key,
        fallback=annotation_params['fallback'],
        strict=annotation_params['strict'],
    )
    reporter.embedding(adata, 'annotation', label_key, title='Cell types')

    gene_names = adata.raw.var_names if adata.raw is not None else adata.var_names
    plot_genes = [g for genes in marker_genes.values() for g in genes if g in gene_names]
    reporter.feature_plots(adata, 'annotation', plot_genes)
    reporter.violins(adata, 'annotation', plot_genes, groupby=cluster_key)

    markers = find_all_markers(adata, groupby=marker_params['groupby'], method=marker_params['method'])
    top = top_markers(markers, n=marker_params['n_top'])
    reporter.marker_heatmap(adata, 'markers', heatmap_genes(adata, top), groupby=marker_params['groupby'])

    summary = cluster_summary(adata, sample_key=sample_key, cluster_key=cluster_key, label_key=label_key)

    for path in (output_adata_path, output_markers_path, output_top_markers_path,
                 output_suggestions_path, output_summary_path):
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)

    markers.to_csv(output_markers_path, sep='\t', index=False)
    top.to_csv(output_top_markers_path, sep='\t', index=False)
    suggestions.to_csv(output_suggestions_path, sep='\t')
    summary.to_csv(output_summary_path, sep='\t')

    logger.info(f"Saving annotated data to {output_adata_path}...")
    adata.write(output_adata_path)
    return adata


# =============================================================================
# Snakemake Integration
# =============================================================================

def run_from_snakemake():
    """Run clustering and annotation from Snakemake rule."""
    config = snakemake.params.config

    log_file = snakemake.log[0] if snakemake.log else None
    if log_file:
        os.makedirs(os.path.dirname(log_file), exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        logging.getLogger().addHandler(file_handler)

    run_cluster_annotation_pipeline(
        input_path=snakemake.input.adata,
        output_adata_path=snakemake.output.adata,
        output_markers_path=snakemake.output.markers,
        output_top_markers_path=snakemake.output.top_markers,
        output_suggestions_path=snakemake.output.suggestions,
        output_summary_path=snakemake.output.cluster_summary,
        figures_dir=snakemake.params.figures_dir,
        clustering_params=config.get('clustering'),
        annotation_params=config.get('annotation'),
        marker_params=config.get('markers'),
        sample_key=config.get('sample_key', 'sample_id'),
        random_seed=config.get('random_seed', 0),
        report_params=config.get('report'),
    )


def main():
    """Main function for standalone CLI usage."""
    parser = argparse.ArgumentParser(description='Clustering, annotation and marker detection')
    parser.add_argument('--input', required=True, help='Integrated dataset (.h5ad)')
    parser.add_argument('--output-dir', required=True, help='Output directory')
    parser.add_argument('--sample-key', default='sample_id')
    parser.add_argument('--resolution', type=float, default=DEFAULT_CLUSTERING_PARAMS['resolution'])
    parser.add_argument('--labels', default=None,
                        help='YAML file mapping cluster id to cell type label')
    parser.add_argument('--strict', action='store_true',
                        help='Fail when a cluster has no label')
    parser.add_argument('--seed', type=int, default=0)

    args = parser.parse_args()

    annotation_params = {'strict': args.strict}
    if args.labels:
        with open(args.labels) as f:
            annotation_params['cluster_labels'] = yaml.safe_load(f) or {}

    out = os.path.join(args.output_dir, 'clustering')
    try:
        run_cluster_annotation_pipeline(
            input_path=args.input,
            output_adata_path=os.path.join(out, 'adata_annotated.h5ad'),
            output_markers_path=os.path.join(out, 'markers_all.tsv'),
            output_top_markers_path=os.path.join(out, 'markers_top.tsv'),
            output_suggestions_path=os.path.join(out, 'label_suggestions.tsv'),
            output_summary_path=os.path.join(out, 'cluster_summary.tsv'),
            figures_dir=os.path.join(args.output_dir, 'figures'),
            clustering_params={'resolution': args.resolution},
            annotation_params=annotation_params,
            sample_key=args.sample_key,
            random_seed=args.seed,
        )
    except (ValueError, FileNotFoundError) as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == '__main__':
    try:
        snakemake
        run_from_snakemake()
    except NameError:
        main()
