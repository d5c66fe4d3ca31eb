#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
qc_filtering.py
===============

Load the merged multi-sample dataset, compute per-cell QC metrics and drop
low-quality cells.

This script performs:
1. Loading the pre-merged AnnData snapshot
2. Mitochondrial / ribosomal QC metrics
3. Fixed-threshold cell filtering (UMIs, genes, % mito, % ribo)
4. QC violin plots before and after filtering
5. Per-sample QC summary export

Usage:
    Called via Snakemake rule with snakemake.input/output/params

    Or standalone:
    python qc_filtering.py --input merged.h5ad --output-dir /path/to/output
"""

import os
import sys
import logging
import argparse
import operator

import pandas as pd
import scanpy as sc

from snakemake_wrapper.scripts.parameters import (
    DEFAULT_QC_PARAMS,
    DEFAULT_REPORT_PARAMS,
    get_filter_summary,
    merge_params,
    validate_qc_params,
)
from snakemake_wrapper.scripts.reporting import FigureReporter

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# threshold key -> (obs column, comparison a cell must satisfy)
QC_BOUNDS = [
    ('min_counts', 'total_counts', operator.gt),
    ('max_counts', 'total_counts', operator.lt),
    ('min_genes', 'n_genes_by_counts', operator.gt),
    ('max_genes', 'n_genes_by_counts', operator.lt),
    ('max_mito_pct', 'pct_counts_mt', operator.lt),
    ('max_ribo_pct', 'pct_counts_ribo', operator.lt),
]


# =============================================================================
# Data Loading Functions
# =============================================================================

def load_dataset(path, sample_key='sample_id'):
    """
    Load a persisted merged dataset.

    Parameters
    ----------
    path : str
        Path to an ``.h5ad`` file holding raw counts of all samples
    sample_key : str
        Column of ``obs`` holding the sample of origin

    Returns
    -------
    AnnData
        Loaded dataset with ``obs[sample_key]`` as a categorical
    """
    if not path or not os.path.exists(path):
        raise FileNotFoundError(f"Input dataset not found: {path}")

    logger.info(f"Loading dataset from {path}...")
    adata = sc.read_h5ad(path)
    adata.var_names_make_unique()
    adata.obs_names_make_unique()

    if sample_key not in adata.obs.columns:
        raise ValueError(
            f"Sample column '{sample_key}' not found in obs "
            f"(available: {list(adata.obs.columns)})"
        )
    adata.obs[sample_key] = adata.obs[sample_key].astype(str).astype('category')

    logger.info(f"  {adata.n_obs} cells, {adata.n_vars} genes, "
                f"{adata.obs[sample_key].nunique()} samples")
    return adata


# =============================================================================
# QC Functions
# =============================================================================

def calculate_qc_metrics(adata, mito_prefix=('MT-', 'mt-'), ribo_prefix=('RPS', 'RPL', 'Rps', 'Rpl')):
    """
    Calculate QC metrics for all cells.

    Parameters
    ----------
    adata : AnnData
        Input AnnData object with raw counts in X
    mito_prefix : sequence of str
        Gene name prefixes of mitochondrial genes
    ribo_prefix : sequence of str
        Gene name prefixes of ribosomal protein genes

    Returns
    -------
    AnnData
        AnnData with ``total_counts``, ``n_genes_by_counts``,
        ``pct_counts_mt`` and ``pct_counts_ribo`` added to obs
    """
    logger.info("Calculating QC metrics...")

    adata.var['mt'] = adata.var_names.str.startswith(tuple(mito_prefix))
    adata.var['ribo'] = adata.var_names.str.startswith(tuple(ribo_prefix))

    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=['mt', 'ribo'],
        percent_top=None,
        log1p=False,
        inplace=True
    )

    logger.info(f"  Mean genes/cell: {adata.obs['n_genes_by_counts'].mean():.1f}")
    logger.info(f"  Mean counts/cell: {adata.obs['total_counts'].mean():.1f}")
    logger.info(f"  Mean % mito: {adata.obs['pct_counts_mt'].mean():.1f}%")
    logger.info(f"  Mean % ribo: {adata.obs['pct_counts_ribo'].mean():.1f}%")

    return adata


def qc_mask(obs, params):
    """
    Evaluate the QC predicate for every cell.

    All bounds are strict and are combined with a logical AND. A bound whose
    value is ``None`` is not applied.

    Parameters
    ----------
    obs : pd.DataFrame
        Per-cell metadata with the QC metric columns
    params : dict
        QC thresholds (keys of ``QC_BOUNDS``)

    Returns
    -------
    pd.Series
        Boolean mask indexed like ``obs``
    """
    mask = pd.Series(True, index=obs.index)
    for key, column, compare in QC_BOUNDS:
        bound = params.get(key)
        if bound is None:
            continue
        if column not in obs.columns:
            raise KeyError(f"QC metric '{column}' is missing; run calculate_qc_metrics first")
        mask &= compare(obs[column], bound)
    return mask


def filter_cells(adata, params, sample_key='sample_id'):
    """
    Keep only the cells that pass every QC threshold.

    Parameters
    ----------
    adata : AnnData
        Input AnnData with QC metrics
    params : dict
        QC parameters (from config.yaml qc section)
    sample_key : str
        Column of obs holding the sample of origin

    Returns
    -------
    AnnData
        Filtered copy; obs of the kept cells is unchanged
    """
    logger.info("Filtering cells...")

    params = merge_params(DEFAULT_QC_PARAMS, params)
    errors = validate_qc_params(params)
    if errors:
        raise ValueError("Invalid QC thresholds:\n" + "\n".join(errors))

    for line in get_filter_summary(params).split('\n'):
        logger.info(line)

    mask = qc_mask(adata.obs, params)
    n_kept = int(mask.sum())
    if n_kept == 0:
        raise ValueError("No cells passed the QC filters; check the thresholds against the QC plots")

    filtered = adata[mask.values].copy()

    if sample_key in adata.obs.columns:
        before = adata.obs[sample_key].value_counts()
        after = filtered.obs[sample_key].value_counts()
        for sample in before.index:
            logger.info(f"  {sample}: {before[sample]} -> {after.get(sample, 0)} cells")

    logger.info(f"  Cells: {adata.n_obs} -> {filtered.n_obs} ({adata.n_obs - filtered.n_obs} removed)")
    return filtered


def qc_filter_summary(obs_before, obs_after, sample_key='sample_id'):
    """Per-sample QC summary of the kept cells plus before/after cell counts."""
    summary = obs_after.groupby(sample_key, observed=True).agg({
        'total_counts': ['mean', 'median'],
        'n_genes_by_counts': ['mean', 'median'],
        'pct_counts_mt': ['mean', 'median'],
        'pct_counts_ribo': ['mean', 'median'],
    })
    summary.columns = ['_'.join(col).strip() for col in summary.columns.values]

    counts = pd.DataFrame({
        'n_cells_before': obs_before[sample_key].value_counts(),
        'n_cells_after': obs_after[sample_key].value_counts(),
    }).fillna(0).astype(int)
    counts['n_removed'] = counts['n_cells_before'] - counts['n_cells_after']

    summary = counts.join(summary, how='left')
    summary.index.name = sample_key
    return summary


def export_qc_metrics(summary, output_path):
    """Export the QC summary to TSV."""
    output_dir = os.path.dirname(output_path)
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
    logger.info(f"Exporting QC metrics to {output_path}")
    summary.to_csv(output_path, sep='\t')


# =============================================================================
# Main Pipeline Function
# =============================================================================

def run_qc_pipeline(
    input_path,
    output_adata_path,
    output_qc_path,
    figures_dir=None,
    qc_params=None,
    sample_key='sample_id',
    report_params=None,
):
    """
    Run the QC stage.

    Returns
    -------
    AnnData
        Filtered AnnData (also written to ``output_adata_path``)
    """
    qc_params = merge_params(DEFAULT_QC_PARAMS, qc_params)
    report_params = merge_params(DEFAULT_REPORT_PARAMS, report_params)
    reporter = FigureReporter(figures_dir, **report_params)

    logger.info("=" * 60)
    logger.info("Starting QC Filtering")
    logger.info("=" * 60)

    adata = load_dataset(input_path, sample_key=sample_key)
    adata = calculate_qc_metrics(
        adata,
        mito_prefix=qc_params['mito_prefix'],
        ribo_prefix=qc_params['ribo_prefix'],
    )
    reporter.qc_violins(adata, 'pre_filter', sample_key=sample_key)

    obs_before = adata.obs.copy()
    adata = filter_cells(adata, qc_params, sample_key=sample_key)
    reporter.qc_violins(adata, 'post_filter', sample_key=sample_key)

    export_qc_metrics(qc_filter_summary(obs_before, adata.obs, sample_key), output_qc_path)

    os.makedirs(os.path.dirname(output_adata_path) or '.', exist_ok=True)
    logger.info(f"Saving filtered data to {output_adata_path}...")
    adata.write(output_adata_path)

    logger.info(f"QC complete: {adata.n_obs} cells retained")
    return adata


# =============================================================================
# Snakemake Integration
# =============================================================================

def run_from_snakemake():
    """Run QC from Snakemake rule."""
    config = snakemake.params.config

    log_file = snakemake.log[0] if snakemake.log else None
    if log_file:
        os.makedirs(os.path.dirname(log_file), exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        logging.getLogger().addHandler(file_handler)

    run_qc_pipeline(
        input_path=snakemake.input.adata,
        output_adata_path=snakemake.output.adata,
        output_qc_path=snakemake.output.qc_metrics,
        figures_dir=snakemake.params.figures_dir,
        qc_params=config.get('qc'),
        sample_key=config.get('sample_key', 'sample_id'),
        report_params=config.get('report'),
    )


# =============================================================================
# CLI Entry Point
# =============================================================================

def main():
    """Main function for standalone CLI usage."""
    parser = argparse.ArgumentParser(description='Single-cell QC filtering')
    parser.add_argument('--input', required=True, help='Merged dataset (.h5ad)')
    parser.add_argument('--output-dir', required=True, help='Output directory')
    parser.add_argument('--sample-key', default='sample_id', help='obs column with the sample of origin')
    parser.add_argument('--min-counts', type=float, default=DEFAULT_QC_PARAMS['min_counts'])
    parser.add_argument('--max-counts', type=float, default=DEFAULT_QC_PARAMS['max_counts'])
    parser.add_argument('--min-genes', type=float, default=DEFAULT_QC_PARAMS['min_genes'])
    parser.add_argument('--max-genes', type=float, default=DEFAULT_QC_PARAMS['max_genes'])
    parser.add_argument('--max-mito-pct', type=float, default=DEFAULT_QC_PARAMS['max_mito_pct'])
    parser.add_argument('--max-ribo-pct', type=float, default=DEFAULT_QC_PARAMS['max_ribo_pct'])

    args = parser.parse_args()

    qc_params = {
        'min_counts': args.min_counts,
        'max_counts': args.max_counts,
        'min_genes': args.min_genes,
        'max_genes': args.max_genes,
        'max_mito_pct': args.max_mito_pct,
        'max_ribo_pct': args.max_ribo_pct,
    }

    try:
        run_qc_pipeline(
            input_path=args.input,
            output_adata_path=os.path.join(args.output_dir, 'qc', 'adata_filtered.h5ad'),
            output_qc_path=os.path.join(args.output_dir, 'qc', 'qc_metrics.tsv'),
            figures_dir=os.path.join(args.output_dir, 'figures'),
            qc_params=qc_params,
            sample_key=args.sample_key,
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
