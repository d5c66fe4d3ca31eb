#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
generate_summary.py
===================

Generate master summary YAML file combining all pipeline results.

This script aggregates the tables written by every stage into a single
summary file.
"""

import os
import yaml
import pandas as pd
from datetime import datetime
import logging

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

PIPELINE_NAME = 'ClusterAtlas'
PIPELINE_VERSION = '0.1.0'


def read_table(filepath, index_col=None):
    """Read a TSV file, returning None if it doesn't exist or is empty."""
    if not filepath or not os.path.exists(filepath):
        return None
    try:
        df = pd.read_csv(filepath, sep='\t', index_col=index_col)
    except pd.errors.EmptyDataError:
        return None
    return df if len(df) > 0 else None


def _plain(value):
    """Convert numpy scalars to built-in types for YAML."""
    if hasattr(value, 'item'):
        return value.item()
    return value


def summarize_qc(qc_file):
    qc = read_table(qc_file, index_col=0)
    if qc is None:
        return None
    return {
        'n_cells_before': int(qc['n_cells_before'].sum()),
        'n_cells_after': int(qc['n_cells_after'].sum()),
        'per_sample': {
            str(sample): {'before': int(row['n_cells_before']), 'after': int(row['n_cells_after'])}
            for sample, row in qc.iterrows()
        },
    }


def summarize_doublets(doublet_file):
    doublets = read_table(doublet_file, index_col=0)
    if doublets is None:
        return None
    per_sample = {}
    for sample, row in doublets.iterrows():
        entry = {'n_cells': int(row['n_cells']), 'n_doublets': int(row['n_doublets'])}
        if 'optimal_pK' in row and pd.notna(row['optimal_pK']):
            entry['optimal_pK'] = float(row['optimal_pK'])
            entry['n_exp_adj'] = int(row['n_exp_adj'])
        per_sample[str(sample)] = entry
    return {
        'n_doublets_removed': int(doublets['n_doublets'].sum()),
        'per_sample': per_sample,
    }


def summarize_integration(anchors_file):
    anchors = read_table(anchors_file)
    if anchors is None:
        return None
    return {
        'n_sample_pairs': len(anchors),
        'min_anchors': int(anchors['n_anchors'].min()),
        'pairs_without_anchors': int((anchors['n_anchors'] == 0).sum()),
    }


def summarize_clustering(cluster_file):
    clusters = read_table(cluster_file, index_col=0)
    if clusters is None:
        return None
    clusters = clusters.drop(index='total', errors='ignore')
    return {
        'n_clusters': len(clusters),
        'cells_per_cluster': {str(k): _plain(v) for k, v in clusters['total'].items()},
    }


def summarize_classifier(cv_file, predictions_file):
    result = {}
    cv = read_table(cv_file)
    if cv is not None:
        result['cv_accuracy_mean'] = float(cv['accuracy'].mean())
    predictions = read_table(predictions_file, index_col=0)
    if predictions is not None:
        counts = predictions['predicted_celltype'].value_counts()
        result['predicted_counts'] = {str(k): int(v) for k, v in counts.items()}
        result['mean_prob_max'] = float(predictions['prob_max'].mean())
    return result or None


def generate_summary(
    qc_file,
    doublet_file,
    anchors_file,
    cluster_file,
    config,
    output_dir,
    output_file,
    cv_file=None,
    predictions_file=None,
):
    """Generate comprehensive pipeline summary."""

    logger.info("="*60)
    logger.info("GENERATING MASTER SUMMARY")
    logger.info("="*60)

    summary = {
        'pipeline': {
            'name': PIPELINE_NAME,
            'version': PIPELINE_VERSION,
            'completion_time': datetime.now().isoformat(),
        },
        'configuration': {
            'config_version': config.get('config_version'),
            'input': config.get('input'),
            'output_dir': output_dir,
            'random_seed': config.get('random_seed'),
            'sample_key': config.get('sample_key'),
        },
        'modules': {
            'doublets': config.get('doublets', {}).get('enabled', True),
            'classifier': config.get('classifier', {}).get('enabled', False),
        },
        'results': {}
    }

    sections = [
        ('qc', summarize_qc(qc_file)),
        ('doublets', summarize_doublets(doublet_file)),
        ('integration', summarize_integration(anchors_file)),
        ('clustering', summarize_clustering(cluster_file)),
        ('classifier', summarize_classifier(cv_file, predictions_file)),
    ]
    for name, metrics in sections:
        if metrics:
            summary['results'][name] = {'status': 'completed', 'metrics': metrics}
        else:
            logger.info(f"  No results for {name}")

    # Output files
    summary['output_files'] = {
        'master_summary': output_file,
        'qc_metrics': qc_file,
        'doublet_summary': doublet_file,
        'integration_anchors': anchors_file,
        'cluster_summary': cluster_file,
    }
    if cv_file:
        summary['output_files']['classifier_cv'] = cv_file
    if predictions_file:
        summary['output_files']['predictions'] = predictions_file

    os.makedirs(os.path.dirname(output_file) or '.', exist_ok=True)
    with open(output_file, 'w') as f:
        yaml.dump(summary, f, default_flow_style=False, sort_keys=False)

    logger.info(f"Summary written to: {output_file}")

    return summary


def run_from_snakemake():
    """Run from Snakemake context."""
    # Optional inputs may be empty lists
    cv_file = snakemake.input.get('cv')
    if isinstance(cv_file, list):
        cv_file = cv_file[0] if cv_file else None

    predictions_file = snakemake.input.get('predictions')
    if isinstance(predictions_file, list):
        predictions_file = predictions_file[0] if predictions_file else None

    generate_summary(
        qc_file=snakemake.input.qc,
        doublet_file=snakemake.input.doublets,
        anchors_file=snakemake.input.anchors,
        cluster_file=snakemake.input.clusters,
        config=snakemake.params.config,
        output_dir=snakemake.params.output_dir,
        output_file=snakemake.output.summary,
        cv_file=cv_file,
        predictions_file=predictions_file,
    )


if __name__ == '__main__':
    try:
        snakemake
        run_from_snakemake()
    except NameError:
        # CLI usage
        import argparse
        parser = argparse.ArgumentParser(description='Generate pipeline summary')
        parser.add_argument('--qc', required=True)
        parser.add_argument('--doublets', required=True)
        parser.add_argument('--anchors', required=True)
        parser.add_argument('--clusters', required=True)
        parser.add_argument('--cv')
        parser.add_argument('--predictions')
        parser.add_argument('--output-dir', required=True)
        parser.add_argument('--output', required=True)

        args = parser.parse_args()

        generate_summary(
            qc_file=args.qc,
            doublet_file=args.doublets,
            anchors_file=args.anchors,
            cluster_file=args.clusters,
            config={},
            output_dir=args.output_dir,
            output_file=args.output,
            cv_file=args.cv,
            predictions_file=args.predictions,
        )
