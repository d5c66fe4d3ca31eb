#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
create_config.py
================

CLI command to create the ClusterAtlas pipeline configuration file.

The configuration starts from the defaults in
``snakemake_wrapper/scripts/parameters.py``; command-line options override
individual values. Cluster labels are only known after a first run, so they
are read from a small YAML file (``cluster id: label``).

Usage:
    ClusterAtlas create-config [OPTIONS]
"""

import os
import sys
from pathlib import Path

import click
import yaml

from snakemake_wrapper.scripts.parameters import default_config, validate_config


def validate_path(path, name, must_exist=True, create_dir=False):
    """Validate a file or directory path."""
    if path is None:
        return None

    path = Path(path).resolve()

    if create_dir and not path.exists():
        path.mkdir(parents=True, exist_ok=True)
        click.echo(f"  Created directory: {path}")

    if must_exist and not path.exists():
        raise FileNotFoundError(f"{name} not found: {path}")

    return str(path)


def load_cluster_labels(path):
    """
    Read a cluster -> label YAML file.

    Returns
    -------
    dict
        Cluster id (as string) -> label
    """
    with open(path) as f:
        labels = yaml.safe_load(f) or {}
    if not isinstance(labels, dict):
        raise ValueError(f"{path} must map cluster ids to labels (e.g. '0: T cell')")
    return {str(cluster): str(label) for cluster, label in labels.items()}


def build_config(
    input_path,
    output_dir,
    sample_key='sample_id',
    seed=0,
    qc=None,
    doublets=None,
    clustering=None,
    annotation=None,
    classifier=None,
):
    """Overlay option values on the default configuration and validate it."""
    config = default_config()
    config['input'] = input_path
    config['output_dir'] = output_dir
    config['sample_key'] = sample_key
    config['random_seed'] = seed

    for section, values in (('qc', qc), ('doublets', doublets), ('clustering', clustering),
                            ('annotation', annotation), ('classifier', classifier)):
        config[section].update({k: v for k, v in (values or {}).items() if v is not None})

    validate_config(config)
    return config


@click.command('create-config')
@click.option('--input', '-i', 'input_path', required=True, type=click.Path(exists=True),
              help='Merged multi-sample dataset (.h5ad)')
@click.option('--output-dir', '-o', required=True, type=click.Path(),
              help='Output directory (config.yaml is written here)')
@click.option('--sample-key', default='sample_id', show_default=True,
              help='obs column holding the sample of origin')
@click.option('--seed', type=int, default=0, show_default=True,
              help='Random seed for every stochastic step')
@click.option('--min-counts', type=float, help='Strict lower bound on UMIs per cell')
@click.option('--max-counts', type=float, help='Strict upper bound on UMIs per cell')
@click.option('--min-genes', type=float, help='Strict lower bound on genes per cell')
@click.option('--max-genes', type=float, help='Strict upper bound on genes per cell')
@click.option('--max-mito-pct', type=float, help='Strict upper bound on mitochondrial %')
@click.option('--max-ribo-pct', type=float, help='Strict upper bound on ribosomal %')
@click.option('--skip-doublets', is_flag=True, default=False, help='Keep all cells, no doublet removal')
@click.option('--doublet-rate', type=float,
              help='Expected doublet rate (default: the optimal pK of the sweep)')
@click.option('--resolution', type=float, help='Leiden resolution of the integrated clustering')
@click.option('--cluster-labels', type=click.Path(exists=True),
              help='YAML file mapping cluster id to cell type label')
@click.option('--strict-labels', is_flag=True, default=False,
              help='Fail when a cluster has no label instead of using the fallback')
@click.option('--reference', type=click.Path(exists=True),
              help='Annotated reference (.h5ad); enables the classifier')
@click.option('--reference-label-key', default='celltype', show_default=True,
              help='obs column of the reference holding its labels')
@click.option('--query', type=click.Path(exists=True),
              help='Dataset to classify (default: the annotated pipeline dataset)')
def create_config(input_path, output_dir, sample_key, seed, min_counts, max_counts, min_genes,
                  max_genes, max_mito_pct, max_ribo_pct, skip_doublets, doublet_rate, resolution,
                  cluster_labels, strict_labels, reference, reference_label_key, query):
    """
    Generate pipeline configuration file.

    \b
    Example:
      ClusterAtlas create-config -i merged.h5ad -o ./results \\
          --max-mito-pct 15 --cluster-labels labels.yaml
    """
    click.echo("=" * 70)
    click.echo("CLUSTERATLAS - CREATE CONFIGURATION")
    click.echo("=" * 70)

    try:
        click.echo("\nValidating input paths...")
        output_dir = validate_path(output_dir, "Output directory", must_exist=False, create_dir=True)
        input_path = validate_path(input_path, "Input dataset")
        click.echo(f"  Input dataset: {input_path}")

        annotation = {'strict': strict_labels}
        if cluster_labels:
            annotation['cluster_labels'] = load_cluster_labels(cluster_labels)
            click.echo(f"  Loaded {len(annotation['cluster_labels'])} cluster labels")

        classifier = {}
        if reference:
            classifier = {
                'enabled': True,
                'reference': validate_path(reference, "Reference dataset"),
                'query': validate_path(query, "Query dataset"),
                'label_key': reference_label_key,
            }
        click.echo(f"  Reference classifier: {'ENABLED' if reference else 'DISABLED'}")

        click.echo("\nBuilding configuration...")
        config = build_config(
            input_path,
            output_dir,
            sample_key=sample_key,
            seed=seed,
            qc={
                'min_counts': min_counts,
                'max_counts': max_counts,
                'min_genes': min_genes,
                'max_genes': max_genes,
                'max_mito_pct': max_mito_pct,
                'max_ribo_pct': max_ribo_pct,
            },
            doublets={'enabled': not skip_doublets, 'doublet_rate': doublet_rate},
            clustering={'resolution': resolution},
            annotation=annotation,
            classifier=classifier,
        )
    except (ValueError, FileNotFoundError) as e:
        click.echo(f"\nERROR: {e}", err=True)
        sys.exit(1)

    config_path = os.path.join(output_dir, 'config.yaml')
    click.echo(f"\nWriting configuration to: {config_path}")
    with open(config_path, 'w') as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)

    click.echo("\n" + "=" * 70)
    click.echo("CONFIGURATION CREATED SUCCESSFULLY")
    click.echo("=" * 70)
    click.echo(f"\nConfiguration file: {config_path}")
    click.echo("\nTo run the pipeline:")
    click.echo(f"  ClusterAtlas run-config {config_path}")
