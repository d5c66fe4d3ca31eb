#!/usr/bin/env python3
"""
ClusterAtlas CLI
================

Single-cell RNA-seq analysis pipeline for:
- Cell QC filtering (Scanpy)
- Per-sample doublet removal (Scrublet scoring with a pN/pK sweep)
- Per-sample normalization and integration (Pearson residuals + Scanorama)
- Clustering, manual annotation and marker detection
- Reference-based cell type classification (SVM)

Three main commands:
1. sample-information: Merge per-sample count matrices into one dataset
2. create-config: Generate master config YAML for pipeline
3. run-config: Execute the Snakemake pipeline
"""

import click

# Import subcommands
from cli import __version__
from cli.sample_information import sample_information
from cli.create_config import create_config
from cli.run_config import run_config


@click.group()
@click.version_option(version=__version__, prog_name='ClusterAtlas')
def main():
    """
    ClusterAtlas: Single-cell RNA-seq analysis pipeline

    Takes a merged multi-sample dataset from QC through doublet removal,
    integration, clustering and annotation, and optionally labels it with a
    classifier trained on an annotated reference.

    \b
    Typical workflow:
    1. ClusterAtlas sample-information --input samples.csv --output merged.h5ad
    2. ClusterAtlas create-config --input merged.h5ad --output-dir ./results [options]
    3. ClusterAtlas run-config ./results/config.yaml

    \b
    After inspecting the cluster plots, add the cluster -> label map:
    ClusterAtlas create-config \\
        --input merged.h5ad \\
        --output-dir ./results \\
        --cluster-labels labels.yaml \\
        --reference reference.h5ad
    """
    pass


# Register subcommands
main.add_command(sample_information)
main.add_command(create_config)
main.add_command(run_config)


if __name__ == '__main__':
    main()
