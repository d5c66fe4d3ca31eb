#!/usr/bin/env python3
"""
sample-information command
==========================

Merge per-sample count matrices listed in a CSV file into the single
multi-sample dataset the pipeline starts from.

Expected CSV columns:
- sample_id: Unique identifier for each sample
- path: Count matrix of the sample. One of
    * a 10x Genomics HDF5 file (``filtered_feature_bc_matrix.h5``)
    * a 10x Genomics matrix directory (matrix.mtx.gz, features.tsv.gz, barcodes.tsv.gz)
    * an ``.h5ad`` file with raw counts

Additional columns (condition, donor, ...) are copied to every cell of the
sample.
"""

import click
import os
import sys
import pandas as pd
import scanpy as sc
import anndata as ad


def validate_sample_paths(df, check_existence=True):
    """
    Validate that every sample has a readable count matrix.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame with sample_id and path columns
    check_existence : bool
        Whether to check if files actually exist

    Returns
    -------
    tuple
        (is_valid, error_messages)
    """
    errors = []

    for _, row in df.iterrows():
        sample_id = row['sample_id']
        path = str(row['path']).strip() if pd.notna(row['path']) else ''

        if not path:
            errors.append(f"Sample {sample_id}: No path provided")
            continue

        if check_existence and not os.path.exists(path):
            errors.append(f"Sample {sample_id}: path not found: {path}")
            continue

        if os.path.isfile(path) and not path.endswith(('.h5', '.h5ad')):
            errors.append(f"Sample {sample_id}: {path} is not a 10x .h5 or .h5ad file")

    return len(errors) == 0, errors


def read_sample(path):
    """Read one sample's count matrix."""
    if path.endswith('.h5ad'):
        adata = sc.read_h5ad(path)
    elif path.endswith('.h5'):
        adata = sc.read_10x_h5(path)
    else:
        adata = sc.read_10x_mtx(path, var_names='gene_symbols', cache=False)
    adata.var_names_make_unique()
    return adata


def merge_samples(df, sample_key='sample_id'):
    """
    Read and concatenate every sample of the sheet.

    Cell names are prefixed with the sample id; only genes present in every
    sample are kept.

    Returns
    -------
    AnnData
        Merged counts with ``obs[sample_key]`` and the metadata columns
    """
    metadata_cols = [col for col in df.columns if col not in ('sample_id', 'path')]
    adatas = {}

    for _, row in df.iterrows():
        sample_id = str(row['sample_id'])
        adata = read_sample(str(row['path']).strip())
        adata.obs_names = [f"{sample_id}_{name}" for name in adata.obs_names]
        for col in metadata_cols:
            if pd.notna(row[col]):
                adata.obs[col] = row[col]
        adatas[sample_id] = adata
        click.echo(f"  {sample_id}: {adata.n_obs} cells, {adata.n_vars} genes")

    merged = ad.concat(adatas, label=sample_key, join='inner')
    merged.obs[sample_key] = merged.obs[sample_key].astype('category')
    return merged


@click.command('sample-information')
@click.option(
    '--input', '-i', 'input_csv',
    required=True,
    type=click.Path(exists=True),
    help='Path to CSV file containing sample information'
)
@click.option(
    '--output', '-o', 'output_h5ad',
    required=True,
    type=click.Path(),
    help='Path for the merged dataset (.h5ad)'
)
@click.option(
    '--sample-key',
    default='sample_id',
    show_default=True,
    help='obs column receiving the sample id'
)
@click.option(
    '--verbose', '-v',
    is_flag=True,
    default=False,
    help='Print verbose output'
)
def sample_information(input_csv, output_h5ad, sample_key, verbose):
    """
    Merge per-sample count matrices into one dataset.

    \b
    Required CSV columns:
      - sample_id: Unique identifier for each sample
      - path: 10x .h5 file, 10x matrix directory or .h5ad file

    \b
    Example CSV format:
      sample_id,path,condition,donor
      S1,/data/S1/filtered_feature_bc_matrix.h5,tumor,P001
      S2,/data/S2/filtered_feature_bc_matrix,normal,P001

    \b
    Usage example:
      ClusterAtlas sample-information -i samples.csv -o merged.h5ad
    """

    click.echo(f"\n{'='*60}")
    click.echo("ClusterAtlas: sample-information")
    click.echo(f"{'='*60}\n")

    # Read CSV
    click.echo(f"Reading sample information from: {input_csv}")
    try:
        df = pd.read_csv(input_csv)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        click.echo(f"ERROR: Failed to read CSV file: {e}", err=True)
        sys.exit(1)

    # Check required columns
    required_cols = ['sample_id', 'path']
    missing_cols = [col for col in required_cols if col not in df.columns]
    if missing_cols:
        click.echo(f"ERROR: Missing required columns: {missing_cols}", err=True)
        click.echo(f"Found columns: {list(df.columns)}", err=True)
        click.echo("\nExpected CSV format:", err=True)
        click.echo("  sample_id,path[,optional columns...]", err=True)
        sys.exit(1)

    # Check for duplicate sample IDs
    if df['sample_id'].duplicated().any():
        dups = df[df['sample_id'].duplicated()]['sample_id'].tolist()
        click.echo(f"ERROR: Duplicate sample IDs found: {dups}", err=True)
        sys.exit(1)

    click.echo(f"Found {len(df)} samples")

    if verbose:
        click.echo("\nSample IDs:")
        for sid in df['sample_id']:
            click.echo(f"  - {sid}")
        click.echo(f"\nColumns found: {list(df.columns)}")

    click.echo("\nValidating count matrix paths...")
    is_valid, errors = validate_sample_paths(df, check_existence=True)
    if not is_valid:
        click.echo("ERROR: Sample path validation failed:", err=True)
        for err in errors[:10]:  # Show first 10 errors
            click.echo(f"  - {err}", err=True)
        if len(errors) > 10:
            click.echo(f"  ... and {len(errors) - 10} more errors", err=True)
        sys.exit(1)

    click.echo("\nReading samples...")
    merged = merge_samples(df, sample_key=sample_key)

    output_dir = os.path.dirname(output_h5ad)
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)

    click.echo(f"Saving to: {output_h5ad}")
    merged.write(output_h5ad)

    click.echo(f"\n{'='*60}")
    click.echo("SUCCESS: Samples merged")
    click.echo(f"{'='*60}")
    click.echo(f"\nOutput: {output_h5ad}")
    click.echo(f"Cells: {merged.n_obs}, genes: {merged.n_vars}, samples: {len(df)}")

    click.echo("\n" + "="*60)
    click.echo("Next step: Create pipeline configuration")
    click.echo("="*60)
    click.echo("\n  ClusterAtlas create-config \\")
    click.echo(f"    --input {output_h5ad} \\")
    click.echo("    --output-dir ./results")
    click.echo("")


if __name__ == '__main__':
    sample_information()
