#!/usr/bin/env python3
"""
run-config command
==================

Execute the ClusterAtlas Snakemake workflow for a configuration file
written by create-config.
"""

import os
import sys
import subprocess

import click
import yaml

from snakemake_wrapper.scripts.parameters import complete_config, validate_config

SNAKEFILE = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
                         'snakemake_wrapper', 'Snakefile')


def build_snakemake_command(config_path, cores=1, dry_run=False, snakefile=SNAKEFILE, extra_args=()):
    """Assemble the snakemake command line."""
    cmd = [
        'snakemake',
        '--snakefile', snakefile,
        '--configfile', config_path,
        '--cores', str(cores),
    ]
    if dry_run:
        cmd.append('--dry-run')
    cmd.extend(extra_args)
    return cmd


@click.command('run-config', context_settings={'ignore_unknown_options': True})
@click.argument('config_path', type=click.Path(exists=True))
@click.option('--cores', '-c', type=int, default=1, show_default=True,
              help='Cores passed to snakemake')
@click.option('--dry-run', '-n', is_flag=True, default=False,
              help='Only show the jobs that would run')
@click.option('--snakefile', type=click.Path(exists=True), default=SNAKEFILE,
              help='Alternative Snakefile')
@click.argument('snakemake_args', nargs=-1, type=click.UNPROCESSED)
def run_config(config_path, cores, dry_run, snakefile, snakemake_args):
    """
    Execute the Snakemake pipeline.

    Extra arguments after the config file are passed to snakemake unchanged.

    \b
    Example:
      ClusterAtlas run-config ./results/config.yaml --cores 4
      ClusterAtlas run-config ./results/config.yaml --forceall
    """
    click.echo(f"\n{'='*60}")
    click.echo("ClusterAtlas: run-config")
    click.echo(f"{'='*60}\n")

    config_path = os.path.abspath(config_path)
    try:
        with open(config_path) as f:
            config = complete_config(yaml.safe_load(f))
        validate_config(config)
    except (ValueError, yaml.YAMLError) as e:
        click.echo(f"ERROR: Invalid configuration: {e}", err=True)
        sys.exit(1)

    cmd = build_snakemake_command(config_path, cores=cores, dry_run=dry_run,
                                  snakefile=snakefile, extra_args=snakemake_args)
    click.echo(f"Output directory: {config['output_dir']}")
    click.echo(f"Running: {' '.join(cmd)}\n")

    try:
        result = subprocess.run(cmd, check=False)
    except FileNotFoundError:
        click.echo("ERROR: snakemake executable not found on PATH", err=True)
        sys.exit(1)

    if result.returncode != 0:
        click.echo(f"\nERROR: snakemake exited with code {result.returncode}", err=True)
        sys.exit(result.returncode)

    click.echo(f"\n{'='*60}")
    click.echo("SUCCESS: Pipeline finished")
    click.echo(f"{'='*60}")
