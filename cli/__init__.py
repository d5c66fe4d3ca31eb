"""
ClusterAtlas CLI Package
========================

Command-line interface for the ClusterAtlas single-cell analysis pipeline.

Commands:
- sample-information: Merge per-sample count matrices into one dataset
- create-config: Generate master config YAML for pipeline
- run-config: Execute the Snakemake pipeline
"""

__version__ = '0.1.0'

from cli.sample_information import sample_information
from cli.create_config import create_config
from cli.run_config import run_config

__all__ = ['sample_information', 'create_config', 'run_config']
