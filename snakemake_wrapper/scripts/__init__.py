"""
Pipeline stage scripts.

Each module can be imported, run from a Snakemake rule, or run standalone.
"""
