"""ClusterAtlas Snakemake workflow and its stage scripts."""
