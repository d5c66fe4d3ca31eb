#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
integration.py
==============

Per-sample normalization and cross-sample integration.

This script performs:
1. Splitting the singlet dataset by sample
2. Per-sample normalization: Pearson-residual variable gene ranking and a
   log-normalized RNA layer
3. Selection of integration features shared by all samples
4. Per-sample variance-stabilized residuals over those features with the
   mitochondrial fraction regressed out
5. Anchors: mutual nearest neighbours between every pair of samples in a
   joint embedding
6. Batch correction with Scanorama along those anchors

The integrated object keeps the batch-corrected values over the integration
features in ``X`` and the log-normalized expression of all shared genes in
``raw``.

Usage:
    Called via Snakemake rule with snakemake.input/output/params

    Or standalone:
    python integration.py --input adata_singlets.h5ad --output-dir /path/to/output
"""

import os
import sys
import random
import logging
import argparse
from itertools import combinations

import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad
import scanorama
from scipy import sparse

from snakemake_wrapper.scripts.parameters import (
    DEFAULT_INTEGRATION_PARAMS,
    DEFAULT_NORMALIZATION_PARAMS,
    merge_params,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# =============================================================================
# Normalization
# =============================================================================

def split_samples(adata, sample_key='sample_id'):
    """Split a dataset into one AnnData per sample, in order of first appearance."""
    samples = {}
    for sample in pd.unique(adata.obs[sample_key]):
        if pd.isna(sample):
            continue
        mask = (adata.obs[sample_key] == sample).to_numpy()
        samples[str(sample)] = adata[mask].copy()
    return samples


def normalize_sample(sample, n_top_genes=3000, theta=100, target_sum=1e4):
    """
    Normalize one sample.

    Counts are kept in ``layers['counts']``; variable genes are ranked by
    analytic Pearson residual variance; ``X`` becomes log-normalized
    expression (the RNA layer).
    """
    sample.layers['counts'] = sample.X.copy()

    sc.experimental.pp.highly_variable_genes(
        sample,
        flavor='pearson_residuals',
        n_top_genes=min(n_top_genes, sample.n_vars),
        theta=theta,
        layer='counts',
    )

    sc.pp.normalize_total(sample, target_sum=target_sum)
    sc.pp.log1p(sample)
    return sample


def normalize_samples(samples, params=None):
    """
    Normalize every sample independently.

    Parameters
    ----------
    samples : dict
        Sample name -> AnnData with raw counts in X
    params : dict
        Normalization parameters (from config.yaml normalization section)

    Returns
    -------
    dict
        Sample name -> normalized AnnData
    """
    params = merge_params(DEFAULT_NORMALIZATION_PARAMS, params)
    logger.info(f"Normalizing {len(samples)} samples...")

    for name, sample in samples.items():
        normalize_sample(
            sample,
            n_top_genes=params['n_top_genes'],
            theta=params['theta'],
            target_sum=params['target_sum'],
        )
        logger.info(f"  {name}: {sample.n_obs} cells, "
                    f"{int(sample.var['highly_variable'].sum())} variable genes")
    return samples


def sctransform(sample, features, regress=('pct_counts_mt',), theta=100):
    """
    Variance-stabilized residuals of one sample over ``features``.

    Analytic Pearson residuals of the raw counts are computed from this
    sample's cells alone, then the technical covariates in ``regress`` are
    regressed out.

    Returns
    -------
    AnnData
        New object restricted to ``features`` with dense residuals in X
    """
    prepared = sample[:, list(features)].copy()
    counts = prepared.layers['counts'] if 'counts' in prepared.layers else prepared.X
    prepared.X = counts.copy()
    prepared.raw = None

    sc.experimental.pp.normalize_pearson_residuals(prepared, theta=theta)
    X = prepared.X.toarray() if sparse.issparse(prepared.X) else np.asarray(prepared.X)
    # Genes without counts in this sample have undefined residuals
    prepared.X = np.nan_to_num(X, nan=0.0, posinf=0.0, neginf=0.0)

    covariates = [key for key in (regress or []) if key in prepared.obs.columns]
    missing = sorted(set(regress or []) - set(covariates))
    if missing:
        logger.warning(f"  Covariates not found in obs, not regressed: {missing}")
    if covariates:
        sc.pp.regress_out(prepared, covariates)

    return prepared


# =============================================================================
# Integration
# =============================================================================

def select_integration_features(samples, n_features=3000):
    """
    Rank genes for integration.

    Genes are ordered by the number of samples in which they are variable,
    ties broken by their median variable-gene rank. Only genes present in
    every sample are eligible.

    Parameters
    ----------
    samples : dict
        Sample name -> normalized AnnData with ``highly_variable`` and
        ``highly_variable_rank`` in var
    n_features : int
        Number of features to return

    Returns
    -------
    list
        Selected gene names
    """
    frames = list(samples.values())
    shared = frames[0].var_names
    for sample in frames[1:]:
        shared = shared.intersection(sample.var_names, sort=False)

    variable = pd.DataFrame({
        name: sample.var['highly_variable'].reindex(shared).fillna(False).astype(bool)
        for name, sample in samples.items()
    })
    ranks = pd.DataFrame({
        name: sample.var['highly_variable_rank'].reindex(shared)
        for name, sample in samples.items()
    }).where(variable)

    ranking = pd.DataFrame({
        'n_samples': variable.sum(axis=1),
        'median_rank': ranks.median(axis=1),
    })
    ranking = ranking[ranking['n_samples'] > 0]
    ranking = ranking.sort_values(['n_samples', 'median_rank'], ascending=[False, True], kind='mergesort')

    features = list(ranking.index[:n_features])
    logger.info(f"Selected {len(features)} integration features "
                f"({len(shared)} genes shared by all samples)")
    return features


def prepare_for_integration(samples, features, params=None):
    """Residuals of every sample over the shared ``features``."""
    params = merge_params(DEFAULT_NORMALIZATION_PARAMS, params)
    logger.info("Preparing samples for integration...")
    return {
        name: sctransform(sample, features, regress=params['regress_out'], theta=params['theta'])
        for name, sample in samples.items()
    }


class IntegrationAnchors:
    """
    Cross-sample matches found by Scanorama.

    Attributes
    ----------
    names : list
        Sample names, in dataset order
    datasets : list
        L2-normalized residuals of every sample (csr matrices)
    embeddings : list
        Joint low-dimensional embedding of every sample
    alignments : list
        Sample index pairs ``(i, j)`` similar enough to be merged
    matches : dict
        ``(i, j) -> set of (cell in i, cell in j)`` mutual nearest neighbours
    """

    def __init__(self, names, datasets, embeddings, alignments, matches):
        self.names = names
        self.datasets = datasets
        self.embeddings = embeddings
        self.alignments = alignments
        self.matches = matches

    def table(self):
        """One row per sample pair with ``n_anchors`` and whether the pair is merged."""
        aligned = set(self.alignments)
        records = [
            {
                'sample_1': self.names[i],
                'sample_2': self.names[j],
                'n_anchors': len(self.matches.get((i, j), ())),
                'aligned': (i, j) in aligned,
            }
            for i, j in combinations(range(len(self.names)), 2)
        ]
        return pd.DataFrame(records, columns=['sample_1', 'sample_2', 'n_anchors', 'aligned'])


def find_integration_anchors(prepared, params=None, random_seed=0):
    """
    Find the anchors between every pair of samples.

    The residuals are L2-normalized and embedded jointly with Scanorama's
    randomized PCA; anchors are mutual nearest neighbours between two
    samples in that embedding. Pairs whose matched fraction exceeds
    ``alpha`` are the ones merged by ``integrate_data``.

    Parameters
    ----------
    prepared : dict
        Sample name -> residuals over the integration features
    params : dict
        Integration parameters (from config.yaml integration section)

    Returns
    -------
    IntegrationAnchors
    """
    params = merge_params(DEFAULT_INTEGRATION_PARAMS, params)
    names = list(prepared)
    genes = np.asarray(prepared[names[0]].var_names)
    datasets = [sparse.csr_matrix(prepared[name].X) for name in names]

    n_cells = sum(ds.shape[0] for ds in datasets)
    dimred = max(1, min(params['dimred'], len(genes) - 1, n_cells - 1))

    np.random.seed(random_seed)
    random.seed(random_seed)
    embeddings, _ = scanorama.process_data(datasets, genes, dimred=dimred)
    alignments, matches = scanorama.find_alignments(
        embeddings, knn=params['knn'], alpha=params['alpha'], verbose=0
    )

    anchors = IntegrationAnchors(names, datasets, embeddings, alignments, matches)
    for row in anchors.table().itertuples():
        if not row.n_anchors:
            logger.warning(f"  No anchors found between {row.sample_1} and {row.sample_2}")
        logger.info(f"  {row.sample_1} <-> {row.sample_2}: {row.n_anchors} anchors"
                    f"{'' if row.aligned else ' (below alpha, not merged)'}")
    return anchors


def integrate_data(anchors, prepared, samples, params=None):
    """
    Batch-correct the prepared samples along the given anchors.

    Parameters
    ----------
    anchors : IntegrationAnchors
        Output of ``find_integration_anchors`` for ``prepared``
    prepared : dict
        Sample name -> residuals over the integration features
    samples : dict
        Sample name -> normalized AnnData (log-normalized X)

    Returns
    -------
    AnnData
        Integrated values in X, the RNA layer in raw, the joint embedding in
        ``obsm['X_scanorama']``, cells of all samples
    """
    params = merge_params(DEFAULT_INTEGRATION_PARAMS, params)
    names = anchors.names
    logger.info(f"Integrating {len(names)} samples with Scanorama...")

    expression = [ds.copy() for ds in anchors.datasets]
    embeddings = [emb.copy() for emb in anchors.embeddings]
    if len(names) < 2:
        logger.warning("  Only one sample present, integration skipped")
    else:
        embeddings = scanorama.assemble(
            embeddings,
            expr_datasets=expression,
            knn=params['knn'],
            sigma=params['sigma'],
            alpha=params['alpha'],
            batch_size=params['batch_size'],
            alignments=anchors.alignments,
            matches=anchors.matches,
            verbose=0,
        )

    corrected = []
    for name, values, embedding in zip(names, expression, embeddings):
        part = prepared[name].copy()
        part.X = np.asarray(values.toarray() if sparse.issparse(values) else values)
        part.obsm['X_scanorama'] = np.asarray(embedding)
        corrected.append(part)

    integrated = ad.concat(corrected, join='inner', merge='same')

    rna = ad.concat([samples[name] for name in names], join='inner', merge='same')
    integrated.raw = rna[integrated.obs_names].copy()

    logger.info(f"  Integrated: {integrated.n_obs} cells x {integrated.n_vars} features, "
                f"RNA layer: {integrated.raw.n_vars} genes")
    return integrated


# =============================================================================
# Main Pipeline Function
# =============================================================================

def run_integration_pipeline(
    input_path,
    output_adata_path,
    output_anchors_path,
    output_features_path=None,
    normalization_params=None,
    integration_params=None,
    sample_key='sample_id',
    random_seed=0,
):
    """Run normalization and integration and write the integrated snapshot."""
    normalization_params = merge_params(DEFAULT_NORMALIZATION_PARAMS, normalization_params)
    integration_params = merge_params(DEFAULT_INTEGRATION_PARAMS, integration_params)

    logger.info("=" * 60)
    logger.info("Starting Normalization and Integration")
    logger.info("=" * 60)

    adata = sc.read_h5ad(input_path)
    samples = normalize_samples(split_samples(adata, sample_key), normalization_params)

    features = select_integration_features(samples, integration_params['n_features'])
    prepared = prepare_for_integration(samples, features, normalization_params)

    anchors = find_integration_anchors(prepared, integration_params, random_seed=random_seed)
    integrated = integrate_data(anchors, prepared, samples, integration_params)
    integrated.uns['integration_features'] = list(integrated.var_names)

    for path in (output_adata_path, output_anchors_path, output_features_path):
        if path:
            os.makedirs(os.path.dirname(path) or '.', exist_ok=True)

    anchors.table().to_csv(output_anchors_path, sep='\t', index=False)
    if output_features_path:
        pd.Series(features, name='gene').to_csv(output_features_path, sep='\t', index=False)

    logger.info(f"Saving integrated data to {output_adata_path}...")
    integrated.write(output_adata_path)
    return integrated


# =============================================================================
# Snakemake Integration
# =============================================================================

def run_from_snakemake():
    """Run integration from Snakemake rule."""
    config = snakemake.params.config

    log_file = snakemake.log[0] if snakemake.log else None
    if log_file:
        os.makedirs(os.path.dirname(log_file), exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        logging.getLogger().addHandler(file_handler)

    run_integration_pipeline(
        input_path=snakemake.input.adata,
        output_adata_path=snakemake.output.adata,
        output_anchors_path=snakemake.output.anchors,
        output_features_path=snakemake.output.features,
        normalization_params=config.get('normalization'),
        integration_params=config.get('integration'),
        sample_key=config.get('sample_key', 'sample_id'),
        random_seed=config.get('random_seed', 0),
    )


def main():
    """Main function for standalone CLI usage."""
    parser = argparse.ArgumentParser(description='Per-sample normalization and integration')
    parser.add_argument('--input', required=True, help='Singlet dataset (.h5ad)')
    parser.add_argument('--output-dir', required=True, help='Output directory')
    parser.add_argument('--sample-key', default='sample_id')
    parser.add_argument('--n-features', type=int, default=DEFAULT_INTEGRATION_PARAMS['n_features'])
    parser.add_argument('--seed', type=int, default=0)

    args = parser.parse_args()

    try:
        run_integration_pipeline(
            input_path=args.input,
            output_adata_path=os.path.join(args.output_dir, 'integration', 'adata_integrated.h5ad'),
            output_anchors_path=os.path.join(args.output_dir, 'integration', 'anchors.tsv'),
            output_features_path=os.path.join(args.output_dir, 'integration', 'integration_features.tsv'),
            integration_params={'n_features': args.n_features},
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
