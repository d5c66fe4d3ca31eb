#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
doublet_detection.py
====================

Per-sample doublet detection and removal.

Each sample is processed on its own:
1. Normalize, select variable genes, scale, PCA and Leiden clustering
2. Sweep the artificial-doublet proportion (pN) and neighbourhood size (pK),
   scoring every cell with Scrublet at each grid point
3. Score each pK by the bimodality of the doublet scores (BCmvn) and keep the
   pK that maximizes it
4. Expected doublets = optimal pK x cells, reduced by the homotypic doublet
   proportion estimated from the cluster composition
5. The top-N cells by score are called doublets and removed

Usage:
    Called via Snakemake rule with snakemake.input/output/params

    Or standalone:
    python doublet_detection.py --input adata_filtered.h5ad --output-dir /path/to/output
"""

import os
import sys
import logging
import argparse

import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad
from scipy import stats

from snakemake_wrapper.scripts.parameters import (
    DEFAULT_DOUBLET_PARAMS,
    DEFAULT_REPORT_PARAMS,
    merge_params,
)
from snakemake_wrapper.scripts.reporting import FigureReporter

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

MIN_NEIGHBORS = 2


# =============================================================================
# Per-sample preprocessing
# =============================================================================

def preprocess_sample(adata, n_top_genes=2000, n_pcs=10, resolution=0.3, random_seed=0):
    """
    Normalize, reduce and cluster one sample.

    The counts in ``adata.X`` are left untouched; the clusters are written to
    ``obs['doublet_cluster']`` and the embeddings to ``obsm``.
    """
    work = adata.copy()
    sc.pp.normalize_total(work, target_sum=1e4)
    sc.pp.log1p(work)
    sc.pp.highly_variable_genes(work, n_top_genes=min(n_top_genes, work.n_vars), flavor='seurat')
    work = work[:, work.var['highly_variable']].copy()
    sc.pp.scale(work, max_value=10)

    n_comps = min(n_pcs, work.n_vars - 1, work.n_obs - 1)
    sc.tl.pca(work, n_comps=n_comps, random_state=random_seed)
    sc.pp.neighbors(work, n_pcs=n_comps, random_state=random_seed)
    sc.tl.leiden(work, resolution=resolution, random_state=random_seed)
    sc.tl.umap(work, random_state=random_seed)

    adata.obs['doublet_cluster'] = work.obs['leiden'].astype(str).values
    adata.obsm['X_pca'] = work.obsm['X_pca']
    adata.obsm['X_umap'] = work.obsm['X_umap']
    return adata


# =============================================================================
# Parameter sweep
# =============================================================================

def neighbor_count(n_cells, pN, pK):
    """Neighbourhood size ``round(pK * n_total)`` over real and artificial cells."""
    ratio = pN / (1.0 - pN)
    n_total = n_cells + int(round(n_cells * ratio))
    return int(round(pK * n_total))


def score_doublets(adata, pN, pK, n_pcs=10, random_seed=0):
    """
    Score every cell of ``adata`` (raw counts) as a potential doublet.

    Artificial doublets are simulated at ``pN / (1 - pN)`` per real cell, and
    each real cell is scored from its ``round(pK * n_total)`` nearest
    neighbours among real cells and artificial doublets.

    Returns
    -------
    np.ndarray
        Doublet score of every cell, in ``adata`` order
    """
    n_neighbors = neighbor_count(adata.n_obs, pN, pK)
    if n_neighbors < MIN_NEIGHBORS:
        raise ValueError(f"pK={pK} gives {n_neighbors} neighbours for {adata.n_obs} cells "
                         f"(at least {MIN_NEIGHBORS} needed)")

    work = ad.AnnData(X=adata.X.copy(), obs=pd.DataFrame(index=adata.obs_names.copy()))
    work.var_names = adata.var_names.copy()
    sc.pp.scrublet(
        work,
        sim_doublet_ratio=pN / (1.0 - pN),
        n_neighbors=n_neighbors,
        n_prin_comps=n_pcs,
        threshold=1.0,
        verbose=False,
        random_state=random_seed,
    )
    return work.obs['doublet_score'].reindex(adata.obs_names).fillna(0.0).to_numpy()


def param_sweep(adata, pN_grid, pK_grid, n_pcs=10, max_cells=10000, random_seed=0):
    """
    Score the sample at every (pN, pK) grid point.

    Samples larger than ``max_cells`` are randomly subsampled first. Grid
    points whose neighbourhood holds fewer than two cells are left out.

    Returns
    -------
    dict
        ``(pN, pK) -> np.ndarray`` of doublet scores
    """
    if adata.n_obs > max_cells:
        rng = np.random.default_rng(random_seed)
        keep = np.sort(rng.choice(adata.n_obs, size=max_cells, replace=False))
        adata = adata[keep].copy()
        logger.info(f"    Subsampled to {max_cells} cells for the sweep")

    sweep = {}
    skipped = []
    for pN in pN_grid:
        for pK in pK_grid:
            if neighbor_count(adata.n_obs, pN, pK) < MIN_NEIGHBORS:
                skipped.append((pN, pK))
                continue
            sweep[(pN, pK)] = score_doublets(adata, pN, pK, n_pcs=n_pcs, random_seed=random_seed)

    if skipped:
        logger.warning(f"    {len(skipped)} grid points with fewer than {MIN_NEIGHBORS} neighbours "
                       f"at {adata.n_obs} cells skipped (pK {sorted({pK for _, pK in skipped})})")
    if not sweep:
        raise ValueError(f"No pK of the grid gives {MIN_NEIGHBORS} neighbours at {adata.n_obs} cells")
    return sweep


def bimodality_coefficient(values):
    """
    Sample bimodality coefficient ``(g^2 + 1) / (k + 3(n-1)^2 / ((n-2)(n-3)))``.

    ``g`` and ``k`` are the bias-corrected skewness and excess kurtosis.
    Returns NaN when it is undefined (fewer than four values, no spread).
    """
    values = np.asarray(values, dtype=float)
    n = len(values)
    if n < 4 or np.all(values == values[0]):
        return np.nan

    skewness = stats.skew(values, bias=False)
    kurtosis = stats.kurtosis(values, fisher=True, bias=False)
    return float((skewness ** 2 + 1) / (kurtosis + 3 * (n - 1) ** 2 / ((n - 2) * (n - 3))))


def summarize_sweep(sweep):
    """Bimodality coefficient of every grid point, as a pN/pK/BC table."""
    records = [
        {'pN': pN, 'pK': pK, 'BC': bimodality_coefficient(scores)}
        for (pN, pK), scores in sweep.items()
    ]
    return pd.DataFrame(records, columns=['pN', 'pK', 'BC'])


def find_optimal_pk(sweep_summary):
    """
    Pick the pK maximizing BCmvn = mean(BC) / var(BC) across pN.

    With a single pN the variance is undefined and the mean BC is used.
    Ties resolve to the first pK of the grid.

    Returns
    -------
    tuple
        (optimal pK, DataFrame with pK, mean_BC, var_BC, BCmvn)
    """
    grouped = sweep_summary.groupby('pK', sort=False)['BC']
    bcmvn = pd.DataFrame({'mean_BC': grouped.mean(), 'var_BC': grouped.var(ddof=1)})
    bcmvn['BCmvn'] = (bcmvn['mean_BC'] / bcmvn['var_BC']).fillna(bcmvn['mean_BC'])

    if bcmvn['BCmvn'].isna().all():
        logger.warning("    Degenerate pK sweep (no defined bimodality); using the first pK of the grid")
        best = bcmvn.index[0]
    else:
        if bcmvn['BCmvn'].dropna().nunique() == 1:
            logger.warning("    Degenerate pK sweep (all pK score equally); using the first pK of the grid")
        best = bcmvn['BCmvn'].idxmax()

    bcmvn.index.name = 'pK'
    return float(best), bcmvn.reset_index()


# =============================================================================
# Doublet calls
# =============================================================================

def model_homotypic(clusters):
    """Expected proportion of homotypic doublets: sum of squared cluster fractions."""
    fractions = pd.Series(np.asarray(clusters)).value_counts(normalize=True)
    return float((fractions ** 2).sum())


def expected_doublets(pk, n_cells, homotypic_prop, doublet_rate=None):
    """
    Expected doublet count before and after the homotypic adjustment.

    The expected count is ``pk x n_cells`` unless an explicit
    ``doublet_rate`` is given.

    Returns
    -------
    tuple
        (n_exp, n_exp_adjusted)
    """
    rate = doublet_rate if doublet_rate is not None else pk
    n_exp = int(round(rate * n_cells))
    n_exp_adj = int(round(n_exp * (1.0 - homotypic_prop)))
    return n_exp, n_exp_adj


def call_doublets(scores, n_doublets):
    """Label the ``n_doublets`` highest-scoring cells 'Doublet', the rest 'Singlet'."""
    scores = np.asarray(scores, dtype=float)
    n_doublets = min(max(int(n_doublets), 0), len(scores))

    order = np.argsort(-scores, kind='stable')
    labels = np.full(len(scores), 'Singlet', dtype=object)
    labels[order[:n_doublets]] = 'Doublet'
    return labels


def detect_doublets_in_sample(adata, params, random_seed=0):
    """
    Run the full doublet procedure on one sample.

    Parameters
    ----------
    adata : AnnData
        Raw counts of a single sample
    params : dict
        Doublet parameters (from config.yaml doublets section)

    Returns
    -------
    tuple
        (adata with ``doublet_score``/``doublet_class`` in obs,
         summary record, BCmvn table)
    """
    params = merge_params(DEFAULT_DOUBLET_PARAMS, params)

    adata = preprocess_sample(
        adata,
        n_top_genes=params['n_top_genes'],
        n_pcs=params['n_pcs'],
        resolution=params['resolution'],
        random_seed=random_seed,
    )

    logger.info(f"    Sweeping {len(params['pN_grid'])} pN x {len(params['pK_grid'])} pK values...")
    sweep = param_sweep(
        adata,
        params['pN_grid'],
        params['pK_grid'],
        n_pcs=params['n_pcs'],
        max_cells=params['max_sweep_cells'],
        random_seed=random_seed,
    )
    optimal_pk, bcmvn = find_optimal_pk(summarize_sweep(sweep))

    homotypic_prop = model_homotypic(adata.obs['doublet_cluster'])
    n_exp, n_exp_adj = expected_doublets(
        optimal_pk, adata.n_obs, homotypic_prop, doublet_rate=params['doublet_rate']
    )

    scores = score_doublets(adata, params['pN'], optimal_pk, n_pcs=params['n_pcs'], random_seed=random_seed)
    adata.obs['doublet_score'] = scores
    adata.obs['doublet_class'] = pd.Categorical(
        call_doublets(scores, n_exp_adj), categories=['Singlet', 'Doublet']
    )

    n_doublets = int((adata.obs['doublet_class'] == 'Doublet').sum())
    logger.info(f"    Optimal pK: {optimal_pk}, homotypic proportion: {homotypic_prop:.3f}")
    logger.info(f"    Expected doublets: {n_exp} (adjusted {n_exp_adj}), called: {n_doublets}")

    record = {
        'n_cells': adata.n_obs,
        'optimal_pK': optimal_pk,
        'homotypic_prop': homotypic_prop,
        'n_exp': n_exp,
        'n_exp_adj': n_exp_adj,
        'n_doublets': n_doublets,
        'n_singlets': adata.n_obs - n_doublets,
        'skipped': False,
    }
    return adata, record, bcmvn


def remove_doublets(adata, params=None, sample_key='sample_id', reporter=None, random_seed=0):
    """
    Detect doublets sample by sample and keep only the singlets.

    Parameters
    ----------
    adata : AnnData
        QC-filtered raw counts of all samples
    params : dict
        Doublet parameters
    sample_key : str
        Column of obs holding the sample of origin
    reporter : FigureReporter, optional
        Receives one doublet UMAP per sample

    Returns
    -------
    tuple
        (singlet AnnData, per-sample summary DataFrame, BCmvn DataFrame)
    """
    params = merge_params(DEFAULT_DOUBLET_PARAMS, params)
    reporter = reporter or FigureReporter(None)

    logger.info("Detecting doublets per sample...")

    singlets = []
    records = []
    sweeps = []
    samples = [s for s in pd.unique(adata.obs[sample_key]) if pd.notna(s)]

    for idx, sample in enumerate(samples, start=1):
        mask = (adata.obs[sample_key] == sample).to_numpy()
        sample_adata = adata[mask].copy()
        logger.info(f"  [{idx}/{len(samples)}] {sample}: {sample_adata.n_obs} cells")

        if sample_adata.n_obs < params['min_cells']:
            logger.warning(f"  Sample {sample} has <{params['min_cells']} cells, skipping doublet detection")
            sample_adata.obs['doublet_score'] = 0.0
            sample_adata.obs['doublet_class'] = 'Singlet'
            singlets.append(sample_adata)
            records.append({sample_key: sample, 'n_cells': sample_adata.n_obs, 'n_doublets': 0,
                            'n_singlets': sample_adata.n_obs, 'skipped': True})
            continue

        sample_adata, record, bcmvn = detect_doublets_in_sample(sample_adata, params, random_seed=random_seed)
        reporter.doublet_umap(sample_adata, idx, sample)

        bcmvn.insert(0, sample_key, sample)
        sweeps.append(bcmvn)
        records.append({sample_key: sample, **record})

        kept = sample_adata[(sample_adata.obs['doublet_class'] == 'Singlet').to_numpy()].copy()
        singlets.append(kept)

    for sample_adata in singlets:
        sample_adata.obsm.clear()
        sample_adata.obs['doublet_class'] = sample_adata.obs['doublet_class'].astype(str)

    result = ad.concat(singlets, join='inner', merge='same')
    result.obs[sample_key] = result.obs[sample_key].astype(str).astype('category')

    summary = pd.DataFrame(records).set_index(sample_key)
    sweep_table = pd.concat(sweeps, ignore_index=True) if sweeps else pd.DataFrame()

    logger.info(f"  Total doublets removed: {adata.n_obs - result.n_obs}")
    return result, summary, sweep_table


# =============================================================================
# Main Pipeline Function
# =============================================================================

def run_doublet_pipeline(
    input_path,
    output_adata_path,
    output_summary_path,
    output_sweep_path=None,
    figures_dir=None,
    doublet_params=None,
    sample_key='sample_id',
    random_seed=0,
    report_params=None,
):
    """Run the doublet stage and write the singlet snapshot."""
    doublet_params = merge_params(DEFAULT_DOUBLET_PARAMS, doublet_params)
    report_params = merge_params(DEFAULT_REPORT_PARAMS, report_params)

    logger.info("=" * 60)
    logger.info("Starting Doublet Detection")
    logger.info("=" * 60)

    adata = sc.read_h5ad(input_path)

    if doublet_params['enabled']:
        reporter = FigureReporter(figures_dir, **report_params)
        adata, summary, sweep_table = remove_doublets(
            adata, doublet_params, sample_key=sample_key, reporter=reporter, random_seed=random_seed
        )
    else:
        logger.info("Doublet removal disabled, keeping all cells")
        adata.obs['doublet_score'] = 0.0
        adata.obs['doublet_class'] = 'Singlet'
        summary = adata.obs.groupby(sample_key, observed=True).size().to_frame('n_cells')
        summary['n_doublets'] = 0
        summary['skipped'] = True
        sweep_table = pd.DataFrame()

    for path in (output_summary_path, output_sweep_path, output_adata_path):
        if path:
            os.makedirs(os.path.dirname(path) or '.', exist_ok=True)

    summary.to_csv(output_summary_path, sep='\t')
    if output_sweep_path:
        sweep_table.to_csv(output_sweep_path, sep='\t', index=False)

    logger.info(f"Saving singlets to {output_adata_path}...")
    adata.write(output_adata_path)
    return adata


# =============================================================================
# Snakemake Integration
# =============================================================================

def run_from_snakemake():
    """Run doublet detection from Snakemake rule."""
    config = snakemake.params.config

    log_file = snakemake.log[0] if snakemake.log else None
    if log_file:
        os.makedirs(os.path.dirname(log_file), exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        logging.getLogger().addHandler(file_handler)

    run_doublet_pipeline(
        input_path=snakemake.input.adata,
        output_adata_path=snakemake.output.adata,
        output_summary_path=snakemake.output.summary,
        output_sweep_path=snakemake.output.sweep,
        figures_dir=snakemake.params.figures_dir,
        doublet_params=config.get('doublets'),
        sample_key=config.get('sample_key', 'sample_id'),
        random_seed=config.get('random_seed', 0),
        report_params=config.get('report'),
    )


def main():
    """Main function for standalone CLI usage."""
    parser = argparse.ArgumentParser(description='Per-sample doublet detection')
    parser.add_argument('--input', required=True, help='QC-filtered dataset (.h5ad)')
    parser.add_argument('--output-dir', required=True, help='Output directory')
    parser.add_argument('--sample-key', default='sample_id')
    parser.add_argument('--n-pcs', type=int, default=DEFAULT_DOUBLET_PARAMS['n_pcs'])
    parser.add_argument('--resolution', type=float, default=DEFAULT_DOUBLET_PARAMS['resolution'])
    parser.add_argument('--doublet-rate', type=float, default=None,
                        help='Expected doublet rate (default: optimal pK)')
    parser.add_argument('--seed', type=int, default=0)

    args = parser.parse_args()

    try:
        run_doublet_pipeline(
            input_path=args.input,
            output_adata_path=os.path.join(args.output_dir, 'doublets', 'adata_singlets.h5ad'),
            output_summary_path=os.path.join(args.output_dir, 'doublets', 'doublet_summary.tsv'),
            output_sweep_path=os.path.join(args.output_dir, 'doublets', 'pk_sweep.tsv'),
            figures_dir=os.path.join(args.output_dir, 'figures'),
            doublet_params={
                'n_pcs': args.n_pcs,
                'resolution': args.resolution,
                'doublet_rate': args.doublet_rate,
            },
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
