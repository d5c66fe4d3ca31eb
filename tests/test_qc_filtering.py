'''
Test the QC metrics and the cell filter.
'''

import numpy as np
import pytest
import scanpy as sc

from snakemake_wrapper.scripts.qc_filtering import (
    calculate_qc_metrics,
    filter_cells,
    load_dataset,
    qc_filter_summary,
    qc_mask,
    run_qc_pipeline,
)

# pylint: disable=missing-docstring

NO_BOUNDS = {
    'min_counts': None,
    'max_counts': None,
    'min_genes': None,
    'max_genes': None,
    'max_mito_pct': None,
    'max_ribo_pct': None,
}


def test_calculate_qc_metrics(counts_adata):
    calculate_qc_metrics(counts_adata)

    assert list(counts_adata.var_names[counts_adata.var['mt']]) == ['MT-CO1', 'MT-ND1', 'MT-ATP6']
    assert list(counts_adata.var_names[counts_adata.var['ribo']]) == ['RPS3', 'RPL7']

    totals = np.asarray(counts_adata.X.sum(axis=1)).ravel()
    assert np.allclose(counts_adata.obs['total_counts'], totals)

    mito = np.asarray(counts_adata[:, ['MT-CO1', 'MT-ND1', 'MT-ATP6']].X.sum(axis=1)).ravel()
    assert np.allclose(counts_adata.obs['pct_counts_mt'], 100 * mito / totals)


def test_toy_count_filter_keeps_exact_cells(toy_adata):
    calculate_qc_metrics(toy_adata)
    original_samples = toy_adata.obs['sample_id'].copy()

    params = {**NO_BOUNDS, 'min_counts': 50, 'max_counts': 90}
    filtered = filter_cells(toy_adata, params)

    expected = [f'cell{i}' for i in range(51, 90)]
    assert list(filtered.obs_names) == expected
    assert (filtered.obs['sample_id'] == original_samples[expected]).all()
    assert filtered.n_obs == filtered.obs.shape[0] == filtered.X.shape[0]


def test_qc_bounds_are_strict(toy_adata):
    calculate_qc_metrics(toy_adata)

    mask = qc_mask(toy_adata.obs, {**NO_BOUNDS, 'min_counts': 10, 'max_counts': 12})

    assert list(toy_adata.obs_names[mask.values]) == ['cell11']


def test_filter_is_idempotent(qc_obs):
    params = {'min_counts': 7000, 'max_counts': 70000, 'min_genes': 2500,
              'max_genes': 10000, 'max_mito_pct': 10, 'max_ribo_pct': 45}

    once = qc_obs[qc_mask(qc_obs, params)]
    twice = once[qc_mask(once, params)]

    assert list(once.index) == list(twice.index)


@pytest.mark.parametrize('first, second', [
    ((1000, 60000), (5000, 80000)),
    ((20000, 30000), (0, 100000)),
    ((5000, 50000), (10000, 40000)),
])
def test_filter_composition(qc_obs, first, second):
    one = {**NO_BOUNDS, 'min_counts': first[0], 'max_counts': first[1]}
    two = {**NO_BOUNDS, 'min_counts': second[0], 'max_counts': second[1]}
    combined = {**NO_BOUNDS, 'min_counts': max(first[0], second[0]),
                'max_counts': min(first[1], second[1])}

    step = qc_obs[qc_mask(qc_obs, one)]
    step = step[qc_mask(step, two)]
    direct = qc_obs[qc_mask(qc_obs, combined)]

    assert list(step.index) == list(direct.index)


def test_missing_metric_raises(toy_adata):
    with pytest.raises(KeyError):
        qc_mask(toy_adata.obs, {'min_counts': 1})


def test_invalid_thresholds_raise(toy_adata):
    calculate_qc_metrics(toy_adata)
    with pytest.raises(ValueError, match='min_counts'):
        filter_cells(toy_adata, {**NO_BOUNDS, 'min_counts': 90, 'max_counts': 50})


def test_empty_result_raises(toy_adata):
    calculate_qc_metrics(toy_adata)
    with pytest.raises(ValueError, match='No cells passed'):
        filter_cells(toy_adata, {**NO_BOUNDS, 'min_counts': 1000})


def test_qc_filter_summary(toy_adata):
    calculate_qc_metrics(toy_adata)
    before = toy_adata.obs.copy()
    filtered = filter_cells(toy_adata, {**NO_BOUNDS, 'min_counts': 50, 'max_counts': 90})

    summary = qc_filter_summary(before, filtered.obs)

    assert summary.loc['A', 'n_cells_before'] == 50
    assert summary['n_cells_after'].sum() == filtered.n_obs
    assert (summary['n_removed'] == summary['n_cells_before'] - summary['n_cells_after']).all()


def test_load_dataset_errors(tmp_path, toy_adata):
    with pytest.raises(FileNotFoundError):
        load_dataset(str(tmp_path / 'missing.h5ad'))

    path = str(tmp_path / 'toy.h5ad')
    toy_adata.write(path)
    with pytest.raises(ValueError, match='batch'):
        load_dataset(path, sample_key='batch')

    loaded = load_dataset(path)
    assert loaded.obs['sample_id'].dtype.name == 'category'


def test_run_qc_pipeline(tmp_path, toy_adata):
    input_path = str(tmp_path / 'merged.h5ad')
    toy_adata.write(input_path)

    run_qc_pipeline(
        input_path=input_path,
        output_adata_path=str(tmp_path / 'qc' / 'adata_filtered.h5ad'),
        output_qc_path=str(tmp_path / 'qc' / 'qc_metrics.tsv'),
        qc_params={**NO_BOUNDS, 'min_counts': 50, 'max_counts': 90},
    )

    filtered = sc.read_h5ad(str(tmp_path / 'qc' / 'adata_filtered.h5ad'))
    assert filtered.n_obs == 39
    assert (tmp_path / 'qc' / 'qc_metrics.tsv').exists()
