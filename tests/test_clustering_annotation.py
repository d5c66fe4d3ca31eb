'''
Test clustering, cluster annotation and marker detection.
'''

import logging

import numpy as np
import pandas as pd
import pytest
import scanpy as sc
import anndata as ad

from conftest import CELL_TYPES, make_counts, marker_genes
from snakemake_wrapper.scripts.clustering_annotation import (
    annotate_clusters,
    cluster_summary,
    find_all_markers,
    heatmap_genes,
    reduce_and_cluster,
    suggest_cluster_labels,
    top_markers,
)

# pylint: disable=missing-docstring


def _lognorm():
    adata = make_counts()
    sc.pp.normalize_total(adata, target_sum=1e4)
    sc.pp.log1p(adata)
    adata.raw = adata
    adata.obs['leiden'] = pd.Categorical(
        adata.obs['celltype'].map({t: str(i) for i, t in enumerate(CELL_TYPES)})
    )
    return adata


def _clustered(clusters):
    obs = pd.DataFrame({'leiden': pd.Categorical([str(c) for c in clusters])},
                       index=[f'cell{i}' for i in range(len(clusters))])
    return ad.AnnData(X=np.zeros((len(clusters), 2)), obs=obs)


def test_annotate_clusters_label_closure(caplog):
    adata = _clustered([0, 0, 1, 2, 3, 4, 4])
    labels = {0: 'T cell', 1: 'B cell', 3: 'Myeloid', 2: 'Unassigned'}

    with caplog.at_level(logging.WARNING):
        annotate_clusters(adata, labels)

    mapping = adata.obs.groupby('leiden', observed=True)['celltype'].nunique()
    assert (mapping == 1).all()
    assert adata.obs.loc[adata.obs['leiden'] == '4', 'celltype'].unique().tolist() == ['Unassigned']
    assert adata.obs.loc[adata.obs['leiden'] == '0', 'celltype'].unique().tolist() == ['T cell']
    assert "['4']" in caplog.text


def test_annotate_clusters_accepts_string_keys():
    adata = _clustered([0, 1])

    annotate_clusters(adata, {'0': 'A', '1': 'B'}, key_added='label')

    assert adata.obs['label'].tolist() == ['A', 'B']


def test_annotate_clusters_strict():
    adata = _clustered([0, 1, 2])

    with pytest.raises(ValueError, match='without a label'):
        annotate_clusters(adata, {0: 'A', 1: 'B'}, strict=True)


def test_annotate_clusters_is_pure_relabeling():
    adata = _clustered([2, 0, 1, 0])
    before = adata.obs['leiden'].copy()

    annotate_clusters(adata, {0: 'A', 1: 'B', 2: 'C'})

    assert adata.obs['leiden'].equals(before)
    assert adata.obs['celltype'].tolist() == ['C', 'A', 'B', 'A']


def test_top_markers():
    markers = pd.DataFrame({
        'group': ['0'] * 4 + ['1'] * 3,
        'gene': ['a', 'b', 'c', 'd', 'e', 'f', 'g'],
        'logfoldchanges': [1.0, 3.0, 2.0, -1.0, 0.5, 5.0, 1.5],
    })

    top = top_markers(markers, n=2)

    assert top['gene'].tolist() == ['b', 'c', 'f', 'g']
    assert top.groupby('group').size().max() <= 2


def test_heatmap_genes_drops_missing(caplog):
    adata = ad.AnnData(X=np.zeros((2, 2)), var=pd.DataFrame(index=['a', 'b']))
    top = pd.DataFrame({'group': ['0', '0', '1'], 'gene': ['a', 'z', 'a']})

    with caplog.at_level(logging.WARNING):
        genes = heatmap_genes(adata, top)

    assert genes == ['a']
    assert 'not integration features' in caplog.text


def test_find_all_markers_recovers_marker_blocks():
    adata = _lognorm()
    markers = find_all_markers(adata, groupby='leiden')

    assert {'group', 'gene', 'logfoldchanges', 'pvals', 'pvals_adj'} <= set(markers.columns)
    top = top_markers(markers, n=5)
    expected = marker_genes()
    for i, celltype in enumerate(CELL_TYPES):
        genes = top.loc[top['group'] == str(i), 'gene']
        assert set(genes) <= set(expected[celltype])


def test_find_all_markers_skips_single_cell_groups(caplog):
    adata = _lognorm()
    adata.obs['leiden'] = adata.obs['leiden'].astype(str)
    adata.obs.iloc[0, adata.obs.columns.get_loc('leiden')] = '9'

    with caplog.at_level(logging.WARNING):
        markers = find_all_markers(adata, groupby='leiden')

    assert '9' not in set(markers['group'])
    assert 'single cell' in caplog.text


def test_suggest_cluster_labels():
    adata = _lognorm()
    n_columns = adata.obs.shape[1]

    suggestions = suggest_cluster_labels(adata, marker_genes())

    for i, celltype in enumerate(CELL_TYPES):
        assert suggestions.loc[str(i), 'suggested_label'] == celltype
    assert adata.obs.shape[1] == n_columns


def test_reduce_and_cluster_is_reproducible():
    first = _lognorm()
    second = _lognorm()

    reduce_and_cluster(first, n_pcs=20, n_neighbors=15, resolution=0.3, random_seed=0)
    reduce_and_cluster(second, n_pcs=20, n_neighbors=15, resolution=0.3, random_seed=0)

    assert first.obs['leiden'].tolist() == second.obs['leiden'].tolist()
    assert np.allclose(first.obsm['X_umap'], second.obsm['X_umap'])
    assert first.obsm['X_pca'].shape == (first.n_obs, 20)
    assert first.obs['leiden'].nunique() >= 2


def test_cluster_summary():
    adata = _clustered([0, 0, 1, 1, 1])
    adata.obs['sample_id'] = ['a', 'b', 'a', 'a', 'b']
    annotate_clusters(adata, {0: 'X', 1: 'Y'})

    summary = cluster_summary(adata)

    assert summary.loc[('total', ''), 'total'] == 5
    assert summary.loc[('1', 'Y'), 'a'] == 2
