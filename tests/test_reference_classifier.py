'''
Test the reference classifier.
'''

import logging
import os
import pickle
import runpy
import sys

import numpy as np
import pandas as pd
import pytest
import anndata as ad

from conftest import make_counts
import snakemake_wrapper.scripts.reference_classifier as reference_classifier
from snakemake_wrapper.scripts.reference_classifier import (
    ReferenceClassifier,
    classify_query,
    get_feature_space,
    label_crosstab,
    prepare_query,
    prepare_reference,
)

# pylint: disable=missing-docstring


@pytest.fixture(scope='module')
def trained():
    reference = prepare_reference(make_counts(seed=0), n_pcs=20)
    model = ReferenceClassifier(n_pcs=20, random_seed=0).fit(reference)
    return model, reference


@pytest.fixture
def query():
    return make_counts(n_per_type=30, samples=('q1',), seed=7)


def test_get_feature_space_selects_separating_components():
    rng = np.random.default_rng(0)
    labels = np.repeat(['a', 'b'], 50)
    embedding = rng.normal(size=(100, 4))
    embedding[labels == 'a', 2] += 5
    adata = ad.AnnData(X=np.zeros((100, 1)), obs=pd.DataFrame({'celltype': labels}))
    adata.obsm['X_pca'] = embedding

    selected, tests = get_feature_space(adata, n_pcs=4)

    assert 2 in selected
    assert set(tests['label']) == {'a', 'b'}
    assert len(tests) == 8
    assert (tests['pval_adj'] >= tests['pval']).all()


def test_get_feature_space_falls_back_to_all(caplog):
    rng = np.random.default_rng(0)
    adata = ad.AnnData(X=np.zeros((40, 1)),
                       obs=pd.DataFrame({'celltype': np.repeat(['a', 'b'], 20)}))
    adata.obsm['X_pca'] = rng.normal(size=(40, 3))

    with caplog.at_level(logging.WARNING):
        selected, _ = get_feature_space(adata, n_pcs=3, alpha=0.0)

    assert selected == [0, 1, 2]
    assert 'using all components' in caplog.text


def test_get_feature_space_needs_two_classes():
    adata = ad.AnnData(X=np.zeros((10, 1)), obs=pd.DataFrame({'celltype': ['a'] * 10}))
    adata.obsm['X_pca'] = np.zeros((10, 2))

    with pytest.raises(ValueError, match='two classes'):
        get_feature_space(adata)


def test_prepare_reference(trained):
    _, reference = trained

    assert reference.raw is not None
    assert {'mean', 'std'} <= set(reference.var.columns)
    assert reference.varm['PCs'].shape == (reference.n_vars, 20)
    assert 'X_umap' in reference.obsm
    assert 'leiden' in reference.obs


def test_prepare_reference_requires_labels():
    adata = make_counts()
    del adata.obs['celltype']

    with pytest.raises(ValueError, match='celltype'):
        prepare_reference(adata)


def test_model_stores_reference_space(trained):
    model, reference = trained

    assert model.genes_ == list(reference.var_names)
    assert model.loadings_.shape == (reference.n_vars, 20)
    assert model.classes_ == ['Bcell', 'Myeloid', 'Tcell']
    assert model.covariates_ == ['pct_counts_mt']
    assert all(0 <= pc < 20 for pc in model.features_)


def test_predictions_are_accurate_and_deterministic(trained, query):
    model, _ = trained
    prepared = prepare_query(query)

    first = model.predict_proba(prepared)
    second = model.predict_proba(prepared)

    assert first.equals(second)
    assert np.allclose(first.sum(axis=1), 1.0)
    assert (model.predict(prepared) == query.obs['celltype']).mean() > 0.9


def test_missing_genes_are_zero_filled(trained, query, caplog):
    model, _ = trained
    prepared = prepare_query(query)
    dropped = prepared[:, [g for g in prepared.var_names if g not in model.genes_[:10]]].copy()

    with caplog.at_level(logging.WARNING):
        proba = model.predict_proba(dropped)

    assert proba.shape == (query.n_obs, 3)
    assert '10 of' in caplog.text


def test_save_and_load(trained, query, tmp_path):
    model, _ = trained
    path = str(tmp_path / 'model.pkl')
    prepared = prepare_query(query)

    model.save(path)
    loaded = ReferenceClassifier.load(path)

    assert loaded.predict_proba(prepared).equals(model.predict_proba(prepared))


def test_load_missing_model(tmp_path):
    with pytest.raises(FileNotFoundError):
        ReferenceClassifier.load(str(tmp_path / 'missing.pkl'))


def test_classify_query_writes_columns(trained, query):
    model, _ = trained

    classify_query(model, query)

    for label in model.classes_:
        assert f'prob_{label}' in query.obs
    prob_columns = [f'prob_{label}' for label in model.classes_]
    assert np.allclose(query.obs['prob_max'], query.obs[prob_columns].max(axis=1))
    assert set(query.obs['predicted_celltype']) <= set(model.classes_)

    crosstab = label_crosstab(query.obs)
    assert crosstab.loc['total', 'total'] == query.n_obs


def test_prepare_query_uses_rna_layer():
    adata = make_counts(n_per_type=5, samples=('q1',))
    adata.raw = adata.copy()
    adata = adata[:, :50].copy()

    prepared = prepare_query(adata)

    assert prepared.n_vars == 200
    assert list(prepared.obs_names) == list(adata.obs_names)


def test_cross_validate(trained):
    model, _ = trained

    cv = model.cross_validate(3)

    assert list(cv['fold']) == [1, 2, 3]
    assert (cv['accuracy'] > 0.8).all()


def test_reference_regression_is_stored(trained):
    model, reference = trained

    assert reference.varm['regression_coef'].shape == (reference.n_vars, 2)
    assert np.array_equal(model.regression_coef_, reference.varm['regression_coef'])


def test_query_cells_are_classified_independently(trained, query):
    model, _ = trained
    prepared = prepare_query(query)

    together = model.predict_proba(prepared)
    alone = pd.concat([model.predict_proba(prepared[[i]].copy()) for i in range(5)])

    assert np.allclose(alone.to_numpy(), together.iloc[:5].to_numpy())


def test_query_without_covariate_is_rejected(trained, query):
    model, _ = trained
    prepared = prepare_query(query)
    del prepared.obs['pct_counts_mt']

    with pytest.raises(ValueError, match='pct_counts_mt'):
        model.predict_proba(prepared)


def test_load_rejects_other_pickles(tmp_path):
    path = str(tmp_path / 'other.pkl')
    with open(path, 'wb') as f:
        pickle.dump({'weights': [1, 2]}, f)

    with pytest.raises(ValueError, match='ReferenceClassifier'):
        ReferenceClassifier.load(path)


def test_model_trained_by_script_loads_through_package(tmp_path, query, monkeypatch):
    reference_path = str(tmp_path / 'reference.h5ad')
    make_counts(seed=0).write(reference_path)
    monkeypatch.setattr(sys, 'argv', [
        'reference_classifier.py', '--mode', 'train',
        '--reference', reference_path, '--output-dir', str(tmp_path),
    ])

    runpy.run_path(reference_classifier.__file__, run_name='__main__')
    model = ReferenceClassifier.load(os.path.join(str(tmp_path), 'classifier', 'model.pkl'))

    assert isinstance(model, ReferenceClassifier)
    assert (model.predict(prepare_query(query)) == query.obs['celltype']).mean() > 0.8
