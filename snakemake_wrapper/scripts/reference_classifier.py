#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
reference_classifier.py
=======================

Reference-based cell type classification.

Training (``--mode train``):
1. Log-normalize the labelled reference, regress out the mitochondrial
   fraction, select variable genes and scale
2. PCA, with an exploratory Leiden clustering and UMAP for the audit plot
3. Per class, Mann-Whitney U test of every principal component against the
   other cells (Benjamini-Hochberg); the union of significant components is
   the feature space
4. Radial-kernel SVM with probability estimates on that feature space,
   with stratified k-fold cross-validation of the reference

Prediction (``--mode predict``):
1. The query goes through the same normalization and covariate regression
2. It is projected with the reference genes, scaling and loadings
3. Every cell gets the most probable label and one probability per class

Usage:
    Called via Snakemake rule with snakemake.input/output/params

    Or standalone:
    python reference_classifier.py --mode train --reference ref.h5ad --output-dir /path/to/output
    python reference_classifier.py --mode predict --query query.h5ad --model model.pkl --output-dir /path/to/output
"""

import os
import sys
import pickle
import logging
import argparse

import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad
from scipy import sparse
from scipy.stats import mannwhitneyu
from sklearn.base import clone
from sklearn.model_selection import StratifiedKFold, cross_val_score
from sklearn.svm import SVC
from statsmodels.stats.multitest import multipletests

from snakemake_wrapper.scripts.parameters import (
    DEFAULT_CLASSIFIER_PARAMS,
    DEFAULT_NORMALIZATION_PARAMS,
    DEFAULT_QC_PARAMS,
    DEFAULT_REPORT_PARAMS,
    merge_params,
)
from snakemake_wrapper.scripts.qc_filtering import calculate_qc_metrics
from snakemake_wrapper.scripts.reporting import FigureReporter

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SCALE_CLIP = 10
MODEL_FORMAT = 1


def _dense(X):
    return X.toarray() if sparse.issparse(X) else np.asarray(X)


def _design(obs, covariates):
    """Intercept column followed by the covariates."""
    return np.column_stack([np.ones(len(obs)), obs[covariates].to_numpy(dtype=float)])


def _ensure_mito_pct(adata):
    if 'pct_counts_mt' not in adata.obs.columns:
        calculate_qc_metrics(adata, DEFAULT_QC_PARAMS['mito_prefix'], DEFAULT_QC_PARAMS['ribo_prefix'])
    return adata


# =============================================================================
# Reference and Query Preparation
# =============================================================================

def prepare_reference(adata, label_key='celltype', n_top_genes=2000, n_pcs=50, resolution=0.3,
                      regress=('pct_counts_mt',), target_sum=1e4, random_seed=0):
    """
    Normalize, scale and reduce a labelled reference.

    Parameters
    ----------
    adata : AnnData
        Reference with raw counts in X and labels in ``obs[label_key]``
    label_key : str
        obs column holding the reference labels
    n_top_genes : int
        Number of variable genes kept
    n_pcs : int
        Number of principal components
    resolution : float
        Resolution of the exploratory Leiden clustering

    Returns
    -------
    AnnData
        Variable genes only, regressed and scaled X (with ``mean``/``std``
        in var, covariate coefficients in ``varm['regression_coef']``),
        ``PCs`` in varm, PCA/UMAP in obsm, RNA layer in raw
    """
    if label_key not in adata.obs.columns:
        raise ValueError(f"Reference has no '{label_key}' column in obs")

    logger.info("Preparing reference...")
    adata = _ensure_mito_pct(adata.copy())

    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)
    adata.raw = adata

    sc.pp.highly_variable_genes(adata, n_top_genes=min(n_top_genes, adata.n_vars), flavor='seurat')
    adata = adata[:, adata.var['highly_variable']].copy()

    covariates = [key for key in (regress or []) if key in adata.obs.columns]
    if covariates:
        X = _dense(adata.X)
        design = _design(adata.obs, covariates)
        coef = np.linalg.lstsq(design, X, rcond=None)[0]
        adata.X = X - design @ coef
        adata.varm['regression_coef'] = coef.T
    sc.pp.scale(adata, max_value=SCALE_CLIP)

    n_comps = min(n_pcs, adata.n_vars - 1, adata.n_obs - 1)
    sc.tl.pca(adata, n_comps=n_comps, random_state=random_seed)
    sc.pp.neighbors(adata, n_pcs=n_comps, random_state=random_seed)
    sc.tl.leiden(adata, resolution=resolution, random_state=random_seed)
    sc.tl.umap(adata, random_state=random_seed)

    adata.uns['regressed_covariates'] = covariates
    logger.info(f"  {adata.n_obs} cells, {adata.n_vars} variable genes, {n_comps} PCs, "
                f"{adata.obs['leiden'].nunique()} exploratory clusters")
    return adata


def prepare_query(adata, target_sum=1e4):
    """
    Log-normalized copy of a query dataset.

    A query carrying an RNA layer in ``raw`` (the pipeline's own annotated
    dataset) is used as is; otherwise ``X`` is taken as raw counts.
    """
    if adata.raw is not None:
        return ad.AnnData(X=adata.raw.X.copy(), obs=adata.obs.copy(), var=adata.raw.var.copy())

    query = _ensure_mito_pct(adata.copy())
    sc.pp.normalize_total(query, target_sum=target_sum)
    sc.pp.log1p(query)
    return query


# =============================================================================
# Feature Space
# =============================================================================

def get_feature_space(adata, label_key='celltype', n_pcs=50, alpha=0.05, basis='X_pca'):
    """
    Select the principal components that discriminate the reference classes.

    For every class, each component is compared between the class and all
    other cells with a two-sided Mann-Whitney U test; p-values are
    Benjamini-Hochberg corrected per class.

    Returns
    -------
    tuple
        (sorted list of selected component indices, DataFrame of tests)
    """
    embedding = np.asarray(adata.obsm[basis])[:, :n_pcs]
    labels = adata.obs[label_key].astype(str).to_numpy()
    classes = np.unique(labels)
    if len(classes) < 2:
        raise ValueError(f"Reference needs at least two classes in '{label_key}' (found {list(classes)})")

    frames = []
    for label in classes:
        inside = labels == label
        pvals = np.array([
            mannwhitneyu(embedding[inside, pc], embedding[~inside, pc], alternative='two-sided').pvalue
            for pc in range(embedding.shape[1])
        ])
        padj = multipletests(pvals, method='fdr_bh')[1]
        frames.append(pd.DataFrame({
            'label': label,
            'pc': np.arange(embedding.shape[1]),
            'pval': pvals,
            'pval_adj': padj,
        }))

    tests = pd.concat(frames, ignore_index=True)
    selected = sorted(tests.loc[tests['pval_adj'] < alpha, 'pc'].unique().tolist())
    if not selected:
        logger.warning("No component separates any class; using all components")
        selected = list(range(embedding.shape[1]))

    logger.info(f"  Feature space: {len(selected)} of {embedding.shape[1]} components")
    return selected, tests


# =============================================================================
# Classifier
# =============================================================================

class ReferenceClassifier:
    """
    SVM cell type classifier trained on a reference in PCA space.

    The fitted model keeps everything needed to place a query in the
    reference space: genes, scaling means and standard deviations, PCA
    loadings, the selected components and the label vocabulary.
    """

    def __init__(self, n_pcs=50, alpha=0.05, C=1.0, gamma='scale', random_seed=0):
        self.n_pcs = n_pcs
        self.alpha = alpha
        self.C = C
        self.gamma = gamma
        self.random_seed = random_seed

    def fit(self, reference, label_key='celltype'):
        """
        Train on a prepared reference (see ``prepare_reference``).

        Returns
        -------
        ReferenceClassifier
            self
        """
        self.label_key = label_key
        self.genes_ = list(reference.var_names)
        self.means_ = reference.var['mean'].to_numpy(dtype=float)
        self.stds_ = reference.var['std'].to_numpy(dtype=float)
        self.loadings_ = np.asarray(reference.varm['PCs'])[:, :self.n_pcs]
        self.covariates_ = list(reference.uns.get('regressed_covariates', []))
        self.regression_coef_ = (np.asarray(reference.varm['regression_coef'])
                                 if self.covariates_ else None)

        reference.obsm['X_ref_pca'] = _dense(reference.X) @ self.loadings_
        self.features_, self.feature_tests_ = get_feature_space(
            reference, label_key, n_pcs=self.loadings_.shape[1], alpha=self.alpha, basis='X_ref_pca'
        )

        X = reference.obsm['X_ref_pca'][:, self.features_]
        y = reference.obs[label_key].astype(str).to_numpy()
        self.svm_ = SVC(kernel='rbf', probability=True, C=self.C, gamma=self.gamma,
                        random_state=self.random_seed)
        self.svm_.fit(X, y)
        self.classes_ = list(self.svm_.classes_)
        self._train_X, self._train_y = X, y

        logger.info(f"  Trained SVM on {len(y)} cells, {len(self.classes_)} classes: {self.classes_}")
        return self

    def cross_validate(self, cv_folds=5):
        """Stratified k-fold accuracy on the training data; empty when not possible."""
        min_class = pd.Series(self._train_y).value_counts().min()
        n_splits = min(cv_folds, min_class)
        if n_splits < 2:
            logger.warning("Cross-validation skipped (fewer than two cells in some class or cv_folds < 2)")
            return pd.DataFrame(columns=['fold', 'accuracy'])

        folds = StratifiedKFold(n_splits=n_splits, shuffle=True, random_state=self.random_seed)
        scores = cross_val_score(clone(self.svm_), self._train_X, self._train_y, cv=folds)
        logger.info(f"  {n_splits}-fold CV accuracy: {scores.mean():.3f} +/- {scores.std():.3f}")
        return pd.DataFrame({'fold': np.arange(1, n_splits + 1), 'accuracy': scores})

    def project(self, query):
        """
        Place a log-normalized query in the reference PCA space.

        Reference genes absent from the query are filled with zero. Covariates
        are removed with the coefficients fitted on the reference, so every
        cell is placed independently of the rest of the query.
        """
        present = [gene for gene in self.genes_ if gene in query.var_names]
        missing = len(self.genes_) - len(present)
        if not present:
            raise ValueError("None of the reference genes are present in the query")
        if missing:
            logger.warning(f"  {missing} of {len(self.genes_)} reference genes missing from the query, "
                           f"filled with zero")

        X = np.zeros((query.n_obs, len(self.genes_)))
        index = {gene: i for i, gene in enumerate(self.genes_)}
        positions = [index[gene] for gene in present]
        X[:, positions] = _dense(query[:, present].X)

        if self.covariates_:
            absent = [key for key in self.covariates_ if key not in query.obs.columns]
            if absent:
                raise ValueError(f"Query lacks the regressed covariates {absent} in obs")
            X = X - _design(query.obs, self.covariates_) @ self.regression_coef_.T

        stds = np.where(self.stds_ > 0, self.stds_, 1.0)
        scaled = np.clip((X - self.means_) / stds, -SCALE_CLIP, SCALE_CLIP)
        return scaled @ self.loadings_

    def predict_proba(self, query):
        """Class probabilities of every query cell (cells x classes)."""
        embedding = self.project(query)[:, self.features_]
        proba = self.svm_.predict_proba(embedding)
        return pd.DataFrame(proba, index=query.obs_names, columns=self.classes_)

    def predict(self, query):
        """Most probable label of every query cell."""
        return self.predict_proba(query).idxmax(axis=1)

    def save(self, path):
        """
        Pickle the fitted state as a plain dict.

        The class itself is not pickled, so a model saved by the script run
        as ``__main__`` loads through the package and vice versa.
        """
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'wb') as f:
            pickle.dump({'format': MODEL_FORMAT, 'state': dict(vars(self))}, f)
        logger.info(f"Saved classifier to {path}")

    @classmethod
    def load(cls, path):
        if not os.path.exists(path):
            raise FileNotFoundError(f"Classifier model not found: {path}")
        with open(path, 'rb') as f:
            saved = pickle.load(f)
        if not isinstance(saved, dict) or saved.get('format') != MODEL_FORMAT:
            raise ValueError(f"{path} does not hold a {cls.__name__} model")
        model = cls.__new__(cls)
        vars(model).update(saved['state'])
        return model


def classify_query(model, query, prepared=None):
    """
    Label every cell of ``query`` with the reference classifier.

    Writes ``predicted_celltype``, ``prob_<label>`` for every class and
    ``prob_max`` to ``query.obs``.
    """
    prepared = prepared if prepared is not None else prepare_query(query)
    proba = model.predict_proba(prepared)

    query.obs['predicted_celltype'] = pd.Categorical(proba.idxmax(axis=1).to_numpy(),
                                                     categories=model.classes_)
    for label in model.classes_:
        query.obs[f'prob_{label}'] = proba[label].to_numpy()
    query.obs['prob_max'] = proba.max(axis=1).to_numpy()

    for label, n in query.obs['predicted_celltype'].value_counts().items():
        logger.info(f"  {label}: {n} cells")
    return query


def label_crosstab(obs, label_key='celltype', predicted_key='predicted_celltype'):
    """Manual labels against predicted labels."""
    return pd.crosstab(obs[label_key], obs[predicted_key], margins=True, margins_name='total')


# =============================================================================
# Main Pipeline Functions
# =============================================================================

def run_training_pipeline(
    reference_path,
    output_model_path,
    output_features_path,
    output_cv_path,
    figures_dir=None,
    classifier_params=None,
    normalization_params=None,
    random_seed=0,
    report_params=None,
):
    """Prepare the reference, train the classifier and save it."""
    params = merge_params(DEFAULT_CLASSIFIER_PARAMS, classifier_params)
    normalization_params = merge_params(DEFAULT_NORMALIZATION_PARAMS, normalization_params)
    report_params = merge_params(DEFAULT_REPORT_PARAMS, report_params)
    reporter = FigureReporter(figures_dir, **report_params)

    logger.info("=" * 60)
    logger.info("Training Reference Classifier")
    logger.info("=" * 60)

    if not reference_path or not os.path.exists(reference_path):
        raise FileNotFoundError(f"Reference dataset not found: {reference_path}")
    reference = sc.read_h5ad(reference_path)
    reference.var_names_make_unique()

    reference = prepare_reference(
        reference,
        label_key=params['label_key'],
        n_top_genes=params['n_top_genes'],
        n_pcs=params['n_pcs'],
        resolution=params['resolution'],
        regress=normalization_params['regress_out'],
        target_sum=normalization_params['target_sum'],
        random_seed=random_seed,
    )
    reporter.embedding(reference, 'reference', params['label_key'], title='Reference labels')
    reporter.embedding(reference, 'reference', 'leiden', title='Reference clusters')

    model = ReferenceClassifier(
        n_pcs=params['n_pcs'],
        alpha=params['alpha'],
        C=params['C'],
        gamma=params['gamma'],
        random_seed=random_seed,
    ).fit(reference, label_key=params['label_key'])

    cv = model.cross_validate(params['cv_folds']) if params['cv_folds'] else pd.DataFrame(columns=['fold', 'accuracy'])

    for path in (output_features_path, output_cv_path):
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    model.feature_tests_.to_csv(output_features_path, sep='\t', index=False)
    cv.to_csv(output_cv_path, sep='\t', index=False)
    model.save(output_model_path)
    return model


def run_prediction_pipeline(
    query_path,
    model_path,
    output_adata_path,
    output_predictions_path,
    output_crosstab_path=None,
    figures_dir=None,
    classifier_params=None,
    normalization_params=None,
    report_params=None,
):
    """Classify a query dataset with a trained model."""
    params = merge_params(DEFAULT_CLASSIFIER_PARAMS, classifier_params)
    normalization_params = merge_params(DEFAULT_NORMALIZATION_PARAMS, normalization_params)
    report_params = merge_params(DEFAULT_REPORT_PARAMS, report_params)
    reporter = FigureReporter(figures_dir, **report_params)

    logger.info("=" * 60)
    logger.info("Classifying Query")
    logger.info("=" * 60)

    if not query_path or not os.path.exists(query_path):
        raise FileNotFoundError(f"Query dataset not found: {query_path}")
    model = ReferenceClassifier.load(model_path)
    query = sc.read_h5ad(query_path)

    prepared = prepare_query(query, target_sum=normalization_params['target_sum'])
    query = classify_query(model, query, prepared)

    prob_columns = [f'prob_{label}' for label in model.classes_]
    reporter.probability_plots(query, 'classifier', prob_columns, groupby='predicted_celltype')

    for path in (output_adata_path, output_predictions_path, output_crosstab_path):
        if path:
            os.makedirs(os.path.dirname(path) or '.', exist_ok=True)

    query.obs[['predicted_celltype', 'prob_max'] + prob_columns].to_csv(output_predictions_path, sep='\t')

    if output_crosstab_path:
        if params['label_key'] in query.obs.columns:
            label_crosstab(query.obs, label_key=params['label_key']).to_csv(output_crosstab_path, sep='\t')
        else:
            logger.info(f"Query has no '{params['label_key']}' labels, no crosstab")
            pd.DataFrame().to_csv(output_crosstab_path, sep='\t')

    logger.info(f"Saving classified data to {output_adata_path}...")
    query.write(output_adata_path)
    return query


# =============================================================================
# Snakemake Integration
# =============================================================================

def run_from_snakemake():
    """Run classifier training or prediction from Snakemake rule."""
    config = snakemake.params.config

    log_file = snakemake.log[0] if snakemake.log else None
    if log_file:
        os.makedirs(os.path.dirname(log_file), exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        logging.getLogger().addHandler(file_handler)

    if snakemake.params.mode == 'train':
        run_training_pipeline(
            reference_path=snakemake.input.reference,
            output_model_path=snakemake.output.model,
            output_features_path=snakemake.output.features,
            output_cv_path=snakemake.output.cv,
            figures_dir=snakemake.params.figures_dir,
            classifier_params=config.get('classifier'),
            normalization_params=config.get('normalization'),
            random_seed=config.get('random_seed', 0),
            report_params=config.get('report'),
        )
    else:
        run_prediction_pipeline(
            query_path=snakemake.input.query,
            model_path=snakemake.input.model,
            output_adata_path=snakemake.output.adata,
            output_predictions_path=snakemake.output.predictions,
            output_crosstab_path=snakemake.output.crosstab,
            figures_dir=snakemake.params.figures_dir,
            classifier_params=config.get('classifier'),
            normalization_params=config.get('normalization'),
            report_params=config.get('report'),
        )


def main():
    """Main function for standalone CLI usage."""
    parser = argparse.ArgumentParser(description='Reference-based cell type classification')
    parser.add_argument('--mode', choices=['train', 'predict'], required=True)
    parser.add_argument('--reference', help='Labelled reference (.h5ad), for training')
    parser.add_argument('--query', help='Query dataset (.h5ad), for prediction')
    parser.add_argument('--model', help='Trained model (.pkl); default <output-dir>/classifier/model.pkl')
    parser.add_argument('--output-dir', required=True, help='Output directory')
    parser.add_argument('--label-key', default=DEFAULT_CLASSIFIER_PARAMS['label_key'])
    parser.add_argument('--seed', type=int, default=0)

    args = parser.parse_args()

    out = os.path.join(args.output_dir, 'classifier')
    model_path = args.model or os.path.join(out, 'model.pkl')
    figures_dir = os.path.join(args.output_dir, 'figures')
    params = {'label_key': args.label_key}

    try:
        if args.mode == 'train':
            run_training_pipeline(
                reference_path=args.reference,
                output_model_path=model_path,
                output_features_path=os.path.join(out, 'feature_space.tsv'),
                output_cv_path=os.path.join(out, 'cross_validation.tsv'),
                figures_dir=figures_dir,
                classifier_params=params,
                random_seed=args.seed,
            )
        else:
            run_prediction_pipeline(
                query_path=args.query,
                model_path=model_path,
                output_adata_path=os.path.join(out, 'adata_classified.h5ad'),
                output_predictions_path=os.path.join(out, 'predictions.tsv'),
                output_crosstab_path=os.path.join(out, 'label_crosstab.tsv'),
                figures_dir=figures_dir,
                classifier_params=params,
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
