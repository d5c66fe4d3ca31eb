#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
parameters.py
=============

Default analysis parameters for the ClusterAtlas pipeline.

Every tunable value of the analysis lives here as a ``DEFAULT_*_PARAMS``
dictionary. The QC bounds, doublet grids, resolutions and component counts
are the ones used in the reference run and were chosen by inspecting the QC
and clustering plots, so they are starting points for a new dataset, not
derived constants. The marker table of ``DEFAULT_ANNOTATION_PARAMS`` is a
general panel of major cell compartments for label suggestions; replace it
with the markers of the tissue under study.

``create-config`` writes these dictionaries into ``config.yaml``; every stage
merges its config section over the matching defaults with
``{**DEFAULT, **section}``.
"""

import copy

CONFIG_VERSION = 1

DEFAULT_QC_PARAMS = {
    'min_counts': 7000,       # Strict lower bound on total UMIs per cell
    'max_counts': 70000,
    'min_genes': 2500,        # Strict lower bound on detected genes per cell
    'max_genes': 10000,
    'max_mito_pct': 10,
    'max_ribo_pct': 45,
    'mito_prefix': ['MT-', 'mt-'],
    'ribo_prefix': ['RPS', 'RPL', 'Rps', 'Rpl'],
}

DEFAULT_DOUBLET_PARAMS = {
    'enabled': True,
    'n_pcs': 10,
    'n_top_genes': 2000,
    'resolution': 0.3,
    'pN': 0.25,               # Artificial doublet proportion of the final call
    'pN_grid': [round(0.05 * i, 2) for i in range(1, 7)],
    'pK_grid': [0.0005, 0.001, 0.005] + [round(0.01 * i, 2) for i in range(1, 31)],
    'max_sweep_cells': 10000,
    'doublet_rate': None,     # None: expected doublets = optimal pK x cells
    'min_cells': 100,
}

DEFAULT_NORMALIZATION_PARAMS = {
    'n_top_genes': 3000,
    'theta': 100,
    'regress_out': ['pct_counts_mt'],
    'target_sum': 1e4,
}

DEFAULT_INTEGRATION_PARAMS = {
    'n_features': 3000,
    'knn': 20,
    'sigma': 15,
    'alpha': 0.10,
    'dimred': 100,
    'batch_size': 5000,
}

DEFAULT_CLUSTERING_PARAMS = {
    'n_pcs': 50,
    'n_neighbors': 30,
    'resolution': 0.15,
}

DEFAULT_ANNOTATION_PARAMS = {
    'cluster_key': 'leiden',
    'key_added': 'celltype',
    'fallback': 'Unassigned',
    'strict': False,
    'cluster_labels': {},
    'marker_genes': {
        'T cell': ['CD3D', 'CD3E', 'IL7R'],
        'NK cell': ['NKG7', 'GNLY'],
        'B cell': ['MS4A1', 'CD79A'],
        'Myeloid': ['CD14', 'LYZ', 'CD68'],
        'Endothelial': ['PECAM1', 'VWF'],
        'Fibroblast': ['COL1A1', 'DCN', 'LUM'],
        'Epithelial': ['EPCAM', 'KRT18', 'KRT8'],
        'Smooth muscle': ['ACTA2', 'TAGLN'],
        'Cycling': ['MKI67', 'TOP2A'],
    },
}

DEFAULT_MARKER_PARAMS = {
    'groupby': 'leiden',
    'method': 'wilcoxon',
    'n_top': 50,
}

DEFAULT_CLASSIFIER_PARAMS = {
    'enabled': False,
    'reference': None,
    'query': None,            # None: classify the pipeline's singlet dataset
    'label_key': 'celltype',
    'n_top_genes': 2000,
    'n_pcs': 50,
    'resolution': 0.3,
    'alpha': 0.05,
    'C': 1.0,
    'gamma': 'scale',
    'cv_folds': 5,
}

DEFAULT_REPORT_PARAMS = {
    'dpi': 150,
    'formats': ['png'],
}

# Section name -> defaults, in pipeline order
CONFIG_SECTIONS = {
    'qc': DEFAULT_QC_PARAMS,
    'doublets': DEFAULT_DOUBLET_PARAMS,
    'normalization': DEFAULT_NORMALIZATION_PARAMS,
    'integration': DEFAULT_INTEGRATION_PARAMS,
    'clustering': DEFAULT_CLUSTERING_PARAMS,
    'annotation': DEFAULT_ANNOTATION_PARAMS,
    'markers': DEFAULT_MARKER_PARAMS,
    'classifier': DEFAULT_CLASSIFIER_PARAMS,
    'report': DEFAULT_REPORT_PARAMS,
}


def merge_params(defaults, params):
    """Overlay user parameters on a copy of the defaults."""
    return {**copy.deepcopy(defaults), **(params or {})}


def default_config():
    """Return a complete configuration built from the defaults."""
    config = {
        'config_version': CONFIG_VERSION,
        'input': None,
        'output_dir': 'results',
        'sample_key': 'sample_id',
        'random_seed': 0,
    }
    for section, defaults in CONFIG_SECTIONS.items():
        config[section] = copy.deepcopy(defaults)
    return config


def complete_config(config):
    """Fill every missing section and key of ``config`` from the defaults."""
    full = default_config()
    for key, value in (config or {}).items():
        if key in CONFIG_SECTIONS:
            full[key] = merge_params(CONFIG_SECTIONS[key], value)
        else:
            full[key] = value
    return full


def _check_range(errors, params, low, high):
    lower = params.get(low)
    upper = params.get(high)
    if lower is not None and upper is not None and lower >= upper:
        errors.append(f"{low} ({lower}) must be less than {high} ({upper})")


def _check_pct(errors, params, key):
    value = params.get(key)
    if value is not None and not 0 <= value <= 100:
        errors.append(f"{key} must be between 0 and 100 (got {value})")


def validate_qc_params(params):
    """Return the list of problems with a set of QC thresholds."""
    errors = []
    _check_range(errors, params, 'min_counts', 'max_counts')
    _check_range(errors, params, 'min_genes', 'max_genes')
    _check_pct(errors, params, 'max_mito_pct')
    _check_pct(errors, params, 'max_ribo_pct')
    return errors


def validate_config(config):
    """
    Validate a complete configuration.

    Raises
    ------
    ValueError
        Listing every problem found.
    """
    errors = []

    version = config.get('config_version', CONFIG_VERSION)
    if version != CONFIG_VERSION:
        errors.append(f"Unsupported config_version {version} (expected {CONFIG_VERSION})")

    errors.extend(validate_qc_params(config.get('qc', {})))

    doublets = config.get('doublets', {})
    rate = doublets.get('doublet_rate')
    if rate is not None and not 0 < rate < 1:
        errors.append("doublet_rate must be between 0 and 1")
    if not 0 < doublets.get('pN', 0.25) < 1:
        errors.append("pN must be between 0 and 1")
    for name in ('pN_grid', 'pK_grid'):
        grid = doublets.get(name) or []
        if not grid:
            errors.append(f"{name} must not be empty")
        elif any(not 0 < value < 1 for value in grid):
            errors.append(f"{name} values must be between 0 and 1")

    for section in ('doublets', 'clustering', 'classifier'):
        resolution = config.get(section, {}).get('resolution')
        if resolution is not None and resolution <= 0:
            errors.append(f"{section}.resolution must be positive")

    labels = config.get('annotation', {}).get('cluster_labels') or {}
    if not isinstance(labels, dict):
        errors.append("annotation.cluster_labels must be a mapping of cluster id to label")

    classifier = config.get('classifier', {})
    if classifier.get('enabled') and not classifier.get('reference'):
        errors.append("classifier.reference is required when the classifier is enabled")

    if errors:
        raise ValueError("Configuration validation failed:\n" + "\n".join(errors))

    return True


def get_filter_summary(params):
    """Return a formatted summary of the QC thresholds."""
    params = merge_params(DEFAULT_QC_PARAMS, params)
    summary = [
        "=== QC Filter Settings ===",
        f"  - Counts per cell: > {params['min_counts']} and < {params['max_counts']}",
        f"  - Genes per cell: > {params['min_genes']} and < {params['max_genes']}",
        f"  - Max mitochondrial %: {params['max_mito_pct']}",
    ]
    if params['max_ribo_pct'] is not None:
        summary.append(f"  - Max ribosomal %: {params['max_ribo_pct']}")
    return "\n".join(summary)
