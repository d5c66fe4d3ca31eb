'''
Test the default parameters and configuration validation.
'''

import pytest
import yaml

from snakemake_wrapper.scripts.parameters import (
    CONFIG_SECTIONS,
    DEFAULT_DOUBLET_PARAMS,
    DEFAULT_QC_PARAMS,
    complete_config,
    default_config,
    get_filter_summary,
    merge_params,
    validate_config,
    validate_qc_params,
)

# pylint: disable=missing-docstring


def test_reference_run_defaults():
    assert DEFAULT_QC_PARAMS['min_counts'] == 7000
    assert DEFAULT_QC_PARAMS['max_counts'] == 70000
    assert DEFAULT_QC_PARAMS['min_genes'] == 2500
    assert DEFAULT_QC_PARAMS['max_genes'] == 10000
    assert DEFAULT_QC_PARAMS['max_mito_pct'] == 10
    assert DEFAULT_QC_PARAMS['max_ribo_pct'] == 45
    assert DEFAULT_DOUBLET_PARAMS['pN_grid'] == [0.05, 0.1, 0.15, 0.2, 0.25, 0.3]
    assert DEFAULT_DOUBLET_PARAMS['pK_grid'][:4] == [0.0005, 0.001, 0.005, 0.01]
    assert DEFAULT_DOUBLET_PARAMS['pK_grid'][-1] == 0.3
    assert len(DEFAULT_DOUBLET_PARAMS['pK_grid']) == 33


def test_default_config_is_valid_and_serializable():
    config = default_config()

    assert validate_config(config)
    assert set(CONFIG_SECTIONS) <= set(config)
    assert yaml.safe_load(yaml.dump(config)) == config


def test_merge_params_does_not_mutate_defaults():
    merged = merge_params(DEFAULT_DOUBLET_PARAMS, {'n_pcs': 20})
    merged['pK_grid'].append(0.5)

    assert merged['n_pcs'] == 20
    assert DEFAULT_DOUBLET_PARAMS['n_pcs'] == 10
    assert 0.5 not in DEFAULT_DOUBLET_PARAMS['pK_grid']


def test_complete_config_fills_sections():
    config = complete_config({'qc': {'max_mito_pct': 20}, 'input': 'data.h5ad'})

    assert config['qc']['max_mito_pct'] == 20
    assert config['qc']['min_counts'] == 7000
    assert config['clustering']['resolution'] == 0.15
    assert config['input'] == 'data.h5ad'


def test_validate_qc_params():
    assert validate_qc_params(DEFAULT_QC_PARAMS) == []

    errors = validate_qc_params({**DEFAULT_QC_PARAMS, 'min_genes': 20000, 'max_mito_pct': 150})

    assert len(errors) == 2
    assert validate_qc_params({'min_counts': None, 'max_counts': 10}) == []


@pytest.mark.parametrize('section, values, message', [
    ('qc', {'min_counts': 80000}, 'min_counts'),
    ('doublets', {'doublet_rate': 1.5}, 'doublet_rate'),
    ('doublets', {'pK_grid': []}, 'pK_grid'),
    ('clustering', {'resolution': 0}, 'clustering.resolution'),
    ('annotation', {'cluster_labels': ['T cell']}, 'cluster_labels'),
    ('classifier', {'enabled': True}, 'classifier.reference'),
])
def test_validate_config_rejects(section, values, message):
    config = complete_config({section: values})

    with pytest.raises(ValueError, match=message):
        validate_config(config)


def test_validate_config_version():
    with pytest.raises(ValueError, match='config_version'):
        validate_config(complete_config({'config_version': 99}))


def test_get_filter_summary():
    summary = get_filter_summary({'max_ribo_pct': None})

    assert '> 7000 and < 70000' in summary
    assert 'ribosomal' not in summary


def test_marker_panel_is_replaced_not_merged():
    config = complete_config({'annotation': {'marker_genes': {'AT2': ['SFTPC', 'SFTPB', 'LAMP3']}}})

    assert config['annotation']['marker_genes'] == {'AT2': ['SFTPC', 'SFTPB', 'LAMP3']}
    assert config['annotation']['fallback'] == 'Unassigned'
