'''
Test the command line interface.
'''

import os
import subprocess

import pandas as pd
import scanpy as sc
import yaml
from click.testing import CliRunner

from cli.cli import main
from cli.run_config import SNAKEFILE, build_snakemake_command
from conftest import make_counts

# pylint: disable=missing-docstring


def _write_dataset(tmp_path):
    path = str(tmp_path / 'merged.h5ad')
    make_counts(n_per_type=5).write(path)
    return path


def test_create_config_writes_yaml(tmp_path):
    input_path = _write_dataset(tmp_path)
    labels = tmp_path / 'labels.yaml'
    labels.write_text('0: T cell\n1: B cell\n2: Unassigned\n')
    output_dir = tmp_path / 'results'

    result = CliRunner().invoke(main, [
        'create-config',
        '--input', input_path,
        '--output-dir', str(output_dir),
        '--max-mito-pct', '15',
        '--resolution', '0.2',
        '--cluster-labels', str(labels),
        '--seed', '3',
    ])

    assert result.exit_code == 0, result.output
    with open(output_dir / 'config.yaml') as f:
        config = yaml.safe_load(f)
    assert config['config_version'] == 1
    assert config['input'] == os.path.realpath(input_path)
    assert config['qc']['max_mito_pct'] == 15
    assert config['qc']['min_counts'] == 7000
    assert config['clustering']['resolution'] == 0.2
    assert config['annotation']['cluster_labels'] == {'0': 'T cell', '1': 'B cell', '2': 'Unassigned'}
    assert config['random_seed'] == 3
    assert config['classifier']['enabled'] is False


def test_create_config_rejects_bad_bounds(tmp_path):
    input_path = _write_dataset(tmp_path)

    result = CliRunner().invoke(main, [
        'create-config',
        '--input', input_path,
        '--output-dir', str(tmp_path / 'results'),
        '--min-counts', '90000',
    ])

    assert result.exit_code == 1
    assert 'min_counts' in result.output
    assert not (tmp_path / 'results' / 'config.yaml').exists()


def test_create_config_enables_classifier(tmp_path):
    input_path = _write_dataset(tmp_path)

    result = CliRunner().invoke(main, [
        'create-config',
        '--input', input_path,
        '--output-dir', str(tmp_path / 'results'),
        '--reference', input_path,
    ])

    assert result.exit_code == 0, result.output
    with open(tmp_path / 'results' / 'config.yaml') as f:
        config = yaml.safe_load(f)
    assert config['classifier']['enabled'] is True
    assert config['classifier']['reference'] == os.path.realpath(input_path)


def test_build_snakemake_command():
    cmd = build_snakemake_command('config.yaml', cores=4, dry_run=True, extra_args=['--forceall'])

    assert cmd == ['snakemake', '--snakefile', SNAKEFILE, '--configfile', 'config.yaml',
                   '--cores', '4', '--dry-run', '--forceall']
    assert os.path.exists(SNAKEFILE)


def test_run_config_invokes_snakemake(tmp_path, monkeypatch):
    config_path = tmp_path / 'config.yaml'
    config_path.write_text(yaml.dump({'input': 'merged.h5ad', 'output_dir': str(tmp_path)}))
    calls = []

    def fake_run(cmd, check):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0)

    monkeypatch.setattr(subprocess, 'run', fake_run)
    result = CliRunner().invoke(main, ['run-config', str(config_path), '--cores', '2', '-n'])

    assert result.exit_code == 0, result.output
    assert calls[0][:2] == ['snakemake', '--snakefile']
    assert '--dry-run' in calls[0]


def test_run_config_rejects_invalid_config(tmp_path):
    config_path = tmp_path / 'config.yaml'
    config_path.write_text(yaml.dump({'qc': {'max_mito_pct': 200}}))

    result = CliRunner().invoke(main, ['run-config', str(config_path)])

    assert result.exit_code == 1
    assert 'max_mito_pct' in result.output


def test_sample_information_merges_samples(tmp_path):
    rows = []
    for sample in ('s1', 's2'):
        path = str(tmp_path / f'{sample}.h5ad')
        adata = make_counts(n_per_type=4, samples=(sample,))
        del adata.obs['sample_id']
        adata.write(path)
        rows.append({'sample_id': sample, 'path': path, 'donor': f'P{sample}'})
    sheet = tmp_path / 'samples.csv'
    pd.DataFrame(rows).to_csv(sheet, index=False)
    output = tmp_path / 'merged.h5ad'

    result = CliRunner().invoke(main, ['sample-information', '-i', str(sheet), '-o', str(output)])

    assert result.exit_code == 0, result.output
    merged = sc.read_h5ad(str(output))
    assert merged.n_obs == 24
    assert merged.obs['sample_id'].value_counts().to_dict() == {'s1': 12, 's2': 12}
    assert set(merged.obs['donor']) == {'Ps1', 'Ps2'}
    assert merged.obs_names.is_unique


def test_sample_information_rejects_duplicates(tmp_path):
    sheet = tmp_path / 'samples.csv'
    pd.DataFrame({'sample_id': ['s1', 's1'], 'path': ['a.h5', 'b.h5']}).to_csv(sheet, index=False)

    result = CliRunner().invoke(main, ['sample-information', '-i', str(sheet), '-o', str(tmp_path / 'm.h5ad')])

    assert result.exit_code == 1
    assert 'Duplicate' in result.output
