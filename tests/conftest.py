'''
Synthetic datasets shared by the tests.
'''

import numpy as np
import pandas as pd
import pytest
import anndata as ad
from scipy import sparse

# pylint: disable=missing-docstring

CELL_TYPES = ('Tcell', 'Bcell', 'Myeloid')
N_MARKERS = 15


def make_counts(n_per_type=60, n_genes=200, samples=('s1', 's2'), seed=0, shift=0.0):
    '''
    Poisson counts of three cell types in every sample.

    Every type strongly expresses its own block of ``N_MARKERS`` marker genes;
    the first genes are mitochondrial and ribosomal. ``shift`` adds a
    per-sample offset to the background rate (a batch effect).
    '''
    rng = np.random.default_rng(seed)
    gene_names = (
        ['MT-CO1', 'MT-ND1', 'MT-ATP6', 'RPS3', 'RPL7']
        + [f'GENE{i}' for i in range(n_genes - 5)]
    )

    blocks = []
    obs = []
    for s, sample in enumerate(samples):
        for t, celltype in enumerate(CELL_TYPES):
            rates = np.full(n_genes, 1.0 + shift * s)
            rates[:5] = [3.0, 2.0, 2.0, 4.0, 4.0]
            start = 5 + t * N_MARKERS
            rates[start:start + N_MARKERS] = 25.0
            rates = rates * rng.uniform(0.5, 1.5, size=n_genes)
            blocks.append(rng.poisson(rates, size=(n_per_type, n_genes)))
            obs.extend({'sample_id': sample, 'celltype': celltype} for _ in range(n_per_type))

    X = np.vstack(blocks).astype(np.float32)
    obs = pd.DataFrame(obs, index=[f'cell{i}' for i in range(X.shape[0])])
    obs['sample_id'] = obs['sample_id'].astype('category')
    return ad.AnnData(X=sparse.csr_matrix(X), obs=obs, var=pd.DataFrame(index=gene_names))


def marker_genes(n_genes=200):
    names = make_counts(n_per_type=1, n_genes=n_genes, samples=('s1',)).var_names
    return {
        celltype: list(names[5 + t * N_MARKERS:5 + (t + 1) * N_MARKERS])
        for t, celltype in enumerate(CELL_TYPES)
    }


@pytest.fixture
def counts_adata():
    return make_counts()


@pytest.fixture
def toy_adata():
    '''100 cells over 2 samples; cell i has exactly i UMIs, all on one gene.'''
    n_cells = 100
    X = np.zeros((n_cells, 4), dtype=np.float32)
    X[:, 2] = np.arange(n_cells)
    obs = pd.DataFrame(
        {'sample_id': ['A' if i % 2 == 0 else 'B' for i in range(n_cells)]},
        index=[f'cell{i}' for i in range(n_cells)],
    )
    obs['sample_id'] = obs['sample_id'].astype('category')
    return ad.AnnData(X=X, obs=obs, var=pd.DataFrame(index=['MT-CO1', 'RPS3', 'GENE1', 'GENE2']))


@pytest.fixture
def qc_obs():
    rng = np.random.default_rng(1)
    n_cells = 500
    return pd.DataFrame({
        'total_counts': rng.uniform(0, 100000, n_cells),
        'n_genes_by_counts': rng.uniform(0, 12000, n_cells),
        'pct_counts_mt': rng.uniform(0, 30, n_cells),
        'pct_counts_ribo': rng.uniform(0, 60, n_cells),
    }, index=[f'cell{i}' for i in range(n_cells)])
