"""Shared fixtures for scStages tests."""

import gzip
import os

import matplotlib
matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest
from anndata import AnnData
from scipy import io, sparse


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow running")


GENES = (
    ['MT-CO1', 'MT-ND1', 'MT-ATP6']
    + ['RPS3', 'RPL7', 'HBB']
    + [f'GENE{i}' for i in range(194)]
)


def write_mex(directory, counts, genes, barcodes, layout='v3'):
    """
    Write a cells x genes count matrix as a 10x MEX directory.

    ``layout='v3'`` writes gzipped matrix/features/barcodes files,
    ``layout='legacy'`` the uncompressed matrix.mtx/genes.tsv/barcodes.tsv.
    """
    os.makedirs(directory, exist_ok=True)
    matrix = sparse.coo_matrix(np.asarray(counts).T)

    features = pd.DataFrame({
        'id': [f'ENSG{i:011d}' for i in range(len(genes))],
        'symbol': list(genes),
        'type': 'Gene Expression',
    })

    if layout == 'legacy':
        io.mmwrite(os.path.join(directory, 'matrix.mtx'), matrix, field='integer')
        features[['id', 'symbol']].to_csv(os.path.join(directory, 'genes.tsv'),
                                          sep='\t', header=False, index=False)
        pd.Series(barcodes).to_csv(os.path.join(directory, 'barcodes.tsv'),
                                   sep='\t', header=False, index=False)
        return directory

    mtx_path = os.path.join(directory, 'matrix.mtx')
    io.mmwrite(mtx_path, matrix, field='integer')
    with open(mtx_path, 'rb') as src, gzip.open(mtx_path + '.gz', 'wb') as dst:
        dst.write(src.read())
    os.remove(mtx_path)

    features.to_csv(os.path.join(directory, 'features.tsv.gz'), sep='\t',
                    header=False, index=False, compression='gzip')
    pd.Series(barcodes).to_csv(os.path.join(directory, 'barcodes.tsv.gz'), sep='\t',
                               header=False, index=False, compression='gzip')
    return directory


def simulate_counts(n_cells, n_genes=len(GENES), seed=0, shift=0):
    """Negative binomial counts with a low mitochondrial fraction."""
    rng = np.random.default_rng(seed)
    counts = rng.negative_binomial(2, 0.3, (n_cells, n_genes))
    counts[:, :3] = rng.poisson(0.2, (n_cells, 3))
    if shift:
        # Sample-specific expression offset on a block of genes
        counts[:, 10:40] += rng.poisson(shift, (n_cells, 30))
    return counts


@pytest.fixture
def mex_writer():
    return write_mex


@pytest.fixture
def two_sample_dirs(tmp_path):
    """Two MEX directories sharing the same barcode strings."""
    barcodes = [f'AAAC{i:04d}-1' for i in range(60)]
    ctrl = write_mex(str(tmp_path / 'ctrl'), simulate_counts(60, seed=1), GENES, barcodes)
    stim = write_mex(str(tmp_path / 'stim'), simulate_counts(60, seed=2, shift=3), GENES, barcodes)
    return {'ctrl': ctrl, 'stim': stim}


@pytest.fixture
def counts_adata():
    """Merged-looking container: two samples in two groups, raw counts."""
    n_per_sample = 60
    blocks, obs = [], []
    for i, (sample_id, group) in enumerate([('ctrl', 'ctrl'), ('stim', 'stim')]):
        blocks.append(simulate_counts(n_per_sample, seed=10 + i, shift=3 * i))
        obs.append(pd.DataFrame({
            'barcode': [f'BC{j:04d}' for j in range(n_per_sample)],
            'sample_id': sample_id,
            'group': group,
        }, index=[f'{sample_id}_BC{j:04d}' for j in range(n_per_sample)]))

    obs = pd.concat(obs)
    for col in ('sample_id', 'group'):
        obs[col] = obs[col].astype('category')
    X = sparse.csr_matrix(np.vstack(blocks).astype(np.float32))
    return AnnData(X=X, obs=obs, var=pd.DataFrame(index=GENES))


class FakeDoubletDetector:
    """Doublet detector calling a fixed set of cells doublets."""

    def __init__(self, doublets=()):
        self.doublets = set(doublets)
        self.seeds = []

    def __call__(self, adata, seed):
        self.seeds.append(seed)
        predicted = adata.obs_names.isin(self.doublets)
        return pd.DataFrame({
            'doublet_score': np.where(predicted, 0.9, 0.1),
            'predicted_doublet': predicted,
        }, index=adata.obs_names)


@pytest.fixture
def fake_detector():
    return FakeDoubletDetector


@pytest.fixture
def gene_symbols():
    return list(GENES)


@pytest.fixture
def count_simulator():
    return simulate_counts
