"""Tests for reference gene harmonisation, label transfer and conserved markers."""

import numpy as np
import pandas as pd
import pytest
from anndata import AnnData

from scstages.annotation import (
    annotate,
    conserved_markers_all_clusters,
    filter_conserved_markers,
    find_conserved_markers,
    harmonize_reference_genes,
    prepare_reference,
    score_gene_sets,
    transfer_labels,
)
from scstages.errors import AmbiguousIdentifierError, ConfigError


@pytest.fixture
def clustered_adata():
    """
    Log-normalised container with two clusters in two groups.

    MARK1 marks cluster 0 in both groups; MARK2 marks it in ctrl only.
    """
    rng = np.random.default_rng(3)
    n = 40
    genes = ['MARK1', 'MARK2'] + [f'GENE{i}' for i in range(30)]
    obs = pd.DataFrame({
        'group': np.repeat(['ctrl', 'stim'], n),
        'cluster': np.tile(np.repeat(['0', '1'], n // 2), 2),
    }, index=[f'cell{i}' for i in range(2 * n)])

    X = np.log1p(rng.poisson(1.0, (2 * n, len(genes)))).astype(np.float32)
    in_cluster = (obs['cluster'] == '0').to_numpy()
    X[:, 0] = np.where(in_cluster, 3.0, 0.0)
    X[:, 1] = np.where(in_cluster & (obs['group'] == 'ctrl').to_numpy(), 3.0, 0.0)

    adata = AnnData(X=X, obs=obs, var=pd.DataFrame(index=genes))
    adata.obs['cluster'] = adata.obs['cluster'].astype('category')
    return adata


def _labelled_atlas(n_per_type=60, seed=0, as_reference=True):
    """Two cell types separated by two blocks of genes."""
    rng = np.random.default_rng(seed)
    symbols = [f'GENE{i}' for i in range(40)]
    counts = rng.poisson(1.0, (2 * n_per_type, len(symbols)))
    counts[:n_per_type, :10] += rng.poisson(8, (n_per_type, 10))
    counts[n_per_type:, 10:20] += rng.poisson(8, (n_per_type, 10))
    obs = pd.DataFrame({'cell_type': np.repeat(['T cell', 'B cell'], n_per_type)},
                       index=[f'c{seed}_{i}' for i in range(2 * n_per_type)])

    if as_reference:
        var = pd.DataFrame({'gene_ids': [f'ENSG{i:05d}' for i in range(len(symbols))],
                            'feature_name': symbols},
                           index=[f'ENSG{i:05d}' for i in range(len(symbols))])
        return AnnData(X=counts.astype(np.float32), obs=obs, var=var)

    X = np.log1p(1e4 * counts / counts.sum(axis=1, keepdims=True)).astype(np.float32)
    return AnnData(X=X, obs=obs, var=pd.DataFrame(index=symbols))


class TestHarmonize:

    def test_ambiguous_symbol_is_dropped(self):
        reference_var = pd.DataFrame({
            'gene_ids': ['1', '2', '1'],
            'feature_name': ['A', 'A', 'B'],
        }, index=['r0', 'r1', 'r2'])

        mapping = harmonize_reference_genes(reference_var, ['A', 'B'])

        assert mapping['symbol'].tolist() == ['B']
        assert mapping['gene_id'].tolist() == ['1']
        assert mapping.index.tolist() == ['r2']

    def test_ambiguous_symbol_raises_when_requested(self):
        reference_var = pd.DataFrame({
            'gene_ids': ['1', '2', '1'],
            'feature_name': ['A', 'A', 'B'],
        }, index=['r0', 'r1', 'r2'])

        with pytest.raises(AmbiguousIdentifierError) as excinfo:
            harmonize_reference_genes(reference_var, ['A', 'B'], on_ambiguous='raise')
        assert excinfo.value.symbols == ['A']

    def test_only_query_symbols_kept(self):
        reference_var = pd.DataFrame({'feature_name': ['A', 'B', 'C']}, index=['x', 'y', 'z'])

        mapping = harmonize_reference_genes(reference_var, ['C', 'A', 'Q'])

        assert sorted(mapping['symbol']) == ['A', 'C']
        # Accession falls back to the var index
        assert mapping.loc['x', 'gene_id'] == 'x'

    def test_repeated_identical_pair_is_not_ambiguous(self):
        reference_var = pd.DataFrame({
            'gene_ids': ['1', '1'],
            'feature_name': ['A', 'A'],
        }, index=['r0', 'r1'])

        mapping = harmonize_reference_genes(reference_var, ['A'])
        assert mapping['symbol'].tolist() == ['A']

    def test_missing_symbol_column_raises(self):
        with pytest.raises(ConfigError):
            harmonize_reference_genes(pd.DataFrame(index=['a']), ['A'], symbol_column='symbol')


class TestConservedMarkers:

    def test_marker_conserved_in_every_group(self, clustered_adata):
        markers = find_conserved_markers(clustered_adata, '0', min_cells=3)

        assert {'ctrl_pct_in', 'ctrl_pct_out', 'stim_pct_in', 'stim_pct_out',
                'max_pval', 'combined_pval'} <= set(markers.columns)
        assert markers.loc['MARK1', 'ctrl_pct_in'] == pytest.approx(1.0)
        assert markers.loc['MARK1', 'stim_pct_out'] == pytest.approx(0.0)
        assert markers['combined_pval'].is_monotonic_increasing

    def test_filter_requires_margin_in_each_group(self, clustered_adata):
        markers = find_conserved_markers(clustered_adata, '0', min_cells=3)

        filtered = filter_conserved_markers(markers, margin=0.5)

        assert 'MARK1' in filtered.index
        assert 'MARK2' not in filtered.index

    def test_filter_on_handmade_table(self):
        markers = pd.DataFrame({
            'a_pct_in': [0.9, 0.9, 0.6],
            'a_pct_out': [0.1, 0.1, 0.0],
            'b_pct_in': [0.8, 0.3, 0.6],
            'b_pct_out': [0.1, 0.1, 0.1],
        }, index=['keep', 'fails_b', 'on_margin'])

        filtered = filter_conserved_markers(markers, margin=0.5)

        assert filtered.index.tolist() == ['keep']

    def test_small_groups_are_skipped(self, clustered_adata):
        markers = find_conserved_markers(clustered_adata, '0', min_cells=50)
        assert markers.empty

    def test_all_clusters(self, clustered_adata):
        markers = conserved_markers_all_clusters(clustered_adata, min_cells=3)
        assert set(markers['cluster']) == {'0', '1'}
        assert 'gene' in markers.columns


@pytest.mark.slow
def test_transfer_labels_recovers_cell_types():
    reference = _labelled_atlas(seed=0, as_reference=True)
    query = _labelled_atlas(seed=1, as_reference=False)

    mapping = harmonize_reference_genes(reference.var, query.var_names)
    prepared = prepare_reference(reference, mapping, 'cell_type', n_pcs=10, n_neighbors=10, seed=0)
    labels = transfer_labels(query, prepared, 'cell_type')

    assert labels.name == 'predicted_cell_type'
    assert labels.index.equals(query.obs_names)
    accuracy = (labels.to_numpy() == query.obs['cell_type'].to_numpy()).mean()
    assert accuracy > 0.9


def test_prepare_reference_requires_label(clustered_adata):
    reference = _labelled_atlas()
    mapping = harmonize_reference_genes(reference.var, ['GENE0', 'GENE1'])
    with pytest.raises(ConfigError):
        prepare_reference(reference, mapping, 'celltype')


def test_score_gene_sets(clustered_adata):
    columns = score_gene_sets(clustered_adata, {'marks': ['MARK1', 'GENE0'], 'absent': ['NOPE']}, seed=0)

    assert columns == ['score_marks']
    scores = clustered_adata.obs['score_marks']
    in_cluster = (clustered_adata.obs['cluster'] == '0').to_numpy()
    assert scores[in_cluster].mean() > scores[~in_cluster].mean()


def test_annotate_without_reference(clustered_adata):
    result = annotate(clustered_adata, {'min_cells_per_group': 3})

    assert result.adata is not clustered_adata
    assert 'MARK1' in set(result.filtered_markers['gene'])
    assert result.adata.uns['annotation']['label_key'] == ''
    assert len(result.adata.uns['conserved_markers']) == len(result.filtered_markers)
    assert not any(c.startswith('predicted_') for c in result.adata.obs.columns)


def test_annotate_requires_cluster_column(clustered_adata):
    with pytest.raises(ConfigError):
        annotate(clustered_adata, {'cluster_key': 'leiden'})
