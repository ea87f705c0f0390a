"""Tests for feature selection, integration methods, mixing and clustering."""

import numpy as np
import pandas as pd
import pytest
import harmonypy
from anndata import AnnData

from scstages.errors import ConfigError, DimensionMismatchError
from scstages.integration import (
    INTEGRATION_METHODS,
    HarmonyIntegration,
    JointPCAIntegration,
    build_base_embedding,
    cluster_key,
    embedding_key,
    get_integration_method,
    integrate,
    mixing_metric,
    normalize_partition,
    resolution_transitions,
    run_integration,
    select_integration_features,
)
from scstages.quality_control import split_by_sample


def _ranked_partition(ranks):
    genes = list(ranks)
    return AnnData(
        X=np.zeros((3, len(genes)), dtype=np.float32),
        var=pd.DataFrame({'hvg_rank': [ranks[g] for g in genes]}, index=genes),
    )


class TestRegistry:

    def test_all_methods_registered(self):
        assert set(INTEGRATION_METHODS) == {'cca', 'harmony', 'rpca', 'joint_pca'}

    def test_unknown_method_raises(self):
        with pytest.raises(ConfigError, match='bogus'):
            get_integration_method('bogus')

    def test_joint_pca_is_identity_on_base_embedding(self):
        adata = AnnData(X=np.zeros((4, 2), dtype=np.float32))
        adata.obs['sample_id'] = ['a', 'a', 'b', 'b']
        adata.obsm['X_pca'] = np.arange(12, dtype=float).reshape(4, 3)

        embedding = JointPCAIntegration()(adata, n_components=2)
        np.testing.assert_array_equal(embedding, adata.obsm['X_pca'][:, :2])

    def test_key_names(self):
        assert embedding_key('harmony') == 'X_integrated_harmony'
        assert cluster_key('harmony', 0.4) == 'leiden_harmony_res0.4'


class TestFeatureSelection:

    def test_ranked_by_partition_count_then_median_rank(self):
        a = _ranked_partition({'g0': 1, 'g1': 2, 'g2': np.nan, 'g3': 3, 'g4': np.nan, 'g5': 4})
        b = _ranked_partition({'g0': 2, 'g1': np.nan, 'g2': 1, 'g3': 3, 'g4': np.nan})

        features = select_integration_features({'a': a, 'b': b}, n_features=3)

        assert features == ['g0', 'g3', 'g2']

    def test_never_variable_and_unshared_genes_excluded(self):
        a = _ranked_partition({'g0': 1, 'g4': np.nan, 'g5': 2})
        b = _ranked_partition({'g0': 1, 'g4': np.nan})

        assert select_integration_features({'a': a, 'b': b}, n_features=10) == ['g0']

    def test_unnormalised_partition_raises(self):
        part = AnnData(X=np.zeros((2, 2), dtype=np.float32))
        with pytest.raises(DimensionMismatchError):
            select_integration_features({'a': part})

    def test_normalize_partition_ranks_hvgs(self, counts_adata):
        part = split_by_sample(counts_adata)['ctrl']
        normalised = normalize_partition(part, {'n_top_genes': 50})

        assert 'counts' in normalised.layers
        ranks = normalised.var['hvg_rank'].dropna()
        assert len(ranks) == int(normalised.var['highly_variable'].sum())
        assert ranks.min() == 1


class TestMixingMetric:

    def test_mixed_batches_score_lower_than_separated(self):
        rng = np.random.default_rng(0)
        n = 200
        batches = np.repeat(['a', 'b'], n // 2)

        mixed = rng.normal(size=(n, 5))
        separated = mixed.copy()
        separated[batches == 'b'] += 100

        mixed_score = np.median(mixing_metric(mixed, batches))
        separated_score = np.median(mixing_metric(separated, batches))

        assert mixed_score < separated_score
        # Own batch: 5th neighbour. Other batch: only after all 99 own-batch cells
        assert separated_score == pytest.approx((5 + 104) / 2)

    def test_unreached_batch_scores_max_k(self):
        rng = np.random.default_rng(1)
        embedding = rng.normal(size=(40, 3))
        embedding[20:] += 100
        batches = np.repeat(['a', 'b'], 20)

        scores = mixing_metric(embedding, batches, k=5, max_k=10)

        np.testing.assert_allclose(scores, (5 + 10) / 2)

    def test_label_count_mismatch_raises(self):
        with pytest.raises(DimensionMismatchError):
            mixing_metric(np.zeros((10, 2)), ['a'] * 9)


def test_resolution_transitions():
    obs = pd.DataFrame({
        'low': ['0', '0', '1', '1'],
        'high': ['0', '1', '2', '2'],
    })

    transitions = resolution_transitions(obs, ['low', 'high'])

    assert transitions['n_cells'].sum() == 4
    row = transitions[(transitions['from_cluster'] == '1') & (transitions['to_cluster'] == '2')]
    assert row['n_cells'].item() == 2
    assert row['fraction'].item() == pytest.approx(1.0)
    split = transitions[transitions['from_cluster'] == '0']
    assert split['fraction'].tolist() == [0.5, 0.5]


def test_resolution_transitions_single_column():
    obs = pd.DataFrame({'only': ['0', '1']})
    assert resolution_transitions(obs, ['only']).empty


def test_selected_method_must_be_configured(counts_adata):
    with pytest.raises(ConfigError):
        integrate(split_by_sample(counts_adata), {'methods': ['joint_pca'], 'selected_method': 'harmony'})


@pytest.mark.slow
def test_integrate_joint_pca(counts_adata):
    params = {
        'methods': ['joint_pca'],
        'selected_method': 'joint_pca',
        'n_top_genes': 50,
        'n_features': 50,
        'n_pcs': 10,
        'n_neighbors': 10,
        'resolutions': [0.2, 0.5],
        'default_resolution': 0.5,
    }

    adata = integrate(split_by_sample(counts_adata), params, seed=0)

    assert adata.n_obs == counts_adata.n_obs
    assert embedding_key('joint_pca') in adata.obsm
    assert 'X_umap' in adata.obsm
    assert 'counts' in adata.layers
    assert 'mixing_joint_pca' in adata.obs.columns
    assert (adata.obs['cluster'] == adata.obs[cluster_key('joint_pca', 0.5)]).all()
    info = adata.uns['integration']
    assert info['selected_method'] == 'joint_pca'
    assert list(info['cluster_columns']) == [cluster_key('joint_pca', r) for r in (0.2, 0.5)]


@pytest.fixture
def base_adata(counts_adata):
    """Both samples normalised and merged, with a 10-component shared PCA."""
    normalised = {
        sample_id: normalize_partition(part, {'n_top_genes': 50})
        for sample_id, part in split_by_sample(counts_adata).items()
    }
    features = select_integration_features(normalised, n_features=50)
    return build_base_embedding(normalised, features, n_pcs=10, seed=0)


@pytest.mark.parametrize('method_name', sorted(INTEGRATION_METHODS))
def test_every_method_embeds_every_cell(base_adata, method_name):
    key = run_integration(base_adata, method_name, batch_key='sample_id', n_components=10, seed=0)

    assert key == embedding_key(method_name)
    embedding = base_adata.obsm[key]
    assert embedding.shape[0] == base_adata.n_obs
    assert 0 < embedding.shape[1] <= 10
    assert np.isfinite(embedding).all()


class _HarmonyResult:
    def __init__(self, Z_corr):
        self.Z_corr = Z_corr


@pytest.mark.parametrize('transposed', [True, False])
def test_harmony_accepts_either_orientation(monkeypatch, transposed):
    adata = AnnData(X=np.zeros((12, 2), dtype=np.float32))
    adata.obs['sample_id'] = np.repeat(['a', 'b'], 6)
    adata.obsm['X_pca'] = np.random.default_rng(0).normal(size=(12, 4))

    def run_harmony(data_mat, meta_data, vars_use, random_state=0):
        assert data_mat.shape == (12, 4)
        assert vars_use == 'sample_id'
        corrected = data_mat + 1.0
        return _HarmonyResult(corrected.T if transposed else corrected)

    monkeypatch.setattr(harmonypy, 'run_harmony', run_harmony)

    embedding = HarmonyIntegration()(adata, n_components=4)

    np.testing.assert_allclose(embedding, adata.obsm['X_pca'] + 1.0)


def test_integrate_with_harmony(counts_adata):
    params = {
        'methods': ['harmony'],
        'selected_method': 'harmony',
        'n_top_genes': 50,
        'n_features': 50,
        'n_pcs': 10,
        'n_neighbors': 10,
        'resolutions': [0.5],
        'default_resolution': 0.5,
    }

    adata = integrate(split_by_sample(counts_adata), params, seed=0)

    assert adata.obsm[embedding_key('harmony')].shape[0] == counts_adata.n_obs
    assert 'mixing_harmony' in adata.obs.columns
    assert 'cluster' in adata.obs.columns


def test_integer_resolution_names_same_column():
    assert cluster_key('harmony', 1) == cluster_key('harmony', 1.0) == 'leiden_harmony_res1.0'


@pytest.mark.slow
def test_integrate_integer_default_resolution(counts_adata):
    params = {
        'methods': ['joint_pca'],
        'selected_method': 'joint_pca',
        'n_top_genes': 50,
        'n_features': 50,
        'n_pcs': 10,
        'n_neighbors': 10,
        'resolutions': [0.5, 1.0],
        'default_resolution': 1,
    }

    adata = integrate(split_by_sample(counts_adata), params, seed=0)

    assert (adata.obs['cluster'] == adata.obs['leiden_joint_pca_res1.0']).all()
    assert adata.uns['integration']['default_resolution'] == 1.0
