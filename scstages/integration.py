"""
integration.py
==============

Stage 3: per-sample normalisation and feature selection, batch integration
with one or more named methods, and clustering / projection on the selected
embedding.

Integration methods are strategies sharing one contract::

    method(adata, base_key, batch_key, n_components, seed) -> ndarray

They are looked up by name in ``INTEGRATION_METHODS``:

    cca        mutual-nearest-neighbour anchors in a shared reduced space (Scanorama)
    harmony    iterative soft-clustering correction of the PCA (harmonypy)
    rpca       ComBat-corrected expression projected back onto PCA
    joint_pca  joint PCA of all partitions, no correction (baseline)

Each result is stored in ``obsm['X_integrated_<name>']``. No method is picked
automatically: the mixing metric is reported for every method and the user
chooses ``selected_method`` in the configuration.
"""

import logging

import numpy as np
import pandas as pd
import scanpy as sc
import harmonypy
import anndata as ad
import scanorama
from sklearn.neighbors import NearestNeighbors

from scstages.config import DEFAULT_INTEGRATION_PARAMS, DEFAULT_RANDOM_SEED
from scstages.errors import ConfigError, DimensionMismatchError

logger = logging.getLogger(__name__)


# =============================================================================
# Normalisation and feature selection
# =============================================================================

def normalize_partition(adata, params=None):
    """
    Normalise one sample partition and flag its highly variable genes.

    Raw counts are kept in ``layers['counts']``. ``var['hvg_rank']`` holds
    the 1-based variability rank of each HVG (NaN for the others).

    Parameters
    ----------
    adata : AnnData
        One QC-passed sample partition (raw counts)
    params : dict, optional
        Integration parameters

    Returns
    -------
    AnnData
        Normalised copy
    """
    params = {**DEFAULT_INTEGRATION_PARAMS, **(params or {})}
    adata = adata.copy()
    adata.layers['counts'] = adata.X.copy()
    n_top_genes = min(params['n_top_genes'], adata.n_vars)

    if params['normalization'] == 'pearson_residuals':
        sc.experimental.pp.highly_variable_genes(
            adata, flavor='pearson_residuals', n_top_genes=n_top_genes
        )
        sc.experimental.pp.normalize_pearson_residuals(adata)
        score = adata.var['residual_variances']
    else:
        sc.pp.normalize_total(adata, target_sum=params['target_sum'])
        sc.pp.log1p(adata)
        sc.pp.highly_variable_genes(adata, n_top_genes=n_top_genes, flavor='seurat')
        score = adata.var['dispersions_norm']

    rank = score.rank(ascending=False, method='first')
    adata.var['hvg_rank'] = rank.where(adata.var['highly_variable'])
    return adata


def select_integration_features(partitions, n_features=2000):
    """
    Choose the genes shared by all partitions for integration.

    Genes are ranked by the number of partitions in which they are highly
    variable, then by their median HVG rank, then by name.

    Parameters
    ----------
    partitions : dict
        ``{sample_id: AnnData}`` normalised with ``normalize_partition``
    n_features : int
        Number of genes to return

    Returns
    -------
    list
        Gene names, best first
    """
    common = None
    ranks = []
    for sample_id, part in partitions.items():
        if 'hvg_rank' not in part.var.columns:
            raise DimensionMismatchError(f"Partition {sample_id} has not been normalised")
        genes = set(part.var_names)
        common = genes if common is None else common & genes
        ranks.append(part.var['hvg_rank'].rename(sample_id))

    table = pd.concat(ranks, axis=1)
    table = table.loc[table.index.isin(common)]

    stats = pd.DataFrame({
        'n_partitions': table.notna().sum(axis=1),
        'median_rank': table.median(axis=1, skipna=True),
    })
    stats = stats[stats['n_partitions'] > 0].sort_index()
    stats = stats.sort_values(['n_partitions', 'median_rank'], ascending=[False, True], kind='mergesort')

    features = stats.index[:n_features].tolist()
    logger.info(f"  Selected {len(features)} integration features "
                f"({int((stats['n_partitions'] == len(partitions)).sum())} variable in every sample)")
    return features


def build_base_embedding(partitions, features, n_pcs=30, seed=DEFAULT_RANDOM_SEED):
    """
    Merge normalised partitions and compute the shared PCA starting embedding.

    Returns
    -------
    AnnData
        All cells, normalised expression in X, counts in ``layers['counts']``,
        PCA of the scaled integration features in ``obsm['X_pca']``
    """
    adata = ad.concat(list(partitions.values()), join='outer', merge='same')
    for col in ('sample_id', 'group'):
        if col in adata.obs.columns:
            adata.obs[col] = adata.obs[col].astype(str).astype('category')
    adata.var['integration_feature'] = adata.var_names.isin(features)

    scaled = adata[:, features].copy()
    sc.pp.scale(scaled, max_value=10)
    n_pcs = min(n_pcs, scaled.n_vars - 1, scaled.n_obs - 1)
    logger.info(f"  Running PCA ({n_pcs} components)...")
    sc.tl.pca(scaled, n_comps=n_pcs, random_state=seed)

    adata.obsm['X_pca'] = scaled.obsm['X_pca']
    adata.uns['pca'] = scaled.uns['pca']
    return adata


# =============================================================================
# Integration methods
# =============================================================================

class IntegrationMethod:
    """Base class: turn the shared PCA into a batch-corrected embedding."""

    name = None

    def __call__(self, adata, base_key='X_pca', batch_key='sample_id',
                 n_components=30, seed=DEFAULT_RANDOM_SEED):
        raise NotImplementedError

    @staticmethod
    def _features(adata):
        if 'integration_feature' in adata.var.columns:
            return adata.var_names[adata.var['integration_feature'].to_numpy()]
        return adata.var_names


class JointPCAIntegration(IntegrationMethod):
    name = 'joint_pca'

    def __call__(self, adata, base_key='X_pca', batch_key='sample_id',
                 n_components=30, seed=DEFAULT_RANDOM_SEED):
        return np.asarray(adata.obsm[base_key][:, :n_components]).copy()


class HarmonyIntegration(IntegrationMethod):
    name = 'harmony'

    def __call__(self, adata, base_key='X_pca', batch_key='sample_id',
                 n_components=30, seed=DEFAULT_RANDOM_SEED):
        embedding = np.asarray(adata.obsm[base_key][:, :n_components], dtype=float)
        meta = adata.obs[[batch_key]].astype(str)
        harmony = harmonypy.run_harmony(embedding, meta, batch_key, random_state=seed)

        # harmonypy < 2 returns components x cells, 2.x cells x components
        corrected = np.asarray(harmony.Z_corr)
        if corrected.shape[0] != adata.n_obs and corrected.shape[1] == adata.n_obs:
            corrected = corrected.T
        if corrected.shape[0] != adata.n_obs:
            raise DimensionMismatchError(
                f"harmony returned shape {corrected.shape} for {adata.n_obs} cells"
            )
        return corrected


class CCAIntegration(IntegrationMethod):
    name = 'cca'

    def __call__(self, adata, base_key='X_pca', batch_key='sample_id',
                 n_components=30, seed=DEFAULT_RANDOM_SEED):
        features = self._features(adata)
        batches = adata.obs[batch_key].astype(str).to_numpy()
        order = pd.unique(batches)

        per_batch = [adata[batches == b, features].copy() for b in order]
        dimred = min(n_components, len(features) - 1, min(a.n_obs for a in per_batch) - 1)
        scanorama.integrate_scanpy(per_batch, dimred=dimred)

        embedding = np.zeros((adata.n_obs, dimred))
        for b, part in zip(order, per_batch):
            embedding[batches == b] = part.obsm['X_scanorama']
        return embedding


class RPCAIntegration(IntegrationMethod):
    name = 'rpca'

    def __call__(self, adata, base_key='X_pca', batch_key='sample_id',
                 n_components=30, seed=DEFAULT_RANDOM_SEED):
        corrected = adata[:, self._features(adata)].copy()
        sc.pp.combat(corrected, key=batch_key)
        sc.pp.scale(corrected, max_value=10)
        n_comps = min(n_components, corrected.n_vars - 1, corrected.n_obs - 1)
        sc.tl.pca(corrected, n_comps=n_comps, random_state=seed)
        return np.asarray(corrected.obsm['X_pca'])


INTEGRATION_METHODS = {
    cls.name: cls
    for cls in (CCAIntegration, HarmonyIntegration, RPCAIntegration, JointPCAIntegration)
}


def get_integration_method(name):
    """Instantiate the integration method registered under ``name``."""
    try:
        return INTEGRATION_METHODS[name]()
    except KeyError:
        raise ConfigError(
            f"Unknown integration method '{name}'; available: {sorted(INTEGRATION_METHODS)}"
        ) from None


def embedding_key(method_name):
    """obsm key holding the embedding produced by ``method_name``."""
    return f"X_integrated_{method_name}"


def run_integration(adata, method_name, batch_key='sample_id', n_components=30,
                    seed=DEFAULT_RANDOM_SEED):
    """Run one named method and store its embedding in obsm; returns the key."""
    method = get_integration_method(method_name)
    logger.info(f"  Integrating with {method_name}...")
    embedding = method(adata, base_key='X_pca', batch_key=batch_key,
                       n_components=n_components, seed=seed)
    if embedding.shape[0] != adata.n_obs:
        raise DimensionMismatchError(
            f"{method_name} returned {embedding.shape[0]} rows for {adata.n_obs} cells"
        )
    key = embedding_key(method_name)
    adata.obsm[key] = embedding
    return key


# =============================================================================
# Mixing metric
# =============================================================================

def mixing_metric(embedding, batches, k=5, max_k=300):
    """
    Per-cell batch mixing score (lower means better mixing).

    For each cell and each batch, find the rank of the k-th nearest neighbour
    belonging to that batch among the cell's ``max_k`` nearest neighbours
    (``max_k`` if there are fewer than k such neighbours), then take the
    median over batches.

    Parameters
    ----------
    embedding : array-like
        Cells x components
    batches : array-like
        Batch label per cell
    k : int
        Neighbour rank looked up per batch
    max_k : int
        Neighbourhood size; also the score of a batch never reached

    Returns
    -------
    np.ndarray
        One score per cell
    """
    embedding = np.asarray(embedding)
    codes, labels = pd.factorize(pd.Series(batches).astype(str))
    n_cells = embedding.shape[0]
    if len(codes) != n_cells:
        raise DimensionMismatchError(
            f"{len(codes)} batch labels for an embedding of {n_cells} cells"
        )

    n_neighbors = min(max_k, n_cells - 1)
    nn = NearestNeighbors(n_neighbors=n_neighbors).fit(embedding)
    neighbors = nn.kneighbors(return_distance=False)
    neighbor_batches = codes[neighbors]

    per_batch = np.empty((n_cells, len(labels)))
    for j in range(len(labels)):
        reached = np.cumsum(neighbor_batches == j, axis=1) >= k
        per_batch[:, j] = np.where(reached.any(axis=1), reached.argmax(axis=1) + 1, max_k)

    return np.median(per_batch, axis=1)


def summarize_mixing(adata, methods, batch_key='sample_id', k=5, max_k=300):
    """
    Compute the mixing metric for every method's embedding.

    Per-cell scores go to ``obs['mixing_<method>']``.

    Returns
    -------
    pd.DataFrame
        One row per method with mean and median score, best mixing first
    """
    rows = []
    for method_name in methods:
        scores = mixing_metric(adata.obsm[embedding_key(method_name)],
                               adata.obs[batch_key].to_numpy(), k=k, max_k=max_k)
        adata.obs[f'mixing_{method_name}'] = scores
        rows.append({'method': method_name, 'mean': float(np.mean(scores)),
                     'median': float(np.median(scores))})
        logger.info(f"  {method_name}: median mixing metric {np.median(scores):.1f}")
    return pd.DataFrame(rows).set_index('method').sort_values('median')


# =============================================================================
# Clustering and projection
# =============================================================================

def cluster_key(method_name, resolution):
    """
    obs column of the Leiden clustering of one method at one resolution.

    The resolution is formatted as a float, so ``1`` and ``1.0`` name the
    same column (``leiden_<method>_res1.0``).
    """
    return f"leiden_{method_name}_res{float(resolution)}"


def project_embedding(adata, key, method_name, n_neighbors=20, seed=DEFAULT_RANDOM_SEED):
    """Neighbour graph and UMAP on one embedding; UMAP goes to ``obsm['X_umap_<method>']``."""
    neighbors_key = f"neighbors_{method_name}"
    sc.pp.neighbors(adata, use_rep=key, n_neighbors=n_neighbors,
                    key_added=neighbors_key, random_state=seed)
    sc.tl.umap(adata, neighbors_key=neighbors_key, random_state=seed)
    adata.obsm[f"X_umap_{method_name}"] = adata.obsm['X_umap'].copy()
    return neighbors_key


def cluster_embedding(adata, key, method_name, resolutions, n_neighbors=20,
                      seed=DEFAULT_RANDOM_SEED):
    """
    Leiden clustering at several resolutions on one embedding.

    Works the same whatever method produced ``obsm[key]``.

    Returns
    -------
    list
        The obs columns written, in resolution order
    """
    neighbors_key = f"neighbors_{method_name}"
    if neighbors_key not in adata.uns:
        project_embedding(adata, key, method_name, n_neighbors=n_neighbors, seed=seed)

    columns = []
    for resolution in sorted(resolutions):
        column = cluster_key(method_name, resolution)
        sc.tl.leiden(
            adata,
            resolution=resolution,
            neighbors_key=neighbors_key,
            key_added=column,
            random_state=seed,
            flavor='igraph',
            n_iterations=2,
            directed=False,
        )
        logger.info(f"  Resolution {resolution}: {adata.obs[column].nunique()} clusters")
        columns.append(column)

    # Leave the selected method's projection in the default slot for plotting
    adata.obsm['X_umap'] = adata.obsm[f"X_umap_{method_name}"].copy()
    return columns


def resolution_transitions(obs, columns):
    """
    How cells move between clusters of consecutive resolutions.

    Returns
    -------
    pd.DataFrame
        Columns: from_resolution, from_cluster, to_resolution, to_cluster,
        n_cells, fraction (of the source cluster)
    """
    frames = []
    for source, target in zip(columns[:-1], columns[1:]):
        counts = pd.crosstab(obs[source], obs[target])
        long = counts.stack().rename('n_cells').reset_index()
        long.columns = ['from_cluster', 'to_cluster', 'n_cells']
        long = long[long['n_cells'] > 0].copy()
        long['fraction'] = long['n_cells'] / long.groupby('from_cluster')['n_cells'].transform('sum')
        long.insert(0, 'from_resolution', source)
        long.insert(2, 'to_resolution', target)
        frames.append(long)

    if not frames:
        return pd.DataFrame(columns=['from_resolution', 'from_cluster', 'to_resolution',
                                     'to_cluster', 'n_cells', 'fraction'])
    return pd.concat(frames, ignore_index=True)


# =============================================================================
# Stage
# =============================================================================

def integrate(partitions, params=None, seed=DEFAULT_RANDOM_SEED):
    """
    Stage function: normalise, integrate, cluster.

    Parameters
    ----------
    partitions : dict
        ``{sample_id: AnnData}`` from the QC stage
    params : dict, optional
        Integration parameters (see ``DEFAULT_INTEGRATION_PARAMS``)
    seed : int
        Random seed for PCA, integration, UMAP and Leiden

    Returns
    -------
    AnnData
        All cells with every method's embedding, per-method UMAPs, clusters
        of the selected method and ``obs['cluster']`` at the default
        resolution
    """
    params = {**DEFAULT_INTEGRATION_PARAMS, **(params or {})}
    methods = list(params['methods'])
    selected = params['selected_method']
    if selected not in methods:
        raise ConfigError(f"selected_method '{selected}' is not one of {methods}")
    for name in methods:
        get_integration_method(name)
    resolutions = [float(r) for r in params['resolutions']]
    default_resolution = float(params['default_resolution'])
    if default_resolution not in resolutions:
        raise ConfigError(f"default_resolution {default_resolution} is not one of {resolutions}")
    if len(partitions) < 2:
        logger.warning("Only one sample partition; integration methods will have nothing to correct")

    logger.info("\n[Step 1/4] Normalising partitions...")
    normalised = {}
    for sample_id, part in partitions.items():
        normalised[sample_id] = normalize_partition(part, params)
        logger.info(f"  {sample_id}: {int(normalised[sample_id].var['highly_variable'].sum())} HVGs")

    logger.info("\n[Step 2/4] Building shared PCA...")
    features = select_integration_features(normalised, n_features=params['n_features'])
    adata = build_base_embedding(normalised, features, n_pcs=params['n_pcs'], seed=seed)
    n_components = adata.obsm['X_pca'].shape[1]

    logger.info("\n[Step 3/4] Running integration methods...")
    for name in methods:
        run_integration(adata, name, batch_key=params['batch_key'],
                        n_components=n_components, seed=seed)
    mixing = summarize_mixing(adata, methods, batch_key=params['batch_key'],
                              k=params['mixing_k'], max_k=params['mixing_max_k'])
    for name in methods:
        if name != selected:
            project_embedding(adata, embedding_key(name), name,
                              n_neighbors=params['n_neighbors'], seed=seed)

    logger.info(f"\n[Step 4/4] Clustering the {selected} embedding...")
    columns = cluster_embedding(adata, embedding_key(selected), selected,
                                resolutions, n_neighbors=params['n_neighbors'],
                                seed=seed)
    default = cluster_key(selected, default_resolution)
    adata.obs['cluster'] = adata.obs[default].copy()

    adata.uns['integration'] = {
        'methods': methods,
        'selected_method': selected,
        'normalization': params['normalization'],
        'target_sum': params['target_sum'],
        'n_features': len(features),
        'cluster_columns': columns,
        'default_resolution': default_resolution,
        'mixing_median': {m: float(v) for m, v in mixing['median'].items()},
        'mixing_mean': {m: float(v) for m, v in mixing['mean'].items()},
    }
    logger.info(f"Integrated {adata.n_obs} cells; {adata.obs['cluster'].nunique()} clusters "
                f"at resolution {default_resolution}")
    return adata
