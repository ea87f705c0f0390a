"""
annotation.py
=============

Stage 4: cell-type label transfer from a reference atlas and discovery of
marker genes conserved across experimental groups.

Label transfer projects the query onto the reference's PCA/UMAP with
``scanpy.tl.ingest`` and assigns every query cell the majority label of its
reference neighbours. No confidence threshold is applied.

Before transfer the reference genes are harmonised to the query's symbols:
reference accessions are mapped to symbols, symbols that map to more than
one accession are dropped, and only symbols present in the query are kept.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse
from scipy.stats import combine_pvalues

from scstages.config import DEFAULT_ANNOTATION_PARAMS, DEFAULT_RANDOM_SEED
from scstages.errors import (
    AmbiguousIdentifierError,
    ConfigError,
    DimensionMismatchError,
)

logger = logging.getLogger(__name__)


@dataclass
class AnnotationResult:
    """Output of the annotation stage."""
    adata: object
    markers: pd.DataFrame
    filtered_markers: pd.DataFrame


def lognormalized(adata):
    """
    Return a container whose X holds log-normalised expression.

    Integration leaves log-normalised data in X unless Pearson residuals
    were requested; in that case X is rebuilt from ``layers['counts']``.
    """
    info = adata.uns.get('integration', {})
    if info.get('normalization', 'log') == 'log':
        return adata
    expr = adata.copy()
    expr.X = expr.layers['counts'].copy()
    sc.pp.normalize_total(expr, target_sum=info.get('target_sum', 1e4))
    sc.pp.log1p(expr)
    return expr


# =============================================================================
# Conserved markers
# =============================================================================

def find_conserved_markers(adata, cluster, cluster_key='cluster', group_key='group',
                           min_cells=3, meta_method='tippett'):
    """
    Marker genes of one cluster that hold in every experimental group.

    For each group, cells of ``cluster`` are tested against the group's
    other cells (Wilcoxon). Genes tested in every group are kept and their
    p-values combined.

    Parameters
    ----------
    adata : AnnData
        Log-normalised expression in X
    cluster : str
        Cluster label to characterise
    cluster_key : str
        obs column with cluster labels
    group_key : str
        obs column with experimental groups
    min_cells : int
        Groups with fewer cells inside or outside the cluster are skipped
    meta_method : str
        ``scipy.stats.combine_pvalues`` method ('tippett' is the minimum-p
        combination)

    Returns
    -------
    pd.DataFrame
        One row per gene, indexed by gene, with ``<group>_pct_in``,
        ``<group>_pct_out``, ``<group>_logfc``, ``<group>_pval`` and
        ``<group>_pval_adj`` per group plus ``max_pval`` and
        ``combined_pval``; sorted by ``combined_pval``
    """
    cluster = str(cluster)
    groups = sorted(adata.obs[group_key].astype(str).unique())
    labels = adata.obs[group_key].astype(str).to_numpy()
    per_group = []
    tested = []

    for group in groups:
        sub = adata[labels == group].copy()
        in_cluster = (sub.obs[cluster_key].astype(str) == cluster).to_numpy()
        n_in, n_out = int(in_cluster.sum()), int((~in_cluster).sum())
        if n_in < min_cells or n_out < min_cells:
            logger.warning(f"  Cluster {cluster}: group {group} has {n_in} cells in / {n_out} out, skipping")
            continue

        sub.obs['_target'] = pd.Categorical(np.where(in_cluster, 'target', 'other'))
        sc.tl.rank_genes_groups(
            sub,
            groupby='_target',
            groups=['target'],
            reference='rest',
            method='wilcoxon',
            pts=True,
            key_added='conserved',
        )
        df = sc.get.rank_genes_groups_df(sub, group='target', key='conserved').set_index('names')
        df = df.rename(columns={
            'pct_nz_group': f'{group}_pct_in',
            'pct_nz_reference': f'{group}_pct_out',
            'logfoldchanges': f'{group}_logfc',
            'pvals': f'{group}_pval',
            'pvals_adj': f'{group}_pval_adj',
        }).drop(columns=['scores'])
        per_group.append(df)
        tested.append(group)

    if not per_group:
        logger.warning(f"  Cluster {cluster}: no group could be tested")
        return pd.DataFrame()

    markers = pd.concat(per_group, axis=1, join='inner')
    pval_cols = [f'{g}_pval' for g in tested]
    markers['max_pval'] = markers[pval_cols].max(axis=1)
    if len(tested) > 1:
        markers['combined_pval'] = [
            combine_pvalues(row, method=meta_method)[1] for row in markers[pval_cols].to_numpy()
        ]
    else:
        markers['combined_pval'] = markers[pval_cols[0]]
    markers.index.name = 'gene'
    return markers.sort_values('combined_pval', kind='mergesort')


def conserved_markers_all_clusters(adata, cluster_key='cluster', group_key='group',
                                   min_cells=3, meta_method='tippett'):
    """Conserved markers for every cluster, stacked with a ``cluster`` column."""
    frames = []
    for cluster in sorted(adata.obs[cluster_key].astype(str).unique(), key=_natural_key):
        logger.info(f"  Finding conserved markers for cluster {cluster}...")
        markers = find_conserved_markers(adata, cluster, cluster_key=cluster_key,
                                         group_key=group_key, min_cells=min_cells,
                                         meta_method=meta_method)
        if markers.empty:
            continue
        markers = markers.reset_index()
        markers.insert(0, 'cluster', cluster)
        frames.append(markers)

    if not frames:
        return pd.DataFrame(columns=['cluster', 'gene'])
    return pd.concat(frames, ignore_index=True)


def filter_conserved_markers(markers, margin=0.5, groups=None):
    """
    Keep markers detected far more often inside the cluster in every group.

    A marker is kept iff ``pct_in - pct_out > margin`` holds for each group
    independently.
    """
    if markers.empty:
        return markers.copy()
    if groups is None:
        groups = [c[:-len('_pct_in')] for c in markers.columns if c.endswith('_pct_in')]

    keep = pd.Series(True, index=markers.index)
    for group in groups:
        # NaN (group not tested for that cluster) compares False
        keep &= (markers[f'{group}_pct_in'] - markers[f'{group}_pct_out']) > margin
    return markers[keep].copy()


def _natural_key(label):
    return (0, int(label), '') if label.isdigit() else (1, 0, label)


# =============================================================================
# Reference harmonisation and label transfer
# =============================================================================

def harmonize_reference_genes(reference_var, query_genes, id_column='gene_ids',
                              symbol_column='feature_name', on_ambiguous='drop'):
    """
    Map reference genes onto query gene symbols.

    Parameters
    ----------
    reference_var : pd.DataFrame
        The reference's var table
    query_genes : iterable
        Gene symbols of the query
    id_column : str
        Column with accession ids (the var index is used if absent)
    symbol_column : str
        Column with gene symbols
    on_ambiguous : str
        'drop' removes symbols that map to several accessions; 'raise'
        raises ``AmbiguousIdentifierError`` instead

    Returns
    -------
    pd.DataFrame
        Indexed by reference var names, columns ``gene_id`` and ``symbol``;
        every symbol appears once
    """
    if symbol_column not in reference_var.columns:
        raise ConfigError(f"Reference var has no '{symbol_column}' column")
    ids = reference_var[id_column] if id_column in reference_var.columns else reference_var.index.to_series()

    mapping = pd.DataFrame({
        'gene_id': ids.astype(str).to_numpy(),
        'symbol': reference_var[symbol_column].to_numpy(),
    }, index=reference_var.index)
    mapping = mapping.dropna(subset=['symbol'])
    mapping['symbol'] = mapping['symbol'].astype(str)
    mapping = mapping.drop_duplicates(subset=['gene_id', 'symbol'])

    multiplicity = mapping.groupby('symbol')['gene_id'].nunique()
    ambiguous = multiplicity.index[multiplicity > 1]
    if len(ambiguous) > 0:
        if on_ambiguous == 'raise':
            raise AmbiguousIdentifierError(ambiguous)
        logger.info(f"  Dropping {len(ambiguous)} ambiguous gene symbols")
        mapping = mapping[~mapping['symbol'].isin(ambiguous)]

    mapping = mapping[mapping['symbol'].isin(set(query_genes))]
    logger.info(f"  {len(mapping)} reference genes map to query symbols")
    return mapping


def _looks_like_counts(X):
    values = X.data if sparse.issparse(X) else np.asarray(X).ravel()
    values = values[:10000]
    return values.size > 0 and bool(np.all(values >= 0) and np.all(np.mod(values, 1) == 0))


def prepare_reference(reference, mapping, label_key, n_pcs=30, n_neighbors=15,
                      seed=DEFAULT_RANDOM_SEED):
    """
    Subset the reference to harmonised genes, rename them to query symbols
    and compute the PCA, neighbour graph and UMAP that ingest projects onto.
    """
    if label_key not in reference.obs.columns:
        raise ConfigError(f"Reference has no '{label_key}' column in obs")
    if mapping.empty:
        raise DimensionMismatchError("Reference shares no genes with the query")

    ref = reference[:, mapping.index].copy()
    ref.var_names = pd.Index(mapping['symbol'].to_numpy())
    ref.var['gene_id'] = mapping['gene_id'].to_numpy()

    if _looks_like_counts(ref.X):
        logger.info("  Reference holds raw counts; log-normalising...")
        sc.pp.normalize_total(ref, target_sum=1e4)
        sc.pp.log1p(ref)

    n_pcs = min(n_pcs, ref.n_vars - 1, ref.n_obs - 1)
    sc.pp.pca(ref, n_comps=n_pcs, random_state=seed)
    sc.pp.neighbors(ref, n_neighbors=n_neighbors, n_pcs=n_pcs, use_rep='X_pca', random_state=seed)
    sc.tl.umap(ref, random_state=seed)
    return ref


def transfer_labels(query, reference, label_key):
    """
    Predict one reference label per query cell.

    Parameters
    ----------
    query : AnnData
        Log-normalised query
    reference : AnnData
        Output of ``prepare_reference``
    label_key : str
        Reference obs column to transfer

    Returns
    -------
    pd.Series
        Predicted label per query cell
    """
    missing = reference.var_names.difference(query.var_names)
    if len(missing) > 0:
        raise DimensionMismatchError(
            f"{len(missing)} reference genes are absent from the query, e.g. {missing[0]}"
        )

    projected = query[:, reference.var_names].copy()
    projected.obs = projected.obs[[]]
    logger.info(f"  Transferring '{label_key}' onto {projected.n_obs} cells "
                f"using {projected.n_vars} shared genes...")
    sc.tl.ingest(projected, reference, obs=label_key)

    labels = projected.obs[label_key].astype(str)
    labels.name = f'predicted_{label_key}'
    return labels


# =============================================================================
# Gene-set scoring
# =============================================================================

def score_gene_sets(adata, gene_sets, seed=DEFAULT_RANDOM_SEED):
    """
    Score each named gene set per cell into ``obs['score_<name>']``.

    Sets with no gene present are skipped with a warning.

    Returns
    -------
    list
        The obs columns written
    """
    columns = []
    for name, genes in gene_sets.items():
        present = [g for g in genes if g in adata.var_names]
        if not present:
            logger.warning(f"  Gene set {name}: none of its {len(genes)} genes are present, skipping")
            continue
        column = f'score_{name}'
        sc.tl.score_genes(adata, present, score_name=column, random_state=seed)
        logger.info(f"  Gene set {name}: scored with {len(present)}/{len(genes)} genes")
        columns.append(column)
    return columns


# =============================================================================
# Stage
# =============================================================================

def annotate(adata, params=None, reference=None, seed=DEFAULT_RANDOM_SEED):
    """
    Stage function: label transfer, gene-set scores and conserved markers.

    Parameters
    ----------
    adata : AnnData
        Integrated container with ``obs[cluster_key]``
    params : dict, optional
        Annotation parameters (see ``DEFAULT_ANNOTATION_PARAMS``)
    reference : AnnData, optional
        Reference atlas; label transfer is skipped without one
    seed : int
        Random seed

    Returns
    -------
    AnnotationResult
    """
    params = {**DEFAULT_ANNOTATION_PARAMS, **(params or {})}
    cluster_key = params['cluster_key']
    group_key = params['group_key']
    for key in (cluster_key, group_key):
        if key not in adata.obs.columns:
            raise ConfigError(f"obs has no '{key}' column")

    adata = adata.copy()
    expr = lognormalized(adata)

    logger.info("\n[Step 1/3] Transferring reference labels...")
    label_key = params['label_key']
    if reference is not None:
        mapping = harmonize_reference_genes(
            reference.var,
            adata.var_names,
            id_column=params['reference_id_column'],
            symbol_column=params['reference_symbol_column'],
            on_ambiguous=params['on_ambiguous'],
        )
        ref = prepare_reference(reference, mapping, label_key, seed=seed)
        labels = transfer_labels(expr, ref, label_key)
        adata.obs[labels.name] = pd.Categorical(labels.loc[adata.obs_names].to_numpy())
        for label, count in adata.obs[labels.name].value_counts().head(10).items():
            logger.info(f"    {label}: {count} ({100 * count / adata.n_obs:.1f}%)")
    else:
        logger.warning("  No reference atlas configured, skipping label transfer")

    logger.info("\n[Step 2/3] Scoring gene sets...")
    if params['gene_sets']:
        if expr is adata:
            score_gene_sets(adata, params['gene_sets'], seed=seed)
        else:
            for column in score_gene_sets(expr, params['gene_sets'], seed=seed):
                adata.obs[column] = expr.obs[column].to_numpy()
    else:
        logger.info("  No gene sets configured")

    logger.info("\n[Step 3/3] Finding conserved markers...")
    markers = conserved_markers_all_clusters(
        expr,
        cluster_key=cluster_key,
        group_key=group_key,
        min_cells=params['min_cells_per_group'],
    )
    filtered = filter_conserved_markers(markers, margin=params['marker_margin'])
    logger.info(f"  {len(markers)} conserved markers, {len(filtered)} pass the "
                f"{params['marker_margin']} detection margin")

    adata.uns['conserved_markers'] = filtered.reset_index(drop=True).astype({'cluster': str})
    adata.uns['annotation'] = {
        'label_key': label_key if reference is not None else '',
        'marker_margin': params['marker_margin'],
        'n_markers': int(len(markers)),
        'n_filtered_markers': int(len(filtered)),
    }
    return AnnotationResult(adata=adata, markers=markers, filtered_markers=filtered)
