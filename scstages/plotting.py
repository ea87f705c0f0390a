"""
plotting.py
===========

Figures for each stage. Every figure is written as PDF and PNG and closed
after saving.
"""

import os
import logging

import pandas as pd
import scanpy as sc
import seaborn as sns
import matplotlib.pyplot as plt

logger = logging.getLogger(__name__)


def save_figure(output_dir, name):
    """Save the current figure as ``<name>.pdf`` and ``<name>.png``."""
    plt.savefig(os.path.join(output_dir, f'{name}.pdf'), bbox_inches='tight')
    plt.savefig(os.path.join(output_dir, f'{name}.png'), dpi=150, bbox_inches='tight')
    plt.close()


# =============================================================================
# QC
# =============================================================================

def generate_qc_plots(adata, output_dir, prefix=''):
    """
    QC violin and scatter plots per sample.

    Parameters
    ----------
    adata : AnnData
        AnnData with QC metrics
    output_dir : str
        Directory to save plots
    prefix : str
        Prefix for output files (e.g., 'pre_filter_' or 'post_filter_')
    """
    os.makedirs(output_dir, exist_ok=True)
    logger.info(f"Generating QC plots in {output_dir}...")

    fig, axes = plt.subplots(1, 3, figsize=(15, 5))
    panels = [
        ('detected_genes', 'Genes per Cell'),
        ('library_size', 'UMI Counts per Cell'),
        ('percent_mt', '% Mitochondrial'),
    ]
    for ax, (key, title) in zip(axes, panels):
        sc.pl.violin(adata, key, groupby='sample_id', ax=ax, show=False)
        ax.set_title(title)
        ax.tick_params(axis='x', rotation=90)
    plt.tight_layout()
    save_figure(output_dir, f'{prefix}qc_violin_plots')

    fig, axes = plt.subplots(1, 2, figsize=(12, 5))
    sc.pl.scatter(adata, x='library_size', y='detected_genes', color='percent_mt',
                  ax=axes[0], show=False)
    axes[0].set_title('Counts vs Genes (colored by % mito)')
    sc.pl.scatter(adata, x='library_size', y='percent_mt', color='detected_genes',
                  ax=axes[1], show=False)
    axes[1].set_title('Counts vs % Mito (colored by genes)')
    plt.tight_layout()
    save_figure(output_dir, f'{prefix}qc_scatter_plots')


# =============================================================================
# Integration
# =============================================================================

def generate_integration_plots(adata, output_dir, batch_key='sample_id'):
    """UMAP of every integration method side by side, plus the mixing metric."""
    os.makedirs(output_dir, exist_ok=True)
    logger.info(f"Generating integration plots in {output_dir}...")
    methods = list(adata.uns['integration']['methods'])

    fig, axes = plt.subplots(1, len(methods), figsize=(5 * len(methods), 5), squeeze=False)
    for ax, method in zip(axes[0], methods):
        sc.pl.embedding(adata, basis=f'X_umap_{method}', color=batch_key,
                        frameon=False, title=method, ax=ax, show=False)
    plt.tight_layout()
    save_figure(output_dir, 'umap_integration_methods')

    mixing = pd.DataFrame({m: adata.obs[f'mixing_{m}'].to_numpy() for m in methods})
    mixing = mixing.melt(var_name='method', value_name='mixing_metric')
    fig, ax = plt.subplots(figsize=(2 + 1.5 * len(methods), 5))
    sns.boxplot(data=mixing, x='method', y='mixing_metric', ax=ax)
    ax.set_title('Mixing metric (lower = better mixing)')
    plt.tight_layout()
    save_figure(output_dir, 'mixing_metric')

    columns = list(adata.uns['integration']['cluster_columns'])
    resolutions = [c.rsplit('_res', 1)[1] for c in columns]
    n_clusters = [adata.obs[c].nunique() for c in columns]
    fig, ax = plt.subplots(figsize=(6, 4))
    ax.plot(resolutions, n_clusters, marker='o')
    ax.set_xlabel('Leiden resolution')
    ax.set_ylabel('Clusters')
    ax.set_title(f"Clusters per resolution ({adata.uns['integration']['selected_method']})")
    plt.tight_layout()
    save_figure(output_dir, 'clusters_per_resolution')


# =============================================================================
# Annotation
# =============================================================================

def generate_annotation_plots(adata, output_dir, label_column=None, markers=None,
                              n_markers=3):
    """
    Annotation UMAPs, label proportions per sample and a marker dot plot.

    Parameters
    ----------
    adata : AnnData
        Annotated AnnData
    output_dir : str
        Directory to save plots
    label_column : str, optional
        obs column with transferred labels
    markers : pd.DataFrame, optional
        Filtered conserved markers (``cluster``, ``gene``, ``combined_pval``)
    n_markers : int
        Markers per cluster in the dot plot
    """
    os.makedirs(output_dir, exist_ok=True)
    logger.info(f"Generating annotation plots in {output_dir}...")

    fig, ax = plt.subplots(figsize=(10, 8))
    sc.pl.umap(adata, color='cluster', legend_loc='on data', legend_fontsize=10,
               legend_fontoutline=2, frameon=False, title='Clusters', ax=ax, show=False)
    save_figure(output_dir, 'umap_clusters')

    fig, ax = plt.subplots(figsize=(10, 8))
    sc.pl.umap(adata, color='group', frameon=False, title='Groups', ax=ax, show=False)
    save_figure(output_dir, 'umap_groups')

    if label_column and label_column in adata.obs.columns:
        fig, ax = plt.subplots(figsize=(12, 10))
        sc.pl.umap(adata, color=label_column, legend_loc='on data', legend_fontsize=8,
                   legend_fontoutline=2, frameon=False, title='Transferred Labels',
                   ax=ax, show=False)
        save_figure(output_dir, 'umap_predicted_labels')

        props = pd.crosstab(adata.obs['sample_id'], adata.obs[label_column], normalize='index') * 100
        fig, ax = plt.subplots(figsize=(12, 6))
        props.plot(kind='bar', stacked=True, ax=ax, colormap='tab20')
        ax.set_ylabel('Percentage')
        ax.set_xlabel('Sample')
        ax.legend(title='Cell Type', bbox_to_anchor=(1.05, 1), loc='upper left')
        plt.xticks(rotation=45, ha='right')
        plt.tight_layout()
        save_figure(output_dir, 'label_proportions')

    if markers is not None and not markers.empty:
        top = (markers.sort_values('combined_pval')
                      .groupby('cluster', sort=False)
                      .head(n_markers))
        genes = list(dict.fromkeys(top['gene']))
        dotplot = sc.pl.dotplot(adata, var_names=genes, groupby='cluster', show=False, return_fig=True)
        dotplot.savefig(os.path.join(output_dir, 'conserved_markers_dotplot.pdf'), bbox_inches='tight')
        dotplot.savefig(os.path.join(output_dir, 'conserved_markers_dotplot.png'), dpi=150, bbox_inches='tight')
        plt.close('all')
