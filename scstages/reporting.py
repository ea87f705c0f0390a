"""
reporting.py
============

TSV reports for each stage and the master summary YAML.
"""

import os
import logging
from datetime import datetime

import yaml
import pandas as pd

from scstages import __version__

logger = logging.getLogger(__name__)


def _ensure_parent(path):
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


def export_table(df, output_path, index=True):
    """Write a DataFrame as TSV."""
    _ensure_parent(output_path)
    logger.info(f"Exporting {len(df)} rows to {output_path}")
    df.to_csv(output_path, sep='\t', index=index)
    return output_path


def qc_summary(adata):
    """Per-sample QC metric summary."""
    summary = adata.obs.groupby('sample_id', observed=True).agg({
        'detected_genes': ['count', 'mean', 'median', 'std'],
        'library_size': ['mean', 'median', 'std'],
        'percent_mt': ['mean', 'median', 'std'],
    })
    summary.columns = ['_'.join(col).strip() for col in summary.columns.values]
    summary.index = summary.index.astype(str)
    return summary.rename(columns={'detected_genes_count': 'n_cells'})


def export_qc_metrics(unfiltered, filtered, output_path):
    """
    Per-sample QC summary of the passing cells, with cell counts at each step.

    Parameters
    ----------
    unfiltered : AnnData
        Input cells with metrics and doublet calls
    filtered : AnnData
        QC-passed cells
    output_path : str
        Output file path
    """
    by_sample = unfiltered.obs.groupby('sample_id', observed=True)
    counts = pd.DataFrame({
        'n_input': by_sample.size(),
        'n_doublets': by_sample['predicted_doublet'].sum().astype(int),
    })
    counts.index = counts.index.astype(str)
    summary = counts.join(qc_summary(filtered), how='left').fillna({'n_cells': 0})
    return export_table(summary, output_path)


def label_summary(adata, label_column):
    """Transferred label counts per sample."""
    summary = pd.crosstab(adata.obs['sample_id'], adata.obs[label_column])
    summary['total_cells'] = summary.sum(axis=1)
    return summary


def generate_summary(config, results, output_file):
    """
    Write the master summary combining every stage's headline numbers.

    Parameters
    ----------
    config : dict
        Loaded pipeline configuration
    results : dict
        ``{stage_name: {metric: value}}`` collected by the pipeline
    output_file : str
        Path of the YAML summary
    """
    logger.info("=" * 60)
    logger.info("GENERATING MASTER SUMMARY")
    logger.info("=" * 60)

    samples = config.get('samples', {})
    summary = {
        'pipeline': {
            'name': 'scStages',
            'version': __version__,
            'completion_time': datetime.now().isoformat(),
        },
        'configuration': {
            'output_dir': config.get('output_dir'),
            'n_samples': len(samples),
            'sample_ids': list(samples),
            'random_seed': config.get('random_seed'),
            'selected_method': config.get('integration', {}).get('selected_method'),
        },
        'results': {
            stage: {'status': 'completed', 'metrics': metrics}
            for stage, metrics in results.items()
        },
    }

    _ensure_parent(output_file)
    with open(output_file, 'w') as f:
        yaml.dump(summary, f, default_flow_style=False, sort_keys=False)

    logger.info(f"Summary written to: {output_file}")
    return summary
