#!/usr/bin/env python3
"""
create-config command
=====================

Create the scStages pipeline configuration file (config.yaml).

Usage:
    scStages create-config --output-dir ./results --sample-pickle samples.pkl [OPTIONS]
"""

import os
import sys
import copy
import pickle
from pathlib import Path

import click
import yaml

from scstages.config import (
    DEFAULT_ANNOTATION_PARAMS,
    DEFAULT_INGEST_PARAMS,
    DEFAULT_INTEGRATION_PARAMS,
    DEFAULT_QC_PARAMS,
    DEFAULT_RANDOM_SEED,
    merge_defaults,
    validate_config,
)
from scstages.errors import PipelineError, MissingPathError


def validate_path(path, name, must_exist=True, create_dir=False):
    """Validate a file or directory path."""
    if path is None:
        return None

    path = Path(path).resolve()

    if create_dir and not path.exists():
        path.mkdir(parents=True, exist_ok=True)
        click.echo(f"  Created directory: {path}")

    if must_exist and not path.exists():
        raise MissingPathError(path, name)

    return str(path)


def load_samples(sample_pickle, sample_specs):
    """Samples from the sample-information pickle or from repeated --sample options."""
    if sample_pickle:
        with open(sample_pickle, 'rb') as f:
            sample_dict = pickle.load(f)
        click.echo(f"  Loaded {len(sample_dict)} samples from pickle")
        return {
            str(sid): {'path': entry.get('path', entry.get('matrix_dir')),
                       'group': entry.get('group', entry.get('condition'))}
            for sid, entry in sample_dict.items()
        }
    if sample_specs:
        samples = {}
        for sample_id, path, group in sample_specs:
            if sample_id in samples:
                raise click.BadParameter(f"Sample {sample_id} given twice", param_hint='--sample')
            samples[sample_id] = {'path': str(Path(path).resolve()), 'group': group}
        click.echo(f"  Using {len(samples)} samples from command line")
        return samples
    raise click.UsageError("Must provide either --sample-pickle or --sample")


def build_config(output_dir, samples, sample_info=None, **opts):
    """Assemble the configuration dictionary from command-line options."""
    return {
        'output_dir': output_dir,
        'log_dir': os.path.join(output_dir, 'logs'),
        'random_seed': opts['seed'],
        'figures': opts['figures'],

        'sample_info': sample_info,
        'samples': samples,

        'ingest': {
            'min_cells': opts['min_cells'],
            'min_genes': opts['min_genes'],
            'prefix_barcodes': opts['prefix_barcodes'],
        },

        'qc': {
            'min_library_size': opts['min_library_size'],
            'max_detected_genes': opts['max_detected_genes'],
            'max_percent_mt': opts['max_percent_mt'],
            'mt_pattern': opts['mt_pattern'],
            'doublet_removal': opts['doublet_removal'],
            'doublet_rate': opts['doublet_rate'],
            'doublet_min_cells': DEFAULT_QC_PARAMS['doublet_min_cells'],
            'doublet_n_prin_comps': DEFAULT_QC_PARAMS['doublet_n_prin_comps'],
        },

        'integration': {
            'normalization': opts['normalization'],
            'target_sum': DEFAULT_INTEGRATION_PARAMS['target_sum'],
            'n_top_genes': opts['n_top_genes'],
            'n_features': opts['n_features'],
            'n_pcs': opts['n_pcs'],
            'methods': list(opts['methods']),
            'selected_method': opts['selected_method'],
            'batch_key': DEFAULT_INTEGRATION_PARAMS['batch_key'],
            'n_neighbors': DEFAULT_INTEGRATION_PARAMS['n_neighbors'],
            'resolutions': sorted(opts['resolutions']),
            'default_resolution': opts['default_resolution'],
            'mixing_k': DEFAULT_INTEGRATION_PARAMS['mixing_k'],
            'mixing_max_k': DEFAULT_INTEGRATION_PARAMS['mixing_max_k'],
        },

        'annotation': {
            'reference': opts['reference'],
            'label_key': opts['label_key'],
            'reference_id_column': DEFAULT_ANNOTATION_PARAMS['reference_id_column'],
            'reference_symbol_column': opts['symbol_column'],
            'on_ambiguous': DEFAULT_ANNOTATION_PARAMS['on_ambiguous'],
            'group_key': DEFAULT_ANNOTATION_PARAMS['group_key'],
            'cluster_key': DEFAULT_ANNOTATION_PARAMS['cluster_key'],
            'marker_margin': opts['marker_margin'],
            'min_cells_per_group': DEFAULT_ANNOTATION_PARAMS['min_cells_per_group'],
            'gene_sets': {},
        },
    }


@click.command('create-config')
@click.option('--output-dir', required=True, type=click.Path(), help='Output directory')
@click.option('--sample-pickle', type=click.Path(exists=True),
              help='Pickle file from sample-information')
@click.option('--sample', 'sample_specs', type=(str, click.Path(), str), multiple=True,
              help='Sample as ID MATRIX_DIR GROUP (repeatable, alternative to --sample-pickle)')
@click.option('--seed', type=int, default=DEFAULT_RANDOM_SEED, show_default=True, help='Random seed')
@click.option('--figures/--no-figures', default=True, show_default=True, help='Write figures')
# Ingestion
@click.option('--min-cells', type=int, default=DEFAULT_INGEST_PARAMS['min_cells'], show_default=True,
              help='Drop genes detected in fewer cells (per sample)')
@click.option('--min-genes', type=int, default=DEFAULT_INGEST_PARAMS['min_genes'], show_default=True,
              help='Drop cells with fewer detected genes (per sample)')
@click.option('--prefix-barcodes/--no-prefix-barcodes', default=True, show_default=True,
              help='Prefix cell barcodes with the sample id')
# QC
@click.option('--min-library-size', type=float, default=DEFAULT_QC_PARAMS['min_library_size'],
              show_default=True, help='Keep cells with more counts than this')
@click.option('--max-detected-genes', type=float, default=DEFAULT_QC_PARAMS['max_detected_genes'],
              show_default=True, help='Keep cells with fewer detected genes than this')
@click.option('--max-percent-mt', type=float, default=DEFAULT_QC_PARAMS['max_percent_mt'],
              show_default=True, help='Keep cells with a lower mitochondrial percentage')
@click.option('--mt-pattern', default=DEFAULT_QC_PARAMS['mt_pattern'], show_default=True,
              help='Regex (case-insensitive) identifying mitochondrial genes')
@click.option('--doublet-removal/--no-doublet-removal', default=True, show_default=True,
              help='Remove doublets with Scrublet')
@click.option('--doublet-rate', type=float, default=DEFAULT_QC_PARAMS['doublet_rate'],
              show_default=True, help='Expected doublet rate')
# Integration
@click.option('--normalization', type=click.Choice(['log', 'pearson_residuals']),
              default=DEFAULT_INTEGRATION_PARAMS['normalization'], show_default=True)
@click.option('--n-top-genes', type=int, default=DEFAULT_INTEGRATION_PARAMS['n_top_genes'],
              show_default=True, help='Highly variable genes per sample')
@click.option('--n-features', type=int, default=DEFAULT_INTEGRATION_PARAMS['n_features'],
              show_default=True, help='Integration features')
@click.option('--n-pcs', type=int, default=DEFAULT_INTEGRATION_PARAMS['n_pcs'], show_default=True)
@click.option('--method', 'methods', multiple=True,
              type=click.Choice(['cca', 'harmony', 'rpca', 'joint_pca']),
              default=DEFAULT_INTEGRATION_PARAMS['methods'], show_default=True,
              help='Integration method to run (repeatable)')
@click.option('--selected-method', default=DEFAULT_INTEGRATION_PARAMS['selected_method'],
              show_default=True, help='Method whose embedding is clustered')
@click.option('--resolution', 'resolutions', type=float, multiple=True,
              default=DEFAULT_INTEGRATION_PARAMS['resolutions'], show_default=True,
              help='Leiden resolution (repeatable)')
@click.option('--default-resolution', type=float,
              default=DEFAULT_INTEGRATION_PARAMS['default_resolution'], show_default=True,
              help='Resolution stored as the cluster column')
# Annotation
@click.option('--reference', type=click.Path(exists=True), help='Reference atlas (.h5ad)')
@click.option('--label-key', default=DEFAULT_ANNOTATION_PARAMS['label_key'], show_default=True,
              help='Reference obs column to transfer')
@click.option('--symbol-column', default=DEFAULT_ANNOTATION_PARAMS['reference_symbol_column'],
              show_default=True, help='Reference var column holding gene symbols')
@click.option('--marker-margin', type=float, default=DEFAULT_ANNOTATION_PARAMS['marker_margin'],
              show_default=True, help='Minimum pct_in - pct_out for conserved markers, in every group')
def create_config(output_dir, sample_pickle, sample_specs, **opts):
    """
    Generate the pipeline configuration file.

    \b
    Examples:
      scStages create-config --output-dir ./results --sample-pickle samples.pkl
      scStages create-config --output-dir ./results \\
          --sample ctrl /data/ctrl ctrl --sample stim /data/stim stim \\
          --method harmony --method joint_pca --selected-method harmony
    """
    click.echo("=" * 70)
    click.echo("SCSTAGES - CREATE CONFIGURATION")
    click.echo("=" * 70)

    try:
        click.echo("\nValidating input paths...")
        output_dir = validate_path(output_dir, "Output directory", must_exist=False, create_dir=True)
        sample_info = validate_path(sample_pickle, "Sample pickle file")
        samples = load_samples(sample_info, sample_specs)
        opts['reference'] = validate_path(opts['reference'], "Reference atlas")

        click.echo("\nBuilding configuration...")
        config = build_config(output_dir, samples, sample_info=sample_info, **opts)
        validate_config(merge_defaults(copy.deepcopy(config)))
    except PipelineError as e:
        click.echo(f"\nERROR: {e}", err=True)
        sys.exit(1)

    config_path = os.path.join(output_dir, 'config.yaml')
    click.echo(f"\nWriting configuration to: {config_path}")
    with open(config_path, 'w') as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)

    click.echo("\n" + "=" * 70)
    click.echo("CONFIGURATION CREATED SUCCESSFULLY")
    click.echo("=" * 70)
    click.echo(f"\nConfiguration file: {config_path}")
    click.echo(f"Samples: {len(samples)}")
    click.echo(f"Integration methods: {', '.join(config['integration']['methods'])} "
               f"(clustering {config['integration']['selected_method']})")
    click.echo(f"Reference atlas: {config['annotation']['reference'] or 'None (label transfer skipped)'}")
    click.echo("\nTo run the pipeline:")
    click.echo(f"  scStages run-pipeline {config_path}")
    click.echo(f"  scStages run-config {config_path} --cores 4")

    return config_path


if __name__ == '__main__':
    create_config()
