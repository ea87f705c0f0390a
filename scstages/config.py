"""
config.py
=========

Pipeline configuration: defaults, YAML loading and validation.

The configuration file is written by ``scStages create-config`` and read by
every entry point. User sections are merged over the module-level defaults
(``{**DEFAULTS, **user}``) so a config only has to state what it changes.
"""

import os
import logging
from dataclasses import dataclass

import yaml

from scstages.errors import ConfigError, MissingPathError

logger = logging.getLogger(__name__)


# =============================================================================
# Defaults
# =============================================================================

DEFAULT_RANDOM_SEED = 42

DEFAULT_INGEST_PARAMS = {
    'min_cells': 3,            # Drop genes detected in fewer cells (per sample)
    'min_genes': 200,          # Drop cells with fewer detected genes (per sample)
    'prefix_barcodes': True,   # Rename cells to <sample_id>_<barcode>
}

DEFAULT_QC_PARAMS = {
    'min_library_size': 500,
    'max_detected_genes': 5000,
    'max_percent_mt': 10,
    'mt_pattern': '^MT-',      # Matched case-insensitively against gene symbols
    'doublet_removal': True,
    'doublet_rate': 0.06,
    'doublet_min_cells': 100,
    'doublet_n_prin_comps': 30,  # Scrublet PCs; needs ~7x as many detected genes
}

DEFAULT_INTEGRATION_PARAMS = {
    'normalization': 'log',    # 'log' or 'pearson_residuals'
    'target_sum': 1e4,
    'n_top_genes': 2000,       # HVGs per partition
    'n_features': 2000,        # Integration features shared by all partitions
    'n_pcs': 30,
    'methods': ['cca', 'harmony', 'rpca', 'joint_pca'],
    'selected_method': 'harmony',
    'batch_key': 'sample_id',
    'n_neighbors': 20,
    'resolutions': [0.1, 0.2, 0.4, 0.6, 0.8, 1.0],
    'default_resolution': 0.4,
    'mixing_k': 5,
    'mixing_max_k': 300,
}

DEFAULT_ANNOTATION_PARAMS = {
    'reference': None,                  # Path to the reference atlas (.h5ad)
    'label_key': 'cell_type',
    'reference_id_column': 'gene_ids',
    'reference_symbol_column': 'feature_name',
    'on_ambiguous': 'drop',             # 'drop' or 'raise'
    'group_key': 'group',
    'cluster_key': 'cluster',
    'marker_margin': 0.5,
    'min_cells_per_group': 3,
    'gene_sets': {},
}

SECTION_DEFAULTS = {
    'ingest': DEFAULT_INGEST_PARAMS,
    'qc': DEFAULT_QC_PARAMS,
    'integration': DEFAULT_INTEGRATION_PARAMS,
    'annotation': DEFAULT_ANNOTATION_PARAMS,
}


@dataclass(frozen=True)
class SampleSpec:
    """One input sample: a 10x matrix directory and its experimental group."""
    path: str
    group: str


# =============================================================================
# Loading
# =============================================================================

def parse_samples(samples):
    """
    Normalise the ``samples`` section into ``{sample_id: SampleSpec}``.

    Accepts either ``{sample_id: {'path': ..., 'group': ...}}`` (the config
    file layout) or the sample dictionary written by ``sample-information``,
    which stores the directory under ``matrix_dir``.
    """
    if not samples:
        raise ConfigError("No samples declared in configuration")

    parsed = {}
    for sample_id, entry in samples.items():
        if isinstance(entry, SampleSpec):
            parsed[str(sample_id)] = entry
            continue
        if not isinstance(entry, dict):
            raise ConfigError(f"Sample {sample_id}: expected a mapping, got {type(entry).__name__}")
        path = entry.get('path', entry.get('matrix_dir'))
        if not path:
            raise ConfigError(f"Sample {sample_id}: no matrix directory given")
        group = entry.get('group', entry.get('condition'))
        if group is None:
            raise ConfigError(f"Sample {sample_id}: no experimental group given")
        parsed[str(sample_id)] = SampleSpec(path=str(path), group=str(group))
    return parsed


def merge_defaults(config):
    """Return a copy of ``config`` with every section merged over its defaults."""
    merged = dict(config)
    for section, defaults in SECTION_DEFAULTS.items():
        user = config.get(section) or {}
        if not isinstance(user, dict):
            raise ConfigError(f"Section '{section}' must be a mapping")
        merged[section] = {**defaults, **user}
    merged.setdefault('random_seed', DEFAULT_RANDOM_SEED)
    merged.setdefault('figures', True)
    return merged


def validate_config(config):
    """Check the merged configuration; raises ``ConfigError`` on the first problem."""
    # Imported here to avoid a cycle: integration imports config defaults
    from scstages.integration import INTEGRATION_METHODS

    if not config.get('output_dir'):
        raise ConfigError("'output_dir' is required")

    config['samples'] = parse_samples(config.get('samples'))

    qc = config['qc']
    if qc['min_library_size'] < 0:
        raise ConfigError("qc.min_library_size must be non-negative")
    if not 0 <= qc['max_percent_mt'] <= 100:
        raise ConfigError("qc.max_percent_mt must be within [0, 100]")

    integration = config['integration']
    methods = list(integration['methods'])
    unknown = [m for m in methods if m not in INTEGRATION_METHODS]
    if unknown:
        raise ConfigError(
            f"Unknown integration method(s) {unknown}; "
            f"available: {sorted(INTEGRATION_METHODS)}"
        )
    if integration['selected_method'] not in methods:
        raise ConfigError(
            f"integration.selected_method '{integration['selected_method']}' "
            f"is not one of the configured methods {methods}"
        )
    try:
        integration['resolutions'] = [float(r) for r in integration['resolutions']]
        integration['default_resolution'] = float(integration['default_resolution'])
    except (TypeError, ValueError):
        raise ConfigError("integration.resolutions and default_resolution must be numbers") from None
    if integration['default_resolution'] not in integration['resolutions']:
        raise ConfigError("integration.default_resolution must be one of integration.resolutions")
    if integration['normalization'] not in ('log', 'pearson_residuals'):
        raise ConfigError("integration.normalization must be 'log' or 'pearson_residuals'")

    annotation = config['annotation']
    if annotation['on_ambiguous'] not in ('drop', 'raise'):
        raise ConfigError("annotation.on_ambiguous must be 'drop' or 'raise'")
    if annotation['marker_margin'] < 0 or annotation['marker_margin'] > 1:
        raise ConfigError("annotation.marker_margin must be within [0, 1]")

    return config


def load_config(config_path):
    """
    Read, merge and validate a pipeline configuration file.

    Parameters
    ----------
    config_path : str
        Path to config.yaml

    Returns
    -------
    dict
        Configuration with defaults filled in and ``samples`` parsed into
        ``SampleSpec`` values
    """
    if not os.path.exists(config_path):
        raise MissingPathError(config_path, 'Configuration file')

    with open(config_path) as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ConfigError(f"{config_path} does not contain a mapping")

    config = validate_config(merge_defaults(config))
    logger.info(f"Loaded configuration from {config_path} ({len(config['samples'])} samples)")
    return config


def stage_paths(output_dir):
    """Snapshot and report locations under ``output_dir``."""
    return {
        'unfiltered': os.path.join(output_dir, 'snapshots', 'unfiltered.h5ad'),
        'qc_passed': os.path.join(output_dir, 'snapshots', 'qc_passed.h5ad'),
        'qc_split': os.path.join(output_dir, 'snapshots', 'qc_split'),
        'integrated': os.path.join(output_dir, 'snapshots', 'integrated.h5ad'),
        'annotated': os.path.join(output_dir, 'snapshots', 'annotated.h5ad'),
        'qc_metrics': os.path.join(output_dir, 'qc', 'qc_metrics.tsv'),
        'mixing_metric': os.path.join(output_dir, 'integration', 'mixing_metric.tsv'),
        'resolution_transitions': os.path.join(output_dir, 'integration', 'resolution_transitions.tsv'),
        'conserved_markers': os.path.join(output_dir, 'annotation', 'conserved_markers.tsv'),
        'label_summary': os.path.join(output_dir, 'annotation', 'label_summary.tsv'),
        'summary': os.path.join(output_dir, 'summary.yaml'),
        'figures': os.path.join(output_dir, 'figures'),
        'logs': os.path.join(output_dir, 'logs'),
    }
