"""
pipeline.py
===========

Orchestrator for the four stages.

Stage functions never touch the disk. ``Pipeline`` reads the previous
stage's snapshot, calls the stage, writes the new snapshot, then the reports
and figures. Each stage also leaves a small metrics file so the master
summary can be assembled even when stages run in separate processes (as
they do under Snakemake).
"""

import os
import logging

import yaml
import pandas as pd
import anndata as ad

from scstages.annotation import annotate
from scstages.config import stage_paths
from scstages.errors import ConfigError, MissingPathError
from scstages.ingestion import ingest
from scstages.integration import integrate, resolution_transitions
from scstages.plotting import (
    generate_annotation_plots,
    generate_integration_plots,
    generate_qc_plots,
)
from scstages.quality_control import quality_control, split_by_sample
from scstages.reporting import (
    export_qc_metrics,
    export_table,
    generate_summary,
    label_summary,
)
from scstages.snapshots import (
    read_partitions,
    read_snapshot,
    write_partitions,
    write_snapshot,
)

logger = logging.getLogger(__name__)

STAGES = ('ingest', 'qc', 'integrate', 'annotate')


class Pipeline:
    """
    Run stages against one output directory.

    Parameters
    ----------
    config : dict
        Configuration from ``load_config``
    detector : callable, optional
        Doublet detector handed to the QC stage (Scrublet by default)
    """

    def __init__(self, config, detector=None):
        self.config = config
        self.paths = stage_paths(config['output_dir'])
        self.detector = detector
        self.seed = config.get('random_seed', 42)
        self.figures = bool(config.get('figures', True))

    # -------------------------------------------------------------------------
    # Stage runners
    # -------------------------------------------------------------------------

    def run_ingest(self):
        adata = ingest(self.config['samples'], self.config['ingest'])
        write_snapshot(adata, self.paths['unfiltered'])
        self._write_metrics('ingest', {
            'n_samples': len(self.config['samples']),
            'n_cells': int(adata.n_obs),
            'n_genes': int(adata.n_vars),
        })
        return adata

    def run_qc(self):
        adata = read_snapshot(self.paths['unfiltered'], produced_by='ingest')
        result = quality_control(adata, self.config['qc'], detector=self.detector, seed=self.seed)
        partitions = split_by_sample(result.adata)

        write_snapshot(result.adata, self.paths['qc_passed'])
        write_partitions(partitions, self.paths['qc_split'])
        export_qc_metrics(result.unfiltered, result.adata, self.paths['qc_metrics'])

        if self.figures:
            figures_dir = os.path.join(self.paths['figures'], 'qc')
            generate_qc_plots(result.unfiltered, figures_dir, prefix='pre_filter_')
            generate_qc_plots(result.adata, figures_dir, prefix='post_filter_')

        self._write_metrics('qc', {
            'n_input': result.n_input,
            'n_doublets': result.n_doublets,
            'n_failed_filter': result.n_failed_filter,
            'n_passed': int(result.adata.n_obs),
            'cells_per_sample': {k: int(v.n_obs) for k, v in partitions.items()},
        })
        return result

    def run_integrate(self):
        partitions = read_partitions(self.paths['qc_split'], produced_by='qc')
        adata = integrate(partitions, self.config['integration'], seed=self.seed)
        write_snapshot(adata, self.paths['integrated'])

        info = adata.uns['integration']
        mixing = pd.DataFrame({
            'mean': pd.Series(info['mixing_mean']),
            'median': pd.Series(info['mixing_median']),
        }).rename_axis('method').sort_values('median')
        export_table(mixing, self.paths['mixing_metric'])
        transitions = resolution_transitions(adata.obs, list(info['cluster_columns']))
        export_table(transitions, self.paths['resolution_transitions'], index=False)

        if self.figures:
            generate_integration_plots(adata, os.path.join(self.paths['figures'], 'integration'),
                                       batch_key=self.config['integration']['batch_key'])

        self._write_metrics('integrate', {
            'selected_method': info['selected_method'],
            'mixing_median': {k: float(v) for k, v in info['mixing_median'].items()},
            'n_clusters': int(adata.obs['cluster'].nunique()),
        })
        return adata

    def run_annotate(self):
        adata = read_snapshot(self.paths['integrated'], produced_by='integrate')
        params = self.config['annotation']
        reference = self._read_reference(params.get('reference'))

        result = annotate(adata, params, reference=reference, seed=self.seed)
        write_snapshot(result.adata, self.paths['annotated'])
        export_table(result.markers, self.paths['conserved_markers'], index=False)

        label_column = f"predicted_{params['label_key']}" if reference is not None else None
        if label_column:
            export_table(label_summary(result.adata, label_column), self.paths['label_summary'])

        if self.figures:
            generate_annotation_plots(result.adata, os.path.join(self.paths['figures'], 'annotation'),
                                      label_column=label_column, markers=result.filtered_markers)

        metrics = {
            'n_markers': int(len(result.markers)),
            'n_filtered_markers': int(len(result.filtered_markers)),
        }
        if label_column:
            metrics['n_labels'] = int(result.adata.obs[label_column].nunique())
        self._write_metrics('annotate', metrics)
        return result

    # -------------------------------------------------------------------------
    # Driving
    # -------------------------------------------------------------------------

    def run_stage(self, stage):
        """Run one stage by name."""
        runners = {
            'ingest': self.run_ingest,
            'qc': self.run_qc,
            'integrate': self.run_integrate,
            'annotate': self.run_annotate,
        }
        if stage not in runners:
            raise ConfigError(f"Unknown stage '{stage}'; stages are {list(STAGES)}")

        logger.info("=" * 60)
        logger.info(f"Stage [{STAGES.index(stage) + 1}/{len(STAGES)}]: {stage}")
        logger.info("=" * 60)
        return runners[stage]()

    def run(self, from_stage='ingest', to_stage='annotate'):
        """Run a contiguous range of stages, then write the master summary."""
        for stage in (from_stage, to_stage):
            if stage not in STAGES:
                raise ConfigError(f"Unknown stage '{stage}'; stages are {list(STAGES)}")
        start, stop = STAGES.index(from_stage), STAGES.index(to_stage)
        if start > stop:
            raise ConfigError(f"Stage '{from_stage}' comes after '{to_stage}'")

        logger.info("=" * 60)
        logger.info("Starting scStages pipeline")
        logger.info("=" * 60)
        logger.info(f"Output: {self.config['output_dir']}")
        logger.info(f"Samples: {len(self.config['samples'])}")

        for stage in STAGES[start:stop + 1]:
            self.run_stage(stage)

        self.write_summary()
        logger.info("\n" + "=" * 60)
        logger.info("Pipeline completed successfully!")
        logger.info("=" * 60)

    def write_summary(self):
        """Assemble the master summary from every stage's metrics file."""
        results = {}
        for stage in STAGES:
            path = self._metrics_path(stage)
            if os.path.isfile(path):
                with open(path) as f:
                    results[stage] = yaml.safe_load(f)
        return generate_summary(self.config, results, self.paths['summary'])

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _read_reference(self, path):
        if not path:
            return None
        if not os.path.isfile(path):
            raise MissingPathError(path, 'Reference atlas')
        logger.info(f"Loading reference atlas from {path}")
        return ad.read_h5ad(path)

    def _metrics_path(self, stage):
        return os.path.join(self.config['output_dir'], 'metrics', f'{stage}.yaml')

    def _write_metrics(self, stage, metrics):
        path = self._metrics_path(stage)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w') as f:
            yaml.dump(metrics, f, default_flow_style=False, sort_keys=False)
