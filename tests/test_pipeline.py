"""End-to-end tests for the stage orchestrator."""

import os

import pandas as pd
import pytest
import yaml

from scstages.config import merge_defaults, validate_config
from scstages.errors import ConfigError, MissingPathError
from scstages.pipeline import Pipeline
from scstages.plotting import generate_qc_plots
from scstages.quality_control import compute_qc_metrics


@pytest.fixture
def config(tmp_path, two_sample_dirs):
    raw = {
        'output_dir': str(tmp_path / 'results'),
        'figures': False,
        'random_seed': 0,
        'samples': {
            'ctrl': {'path': two_sample_dirs['ctrl'], 'group': 'ctrl'},
            'stim': {'path': two_sample_dirs['stim'], 'group': 'stim'},
        },
        'ingest': {'min_cells': 1, 'min_genes': 10},
        'integration': {
            'methods': ['joint_pca'],
            'selected_method': 'joint_pca',
            'n_top_genes': 50,
            'n_features': 50,
            'n_pcs': 10,
            'n_neighbors': 10,
            'resolutions': [0.2, 0.5],
            'default_resolution': 0.5,
        },
        'annotation': {'min_cells_per_group': 3},
    }
    return validate_config(merge_defaults(raw))


def test_ingest_then_qc(config, fake_detector):
    detector = fake_detector(['ctrl_AAAC0001-1'])
    pipeline = Pipeline(config, detector=detector)

    pipeline.run_stage('ingest')
    result = pipeline.run_stage('qc')

    paths = pipeline.paths
    for key in ('unfiltered', 'qc_passed', 'qc_metrics'):
        assert os.path.isfile(paths[key])
    assert os.path.isfile(os.path.join(paths['qc_split'], 'manifest.yaml'))
    assert detector.seeds == [0]
    assert result.n_doublets == 1
    assert 'ctrl_AAAC0001-1' not in result.adata.obs_names

    qc_table = pd.read_csv(paths['qc_metrics'], sep='\t', index_col=0)
    assert set(qc_table.index) == {'ctrl', 'stim'}
    assert qc_table.loc['ctrl', 'n_doublets'] == 1


def test_stage_without_previous_snapshot(config):
    with pytest.raises(MissingPathError, match="stage 'ingest'"):
        Pipeline(config).run_stage('qc')


def test_unknown_stage(config):
    with pytest.raises(ConfigError):
        Pipeline(config).run_stage('cluster')
    with pytest.raises(ConfigError):
        Pipeline(config).run(from_stage='annotate', to_stage='qc')


def test_missing_reference_raises(config):
    config['annotation']['reference'] = '/nonexistent/atlas.h5ad'
    with pytest.raises(MissingPathError, match='Reference atlas'):
        Pipeline(config)._read_reference(config['annotation']['reference'])


@pytest.mark.slow
def test_full_run_writes_summary(config, fake_detector):
    pipeline = Pipeline(config, detector=fake_detector())

    pipeline.run()

    paths = pipeline.paths
    for key in ('integrated', 'annotated', 'mixing_metric', 'resolution_transitions',
                'conserved_markers', 'summary'):
        assert os.path.exists(paths[key]), key

    with open(paths['summary']) as f:
        summary = yaml.safe_load(f)
    assert summary['pipeline']['name'] == 'scStages'
    assert set(summary['results']) == {'ingest', 'qc', 'integrate', 'annotate'}
    assert summary['results']['ingest']['metrics']['n_cells'] == 120
    assert summary['configuration']['selected_method'] == 'joint_pca'


def test_qc_plots_are_written(tmp_path, counts_adata):
    output_dir = str(tmp_path / 'figures')

    generate_qc_plots(compute_qc_metrics(counts_adata), output_dir, prefix='pre_filter_')

    for name in ('pre_filter_qc_violin_plots', 'pre_filter_qc_scatter_plots'):
        assert os.path.isfile(os.path.join(output_dir, f'{name}.pdf'))
        assert os.path.isfile(os.path.join(output_dir, f'{name}.png'))
