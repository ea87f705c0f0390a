#!/usr/bin/env python3
"""
run-stage / run-pipeline commands
=================================

Run pipeline stages in-process, without Snakemake.
"""

import os
import sys
import logging

import click

from scstages.config import load_config
from scstages.errors import PipelineError
from scstages.pipeline import Pipeline, STAGES

logger = logging.getLogger(__name__)


def add_log_file(config, name):
    """Mirror log records to ``<log_dir>/<name>.log``."""
    log_dir = config.get('log_dir') or os.path.join(config['output_dir'], 'logs')
    os.makedirs(log_dir, exist_ok=True)
    file_handler = logging.FileHandler(os.path.join(log_dir, f'{name}.log'))
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    logging.getLogger().addHandler(file_handler)
    return file_handler


@click.command('run-stage')
@click.argument('config_path', type=click.Path(exists=True))
@click.argument('stage', type=click.Choice(STAGES))
def run_stage(config_path, stage):
    """
    Run a single stage, reading the previous stage's snapshot.

    \b
    Example:
      scStages run-stage ./results/config.yaml qc
    """
    try:
        config = load_config(config_path)
        add_log_file(config, stage)
        Pipeline(config).run_stage(stage)
    except PipelineError as e:
        logger.error(str(e))
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)


@click.command('run-pipeline')
@click.argument('config_path', type=click.Path(exists=True))
@click.option('--from-stage', type=click.Choice(STAGES), default=STAGES[0], show_default=True,
              help='First stage to run (earlier snapshots must exist)')
@click.option('--to-stage', type=click.Choice(STAGES), default=STAGES[-1], show_default=True,
              help='Last stage to run')
def run_pipeline(config_path, from_stage, to_stage):
    """
    Run the stages in order in this process.

    \b
    Example:
      scStages run-pipeline ./results/config.yaml
      scStages run-pipeline ./results/config.yaml --from-stage integrate
    """
    try:
        config = load_config(config_path)
        add_log_file(config, 'pipeline')
        Pipeline(config).run(from_stage=from_stage, to_stage=to_stage)
    except PipelineError as e:
        logger.error(str(e))
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)
