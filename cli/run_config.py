#!/usr/bin/env python3
"""
run-config command
==================

Execute the Snakemake workflow shipped in ``snakemake_wrapper/`` with a
configuration file written by create-config.
"""

import os
import sys
import shutil
import subprocess

import click

import snakemake_wrapper
from scstages.config import load_config
from scstages.errors import PipelineError


def default_snakefile():
    return os.path.join(os.path.dirname(snakemake_wrapper.__file__), 'Snakefile')


def build_snakemake_command(config_path, cores=1, dry_run=False, snakefile=None,
                            extra_args=()):
    """Command line for one Snakemake invocation."""
    cmd = [
        'snakemake',
        '--snakefile', snakefile or default_snakefile(),
        '--configfile', os.path.abspath(config_path),
        '--cores', str(cores),
        '--rerun-incomplete',
    ]
    if dry_run:
        cmd.append('--dry-run')
    cmd.extend(extra_args)
    return cmd


@click.command('run-config', context_settings={'ignore_unknown_options': True})
@click.argument('config_path', type=click.Path(exists=True))
@click.option('--cores', '-c', type=int, default=1, show_default=True, help='Cores for Snakemake')
@click.option('--dry-run', '-n', is_flag=True, default=False, help='Only show what would run')
@click.option('--snakefile', type=click.Path(exists=True), help='Alternative Snakefile')
@click.argument('snakemake_args', nargs=-1, type=click.UNPROCESSED)
def run_config(config_path, cores, dry_run, snakefile, snakemake_args):
    """
    Run the pipeline through Snakemake.

    Extra arguments after the options are passed to Snakemake unchanged.

    \b
    Example:
      scStages run-config ./results/config.yaml --cores 4
      scStages run-config ./results/config.yaml --dry-run
    """
    try:
        config = load_config(config_path)
    except PipelineError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)

    if shutil.which('snakemake') is None:
        click.echo("ERROR: snakemake executable not found on PATH", err=True)
        sys.exit(1)

    cmd = build_snakemake_command(config_path, cores=cores, dry_run=dry_run,
                                  snakefile=snakefile, extra_args=snakemake_args)
    click.echo(f"Samples: {len(config['samples'])}")
    click.echo(f"Running: {' '.join(cmd)}")

    result = subprocess.run(cmd)
    if result.returncode != 0:
        click.echo(f"ERROR: Snakemake exited with status {result.returncode}", err=True)
    sys.exit(result.returncode)
