"""
scStages CLI Package
====================

Command-line interface for the scStages single-cell analysis pipeline.

Commands:
- sample-information: Process sample CSV and create sample dictionary pickle
- create-config: Generate config YAML for the pipeline
- run-stage / run-pipeline: Run stages in-process
- run-config: Execute the Snakemake workflow
"""

from scstages import __version__

from cli.sample_information import sample_information
from cli.create_config import create_config
from cli.run_config import run_config
from cli.run_stage import run_stage, run_pipeline

__all__ = ['sample_information', 'create_config', 'run_config', 'run_stage', 'run_pipeline']
