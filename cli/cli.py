#!/usr/bin/env python3
"""
scStages CLI
============

Single-cell RNA-seq analysis in four stages:
- Ingestion of 10x matrices from several samples
- Quality control (metrics, Scrublet doublets, threshold filter)
- Integration (CCA-style anchors, Harmony, ComBat/RPCA, joint PCA) and clustering
- Annotation (reference label transfer, conserved markers)

Commands:
1. sample-information: Process sample CSV and create sample dictionary pickle
2. create-config: Generate config YAML for the pipeline
3. run-stage / run-pipeline: Run stages in-process
4. run-config: Execute the Snakemake workflow
"""

import logging

import click

from cli import __version__
from cli.sample_information import sample_information
from cli.create_config import create_config
from cli.run_config import run_config
from cli.run_stage import run_stage, run_pipeline


@click.group()
@click.version_option(version=__version__, prog_name='scStages')
def main():
    """
    scStages: single-cell RNA-seq analysis pipeline

    \b
    Typical workflow:
    1. scStages sample-information --input samples.csv --output samples.pkl
    2. scStages create-config --output-dir ./results --sample-pickle samples.pkl
    3. scStages run-pipeline ./results/config.yaml
       (or scStages run-config ./results/config.yaml --cores 4)

    \b
    Stage by stage:
    scStages run-stage ./results/config.yaml ingest
    scStages run-stage ./results/config.yaml qc
    scStages run-stage ./results/config.yaml integrate
    scStages run-stage ./results/config.yaml annotate
    """
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )


main.add_command(sample_information)
main.add_command(create_config)
main.add_command(run_stage)
main.add_command(run_pipeline)
main.add_command(run_config)


if __name__ == '__main__':
    main()
