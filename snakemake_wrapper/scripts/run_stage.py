#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
run_stage.py
============

Run one scStages stage from a Snakemake rule.

Usage:
    Called via Snakemake rule with snakemake.config/params/log

    Or standalone:
    python run_stage.py --config config.yaml --stage qc
"""

import os
import copy
import logging
import argparse

from scstages.config import load_config, merge_defaults, validate_config
from scstages.pipeline import Pipeline

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def run(config, stage):
    """Run ``stage`` ('summary' writes the master summary only)."""
    pipeline = Pipeline(config)
    if stage == 'summary':
        pipeline.write_summary()
    else:
        pipeline.run_stage(stage)


def run_from_snakemake():
    """Run pipeline stage from Snakemake rule."""
    log_file = snakemake.log[0] if snakemake.log else None
    if log_file:
        os.makedirs(os.path.dirname(log_file), exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        logging.getLogger().addHandler(file_handler)

    config = validate_config(merge_defaults(copy.deepcopy(dict(snakemake.config))))
    run(config, snakemake.params.stage)


def main():
    """Main function for standalone CLI usage."""
    parser = argparse.ArgumentParser(description='Run one scStages stage')
    parser.add_argument('--config', required=True, help='Pipeline config.yaml')
    parser.add_argument('--stage', required=True,
                        choices=['ingest', 'qc', 'integrate', 'annotate', 'summary'])
    args = parser.parse_args()

    run(load_config(args.config), args.stage)


if __name__ == '__main__':
    try:
        snakemake
        run_from_snakemake()
    except NameError:
        main()
