"""Snakemake workflow for scStages; see the Snakefile in this directory."""
