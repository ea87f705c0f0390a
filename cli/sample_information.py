#!/usr/bin/env python3
"""
sample-information
==================

Turn a sample sheet (CSV) into the sample pickle read by create-config.

Sheet columns:
- sample_id: unique sample name, used to prefix cell barcodes
- matrix_dir: 10x matrix directory of the sample
- group: experimental group (condition) of the sample

Any other column (donor, tissue, ...) is carried along as sample metadata.
"""

import os
import sys
import pickle

import click
import pandas as pd

from scstages.errors import ConfigError, MissingPathError
from scstages.ingestion import locate_mex_files

REQUIRED_COLUMNS = ['sample_id', 'matrix_dir', 'group']
MAX_REPORTED = 10


def read_sample_sheet(csv_path):
    """
    Load and structurally check a sample sheet.

    Raises
    ------
    ConfigError
        If the file cannot be parsed, lacks a required column or repeats a
        sample id
    """
    try:
        sheet = pd.read_csv(csv_path, dtype={'sample_id': str})
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot parse {csv_path}: {e}") from e

    absent = [c for c in REQUIRED_COLUMNS if c not in sheet.columns]
    if absent:
        raise ConfigError(
            f"{csv_path} lacks column(s) {absent}; header must start with "
            f"{','.join(REQUIRED_COLUMNS)} (found {','.join(sheet.columns)})"
        )

    repeated = sheet.loc[sheet['sample_id'].duplicated(), 'sample_id'].unique().tolist()
    if repeated:
        raise ConfigError(f"Sample ids listed more than once: {repeated}")
    return sheet


def check_matrix_dirs(sheet, check_existence=True):
    """
    Per-sample problems with the matrix directory or group of each row.

    Parameters
    ----------
    sheet : pd.DataFrame
        Sample sheet from ``read_sample_sheet``
    check_existence : bool
        Also look for the three MEX files on disk

    Returns
    -------
    list
        Problem descriptions; empty when every sample is usable
    """
    problems = []
    for row in sheet.itertuples(index=False):
        matrix_dir = '' if pd.isna(row.matrix_dir) else str(row.matrix_dir).strip()
        group = '' if pd.isna(row.group) else str(row.group).strip()

        if not matrix_dir:
            problems.append(f"Sample {row.sample_id}: matrix_dir is empty")
        elif not group:
            problems.append(f"Sample {row.sample_id}: group is empty")
        elif check_existence:
            try:
                locate_mex_files(matrix_dir)
            except MissingPathError as e:
                problems.append(f"Sample {row.sample_id}: {e}")
    return problems


def sheet_to_samples(sheet):
    """
    ``{sample_id: {'path': ..., 'group': ..., <extra columns>}}``

    Paths are made absolute; missing values in extra columns are left out.
    """
    extra_columns = [c for c in sheet.columns if c not in REQUIRED_COLUMNS]
    samples = {}
    for record in sheet.to_dict(orient='records'):
        entry = {
            'path': os.path.abspath(str(record['matrix_dir']).strip()),
            'group': str(record['group']).strip(),
        }
        entry.update({
            c: record[c].item() if hasattr(record[c], 'item') else record[c]
            for c in extra_columns if pd.notna(record[c])
        })
        samples[str(record['sample_id'])] = entry
    return samples


@click.command('sample-information')
@click.option('--input', '-i', 'input_csv', required=True, type=click.Path(exists=True, dir_okay=False),
              help='Sample sheet (CSV) with sample_id, matrix_dir and group columns')
@click.option('--output', '-o', 'output_pkl', required=True, type=click.Path(dir_okay=False),
              help='Where to write the sample pickle')
@click.option('--skip-validation', '-s', is_flag=True, default=False,
              help='Do not look for the matrix files on disk (e.g. when paths live on a cluster)')
@click.option('--verbose', '-v', is_flag=True, default=False, help='List every sample')
def sample_information(input_csv, output_pkl, skip_validation, verbose):
    """
    Build the sample pickle from a CSV sample sheet.

    \b
    Sample sheet:
      sample_id,matrix_dir,group,donor
      ctrl_1,/data/ctrl_1/filtered_feature_bc_matrix,ctrl,P001
      stim_1,/data/stim_1/filtered_feature_bc_matrix,stim,P001

    \b
    Examples:
      scStages sample-information -i samples.csv -o samples.pkl
      scStages sample-information -i samples.csv -o samples.pkl --skip-validation
    """
    click.echo(f"\n{'='*60}")
    click.echo("scStages: sample-information")
    click.echo(f"{'='*60}\n")

    try:
        sheet = read_sample_sheet(input_csv)
    except ConfigError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)
    click.echo(f"{input_csv}: {len(sheet)} samples in "
               f"{sheet['group'].nunique()} groups")

    if verbose:
        for record in sheet.itertuples(index=False):
            click.echo(f"  {record.sample_id:<20} {record.group:<12} {record.matrix_dir}")

    if skip_validation:
        click.echo("Matrix directories not checked (--skip-validation)")
    problems = check_matrix_dirs(sheet, check_existence=not skip_validation)
    if problems:
        click.echo(f"ERROR: {len(problems)} sample(s) are not usable:", err=True)
        for problem in problems[:MAX_REPORTED]:
            click.echo(f"  - {problem}", err=True)
        if len(problems) > MAX_REPORTED:
            click.echo(f"  (+{len(problems) - MAX_REPORTED} more)", err=True)
        sys.exit(1)

    samples = sheet_to_samples(sheet)
    parent = os.path.dirname(output_pkl)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(output_pkl, 'wb') as handle:
        pickle.dump(samples, handle)

    click.echo(f"\nWrote {len(samples)} samples to {output_pkl}")
    click.echo("\nNext: scStages create-config --output-dir ./results "
               f"--sample-pickle {output_pkl}\n")


if __name__ == '__main__':
    sample_information()
