"""
ingestion.py
============

Stage 1: load per-sample 10x Genomics matrices and merge them into one
per-cell annotated container.

Each sample directory follows the Cell Ranger MEX layout, either v3
(``matrix.mtx.gz``, ``features.tsv.gz``, ``barcodes.tsv.gz``) or legacy
(``matrix.mtx``, ``genes.tsv``, ``barcodes.tsv``).
"""

import os
import logging

import pandas as pd
import scanpy as sc
import anndata as ad
from scipy.io import mminfo

from scstages.config import DEFAULT_INGEST_PARAMS
from scstages.errors import (
    ConfigError,
    DimensionMismatchError,
    DuplicateCellError,
    MissingPathError,
)

logger = logging.getLogger(__name__)

MEX_LAYOUTS = {
    'v3': ('matrix.mtx.gz', 'features.tsv.gz', 'barcodes.tsv.gz'),
    'legacy': ('matrix.mtx', 'genes.tsv', 'barcodes.tsv'),
}


# =============================================================================
# Matrix directory checks
# =============================================================================

def locate_mex_files(matrix_dir):
    """
    Find the matrix, feature and barcode files of a 10x matrix directory.

    Returns
    -------
    dict
        Keys 'matrix', 'features', 'barcodes' mapped to file paths

    Raises
    ------
    MissingPathError
        If the directory or one of its three files does not exist
    """
    if not os.path.isdir(matrix_dir):
        raise MissingPathError(matrix_dir, 'Sample directory')

    # Legacy layout is detected by genes.tsv, same rule scanpy applies
    if os.path.isfile(os.path.join(matrix_dir, 'genes.tsv')):
        names = MEX_LAYOUTS['legacy']
    else:
        names = MEX_LAYOUTS['v3']

    files = dict(zip(('matrix', 'features', 'barcodes'),
                     (os.path.join(matrix_dir, n) for n in names)))
    for path in files.values():
        if not os.path.isfile(path):
            raise MissingPathError(path, 'Matrix file')
    return files


def _count_rows(tsv_path):
    return len(pd.read_csv(tsv_path, sep='\t', header=None, usecols=[0]))


def check_mex_dimensions(sample_id, files):
    """
    Compare the matrix header against the feature and barcode lists.

    The MEX matrix is genes x cells, so its row count must equal the number
    of features and its column count the number of barcodes.
    """
    n_rows, n_cols = mminfo(files['matrix'])[:2]
    n_features = _count_rows(files['features'])
    n_barcodes = _count_rows(files['barcodes'])

    if n_rows != n_features:
        raise DimensionMismatchError(
            f"Sample {sample_id}: matrix has {n_rows} rows but "
            f"{os.path.basename(files['features'])} lists {n_features} features"
        )
    if n_cols != n_barcodes:
        raise DimensionMismatchError(
            f"Sample {sample_id}: matrix has {n_cols} columns but "
            f"{os.path.basename(files['barcodes'])} lists {n_barcodes} barcodes"
        )
    return n_rows, n_cols


# =============================================================================
# Loading
# =============================================================================

def read_sample(sample_id, spec, min_cells=3, min_genes=200, prefix=True):
    """
    Load one sample and attach its metadata.

    Parameters
    ----------
    sample_id : str
        Sample identifier
    spec : SampleSpec
        Matrix directory and experimental group of the sample
    min_cells : int
        Drop genes detected in fewer cells
    min_genes : int
        Drop cells with fewer detected genes
    prefix : bool
        Rename cells to ``<sample_id>_<barcode>``

    Returns
    -------
    AnnData
        Cells x genes container with ``sample_id``, ``group`` and ``barcode``
        columns in obs
    """
    files = locate_mex_files(spec.path)
    n_genes, n_cells = check_mex_dimensions(sample_id, files)
    logger.info(f"  Loading {sample_id} ({n_cells} barcodes, {n_genes} features)...")

    adata = sc.read_10x_mtx(spec.path, var_names='gene_symbols', make_unique=True)

    sc.pp.filter_genes(adata, min_cells=min_cells)
    sc.pp.filter_cells(adata, min_genes=min_genes)
    # Per-sample bookkeeping columns would be misleading after the merge
    adata.var = adata.var.drop(columns=['n_cells'], errors='ignore')

    adata.obs['barcode'] = adata.obs_names.astype(str)
    adata.obs['sample_id'] = sample_id
    adata.obs['group'] = spec.group
    if prefix:
        adata.obs_names = [f"{sample_id}_{bc}" for bc in adata.obs['barcode']]

    logger.info(f"    {sample_id}: {adata.n_obs} cells, {adata.n_vars} genes retained")
    return adata


def merge_samples(adatas):
    """
    Concatenate per-sample containers along the cell axis.

    Genes are the union across samples; genes absent from a sample are
    implicit zeros. The resulting cell set and per-cell metadata do not
    depend on the order of ``adatas``.

    Raises
    ------
    DuplicateCellError
        If two samples contribute the same cell id
    """
    if not adatas:
        raise ConfigError("No samples to merge")

    all_ids = pd.Index([name for a in adatas for name in a.obs_names])
    duplicated = all_ids[all_ids.duplicated()].unique()
    if len(duplicated) > 0:
        raise DuplicateCellError(duplicated.tolist())

    if len(adatas) == 1:
        adata = adatas[0].copy()
    else:
        adata = ad.concat(adatas, join='outer', merge='first')

    for col in ('sample_id', 'group'):
        adata.obs[col] = adata.obs[col].astype(str).astype('category')
    return adata


def ingest(samples, params=None):
    """
    Stage function: load every sample and merge them.

    Parameters
    ----------
    samples : dict
        ``{sample_id: SampleSpec}``
    params : dict, optional
        Ingestion parameters (see ``DEFAULT_INGEST_PARAMS``)

    Returns
    -------
    AnnData
        Merged, unfiltered container
    """
    params = {**DEFAULT_INGEST_PARAMS, **(params or {})}
    if not samples:
        raise ConfigError("No samples declared")

    logger.info(f"Loading {len(samples)} samples...")
    adatas = [
        read_sample(
            sample_id,
            spec,
            min_cells=params['min_cells'],
            min_genes=params['min_genes'],
            prefix=params['prefix_barcodes'],
        )
        for sample_id, spec in samples.items()
    ]

    logger.info("Concatenating samples...")
    adata = merge_samples(adatas)
    logger.info(f"Total: {adata.n_obs} cells, {adata.n_vars} genes from {len(adatas)} samples")
    return adata
