"""
quality_control.py
==================

Stage 2: per-cell quality metrics, doublet removal, threshold filtering and
the split into per-sample partitions used by integration.

The filter is a pure function of three per-cell metrics:

    keep(cell) = library_size > 500 AND detected_genes < 5000 AND percent_mt < 10

A cell with an empty library never passes, whatever its other metrics.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
import scanpy as sc
import scrublet as scr

from scstages.config import DEFAULT_QC_PARAMS, DEFAULT_RANDOM_SEED
from scstages.errors import DegenerateMetricError, DimensionMismatchError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QCThresholds:
    """
    Bounds of the cell filter; all three comparisons are strict.

    A cell is kept iff ``library_size > min_library_size``,
    ``detected_genes < max_detected_genes`` and
    ``percent_mt < max_percent_mt``.
    """
    min_library_size: float = 500
    max_detected_genes: float = 5000
    max_percent_mt: float = 10

    @classmethod
    def from_params(cls, params):
        return cls(
            min_library_size=params['min_library_size'],
            max_detected_genes=params['max_detected_genes'],
            max_percent_mt=params['max_percent_mt'],
        )


@dataclass
class QCResult:
    """Output of the QC stage."""
    adata: object          # QC-passed AnnData
    unfiltered: object     # Input cells with metrics and doublet calls attached
    n_input: int
    n_doublets: int
    n_failed_filter: int


# =============================================================================
# Metrics
# =============================================================================

def percent_mt_of(library_size, mt_counts):
    """Mitochondrial percentage of a single cell."""
    if library_size == 0:
        raise DegenerateMetricError("percent_mt is undefined for a cell with library_size == 0")
    return 100.0 * mt_counts / library_size


def compute_qc_metrics(adata, mt_pattern='^MT-'):
    """
    Calculate QC metrics for all cells.

    Adds ``library_size``, ``detected_genes`` and ``percent_mt`` to obs
    (``percent_mt`` is NaN where the library is empty), together with
    scanpy's ``calculate_qc_metrics`` columns for mitochondrial, ribosomal
    and haemoglobin genes.

    Parameters
    ----------
    adata : AnnData
        Raw counts, cells x genes
    mt_pattern : str
        Regular expression matched case-insensitively against gene symbols

    Returns
    -------
    AnnData
        A copy of ``adata`` with metrics in obs and gene flags in var
    """
    logger.info("Calculating QC metrics...")
    adata = adata.copy()

    symbols = adata.var_names.to_series()
    adata.var['mt'] = symbols.str.contains(mt_pattern, case=False, regex=True).to_numpy()
    adata.var['ribo'] = adata.var_names.str.startswith(('RPS', 'RPL', 'Rps', 'Rpl'))
    adata.var['hb'] = adata.var_names.str.contains('^HB[^(P)]', case=False, regex=True)

    X = adata.X
    library_size = np.asarray(X.sum(axis=1), dtype=float).ravel()
    detected_genes = np.asarray((X > 0).sum(axis=1)).ravel()
    mt_counts = np.asarray(X[:, adata.var['mt'].to_numpy()].sum(axis=1), dtype=float).ravel()

    percent_mt = np.full(adata.n_obs, np.nan)
    nonzero = library_size > 0
    percent_mt[nonzero] = 100.0 * mt_counts[nonzero] / library_size[nonzero]

    with np.errstate(divide='ignore', invalid='ignore'):
        sc.pp.calculate_qc_metrics(
            adata,
            qc_vars=['mt', 'ribo', 'hb'],
            percent_top=None,
            log1p=False,
            inplace=True
        )

    adata.obs['library_size'] = library_size
    adata.obs['detected_genes'] = detected_genes
    adata.obs['percent_mt'] = percent_mt

    n_empty = int((~nonzero).sum())
    if n_empty:
        logger.warning(f"  {n_empty} cells have an empty library; they will fail the filter")
    logger.info(f"  Mean genes/cell: {adata.obs['detected_genes'].mean():.1f}")
    logger.info(f"  Mean counts/cell: {adata.obs['library_size'].mean():.1f}")
    logger.info(f"  Mean % mito: {np.nanmean(percent_mt) if nonzero.any() else float('nan'):.1f}%")

    return adata


# =============================================================================
# Filter predicate
# =============================================================================

def passes_qc(library_size, detected_genes, percent_mt, thresholds=QCThresholds()):
    """Filter predicate for one cell."""
    if library_size == 0 or percent_mt is None or np.isnan(percent_mt):
        return False
    return bool(
        library_size > thresholds.min_library_size
        and detected_genes < thresholds.max_detected_genes
        and percent_mt < thresholds.max_percent_mt
    )


def cell_passes_qc(library_size, detected_genes, mt_counts, thresholds=QCThresholds()):
    """Filter predicate for one cell given its raw mitochondrial count."""
    try:
        percent_mt = percent_mt_of(library_size, mt_counts)
    except DegenerateMetricError:
        return False
    return passes_qc(library_size, detected_genes, percent_mt, thresholds)


def qc_mask(obs, thresholds=QCThresholds()):
    """
    Vectorised filter predicate over an obs table.

    Returns
    -------
    pd.Series
        Boolean mask indexed like ``obs``
    """
    library_size = obs['library_size'].to_numpy(dtype=float)
    detected_genes = obs['detected_genes'].to_numpy(dtype=float)
    percent_mt = obs['percent_mt'].to_numpy(dtype=float)

    defined = (library_size > 0) & ~np.isnan(percent_mt)
    percent_mt = np.where(defined, percent_mt, np.inf)

    keep = (
        defined
        & (library_size > thresholds.min_library_size)
        & (detected_genes < thresholds.max_detected_genes)
        & (percent_mt < thresholds.max_percent_mt)
    )
    return pd.Series(keep, index=obs.index, name='qc_pass')


def filter_cells(adata, thresholds=QCThresholds()):
    """
    Keep exactly the cells that satisfy the filter predicate.

    Genes are not re-filtered; obs and obsm travel with the kept cells.
    """
    logger.info("Filtering cells...")
    logger.info(f"  Thresholds: library_size > {thresholds.min_library_size}, "
                f"detected_genes < {thresholds.max_detected_genes}, "
                f"percent_mt < {thresholds.max_percent_mt}%")

    mask = qc_mask(adata.obs, thresholds)
    filtered = adata[mask.to_numpy(), :].copy()

    logger.info(f"  Cells: {adata.n_obs} -> {filtered.n_obs} ({adata.n_obs - filtered.n_obs} removed)")
    return filtered


# =============================================================================
# Doublets
# =============================================================================

class ScrubletDetector:
    """
    Doublet detection with Scrublet, run per sample.

    Samples with fewer than ``min_cells`` cells are not scored and all of
    their cells are treated as singlets.

    Scrublet keeps only the most variable genes (85th percentile and up)
    before its PCA, so a scored sample needs more than ``n_prin_comps``
    of them: roughly ``7 * n_prin_comps`` detected genes. ``n_prin_comps``
    is also capped at the sample's cell count minus one.
    """

    def __init__(self, expected_doublet_rate=0.06, min_cells=100, batch_key='sample_id',
                 n_prin_comps=30):
        self.expected_doublet_rate = expected_doublet_rate
        self.min_cells = min_cells
        self.batch_key = batch_key
        self.n_prin_comps = n_prin_comps

    def __call__(self, adata, seed):
        scores = pd.Series(0.0, index=adata.obs_names, name='doublet_score')
        predicted = pd.Series(False, index=adata.obs_names, name='predicted_doublet')

        for sample in adata.obs[self.batch_key].unique():
            mask = (adata.obs[self.batch_key] == sample).to_numpy()
            n_cells = int(mask.sum())

            if n_cells < self.min_cells:
                logger.warning(f"  Sample {sample} has <{self.min_cells} cells, skipping doublet detection")
                continue

            scrub = scr.Scrublet(
                adata.X[mask],
                expected_doublet_rate=self.expected_doublet_rate,
                random_state=seed,
            )
            sample_scores, sample_predicted = scrub.scrub_doublets(
                min_counts=2,
                min_cells=3,
                n_prin_comps=min(self.n_prin_comps, n_cells - 1),
                verbose=False,
            )
            scores[mask] = sample_scores

            if sample_predicted is None:
                logger.warning(f"  Scrublet found no score threshold for {sample}; no doublets called")
                continue

            predicted[mask] = sample_predicted.astype(bool)
            n_doublets = int(sample_predicted.sum())
            logger.info(f"  {sample}: {n_doublets} doublets detected ({100 * n_doublets / n_cells:.1f}%)")

        return pd.concat([scores, predicted], axis=1)


def remove_doublets(adata, detector, seed=DEFAULT_RANDOM_SEED):
    """
    Call doublets and keep only singlets.

    Parameters
    ----------
    adata : AnnData
        Merged container
    detector : callable
        ``detector(adata, seed)`` returning a DataFrame indexed by cell id
        with ``doublet_score`` and ``predicted_doublet`` columns
    seed : int
        Random seed handed to the detector

    Returns
    -------
    tuple
        (annotated input, singlets)
    """
    logger.info("Detecting doublets...")
    calls = detector(adata, seed)

    missing = adata.obs_names.difference(calls.index)
    if len(missing) > 0:
        raise DimensionMismatchError(
            f"Doublet detector returned no call for {len(missing)} cells, e.g. {missing[0]}"
        )

    adata = adata.copy()
    calls = calls.loc[adata.obs_names]
    adata.obs['doublet_score'] = calls['doublet_score'].to_numpy(dtype=float)
    adata.obs['predicted_doublet'] = calls['predicted_doublet'].to_numpy(dtype=bool)

    singlets = adata[~adata.obs['predicted_doublet'].to_numpy(), :].copy()
    logger.info(f"  Total doublets removed: {adata.n_obs - singlets.n_obs}")
    return adata, singlets


# =============================================================================
# Partitioning
# =============================================================================

def split_by_sample(adata, key='sample_id'):
    """
    Split a container into disjoint per-sample partitions.

    Pure re-indexing; every cell lands in exactly one partition.

    Returns
    -------
    dict
        ``{sample_id: AnnData}``
    """
    if key not in adata.obs.columns:
        raise DimensionMismatchError(f"obs has no '{key}' column to split on")

    labels = adata.obs[key]
    if labels.isna().any():
        missing = labels.index[labels.isna()]
        raise DimensionMismatchError(
            f"{len(missing)} cells have no {key}, e.g. {missing[0]}"
        )

    partitions = {
        str(sample): adata[(labels == sample).to_numpy(), :].copy()
        for sample in pd.unique(labels.astype(str))
    }

    n_total = sum(p.n_obs for p in partitions.values())
    covered = set().union(*(set(p.obs_names) for p in partitions.values())) if partitions else set()
    if n_total != adata.n_obs or covered != set(adata.obs_names):
        raise DimensionMismatchError("Sample partitions do not cover the container exactly once")

    logger.info(f"Split {adata.n_obs} cells into {len(partitions)} partitions by {key}")
    return partitions


# =============================================================================
# Stage
# =============================================================================

def quality_control(adata, params=None, detector=None, seed=DEFAULT_RANDOM_SEED):
    """
    Stage function: metrics, doublet removal and threshold filtering.

    Parameters
    ----------
    adata : AnnData
        Merged, unfiltered container from ingestion
    params : dict, optional
        QC parameters (see ``DEFAULT_QC_PARAMS``)
    detector : callable, optional
        Doublet detector; defaults to ``ScrubletDetector`` built from params
    seed : int
        Random seed for doublet detection

    Returns
    -------
    QCResult
    """
    params = {**DEFAULT_QC_PARAMS, **(params or {})}
    n_input = adata.n_obs

    logger.info("\n[Step 1/3] Calculating QC metrics...")
    adata = compute_qc_metrics(adata, mt_pattern=params['mt_pattern'])

    if params['doublet_removal']:
        logger.info("\n[Step 2/3] Removing doublets...")
        if detector is None:
            detector = ScrubletDetector(
                expected_doublet_rate=params['doublet_rate'],
                min_cells=params['doublet_min_cells'],
                n_prin_comps=params['doublet_n_prin_comps'],
            )
        unfiltered, singlets = remove_doublets(adata, detector, seed=seed)
    else:
        logger.info("\n[Step 2/3] Skipping doublet removal...")
        unfiltered = adata
        unfiltered.obs['doublet_score'] = 0.0
        unfiltered.obs['predicted_doublet'] = False
        singlets = unfiltered

    logger.info("\n[Step 3/3] Applying QC thresholds...")
    filtered = filter_cells(singlets, QCThresholds.from_params(params))

    return QCResult(
        adata=filtered,
        unfiltered=unfiltered,
        n_input=n_input,
        n_doublets=n_input - singlets.n_obs,
        n_failed_filter=singlets.n_obs - filtered.n_obs,
    )
