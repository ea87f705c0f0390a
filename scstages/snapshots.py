"""
snapshots.py
============

On-disk hand-off between stages.

Single containers are ``.h5ad`` files. The split-by-sample snapshot is a
directory with one ``.h5ad`` per sample and a ``manifest.yaml`` listing them.
Every write goes to a temporary path first and is moved into place only once
complete, so an interrupted stage never damages an existing snapshot.
"""

import os
import re
import shutil
import logging

import yaml
import anndata as ad

from scstages.errors import DimensionMismatchError, MissingPathError

logger = logging.getLogger(__name__)

MANIFEST = 'manifest.yaml'


def write_snapshot(adata, path):
    """Write one container to ``path`` (.h5ad)."""
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    base, ext = os.path.splitext(path)
    tmp_path = f"{base}.tmp{ext}"
    adata.write_h5ad(tmp_path)
    os.replace(tmp_path, path)
    logger.info(f"Saved snapshot: {path} ({adata.n_obs} cells, {adata.n_vars} genes)")
    return path


def read_snapshot(path, produced_by=None):
    """
    Read a container written by ``write_snapshot``.

    Parameters
    ----------
    path : str
        Snapshot file
    produced_by : str, optional
        Name of the stage that writes this snapshot, used in the error message
    """
    if not os.path.isfile(path):
        what = f"Snapshot from stage '{produced_by}'" if produced_by else 'Snapshot'
        raise MissingPathError(path, what)
    adata = ad.read_h5ad(path)
    logger.info(f"Loaded snapshot: {path} ({adata.n_obs} cells, {adata.n_vars} genes)")
    return adata


def _partition_filename(sample_id):
    return re.sub(r'[^\w.-]', '_', str(sample_id)) + '.h5ad'


def write_partitions(partitions, directory):
    """
    Write ``{sample_id: AnnData}`` as a directory snapshot.

    Returns
    -------
    str
        Path of the manifest
    """
    tmp_dir = f"{directory.rstrip(os.sep)}.tmp"
    if os.path.exists(tmp_dir):
        shutil.rmtree(tmp_dir)
    os.makedirs(tmp_dir)

    entries = []
    used = set()
    for sample_id, part in partitions.items():
        filename = _partition_filename(sample_id)
        if filename in used:
            raise DimensionMismatchError(f"Sample ids collide on disk as {filename}")
        used.add(filename)
        part.write_h5ad(os.path.join(tmp_dir, filename))
        entries.append({'sample_id': str(sample_id), 'file': filename, 'n_cells': int(part.n_obs)})

    manifest = {
        'n_samples': len(entries),
        'n_cells': sum(e['n_cells'] for e in entries),
        'partitions': entries,
    }
    with open(os.path.join(tmp_dir, MANIFEST), 'w') as f:
        yaml.dump(manifest, f, default_flow_style=False, sort_keys=False)

    if os.path.exists(directory):
        shutil.rmtree(directory)
    os.replace(tmp_dir, directory)
    logger.info(f"Saved {len(entries)} partitions to {directory}")
    return os.path.join(directory, MANIFEST)


def read_partitions(directory, produced_by=None):
    """Read a directory snapshot back into ``{sample_id: AnnData}``."""
    manifest_path = os.path.join(directory, MANIFEST)
    if not os.path.isfile(manifest_path):
        what = f"Partition manifest from stage '{produced_by}'" if produced_by else 'Partition manifest'
        raise MissingPathError(manifest_path, what)

    with open(manifest_path) as f:
        manifest = yaml.safe_load(f)

    partitions = {}
    for entry in manifest['partitions']:
        path = os.path.join(directory, entry['file'])
        if not os.path.isfile(path):
            raise MissingPathError(path, f"Partition for sample {entry['sample_id']}")
        part = ad.read_h5ad(path)
        if part.n_obs != entry['n_cells']:
            raise DimensionMismatchError(
                f"Partition {entry['sample_id']}: manifest lists {entry['n_cells']} cells, "
                f"file holds {part.n_obs}"
            )
        partitions[entry['sample_id']] = part

    logger.info(f"Loaded {len(partitions)} partitions from {directory}")
    return partitions
