"""
scStages
========

Single-cell RNA-seq analysis in four stages: ingestion, quality control,
integration and annotation. Each stage is a function from one container to
the next; ``Pipeline`` runs them and owns the snapshots written in between.
"""

__version__ = '0.1.0'

from scstages.ingestion import ingest
from scstages.quality_control import quality_control, split_by_sample
from scstages.integration import integrate
from scstages.annotation import annotate
from scstages.pipeline import Pipeline, STAGES

__all__ = [
    'ingest',
    'quality_control',
    'split_by_sample',
    'integrate',
    'annotate',
    'Pipeline',
    'STAGES',
]
