"""
errors.py
=========

Exception hierarchy for scStages.

Every error is fatal to the stage that raises it. The previous stage's
snapshot is left untouched, so the recovery is always: fix the input and
re-run the stage.
"""


class PipelineError(Exception):
    """Base class for all scStages errors."""


class ConfigError(PipelineError):
    """Invalid or incomplete configuration."""


class MissingPathError(PipelineError):
    """A declared input (sample directory, matrix file, snapshot) was not found."""

    def __init__(self, path, what='Path'):
        self.path = str(path)
        self.what = what
        super().__init__(f"{what} not found: {self.path}")


class DimensionMismatchError(PipelineError):
    """Matrix, barcode, feature or metadata shapes do not agree."""


class DuplicateCellError(DimensionMismatchError):
    """Two samples contribute the same cell id to a merge."""

    def __init__(self, cell_ids):
        self.cell_ids = list(cell_ids)
        shown = ', '.join(self.cell_ids[:5])
        more = f" (+{len(self.cell_ids) - 5} more)" if len(self.cell_ids) > 5 else ''
        super().__init__(
            f"Cell ids shared between samples: {shown}{more}. "
            f"Enable sample-id prefixing to disambiguate."
        )


class AmbiguousIdentifierError(PipelineError):
    """A gene symbol maps to more than one reference accession."""

    def __init__(self, symbols):
        self.symbols = sorted(symbols)
        super().__init__(
            f"{len(self.symbols)} gene symbol(s) map to more than one accession: "
            f"{', '.join(self.symbols[:10])}"
        )


class DegenerateMetricError(PipelineError):
    """A ratio metric is undefined because its denominator is zero."""
