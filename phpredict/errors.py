"""
Pipeline Exceptions
===================

All errors derive from ValueError so callers that only care about bad input
can keep catching ValueError.
"""


class PipelineError(ValueError):
    """Base class for pipeline errors."""


class SchemaError(PipelineError):
    """A referenced column is absent, duplicated, or not numeric."""


class InsufficientDataError(PipelineError):
    """A column needing imputation has no observed values to derive a fill from."""

    def __init__(self, column: str, message: str = None):
        self.column = column
        super().__init__(message or f"Column '{column}' has no observed values to impute from")


class DegenerateFitError(PipelineError):
    """A regression fit received a rank-deficient predictor matrix."""


class ConfigurationError(PipelineError):
    """A parameter is outside its permitted range."""
