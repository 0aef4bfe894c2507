"""
Exceptions raised by the integration pipeline.

Every error carries the pipeline stage it was raised in (``stage``) once it
has passed through the runner, and the underlying exception (``cause``) when
it wraps one from a third-party library.
"""


class PipelineError(Exception):
    """Base exception for integration pipeline failures."""

    def __init__(self, message, stage=None, cause=None):
        super().__init__(message)
        self.stage = stage
        self.cause = cause

    def __str__(self):
        message = super().__str__()
        if self.stage:
            return f"[{self.stage}] {message}"
        return message


class LoadError(PipelineError):
    """Input file is missing, malformed or lacks the expected modality."""


class ConfigError(PipelineError):
    """Invalid threshold, parameter or strategy identifier."""


class ConvergenceError(PipelineError):
    """Iterative correction or factorization did not converge."""


class EmptyResultError(PipelineError):
    """A step left a dataset without cells or genes."""
