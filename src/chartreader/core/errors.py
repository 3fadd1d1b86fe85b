from __future__ import annotations


class ChartReaderError(Exception):
    """Base error for all user-facing chartreader exceptions."""


class ConfigurationError(ChartReaderError):
    """Raised when configuration is invalid or incomplete."""


class ProjectNotInitializedError(ChartReaderError):
    """Raised when the state database has not been created yet."""


class ValidationError(ChartReaderError):
    """Raised when a job's source file fails validation."""


class PageSelectionError(ChartReaderError):
    """Raised when no chart page can be chosen from a PDF."""


class ExtractionError(ChartReaderError):
    """Raised when an extraction attempt fails."""


class JobCancelledError(ExtractionError):
    """Raised at a pipeline checkpoint after a stop request."""

    def __init__(self, message: str, checkpoint: str | None = None) -> None:
        super().__init__(message)
        self.checkpoint = checkpoint


class CompletenessError(ChartReaderError):
    """Raised when chart groups still have missing ranks after all retries."""


class JobStateError(ChartReaderError):
    """Raised when a control action is not allowed in the job's current state."""


class StoreError(ChartReaderError):
    """Raised when job store reads or writes fail."""
