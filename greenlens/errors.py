"""
Error types raised by the GreenLens ingestion pipeline.

Per-file errors are caught by the orchestrator and recorded against the file
that raised them; they never abort a batch.
"""

from typing import Optional


class GreenLensError(Exception):
    """Base class for all pipeline errors."""
    pass


class FormatError(GreenLensError):
    """Raised when tabular input is malformed (missing column, no data rows)."""
    pass


class UnsupportedFileError(FormatError):
    """Raised when a file's extension is not accepted by the file queue."""

    def __init__(self, filename: str):
        self.filename = filename
        super().__init__(
            f'"{filename}" is not supported. Please use CSV, PDF, JPG, PNG or WEBP.'
        )


class UnreadableDocumentError(GreenLensError):
    """Raised when a page-based document has no extractable text layer."""
    pass


class ConfigurationError(GreenLensError):
    """Raised when an inference provider is required but none is configured."""
    pass


class ExtractionError(GreenLensError):
    """Raised when structured extraction fails or yields no usable records."""
    pass


class ClassificationError(GreenLensError):
    """Raised when the probabilistic classifier cannot categorize a batch."""
    pass


class SizeLimitError(GreenLensError):
    """Raised when an image exceeds the upload ceiling."""
    pass


class ProviderError(GreenLensError):
    """A single inference provider call failed."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        prefix = f"{provider} error ({status_code})" if status_code else f"{provider} error"
        super().__init__(f"{prefix}: {message}")


class RecordValidationError(ValueError):
    """Raised by the record factory for input that cannot form an expense."""
    pass
