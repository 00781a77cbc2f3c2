"""
Exception hierarchy for the manga generation pipeline.

Per-attempt errors are caught inside the pipeline and turned into
retry-or-abort decisions. Only the fatal classes listed in ``FATAL_ERRORS``
escape a page and stop the whole run.
"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(PipelineError):
    """Raised when run options are missing or invalid."""


# =============================================================================
# GENERATION SERVICE ERRORS
# =============================================================================

class GenerationError(PipelineError):
    """Base class for failures reported by the generation service."""


class TransientGenerationError(GenerationError):
    """No usable artifact came back; retryable within the page budget."""


class AuthenticationError(GenerationError):
    """Credentials were rejected. Aborts the entire run."""


class QuotaExceededError(GenerationError):
    """The API quota is exhausted. Aborts the current run, never auto-retried."""


# =============================================================================
# REVIEW AND STORAGE ERRORS
# =============================================================================

class ReviewParseError(PipelineError):
    """The review service answered with something that is not a score sheet."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message, {"raw_text": raw_text[:200]} if raw_text else None)
        self.raw_text = raw_text


class FileIOError(PipelineError):
    """A read or write on the artifact store failed."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, {"path": path} if path else None)
        self.path = path


FATAL_ERRORS = (AuthenticationError, QuotaExceededError)
