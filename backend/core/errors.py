"""
Error taxonomy for chapter generation.

Authorization, validation, not-found and conflict errors surface synchronously
to the caller that starts or reads a job. Everything raised inside the
background task is written into the job record instead.
"""

from typing import Optional


class ChapterforgeError(Exception):
    error_code = "chapterforge_error"
    http_status = 500

    def __init__(self, message: str = "", *, detail: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.detail = detail

    def as_error_message(self) -> str:
        return f"{self.__class__.__name__}: {self.message}"


class AuthorizationError(ChapterforgeError):
    error_code = "authorization_error"
    http_status = 401


class ValidationError(ChapterforgeError):
    error_code = "validation_error"
    http_status = 400


class NotFoundError(ChapterforgeError):
    error_code = "not_found"
    http_status = 404


class ConflictError(ChapterforgeError):
    error_code = "conflict"
    http_status = 409


class GenerationError(ChapterforgeError):
    error_code = "generation_error"
    http_status = 502


class JobTimeoutError(ChapterforgeError):
    error_code = "timeout"
    http_status = 504


class QualityRejection(ChapterforgeError):
    """The last draft stayed below the acceptance threshold."""

    error_code = "quality_rejection"
    http_status = 422

    def __init__(self, message: str = "", *, best_score: int = 0, attempts: int = 0):
        super().__init__(message)
        self.best_score = best_score
        self.attempts = attempts


class JobStopped(ChapterforgeError):
    """Raised at a stage boundary once the job record is no longer running."""

    error_code = "stopped"
    http_status = 409
