"""
Error taxonomy shared by the queue, extraction store and merge engine.

Services raise these; the HTTP layer turns ``status_code`` + ``message`` into
a response. None of them are retried automatically.
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for errors surfaced to the caller with a readable message."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConflictError(PipelineError):
    """Duplicate enqueue, duplicate document hash."""

    status_code = 409


class PreconditionFailedError(PipelineError):
    """Operation is not valid for the current state (e.g. cancel a completed job)."""

    status_code = 412


class NotFoundError(PipelineError):
    status_code = 404


class BadRequestError(PipelineError):
    """Invalid input, or a review action on an already-decided extraction."""

    status_code = 400


class MergeError(PipelineError):
    """The approval merge failed and was rolled back; the extraction is still pending."""

    status_code = 500


class ParseError(ValueError):
    """A revenue period string contains no four-digit year."""
