# prealert/core/errors.py
"""
Typed pipeline errors.

Every step failure is classified through ``retryable``: the workflow
engine catches ``PipelineError`` subtypes at the step boundary and either
reschedules the step or terminates the instance. Steps never retry
on their own.
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    retryable: bool = True

    def __init__(self, detail: str = "Pipeline error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(PipelineError):
    """Malformed dispatch text or numeric fields."""

    retryable = False


class OrgNotFoundError(PipelineError):
    """No organization matches the derived org key."""

    retryable = False

    def __init__(self, org_key: str):
        self.org_key = org_key
        super().__init__(f'Org with key "{org_key}" not found')


class TransientServiceError(PipelineError):
    """Network, timeout, rate-limit or 5xx from the narration or speech service."""

    retryable = True


class ServiceRejectedError(PipelineError):
    """The external service refused the input itself; the same request cannot succeed."""

    retryable = False


class StorageError(PipelineError):
    """Object-store or database write failure."""

    retryable = True


def is_retryable(exc: BaseException) -> bool:
    """Classify a step failure. Unclassified exceptions are retried."""
    if isinstance(exc, PipelineError):
        return exc.retryable
    return True
