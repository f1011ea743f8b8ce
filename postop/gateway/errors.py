"""
Error taxonomy for the follow-up pipeline.

Authentication and throttling errors reject a webhook request before any
state is touched.  Patient-not-found and no-active-follow-up are outcomes,
not exceptions, and live in their respective modules.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(PipelineError):
    """Required configuration (signing secret, verify token) is missing."""


class AuthenticationError(PipelineError):
    """Bad or missing webhook signature, or wrong verify token."""


class RateLimited(PipelineError):
    """Source address exceeded the sliding-window request budget."""

    def __init__(self, retry_after: int, message: str = "") -> None:
        self.retry_after = retry_after
        super().__init__(message or f"Rate limit exceeded, retry after {retry_after}s")


class TransientClassifierFailure(PipelineError):
    """The risk classifier was unavailable, slow, or returned garbage."""


class PersistenceConflict(PipelineError):
    """A concurrent write changed the conversation state under us."""


class RecordNotFound(PipelineError):
    """A referenced record does not exist in the store."""


class AlertDispatchFailure(PipelineError):
    """Physician alert could not be delivered after all attempts."""


class InvalidTransition(PipelineError):
    """A follow-up status change would move backwards."""
