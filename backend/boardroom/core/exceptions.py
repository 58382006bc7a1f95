"""
讨论引擎异常
Discussion Engine Errors
"""

from __future__ import annotations


class DiscussionError(Exception):
    """Base error; ``status_code`` is the HTTP-equivalent used by the API layer."""

    status_code = 500
    error_type = "discussion_error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(DiscussionError):
    """Discussion, participant or persona missing."""

    status_code = 404
    error_type = "not_found"


class InvalidStateError(DiscussionError):
    """Completed discussion, exhausted quota or unusable configuration."""

    status_code = 400
    error_type = "invalid_state"


class BackendFailureError(DiscussionError):
    """Transient language-model failure (timeout, auth, rate limit)."""

    status_code = 502
    error_type = "backend_failure"


class LLMConfigurationError(DiscussionError):
    """No usable language-model backend at all. Fatal."""

    status_code = 503
    error_type = "llm_configuration"


class ConcurrencyConflictError(DiscussionError):
    """Another advance holds the discussion, or the cursor moved underneath us."""

    status_code = 409
    error_type = "busy"
    retryable = True


class PersistenceError(DiscussionError):
    """Write to the turn or cursor store failed."""

    status_code = 500
    error_type = "persistence_failure"
