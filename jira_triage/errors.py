"""
Exception taxonomy for the Jira Triage Assistant.

Leaf components never raise on empty input. The classification chain
converts LLM failures into fallbacks; everything else surfaces one of
the errors below.
"""

from typing import Optional


class TriageError(Exception):
    """Base exception for triage operations."""
    pass


class ValidationError(TriageError):
    """Missing or malformed required input. Reported to the caller verbatim."""
    pass


class NotFoundError(TriageError):
    """Issue or project key does not exist."""
    pass


class UpstreamUnavailableError(TriageError):
    """Ticket store or LLM unreachable, or it answered with a non-OK status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedUpstreamResponseError(TriageError):
    """Upstream answered, but the payload could not be parsed or validated."""
    pass
