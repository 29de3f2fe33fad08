# =============================================================================
# Error Taxonomy
# =============================================================================
#
# Every failure the agent core can raise derives from AgentError.
#
#   AgentError
#   ├── ConfigurationError      — missing backend endpoint / API key
#   │   └── BackendUnavailable  — completion backend not configured
#   ├── UpstreamError           — completion / retrieval collaborator failed
#   ├── ToolExecutionError      — a tool could not produce a result
#   │   ├── InvalidExpression   — calculator input outside the grammar
#   │   └── NonFiniteResult     — calculator produced NaN / Infinity
#   ├── ValidationError         — request rejected before enqueueing
#   ├── NotFoundError           — unknown job id
#   └── JobFailedError          — sync wait observed a failed job
#
# PROPAGATION:
#   - ToolExecutionError never leaves the ToolRegistry (converted to text)
#   - ConfigurationError / UpstreamError never leave the synthesize step
#     (converted to an apology string)
#   - ValidationError / NotFoundError / JobFailedError reach the API layer,
#     which maps them to HTTP status codes
# =============================================================================

from __future__ import annotations


class AgentError(Exception):
    """Base class for all agent-core errors."""


class ConfigurationError(AgentError):
    """A required backend setting is missing."""


class BackendUnavailable(ConfigurationError):
    """No completion endpoint (or API key) is configured."""


class UpstreamError(AgentError):
    """
    An external collaborator returned an unusable response.

    Covers non-2xx statuses, non-JSON bodies, explicit ``{"error": ...}``
    payloads and transport failures (timeouts, refused connections).
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ToolExecutionError(AgentError):
    """A tool failed internally. Always caught by the ToolRegistry."""


class InvalidExpression(ToolExecutionError):
    """Calculator input contains characters or syntax outside the grammar."""


class NonFiniteResult(ToolExecutionError):
    """Calculator evaluation produced NaN or an infinite value."""


class ValidationError(AgentError):
    """A submission was rejected before it reached the queue."""


class NotFoundError(AgentError):
    """No job exists with the given id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class JobFailedError(AgentError):
    """The sync façade observed a job in the ``failed`` state."""

    def __init__(self, job_id: str, reason: str | None) -> None:
        super().__init__(f"Job {job_id} failed: {reason or 'unknown error'}")
        self.job_id = job_id
        self.reason = reason
