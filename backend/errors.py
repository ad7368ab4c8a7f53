"""
Error types shared across the run orchestration core.

Request validation is left to pydantic/FastAPI (422). Everything below is
raised by the core and mapped to HTTP responses in the api layer.
"""

from typing import Optional


class ProductAgentError(Exception):
    """Base class for all errors raised by the orchestration core."""


class RunNotFound(ProductAgentError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run '{run_id}' not found.")
        self.run_id = run_id


class UpstreamUnavailable(ProductAgentError):
    """
    The upstream agent backend could not be reached or answered with an error.

    status_code is the HTTP status to surface to the client: 502 when the
    backend is unreachable, the backend's own status when it answered.
    """

    def __init__(self, message: str, status_code: int = 502, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class StreamTimeout(UpstreamUnavailable):
    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Stream timeout after {timeout_seconds:g}s", status_code=504)
        self.timeout_seconds = timeout_seconds


class GenerationFailure(ProductAgentError):
    """The generation client failed or returned output that did not fit the schema."""


class ApprovalConflict(ProductAgentError):
    """An approval decision was submitted for a checkpoint that is not pending."""
