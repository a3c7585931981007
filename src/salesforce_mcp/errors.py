"""
Error taxonomy for the Salesforce MCP Server.

Exceptions are raised inside the engine and converted to structured
``{"_success": False, "error": ..., "errorKind": ...}`` dicts at the tool
boundary. ``kind`` is the name reported to callers.
"""

from typing import Any, Dict, Optional


class SalesforceMCPError(Exception):
    """Base class for all engine errors."""

    kind = "Error"

    def __init__(self, message: str, component: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.component = component

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "_success": False,
            "error": self.message,
            "errorKind": self.kind,
        }
        if self.component:
            result["component"] = self.component
        return result


class ValidationError(SalesforceMCPError):
    """Malformed request. Raised before any remote call is made."""

    kind = "ValidationError"


class NotFoundError(SalesforceMCPError):
    """Named component does not exist in the org."""

    kind = "NotFound"


class UpstreamError(SalesforceMCPError):
    """Transport or platform failure (potentially transient)."""

    kind = "UpstreamError"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        component: Optional[str] = None,
        job_id: Optional[str] = None,
    ):
        super().__init__(message, component=component)
        self.status_code = status_code
        self.error_code = error_code
        # Set when the failure hit an already submitted async job
        self.job_id = job_id

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.status_code:
            result["status_code"] = self.status_code
        if self.error_code:
            result["error_code"] = self.error_code
        if self.job_id:
            result["jobId"] = self.job_id
        return result


class DeployTimeoutError(SalesforceMCPError):
    """Polling exceeded its deadline before the job reached a terminal state."""

    kind = "DeployTimeoutError"

    def __init__(self, message: str, job_id: Optional[str] = None, elapsed_ms: Optional[int] = None):
        super().__init__(message)
        self.job_id = job_id
        self.elapsed_ms = elapsed_ms

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.job_id:
            result["jobId"] = self.job_id
        if self.elapsed_ms is not None:
            result["elapsed_ms"] = self.elapsed_ms
        return result


class ConfigurationError(SalesforceMCPError):
    """Neither credential shape is fully configured."""

    kind = "ConfigurationError"


class AggregationError(SalesforceMCPError):
    """Internal consistency bug in outcome aggregation."""

    kind = "AggregationError"


__all__ = [
    "SalesforceMCPError",
    "ValidationError",
    "NotFoundError",
    "UpstreamError",
    "DeployTimeoutError",
    "ConfigurationError",
    "AggregationError",
]
