"""
Pydantic models shared by the metadata and record tools.

Field names follow Python conventions; aliases carry the camelCase names
used on the wire (``fullName``, ``checkOnly``, ...).
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


# ============================================================================
# Requests
# ============================================================================

class ComponentDescriptor(BaseModel):
    """One named, typed unit of org metadata."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str
    full_name: str = Field(alias="fullName")
    metadata: Optional[Any] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.type, self.full_name)

    @property
    def label(self) -> str:
        return f"{self.type}:{self.full_name}"


class OperationOptions(BaseModel):
    """Options recognized by deploy, retrieve and record operations."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    check_only: bool = Field(False, alias="checkOnly")
    rollback_on_error: bool = Field(False, alias="rollbackOnError")
    include_body: bool = Field(False, alias="includeBody")
    api_version: Optional[str] = Field(None, alias="apiVersion")
    save_path: Optional[str] = Field(None, alias="savePath")

    # Per-call overrides of the configured routing/timeout policy
    batch_threshold: Optional[int] = Field(None, alias="batchThreshold")
    bulk_threshold: Optional[int] = Field(None, alias="bulkThreshold")
    timeout: Optional[int] = None
    test_level: str = Field("NoTestRun", alias="testLevel")
    external_id_field: Optional[str] = Field(None, alias="externalIdField")

    @classmethod
    def parse(cls, value: Any) -> "OperationOptions":
        """Accept None, a dict, an OperationOptions or a JSON object string."""
        if value is None or value == "":
            return cls()
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                raise ValidationError(f"options is not valid JSON: {e.msg}")
        if not isinstance(value, dict):
            raise ValidationError(f"options must be an object, got {type(value).__name__}")
        try:
            return cls.model_validate(value)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid options: {_first_error(e)}")


def _first_error(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else err.get("msg", str(exc))


# ============================================================================
# Outcomes
# ============================================================================

class OutcomeKind(str, Enum):
    """Closed set of per-component outcome variants."""

    SUCCESS = "Success"
    NOT_FOUND = "NotFound"
    UPSTREAM_ERROR = "UpstreamError"
    VALIDATION_ERROR = "ValidationError"
    DEPLOY_TIMEOUT = "DeployTimeoutError"


class ComponentOutcome(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    component: str
    success: bool
    kind: OutcomeKind = Field(OutcomeKind.SUCCESS, alias="errorKind")
    metadata: Optional[Any] = None
    error: Optional[str] = None
    file_path: Optional[str] = Field(None, alias="filePath")
    id: Optional[str] = None

    @classmethod
    def ok(cls, descriptor: ComponentDescriptor, metadata: Any = None, **extra) -> "ComponentOutcome":
        return cls(
            type=descriptor.type,
            component=descriptor.full_name,
            success=True,
            metadata=metadata,
            **extra,
        )

    @classmethod
    def failed(cls, descriptor: ComponentDescriptor, kind: OutcomeKind, error: str, **extra) -> "ComponentOutcome":
        return cls(
            type=descriptor.type,
            component=descriptor.full_name,
            success=False,
            kind=kind,
            error=error,
            **extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True, mode="json")
        if self.success:
            data.pop("errorKind", None)
        return data


# Count field names per operation: (total, succeeded, failed)
COUNT_LABELS = {
    "deploy": ("componentsTotal", "componentsDeployed", "componentsFailed"),
    "retrieve": ("componentsTotal", "componentsRetrieved", "componentsFailed"),
    "records": ("recordsTotal", "recordsProcessed", "recordsFailed"),
}


class AggregatedResult(BaseModel):
    """Merged outcome of one operation over a batch of components."""

    operation: str
    success: bool
    total: int
    succeeded: int
    failed: int
    results: List[ComponentOutcome] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    api_version: str
    transport: Optional[str] = None
    check_only: Optional[bool] = None
    job_id: Optional[str] = None
    status: Optional[str] = None
    timed_out: Optional[bool] = None
    rolled_back: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        total_key, ok_key, failed_key = COUNT_LABELS[self.operation]
        data: Dict[str, Any] = {
            "success": self.success,
            total_key: self.total,
            ok_key: self.succeeded,
            failed_key: self.failed,
            "results": [r.to_dict() for r in self.results],
            "errors": list(self.errors),
            "apiVersion": self.api_version,
        }
        optional = {
            "transport": self.transport,
            "checkOnly": self.check_only,
            "jobId": self.job_id,
            "status": self.status,
            "timedOut": self.timed_out,
            "rolledBack": self.rolled_back,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data


# ============================================================================
# Async jobs
# ============================================================================

class JobState(str, Enum):
    QUEUED = "Queued"
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELED = "Canceled"


TERMINAL_STATES = {JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELED}

# Metadata deployRequest status and Bulk API 2.0 job state -> JobState
_PLATFORM_STATES = {
    "Pending": JobState.QUEUED,
    "Queued": JobState.QUEUED,
    "Open": JobState.QUEUED,
    "UploadComplete": JobState.QUEUED,
    "InProgress": JobState.IN_PROGRESS,
    "Canceling": JobState.IN_PROGRESS,
    "Succeeded": JobState.SUCCEEDED,
    "SucceededPartial": JobState.SUCCEEDED,
    "JobComplete": JobState.SUCCEEDED,
    "Failed": JobState.FAILED,
    "Canceled": JobState.CANCELED,
    "Aborted": JobState.CANCELED,
}


def map_platform_state(status: Optional[str]) -> JobState:
    return _PLATFORM_STATES.get(status or "", JobState.IN_PROGRESS)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AsyncJob(BaseModel):
    """Server-side long-running job, owned by a single orchestrator call."""

    id: str
    state: JobState = JobState.QUEUED
    platform_status: Optional[str] = None
    started_at: datetime = Field(default_factory=_now)
    last_polled_at: Optional[datetime] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def observe(self, platform_status: Optional[str], payload: Dict[str, Any]) -> None:
        self.platform_status = platform_status
        self.state = map_platform_state(platform_status)
        self.payload = payload
        self.last_polled_at = _now()


__all__ = [
    "ComponentDescriptor",
    "OperationOptions",
    "OutcomeKind",
    "ComponentOutcome",
    "AggregatedResult",
    "COUNT_LABELS",
    "JobState",
    "TERMINAL_STATES",
    "AsyncJob",
    "map_platform_state",
]
