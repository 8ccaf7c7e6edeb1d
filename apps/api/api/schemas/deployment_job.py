from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


JobKind = Literal["infrastructure", "application"]
JobStatus = Literal["init", "running", "completed", "failed"]
Severity = Literal["CMD", "INFO", "WARN", "ERROR", "SUCCESS", "SYSTEM"]
Provider = Literal["aws", "gcp", "azure"]
AppSourceType = Literal["github", "docker"]


class LogEntryOut(BaseModel):
    timestamp: str
    message: str
    severity: Severity


class JobView(BaseModel):
    job_id: str
    kind: JobKind
    workspace_id: str
    status: JobStatus
    stage: str

    start_time: str
    finished_at: Optional[str] = None

    logs: List[LogEntryOut] = Field(default_factory=list)
    # Secret-looking keys are masked before this leaves the service.
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DeploymentCreateOut(BaseModel):
    job_id: str


class DeploymentCancelOut(BaseModel):
    ok: bool


def _strip_workspace(v: str) -> str:
    s = (v or "").strip()
    if not s:
        raise ValueError("must not be empty")
    return s


class ApplyRequest(BaseModel):
    """
    Terraform apply for one workspace on one provider.

    files:      filename -> content, written verbatim (sub-paths allowed)
    connection: the stored cloud connection record for the provider
    """

    workspace_id: str = Field(..., min_length=1)
    provider: Provider
    files: Dict[str, str]
    connection: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("provider", mode="before")
    @classmethod
    def _lower_provider(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("workspace_id")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        return _strip_workspace(v)

    @field_validator("files")
    @classmethod
    def _require_files(cls, v: Dict[str, str]) -> Dict[str, str]:
        if not v:
            raise ValueError("must not be empty")
        return v


class DestroyRequest(BaseModel):
    workspace_id: str = Field(..., min_length=1)
    provider: Provider
    connection: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("provider", mode="before")
    @classmethod
    def _lower_provider(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("workspace_id")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        return _strip_workspace(v)


class AppDeployRequest(BaseModel):
    workspace_id: str = Field(..., min_length=1)
    source_type: AppSourceType
    target: str = Field(..., min_length=1, description="repository or image reference")
    branch: str = "main"

    @field_validator("workspace_id")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        return _strip_workspace(v)
