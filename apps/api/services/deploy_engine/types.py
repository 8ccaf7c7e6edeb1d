from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional


JobKind = Literal["infrastructure", "application"]
JobStatus = Literal["init", "running", "completed", "failed"]
Severity = Literal["CMD", "INFO", "WARN", "ERROR", "SUCCESS", "SYSTEM"]
Provider = Literal["aws", "gcp", "azure"]

TERMINAL_STATUSES = frozenset({"completed", "failed"})


@dataclass(frozen=True)
class LogEntry:
    timestamp: _dt.datetime
    message: str
    severity: Severity = "INFO"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(timespec="microseconds").replace(
                "+00:00", "Z"
            ),
            "message": self.message,
            "severity": self.severity,
        }


@dataclass
class Job:
    id: str
    kind: JobKind
    workspace_id: str
    start_time: _dt.datetime
    status: JobStatus = "init"
    stage: str = "queued"
    logs: List[LogEntry] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    finished_time: Optional[_dt.datetime] = None
    # Every stage label this job has entered, in order.
    stages_seen: List[str] = field(default_factory=list)


@dataclass
class CredentialBundle:
    env_vars: Dict[str, str] = field(default_factory=dict)
    credential_files: List[str] = field(default_factory=list)
    # Name of the strategy that produced the bundle (e.g. "service-principal").
    strategy: str = ""


@dataclass(frozen=True)
class CommandResult:
    success: bool
    exit_code: int
    timed_out: bool = False
    stdout: str = ""
