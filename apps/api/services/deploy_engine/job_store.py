from __future__ import annotations

import copy
import datetime as _dt
import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .errors import InvalidTransitionError, JobNotFoundError
from .log_hub import LogHub
from .paths import jobs_root
from .types import TERMINAL_STATUSES, Job, JobKind, JobStatus, LogEntry, Severity
from .util import atomic_write_json, iso, load_json, parse_iso, safe_mkdir, utc_now

LOGGER = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    "init": frozenset({"running", "failed"}),
    "running": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}

_ONE_TICK = _dt.timedelta(microseconds=1)


class JobStore(ABC):
    """
    Registry of job records.

    Writes for a given job come from one pipeline at a time, reads come from
    arbitrary pollers, so every implementation must be safe to call from
    several threads and event loops at once. Readers always receive a copy.
    """

    @abstractmethod
    def create(
        self,
        kind: JobKind,
        workspace_id: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Job: ...

    @abstractmethod
    def find(self, job_id: str) -> Optional[Job]: ...

    @abstractmethod
    def append_log(
        self, job_id: str, message: str, severity: Severity = "INFO"
    ) -> LogEntry: ...

    @abstractmethod
    def set_status(self, job_id: str, status: JobStatus) -> None: ...

    @abstractmethod
    def set_stage(self, job_id: str, stage: str) -> None: ...

    @abstractmethod
    def update_metadata(self, job_id: str, values: Mapping[str, Any]) -> None: ...

    @abstractmethod
    def list_jobs(self, workspace_id: Optional[str] = None) -> List[Job]: ...

    def get(self, job_id: str) -> Job:
        job = self.find(job_id)
        if job is None:
            raise JobNotFoundError(f"job not found: {job_id}")
        return job


@dataclass
class _Slot:
    job: Job
    lock: threading.Lock = field(default_factory=threading.Lock)


def _snapshot(job: Job) -> Job:
    return replace(
        job,
        logs=list(job.logs),
        metadata=copy.deepcopy(job.metadata),
        stages_seen=list(job.stages_seen),
    )


class InMemoryJobStore(JobStore):
    """Process-local store; one lock for the map plus one lock per job."""

    def __init__(self, *, log_hub: Optional[LogHub] = None) -> None:
        self._lock = threading.Lock()
        self._slots: Dict[str, _Slot] = {}
        self._log_hub = log_hub

    # Hooks for persistent subclasses.

    def _on_create(self, job: Job) -> None:
        return None

    def _on_change(self, job: Job) -> None:
        return None

    def _on_log(self, job: Job, entry: LogEntry) -> None:
        return None

    def _load(self, job_id: str) -> Optional[Job]:
        return None

    def _slot(self, job_id: str) -> _Slot:
        rid = (job_id or "").strip()
        with self._lock:
            slot = self._slots.get(rid)
            if slot is None and rid:
                loaded = self._load(rid)
                if loaded is not None:
                    slot = _Slot(loaded)
                    self._slots[rid] = slot
        if slot is None:
            raise JobNotFoundError(f"job not found: {job_id}")
        return slot

    def create(
        self,
        kind: JobKind,
        workspace_id: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Job:
        job = Job(
            id=uuid.uuid4().hex,
            kind=kind,
            workspace_id=str(workspace_id),
            start_time=utc_now(),
            metadata=dict(metadata or {}),
        )
        slot = _Slot(job)
        with slot.lock:
            with self._lock:
                self._slots[job.id] = slot
            self._on_create(job)
            return _snapshot(job)

    def find(self, job_id: str) -> Optional[Job]:
        try:
            slot = self._slot(job_id)
        except JobNotFoundError:
            return None
        with slot.lock:
            return _snapshot(slot.job)

    def append_log(
        self, job_id: str, message: str, severity: Severity = "INFO"
    ) -> LogEntry:
        slot = self._slot(job_id)
        with slot.lock:
            job = slot.job
            ts = utc_now()
            if job.logs and ts <= job.logs[-1].timestamp:
                ts = job.logs[-1].timestamp + _ONE_TICK
            entry = LogEntry(timestamp=ts, message=str(message), severity=severity)
            job.logs.append(entry)
            self._on_log(job, entry)
            if self._log_hub is not None:
                self._log_hub.publish(job.id, entry)
            return entry

    def set_status(self, job_id: str, status: JobStatus) -> None:
        slot = self._slot(job_id)
        with slot.lock:
            job = slot.job
            if job.status == status:
                return
            if status not in _ALLOWED_TRANSITIONS.get(job.status, frozenset()):
                raise InvalidTransitionError(
                    f"job {job.id}: cannot move from {job.status} to {status}"
                )
            job.status = status
            if status in TERMINAL_STATUSES:
                job.finished_time = utc_now()
            self._on_change(job)
        if status in TERMINAL_STATUSES and self._log_hub is not None:
            self._log_hub.drop(job.id)

    def set_stage(self, job_id: str, stage: str) -> None:
        slot = self._slot(job_id)
        with slot.lock:
            job = slot.job
            if job.stage == stage:
                return
            if job.status in TERMINAL_STATUSES:
                raise InvalidTransitionError(
                    f"job {job.id}: stage is frozen once the job is {job.status}"
                )
            if stage in job.stages_seen:
                raise InvalidTransitionError(
                    f"job {job.id}: stage {stage!r} was already entered"
                )
            job.stage = stage
            job.stages_seen.append(stage)
            self._on_change(job)

    def update_metadata(self, job_id: str, values: Mapping[str, Any]) -> None:
        slot = self._slot(job_id)
        with slot.lock:
            slot.job.metadata.update(values)
            self._on_change(slot.job)

    def list_jobs(self, workspace_id: Optional[str] = None) -> List[Job]:
        with self._lock:
            slots = list(self._slots.values())
        out: List[Job] = []
        for slot in slots:
            with slot.lock:
                if workspace_id is None or slot.job.workspace_id == workspace_id:
                    out.append(_snapshot(slot.job))
        out.sort(key=lambda j: j.start_time)
        return out


class FileJobStore(InMemoryJobStore):
    """
    Filesystem-backed store so job visibility survives a restart.

    Layout:
      ${STATE_DIR}/jobs/<job_id>/
        job.json     (kind, workspace, status, stage, timestamps, metadata)
        logs.jsonl   (one LogEntry per line, append-only)

    A job found on disk in a non-terminal state belonged to a previous
    process; it is marked failed when first loaded.
    """

    def __init__(self, state_dir: Path, *, log_hub: Optional[LogHub] = None) -> None:
        super().__init__(log_hub=log_hub)
        self._root = jobs_root(state_dir)
        safe_mkdir(self._root)

    def _job_dir(self, job_id: str) -> Path:
        return self._root / job_id

    def _meta(self, job: Job) -> Dict[str, Any]:
        return {
            "job_id": job.id,
            "kind": job.kind,
            "workspace_id": job.workspace_id,
            "status": job.status,
            "stage": job.stage,
            "stages_seen": list(job.stages_seen),
            "start_time": iso(job.start_time),
            "finished_time": iso(job.finished_time),
            "metadata": job.metadata,
        }

    def _on_create(self, job: Job) -> None:
        safe_mkdir(self._job_dir(job.id))
        self._on_change(job)

    def _on_change(self, job: Job) -> None:
        atomic_write_json(self._job_dir(job.id) / "job.json", self._meta(job))

    def _on_log(self, job: Job, entry: LogEntry) -> None:
        with open(self._job_dir(job.id) / "logs.jsonl", "a", encoding="utf-8") as fh:
            fh.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")

    def _read_logs(self, job_id: str) -> List[LogEntry]:
        path = self._job_dir(job_id) / "logs.jsonl"
        if not path.is_file():
            return []
        entries: List[LogEntry] = []
        for raw in path.read_text(encoding="utf-8").splitlines():
            if not raw.strip():
                continue
            try:
                data = json.loads(raw)
            except ValueError:
                LOGGER.warning("job %s: skipping unreadable log line", job_id)
                continue
            entries.append(
                LogEntry(
                    timestamp=parse_iso(data.get("timestamp")) or utc_now(),
                    message=str(data.get("message", "")),
                    severity=data.get("severity") or "INFO",
                )
            )
        return entries

    def _load(self, job_id: str) -> Optional[Job]:
        if "/" in job_id or job_id in {".", ".."}:
            return None
        meta = load_json(self._job_dir(job_id) / "job.json")
        if not meta:
            return None
        job = Job(
            id=job_id,
            kind=meta.get("kind") or "infrastructure",
            workspace_id=str(meta.get("workspace_id") or ""),
            start_time=parse_iso(meta.get("start_time")) or utc_now(),
            status=meta.get("status") or "init",
            stage=meta.get("stage") or "queued",
            logs=self._read_logs(job_id),
            metadata=dict(meta.get("metadata") or {}),
            finished_time=parse_iso(meta.get("finished_time")),
            stages_seen=list(meta.get("stages_seen") or []),
        )
        if job.status not in TERMINAL_STATUSES:
            LOGGER.warning("job %s was %s when the process stopped", job_id, job.status)
            ts = utc_now()
            if job.logs and ts <= job.logs[-1].timestamp:
                ts = job.logs[-1].timestamp + _ONE_TICK
            entry = LogEntry(
                timestamp=ts,
                message="ERROR: job interrupted by a service restart",
                severity="ERROR",
            )
            job.logs.append(entry)
            self._on_log(job, entry)
            job.status = "failed"
            job.finished_time = utc_now()
            self._on_change(job)
        return job

    def list_jobs(self, workspace_id: Optional[str] = None) -> List[Job]:
        if self._root.is_dir():
            for child in self._root.iterdir():
                if child.is_dir():
                    self.find(child.name)
        return super().list_jobs(workspace_id)


def build_job_store(
    backend: str, state_dir: Path, *, log_hub: Optional[LogHub] = None
) -> JobStore:
    if backend == "file":
        return FileJobStore(state_dir, log_hub=log_hub)
    if backend == "memory":
        return InMemoryJobStore(log_hub=log_hub)
    raise ValueError("JOB_STORE_BACKEND must be 'memory' or 'file'")
