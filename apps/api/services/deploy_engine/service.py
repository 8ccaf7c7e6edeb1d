from __future__ import annotations

import asyncio
import logging
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from api.schemas.deployment_job import JobView, LogEntryOut

from .config import EngineSettings, load_settings
from .credentials import CredentialProvider, project_azure_tf_vars
from .errors import (
    CommandError,
    DeployEngineError,
    OutputParseError,
    ValidationError,
)
from .job_store import JobStore, build_job_store
from .log_hub import LogHub
from .outputs import flatten_outputs
from .paths import resolve_file_path, workspace_dir
from .persistence import JsonFileStateBridge, StatePersistenceBridge
from .preflight import PreflightService
from .runner import CommandRunner
from .secrets import RedactionRegistry, collect_secrets, mask_mapping
from .types import TERMINAL_STATUSES, Job, JobKind, Severity
from .util import iso, safe_mkdir

LOGGER = logging.getLogger(__name__)

PROVIDERS = ("aws", "gcp", "azure")
JOB_KINDS = ("infrastructure", "application")

PLAN_FILE = "tfplan"
TOOL_STATE_DIR = ".terraform"
TOOL_LOCK_FILE = ".terraform.lock.hcl"

INIT_ARGS = ["-input=false", "-no-color"]
PLAN_ARGS = ["-input=false", "-no-color", f"-out={PLAN_FILE}"]
APPLY_ARGS = ["-input=false", "-no-color", "-auto-approve", PLAN_FILE]
DESTROY_ARGS = ["-input=false", "-no-color", "-auto-approve"]
OUTPUT_ARGS = ["-json"]


@dataclass
class _RunContext:
    job_id: str
    provider: str
    workspace_id: str
    registry: RedactionRegistry
    work_dir: Optional[Path] = None
    env_vars: Dict[str, str] = field(default_factory=dict)
    credential_files: List[str] = field(default_factory=list)

    def require_work_dir(self) -> Path:
        if self.work_dir is None:
            raise DeployEngineError(f"job {self.job_id}: working directory is not set")
        return self.work_dir


class DeploymentOrchestrator:
    """
    Drives terraform through init -> plan -> apply (or destroy) for one
    workspace/provider pair per job.

    Apply:   setup -> credentials -> [preflight] -> init -> plan -> apply
             -> outputs -> persist -> finished
    Destroy: setup-check -> credentials -> destroy -> cleanup -> finished

    Working directories are keyed by (workspace, provider) and only one
    infrastructure job may hold a pair at a time. Credential files are
    removed before a job is marked completed or failed. Callers observe
    results through get_job(); pipeline failures never propagate.
    """

    def __init__(
        self,
        *,
        settings: Optional[EngineSettings] = None,
        store: Optional[JobStore] = None,
        credentials: Optional[CredentialProvider] = None,
        runner: Optional[CommandRunner] = None,
        preflight: Optional[PreflightService] = None,
        bridge: Optional[StatePersistenceBridge] = None,
        log_hub: Optional[LogHub] = None,
    ) -> None:
        self._settings = settings or load_settings()
        self._log_hub = log_hub or LogHub()
        self._store = store or build_job_store(
            self._settings.job_store_backend,
            self._settings.state_dir,
            log_hub=self._log_hub,
        )
        self._credentials = credentials or CredentialProvider(self._settings)
        self._runner = runner or CommandRunner(
            self._store.append_log,
            binary=self._settings.terraform_bin,
            timeout_seconds=self._settings.command_timeout_seconds,
            kill_grace_seconds=self._settings.kill_grace_seconds,
        )
        self._preflight = preflight or PreflightService(
            timeout_seconds=self._settings.http_timeout_seconds
        )
        self._bridge = bridge or JsonFileStateBridge(self._settings.state_dir)

        self._lock = threading.Lock()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._active: Dict[Tuple[str, str], str] = {}

    # Jobs

    def create_job(
        self,
        kind: JobKind,
        workspace_id: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> str:
        if kind not in JOB_KINDS:
            raise ValidationError(f"unknown job kind: {kind!r}")
        job = self._store.create(kind, workspace_id, metadata)
        LOGGER.info("created %s job %s for workspace %s", kind, job.id, workspace_id)
        return job.id

    def get_job(self, job_id: str) -> JobView:
        return self._view(self._store.get(job_id))

    def latest_job(self, workspace_id: str) -> Optional[JobView]:
        jobs = self._store.list_jobs(workspace_id)
        return self._view(jobs[-1]) if jobs else None

    def subscribe_logs(self, job_id: str):
        return self._log_hub.subscribe(job_id)

    def unsubscribe_logs(self, job_id: str, q) -> None:
        self._log_hub.unsubscribe(job_id, q)

    def _view(self, job: Job) -> JobView:
        return JobView(
            job_id=job.id,
            kind=job.kind,
            workspace_id=job.workspace_id,
            status=job.status,
            stage=job.stage,
            start_time=iso(job.start_time) or "",
            finished_at=iso(job.finished_time),
            logs=[LogEntryOut(**entry.to_dict()) for entry in job.logs],
            metadata=mask_mapping(job.metadata),
        )

    # Background execution

    def start_apply(
        self,
        job_id: str,
        provider: str,
        workspace_id: str,
        files: Mapping[str, str],
        connection: Mapping[str, Any],
    ) -> asyncio.Task:
        self._claim(job_id, workspace_id, provider)
        return self._spawn(
            job_id, self.run_apply(job_id, provider, workspace_id, files, connection)
        )

    def start_destroy(
        self,
        job_id: str,
        provider: str,
        workspace_id: str,
        connection: Mapping[str, Any],
    ) -> asyncio.Task:
        self._claim(job_id, workspace_id, provider)
        return self._spawn(
            job_id, self.run_destroy(job_id, provider, workspace_id, connection)
        )

    def start_app_deploy(
        self, job_id: str, source_type: str, target: str, branch: str = "main"
    ) -> asyncio.Task:
        return self._spawn(
            job_id, self.run_app_deploy(job_id, source_type, target, branch)
        )

    def cancel(self, job_id: str) -> bool:
        job = self._store.get(job_id)
        if job.status in TERMINAL_STATUSES:
            return True
        with self._lock:
            task = self._tasks.get(job.id)
        if task is None:
            return False
        task.get_loop().call_soon_threadsafe(task.cancel)
        return True

    def _spawn(self, job_id: str, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=f"deploy-job-{job_id}")
        with self._lock:
            self._tasks[job_id] = task
        task.add_done_callback(lambda t: self._forget(job_id, t))
        return task

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        with self._lock:
            if self._tasks.get(job_id) is task:
                self._tasks.pop(job_id, None)
        self._release(job_id)
        if task.cancelled():
            # Cancelled before the pipeline got to run.
            job = self._store.find(job_id)
            if job is not None and job.status not in TERMINAL_STATUSES:
                self._fail(job_id, "Job canceled", RedactionRegistry())
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("job %s: task ended with %r", job_id, exc)

    def _claim(self, job_id: str, workspace_id: str, provider: str) -> None:
        key = (str(workspace_id), (provider or "").strip().lower())
        with self._lock:
            holder = self._active.get(key)
            if holder and holder != job_id:
                other = self._store.find(holder)
                if other is not None and other.status not in TERMINAL_STATUSES:
                    raise DeployEngineError(
                        f"A deployment job ({holder}) is already in progress "
                        f"for workspace {key[0]} on {key[1].upper()}."
                    )
            self._active[key] = job_id

    def _release(self, job_id: str) -> None:
        with self._lock:
            for key in [k for k, v in self._active.items() if v == job_id]:
                self._active.pop(key, None)

    # Logging / state helpers

    def _log(
        self,
        job_id: str,
        message: str,
        severity: Severity = "INFO",
        registry: Optional[RedactionRegistry] = None,
    ) -> None:
        text = registry.redact(message) if registry is not None else message
        self._store.append_log(job_id, text, severity)

    def _enter(self, ctx: _RunContext, stage: str) -> None:
        self._store.set_stage(ctx.job_id, stage)

    def _fail(self, job_id: str, message: str, registry: RedactionRegistry) -> None:
        self._log(job_id, f"ERROR: {message}", "ERROR", registry)
        self._store.set_status(job_id, "failed")

    def _begin(
        self, job_id: str, provider: str, workspace_id: str, connection: Any
    ) -> Optional[_RunContext]:
        job = self._store.find(job_id)
        if job is None:
            LOGGER.warning("job %s does not exist; nothing to run", job_id)
            return None
        if job.status != "init":
            LOGGER.warning("job %s is already %s; not starting again", job_id, job.status)
            return None

        registry = RedactionRegistry(collect_secrets(connection))
        ctx = _RunContext(
            job_id=job_id,
            provider=(provider or "").strip().lower(),
            workspace_id=str(workspace_id),
            registry=registry,
        )
        self._store.set_status(job_id, "running")
        if ctx.provider not in PROVIDERS:
            self._fail(job_id, f"Unsupported provider: {provider}", registry)
            return None
        try:
            self._claim(job_id, ctx.workspace_id, ctx.provider)
        except DeployEngineError as exc:
            self._fail(job_id, str(exc), registry)
            return None
        return ctx

    def _finish(self, ctx: _RunContext, error: Optional[str]) -> None:
        for warning in self._credentials.cleanup(ctx.credential_files):
            self._log(ctx.job_id, warning, "WARN", ctx.registry)
        if error is None:
            self._store.set_status(ctx.job_id, "completed")
        else:
            self._fail(ctx.job_id, error, ctx.registry)

    async def _guarded(self, ctx: _RunContext, stages) -> None:
        error: Optional[str] = None
        try:
            await stages(ctx)
        except asyncio.CancelledError:
            self._finish(ctx, "Job canceled")
            raise
        except DeployEngineError as exc:
            error = str(exc)
        except Exception as exc:
            LOGGER.exception("job %s: pipeline crashed", ctx.job_id)
            error = str(exc) or exc.__class__.__name__
        finally:
            self._release(ctx.job_id)
        self._finish(ctx, error)

    # Apply

    async def run_apply(
        self,
        job_id: str,
        provider: str,
        workspace_id: str,
        files: Mapping[str, str],
        connection: Mapping[str, Any],
    ) -> None:
        ctx = self._begin(job_id, provider, workspace_id, connection)
        if ctx is None:
            return

        async def _stages(c: _RunContext) -> None:
            await self._apply_stages(c, files, connection)

        await self._guarded(ctx, _stages)

    async def _apply_stages(
        self,
        ctx: _RunContext,
        files: Mapping[str, str],
        connection: Mapping[str, Any],
    ) -> None:
        self._enter(ctx, "setup")
        ctx.work_dir = workspace_dir(
            self._settings.work_root, ctx.workspace_id, ctx.provider
        )
        await asyncio.to_thread(self._prepare_workspace, ctx, files)

        await self._resolve_credentials(ctx, connection)

        if self._preflight.supports(ctx.provider):
            self._enter(ctx, "preflight")
            await self._preflight.run(
                ctx.provider,
                ctx.env_vars,
                lambda message, severity: self._log(
                    ctx.job_id, message, severity, ctx.registry
                ),
            )

        self._enter(ctx, "init")
        self._log(ctx.job_id, f"Initializing Terraform for {ctx.provider.upper()}...", "CMD")
        await self._run_stage(ctx, "init", INIT_ARGS)
        self._log(ctx.job_id, "Terraform initialized successfully!", "SUCCESS")

        self._enter(ctx, "plan")
        self._log(ctx.job_id, "Generating execution plan...", "CMD")
        await self._run_stage(ctx, "plan", PLAN_ARGS)
        self._log(ctx.job_id, "Plan generated successfully!", "SUCCESS")

        self._enter(ctx, "apply")
        self._log(ctx.job_id, "Applying infrastructure changes...", "CMD")
        await self._run_stage(ctx, "apply", APPLY_ARGS)
        self._log(
            ctx.job_id,
            "Apply complete! Infrastructure deployed successfully.",
            "SUCCESS",
        )

        self._enter(ctx, "outputs")
        outputs = await self._capture_outputs(ctx)

        self._enter(ctx, "persist")
        await self._persist(ctx, outputs, "deployed")

        self._store.update_metadata(
            ctx.job_id,
            {"work_dir": str(ctx.work_dir), "outputs_keys": sorted(outputs)},
        )
        self._enter(ctx, "finished")

    def _prepare_workspace(self, ctx: _RunContext, files: Mapping[str, str]) -> None:
        work_dir = ctx.require_work_dir()
        targets = [
            (resolve_file_path(work_dir, name), content)
            for name, content in (files or {}).items()
        ]
        if not targets:
            raise ValidationError("no Terraform files supplied")

        self._log(ctx.job_id, f"Creating workspace directory: {work_dir}", "SYSTEM")
        safe_mkdir(work_dir)
        if self._clear_tool_state(work_dir):
            self._log(ctx.job_id, "Cleaned previous Terraform state/cache", "INFO")

        self._log(ctx.job_id, "Writing Terraform configuration files...", "INFO")
        for path, content in targets:
            safe_mkdir(path.parent)
            if isinstance(content, bytes):
                path.write_bytes(content)
            else:
                path.write_text(str(content), encoding="utf-8")
        self._log(ctx.job_id, f"Wrote {len(targets)} configuration files", "SUCCESS")

    @staticmethod
    def _clear_tool_state(work_dir: Path) -> bool:
        """Drop plugin cache, lockfile and stale plan; terraform.tfstate stays."""
        removed = False
        tool_dir = work_dir / TOOL_STATE_DIR
        if tool_dir.exists():
            shutil.rmtree(tool_dir)
            removed = True
        for name in (TOOL_LOCK_FILE, PLAN_FILE):
            path = work_dir / name
            if path.exists():
                path.unlink()
                removed = True
        return removed

    async def _resolve_credentials(
        self, ctx: _RunContext, connection: Mapping[str, Any]
    ) -> None:
        self._enter(ctx, "credentials")
        self._log(ctx.job_id, f"Obtaining {ctx.provider.upper()} credentials...", "INFO")
        bundle = await self._credentials.resolve(
            ctx.provider, connection, ctx.require_work_dir()
        )
        ctx.credential_files.extend(bundle.credential_files)
        ctx.env_vars = dict(bundle.env_vars)
        if ctx.provider == "azure":
            project_azure_tf_vars(ctx.env_vars)
            self._log(
                ctx.job_id,
                "Injected Azure credentials via TF_VAR environment variables",
                "INFO",
            )
        ctx.registry.extend(RedactionRegistry.from_env(ctx.env_vars).items())
        self._log(
            ctx.job_id,
            f"Credentials obtained successfully ({bundle.strategy or ctx.provider})",
            "SUCCESS",
        )

    async def _run_stage(self, ctx: _RunContext, stage: str, args: List[str]) -> None:
        result = await self._runner.run(
            ctx.job_id, stage, args, ctx.require_work_dir(), ctx.env_vars
        )
        if not result.success:
            raise CommandError(stage, result.exit_code)

    async def _capture_outputs(self, ctx: _RunContext) -> Dict[str, Any]:
        self._log(ctx.job_id, "Capturing infrastructure outputs...", "CMD")
        result = await self._runner.capture(
            ctx.job_id, "output", OUTPUT_ARGS, ctx.require_work_dir(), ctx.env_vars
        )
        if not result.success:
            self._log(
                ctx.job_id,
                f"Warning: terraform output exited with code {result.exit_code}; "
                "continuing without outputs",
                "WARN",
            )
            return {}
        try:
            outputs = flatten_outputs(result.stdout)
        except OutputParseError as exc:
            LOGGER.warning("job %s: %s", ctx.job_id, exc)
            self._log(ctx.job_id, "Warning: Failed to parse Terraform outputs", "WARN")
            return {}
        self._log(
            ctx.job_id,
            f"Outputs captured: {', '.join(outputs) or 'none'}",
            "INFO",
        )
        return outputs

    async def _persist(
        self, ctx: _RunContext, outputs: Mapping[str, Any], status: str
    ) -> None:
        try:
            await self._bridge.save(ctx.workspace_id, outputs, status, job_id=ctx.job_id)
        except DeployEngineError as exc:
            # Applied infrastructure is kept; an operator reconciles the record.
            LOGGER.error("job %s: %s", ctx.job_id, exc)
            self._log(ctx.job_id, f"Failed to persist state: {exc}", "ERROR", ctx.registry)
            return
        except Exception as exc:
            LOGGER.exception("job %s: state bridge failed", ctx.job_id)
            detail = str(exc) or exc.__class__.__name__
            self._log(
                ctx.job_id, f"Failed to persist state: {detail}", "ERROR", ctx.registry
            )
            return
        self._log(ctx.job_id, "Infrastructure state persisted.", "SUCCESS")

    # Destroy

    async def run_destroy(
        self,
        job_id: str,
        provider: str,
        workspace_id: str,
        connection: Mapping[str, Any],
    ) -> None:
        ctx = self._begin(job_id, provider, workspace_id, connection)
        if ctx is None:
            return

        async def _stages(c: _RunContext) -> None:
            await self._destroy_stages(c, connection)

        await self._guarded(ctx, _stages)

    async def _destroy_stages(
        self, ctx: _RunContext, connection: Mapping[str, Any]
    ) -> None:
        self._enter(ctx, "setup-check")
        ctx.work_dir = workspace_dir(
            self._settings.work_root, ctx.workspace_id, ctx.provider
        )
        if not ctx.work_dir.is_dir():
            raise ValidationError(
                "Terraform workspace not found. "
                "Infrastructure may have already been destroyed."
            )
        self._log(
            ctx.job_id,
            f"Starting infrastructure destruction for workspace {ctx.workspace_id}",
            "SYSTEM",
        )

        await self._resolve_credentials(ctx, connection)

        self._enter(ctx, "destroy")
        self._log(ctx.job_id, "Destroying all infrastructure resources...", "CMD")
        self._log(
            ctx.job_id,
            "This may take 10-20 minutes for some resources (e.g., CloudFront)",
            "INFO",
        )
        await self._run_stage(ctx, "destroy", DESTROY_ARGS)
        self._log(ctx.job_id, "Infrastructure destroyed successfully!", "SUCCESS")

        self._enter(ctx, "cleanup")
        try:
            await asyncio.to_thread(shutil.rmtree, ctx.work_dir)
            self._log(ctx.job_id, "Cleaned up local Terraform files", "INFO")
        except OSError as exc:
            LOGGER.warning("job %s: could not remove %s: %s", ctx.job_id, ctx.work_dir, exc)
            self._log(ctx.job_id, f"Failed to clean up local files: {exc}", "WARN")
        await self._persist(ctx, {}, "destroyed")

        self._enter(ctx, "finished")

    # Application deploys (simulated)

    async def run_app_deploy(
        self, job_id: str, source_type: str, target: str, branch: str = "main"
    ) -> None:
        job = self._store.find(job_id)
        if job is None or job.status != "init":
            LOGGER.warning("job %s cannot start an app deploy", job_id)
            return

        registry = RedactionRegistry()
        ctx = _RunContext(
            job_id=job_id, provider="", workspace_id=job.workspace_id, registry=registry
        )
        self._store.set_status(job_id, "running")

        async def _stages(c: _RunContext) -> None:
            await self._app_stages(c, source_type, target, branch)

        await self._guarded(ctx, _stages)

    async def _app_stages(
        self, ctx: _RunContext, source_type: str, target: str, branch: str
    ) -> None:
        step = self._settings.app_step_seconds
        job_id = ctx.job_id

        self._enter(ctx, "build")
        self._log(job_id, f"Starting deployment from {source_type}...", "CMD")
        if source_type == "github":
            self._log(job_id, f"Cloning repository {target} (branch: {branch})...", "INFO")
            await asyncio.sleep(step)
            self._log(job_id, "Repository cloned successfully.", "SYSTEM")
            self._log(job_id, "Running build...", "CMD")
            await asyncio.sleep(step)
        elif source_type == "docker":
            self._log(job_id, f"Pulling Docker image {target}...", "CMD")
            await asyncio.sleep(step)
            self._log(job_id, "Image pull complete.", "INFO")
        else:
            raise ValidationError(f"unknown application source: {source_type!r}")

        self._enter(ctx, "deploy")
        self._log(job_id, "Stopping existing containers...", "INFO")
        await asyncio.sleep(step)
        self._log(job_id, "Starting new instance...", "CMD")
        await asyncio.sleep(step)

        self._enter(ctx, "verify")
        self._log(job_id, "Running health checks...", "INFO")
        await asyncio.sleep(step)
        self._log(job_id, "Health check passed: HTTP 200 OK.", "SUCCESS")

        self._enter(ctx, "finished")
