from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
import signal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .secrets import RedactionRegistry
from .types import CommandResult, Severity

LOGGER = logging.getLogger(__name__)

AWS_REGION_PATTERN = re.compile(r"^[a-z]{2}-[a-z]+-\d$")

# Keep the tool's AWS SDK away from ~/.aws/config and the global STS endpoint.
HARDENING_ENV = {
    "AWS_SDK_LOAD_CONFIG": "0",
    "AWS_STS_REGIONAL_ENDPOINTS": "regional",
}

# Host variables under these prefixes never reach the child; a job only sees
# the cloud identity its own credential bundle carries.
CLOUD_ENV_PREFIXES = (
    "AWS_",
    "ARM_",
    "AZURE_",
    "GOOGLE_",
    "GCLOUD_",
    "CLOUDSDK_",
    "TF_VAR_azure_",
)

AppendLog = Callable[[str, str, Severity], Any]


def command_env(env_vars: Mapping[str, str]) -> Dict[str, str]:
    env = {k: v for k, v in os.environ.items() if not k.startswith(CLOUD_ENV_PREFIXES)}
    env.update({k: str(v) for k, v in env_vars.items() if v is not None})
    env.update(HARDENING_ENV)
    return env


def check_command_env(env_vars: Mapping[str, str]) -> Optional[str]:
    region = env_vars.get("AWS_DEFAULT_REGION")
    if region and not AWS_REGION_PATTERN.match(region):
        return (
            f'Invalid AWS region format detected: "{region}". '
            "Execution blocked to prevent DNS failure."
        )
    return None


def _split_stream_buffer(buffer: str) -> tuple[list[str], str]:
    lines: list[str] = []
    while True:
        idx_n = buffer.find("\n")
        idx_r = buffer.find("\r")

        if idx_n == -1 and idx_r == -1:
            break

        if idx_n == -1:
            idx = idx_r
        elif idx_r == -1:
            idx = idx_n
        else:
            idx = idx_n if idx_n < idx_r else idx_r

        lines.append(buffer[:idx])
        buffer = buffer[idx + 1 :]

    return lines, buffer


def signal_process_group(pid: Optional[int], sig: int = signal.SIGTERM) -> bool:
    if not isinstance(pid, int) or pid <= 0:
        return False
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        return True
    except OSError as exc:
        LOGGER.warning("failed to signal process group %s: %s", pid, exc)
        return False
    return True


class CommandRunner:
    """
    Run one IaC tool invocation for a job.

    stdout/stderr are streamed line by line into the job log after redaction.
    The child runs in its own session so a timeout or cancellation can stop
    the whole process group. ``run`` never raises for tool failures; only
    task cancellation propagates.
    """

    def __init__(
        self,
        append_log: AppendLog,
        *,
        binary: str = "terraform",
        timeout_seconds: float = 30 * 60,
        kill_grace_seconds: float = 10.0,
    ) -> None:
        self._append_log = append_log
        self.binary = binary
        self.timeout_seconds = timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds

    async def run(
        self,
        job_id: str,
        command: str,
        args: Iterable[str],
        work_dir: Path,
        env_vars: Mapping[str, str],
    ) -> CommandResult:
        return await self._execute(job_id, command, list(args), work_dir, env_vars)

    async def capture(
        self,
        job_id: str,
        command: str,
        args: Iterable[str],
        work_dir: Path,
        env_vars: Mapping[str, str],
    ) -> CommandResult:
        """Like run, but stdout is returned in the result instead of logged."""
        return await self._execute(
            job_id, command, list(args), work_dir, env_vars, capture=True
        )

    async def _execute(
        self,
        job_id: str,
        command: str,
        args: List[str],
        work_dir: Path,
        env_vars: Mapping[str, str],
        *,
        capture: bool = False,
    ) -> CommandResult:
        registry = RedactionRegistry.from_env(env_vars)
        self._append_log(
            job_id,
            registry.redact(" ".join(["$", self.binary, command, *args])),
            "CMD",
        )

        problem = check_command_env(env_vars)
        if problem:
            self._append_log(job_id, f"CRITICAL: {problem}", "ERROR")
            return CommandResult(success=False, exit_code=1)

        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                command,
                *args,
                cwd=str(work_dir),
                env=command_env(env_vars),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            self._append_log(
                job_id, f"Process error: {registry.redact(str(exc))}", "ERROR"
            )
            return CommandResult(success=False, exit_code=-1)

        captured: List[str] = []

        async def _supervise() -> int:
            await asyncio.gather(
                self._pump(
                    proc.stdout,
                    job_id,
                    registry,
                    is_stderr=False,
                    sink=captured if capture else None,
                ),
                self._pump(proc.stderr, job_id, registry, is_stderr=True),
            )
            return await proc.wait()

        try:
            code = await asyncio.wait_for(_supervise(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            await self._stop(job_id, proc)
            self._append_log(
                job_id,
                f"ERROR: Command timed out after {self.timeout_seconds / 60:g} minutes",
                "ERROR",
            )
            return CommandResult(success=False, exit_code=-1, timed_out=True)
        except asyncio.CancelledError:
            await self._stop(job_id, proc)
            raise

        return CommandResult(success=code == 0, exit_code=code, stdout="".join(captured))

    async def _pump(
        self,
        stream: Optional[asyncio.StreamReader],
        job_id: str,
        registry: RedactionRegistry,
        *,
        is_stderr: bool,
        sink: Optional[List[str]] = None,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buf = ""
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if sink is not None:
                sink.append(text)
                continue
            buf += text
            lines, buf = _split_stream_buffer(buf)
            for line in lines:
                self._emit(job_id, line, registry, is_stderr)

        tail = decoder.decode(b"", final=True)
        if sink is not None:
            sink.append(tail)
            return
        buf += tail
        if buf:
            self._emit(job_id, buf, registry, is_stderr)

    def _emit(
        self, job_id: str, line: str, registry: RedactionRegistry, is_stderr: bool
    ) -> None:
        if not line.strip():
            return
        severity: Severity = "INFO"
        if is_stderr:
            # terraform writes progress to stderr too
            severity = "ERROR" if "Error" in line else "WARN"
        self._append_log(job_id, registry.redact(line), severity)

    async def _stop(self, job_id: str, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        if not signal_process_group(proc.pid, signal.SIGTERM):
            self._append_log(
                job_id, f"Failed to send SIGTERM to process {proc.pid}", "WARN"
            )
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_seconds)
            return
        except asyncio.TimeoutError:
            pass

        LOGGER.warning("process %s ignored SIGTERM; sending SIGKILL", proc.pid)
        signal_process_group(proc.pid, signal.SIGKILL)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            self._append_log(
                job_id, f"Process {proc.pid} did not exit after SIGKILL", "WARN"
            )
