import os
import stat
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import List, Tuple
from unittest.mock import patch

from services.deploy_engine.runner import (
    HARDENING_ENV,
    CommandRunner,
    _split_stream_buffer,
    check_command_env,
    command_env,
)
from services.deploy_engine.secrets import MASK

FAKE_TOOL = """#!/bin/sh
case "$1" in
  echo)
    echo "hello from $1"
    echo "second line"
    ;;
  warn)
    echo "Warning: deprecated attribute" >&2
    echo "Error: resource conflict" >&2
    exit 3
    ;;
  leak)
    echo "secret is $AWS_SECRET_ACCESS_KEY"
    ;;
  env)
    echo "load=$AWS_SDK_LOAD_CONFIG sts=$AWS_STS_REGIONAL_ENDPOINTS"
    ;;
  arm)
    echo "secret=${ARM_CLIENT_SECRET:-unset} client=${ARM_CLIENT_ID:-unset} token=${ARM_ACCESS_TOKEN:+set}"
    ;;
  json)
    printf '%s' '{"a": {"value": 1}}'
    ;;
  hang)
    sleep 30
    ;;
esac
"""


def _write_tool(root: Path) -> Path:
    path = root / "fake-terraform"
    path.write_text(FAKE_TOOL, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


class TestRunnerHelpers(unittest.TestCase):
    def test_split_stream_buffer_handles_cr_and_lf(self) -> None:
        lines, rest = _split_stream_buffer("one\rtwo\nthree")

        self.assertEqual(lines, ["one", "two"])
        self.assertEqual(rest, "three")

    def test_region_guard(self) -> None:
        self.assertIsNone(check_command_env({"AWS_DEFAULT_REGION": "us-east-1"}))
        self.assertIsNone(check_command_env({}))
        problem = check_command_env({"AWS_DEFAULT_REGION": "useast1"})
        self.assertIn('"useast1"', problem)

    def test_command_env_applies_hardening_last(self) -> None:
        env = command_env({"AWS_SDK_LOAD_CONFIG": "1", "TF_VAR_x": "y"})
        self.assertEqual(env["AWS_SDK_LOAD_CONFIG"], "0")
        self.assertEqual(env["AWS_STS_REGIONAL_ENDPOINTS"], "regional")
        self.assertEqual(env["TF_VAR_x"], "y")
        self.assertEqual(env.get("PATH"), os.environ.get("PATH"))

    def test_command_env_drops_host_cloud_credentials(self) -> None:
        host = {
            "ARM_CLIENT_ID": "platform-client",
            "ARM_CLIENT_SECRET": "platform-secret",
            "AWS_PROFILE": "admin",
            "GOOGLE_APPLICATION_CREDENTIALS": "/etc/platform.json",
            "HOME_REGION_NOTE": "kept",
        }
        with patch.dict(os.environ, host):
            env = command_env({"ARM_ACCESS_TOKEN": "user-token"})

        self.assertEqual(env["ARM_ACCESS_TOKEN"], "user-token")
        self.assertNotIn("ARM_CLIENT_ID", env)
        self.assertNotIn("ARM_CLIENT_SECRET", env)
        self.assertNotIn("AWS_PROFILE", env)
        self.assertNotIn("GOOGLE_APPLICATION_CREDENTIALS", env)
        self.assertEqual(env["HOME_REGION_NOTE"], "kept")



class TestCommandRunner(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name)
        self.tool = _write_tool(self.root)
        self.logs: List[Tuple[str, str, str]] = []

    def _append(self, job_id: str, message: str, severity: str) -> None:
        self.logs.append((job_id, message, severity))

    def _runner(self, **kwargs) -> CommandRunner:
        opts = dict(binary=str(self.tool), timeout_seconds=10, kill_grace_seconds=1)
        opts.update(kwargs)
        return CommandRunner(self._append, **opts)

    def _messages(self, severity: str = None) -> List[str]:
        return [m for _, m, s in self.logs if severity is None or s == severity]

    async def test_streams_stdout_lines(self) -> None:
        result = await self._runner().run("j1", "echo", ["-no-color"], self.root, {})

        self.assertTrue(result.success)
        self.assertEqual(result.exit_code, 0)
        self.assertFalse(result.timed_out)
        self.assertEqual(self.logs[0], ("j1", f"$ {self.tool} echo -no-color", "CMD"))
        self.assertEqual(self._messages("INFO"), ["hello from echo", "second line"])

    async def test_stderr_severity_and_exit_code(self) -> None:
        result = await self._runner().run("j1", "warn", [], self.root, {})

        self.assertFalse(result.success)
        self.assertEqual(result.exit_code, 3)
        self.assertIn("Warning: deprecated attribute", self._messages("WARN"))
        self.assertIn("Error: resource conflict", self._messages("ERROR"))

    async def test_secret_values_are_redacted(self) -> None:
        env = {"AWS_SECRET_ACCESS_KEY": "super-secret-value-1"}
        await self._runner().run("j1", "leak", [], self.root, env)

        joined = "\n".join(self._messages())
        self.assertNotIn("super-secret-value-1", joined)
        self.assertIn(f"secret is {MASK}", joined)

    async def test_hardening_env_reaches_child(self) -> None:
        await self._runner().run(
            "j1", "env", [], self.root, {"AWS_SDK_LOAD_CONFIG": "1"}
        )
        self.assertIn("load=0 sts=regional", self._messages("INFO"))
        self.assertEqual(HARDENING_ENV["AWS_SDK_LOAD_CONFIG"], "0")

    async def test_host_service_principal_not_inherited(self) -> None:
        host = {"ARM_CLIENT_ID": "platform-client", "ARM_CLIENT_SECRET": "platform-secret"}
        with patch.dict(os.environ, host):
            result = await self._runner().run(
                "j1", "arm", [], self.root, {"ARM_ACCESS_TOKEN": "user-token-value"}
            )

        self.assertTrue(result.success)
        self.assertIn("secret=unset client=unset token=set", self._messages("INFO"))
        self.assertNotIn("platform-secret", "\n".join(self._messages()))


    async def test_invalid_region_blocks_without_spawning(self) -> None:
        with patch(
            "services.deploy_engine.runner.asyncio.create_subprocess_exec"
        ) as m_exec:
            result = await self._runner().run(
                "j1", "plan", [], self.root, {"AWS_DEFAULT_REGION": "apsouth1"}
            )

        m_exec.assert_not_called()
        self.assertFalse(result.success)
        self.assertEqual(result.exit_code, 1)
        self.assertTrue(any(m.startswith("CRITICAL: ") for m in self._messages("ERROR")))

    async def test_missing_binary(self) -> None:
        runner = self._runner(binary=str(self.root / "does-not-exist"))
        result = await runner.run("j1", "init", [], self.root, {})

        self.assertFalse(result.success)
        self.assertEqual(result.exit_code, -1)
        self.assertTrue(any(m.startswith("Process error") for m in self._messages("ERROR")))

    async def test_timeout_stops_process(self) -> None:
        runner = self._runner(timeout_seconds=0.5, kill_grace_seconds=1)
        result = await runner.run("j1", "hang", [], self.root, {})

        self.assertFalse(result.success)
        self.assertTrue(result.timed_out)
        self.assertEqual(result.exit_code, -1)
        self.assertTrue(
            any("Command timed out after" in m for m in self._messages("ERROR"))
        )

    async def test_capture_returns_stdout_without_logging_it(self) -> None:
        result = await self._runner().capture("j1", "json", ["-json"], self.root, {})

        self.assertTrue(result.success)
        self.assertEqual(result.stdout, '{"a": {"value": 1}}')
        self.assertEqual(self._messages("INFO"), [])
