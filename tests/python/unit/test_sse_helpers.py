import importlib.util
import json
import unittest
from pathlib import Path

from api.schemas.deployment_job import JobView


def _load_deployments_module():
    repo_root = Path(__file__).resolve().parents[3]
    deployments_py = repo_root / "apps" / "api" / "api" / "routes" / "deployments.py"

    spec = importlib.util.spec_from_file_location(
        "deployments_sse_test", deployments_py
    )
    assert spec is not None
    assert spec.loader is not None

    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


class TestSseHelpers(unittest.TestCase):
    def test_sse_event_format(self) -> None:
        mod = _load_deployments_module()
        payload = mod._sse_event("log", "hello\nworld")

        self.assertIn("event: log", payload)
        self.assertIn("data: hello", payload)
        self.assertIn("data: world", payload)
        self.assertTrue(payload.endswith("\n\n"))

    def test_sse_event_empty_data(self) -> None:
        mod = _load_deployments_module()
        self.assertEqual(mod._sse_event("done", ""), "event: done\ndata: \n\n")

    def test_status_payload_carries_stage(self) -> None:
        mod = _load_deployments_module()
        view = JobView(
            job_id="j1",
            kind="infrastructure",
            workspace_id="ws-1",
            status="running",
            stage="plan",
            start_time="2024-01-01T00:00:00Z",
        )
        data = json.loads(mod._status_payload(view))

        self.assertEqual(data["job_id"], "j1")
        self.assertEqual(data["status"], "running")
        self.assertEqual(data["stage"], "plan")
        self.assertIsNone(data["finished_at"])
