import importlib.util
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient

from services.deploy_engine.config import load_settings
from services.deploy_engine.service import DeploymentOrchestrator


class TestDeploymentsRouter(unittest.TestCase):
    def test_router_prefix(self) -> None:
        # Load the module directly from file to avoid the package-level router.
        repo_root = Path(__file__).resolve().parents[3]
        deployments_py = (
            repo_root / "apps" / "api" / "api" / "routes" / "deployments.py"
        )

        spec = importlib.util.spec_from_file_location(
            "deployments_router_test", deployments_py
        )
        assert spec is not None
        assert spec.loader is not None

        mod = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(mod)

        router = getattr(mod, "router")
        self.assertEqual(router.prefix, "/deployments")


class TestDeploymentsEndpoints(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)

        env = {
            "STATE_DIR": os.path.join(self._tmp.name, "state"),
            "TERRAFORM_WORK_DIR": os.path.join(self._tmp.name, "work"),
            "JOB_STORE_BACKEND": "memory",
            "APP_DEPLOY_STEP_SECONDS": "0",
        }
        env_patch = patch.dict(os.environ, env)
        env_patch.start()
        self.addCleanup(env_patch.stop)

        self.engine = DeploymentOrchestrator(settings=load_settings())
        engine_patch = patch(
            "api.routes.deployments._engine", return_value=self.engine
        )
        engine_patch.start()
        self.addCleanup(engine_patch.stop)

        from main import create_app  # noqa: WPS433

        self.client = TestClient(create_app())
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def test_unknown_job_is_404(self) -> None:
        self.assertEqual(self.client.get("/api/deployments/missing").status_code, 404)
        self.assertEqual(
            self.client.post("/api/deployments/missing/cancel").status_code, 404
        )

    def test_apply_request_validation(self) -> None:
        resp = self.client.post(
            "/api/deployments/apply",
            json={"workspace_id": "ws-1", "provider": "oracle", "files": {"a.tf": ""}},
        )
        self.assertEqual(resp.status_code, 422)

        resp = self.client.post(
            "/api/deployments/apply",
            json={"workspace_id": "ws-1", "provider": "AWS", "files": {}},
        )
        self.assertEqual(resp.status_code, 422)

    def test_latest_for_unknown_workspace_is_null(self) -> None:
        resp = self.client.get("/api/deployments/workspace/ws-none/latest")
        self.assertEqual(resp.status_code, 200)
        self.assertIsNone(resp.json())

    def test_app_deploy_creates_job(self) -> None:
        resp = self.client.post(
            "/api/deployments/app",
            json={"workspace_id": "ws-1", "source_type": "docker", "target": "nginx"},
        )
        self.assertEqual(resp.status_code, 200)
        job_id = resp.json()["job_id"]

        body = self.client.get(f"/api/deployments/{job_id}").json()
        self.assertEqual(body["job_id"], job_id)
        self.assertEqual(body["kind"], "application")
        self.assertEqual(body["workspace_id"], "ws-1")
        self.assertIn(body["status"], {"init", "running", "completed"})

        latest = self.client.get("/api/deployments/workspace/ws-1/latest").json()
        self.assertEqual(latest["job_id"], job_id)
