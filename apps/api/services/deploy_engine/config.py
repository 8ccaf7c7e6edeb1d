from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_optional(name: str) -> Optional[str]:
    return _env_str(name) or None


@dataclass(frozen=True)
class EngineSettings:
    terraform_bin: str
    work_root: Path
    state_dir: Path
    command_timeout_seconds: float
    kill_grace_seconds: float
    job_store_backend: str
    aws_role_name: str
    aws_default_region: str
    gcp_default_region: str
    gcp_client_id: Optional[str]
    gcp_client_secret: Optional[str]
    azure_client_id: Optional[str]
    azure_client_secret: Optional[str]
    azure_authority: str
    http_timeout_seconds: float
    app_step_seconds: float


def job_store_backend() -> str:
    return (_env_str("JOB_STORE_BACKEND") or "memory").lower()


def load_settings() -> EngineSettings:
    work_root = _env_str("TERRAFORM_WORK_DIR") or str(
        Path(tempfile.gettempdir()) / "iac-deploy-tf"
    )
    return EngineSettings(
        terraform_bin=_env_str("TERRAFORM_BIN", "terraform") or "terraform",
        work_root=Path(work_root),
        state_dir=Path(_env_str("STATE_DIR", "/state") or "/state"),
        command_timeout_seconds=env_float("TERRAFORM_TIMEOUT_SECONDS", 30 * 60),
        kill_grace_seconds=env_float("TERRAFORM_KILL_GRACE_SECONDS", 10),
        job_store_backend=job_store_backend(),
        aws_role_name=_env_str("AWS_DEPLOY_ROLE_NAME") or "cloudiverse-deploy-role",
        aws_default_region=_env_str("AWS_DEFAULT_DEPLOY_REGION") or "ap-south-1",
        gcp_default_region=_env_str("GCP_DEFAULT_REGION") or "asia-south1",
        gcp_client_id=_env_optional("GCP_CLIENT_ID"),
        gcp_client_secret=_env_optional("GCP_CLIENT_SECRET"),
        azure_client_id=_env_optional("AZURE_CLIENT_ID"),
        azure_client_secret=_env_optional("AZURE_CLIENT_SECRET"),
        azure_authority=(
            _env_str("AZURE_AUTHORITY") or "https://login.microsoftonline.com"
        ).rstrip("/"),
        http_timeout_seconds=env_float("CREDENTIAL_HTTP_TIMEOUT_SECONDS", 30),
        app_step_seconds=env_float("APP_DEPLOY_STEP_SECONDS", 1.0),
    )
