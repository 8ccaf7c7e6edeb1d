from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional

from .errors import PersistenceError
from .paths import workspace_state_path
from .util import atomic_write_json, load_json, safe_mkdir, utc_iso

LOGGER = logging.getLogger(__name__)

DeploymentOutcome = Literal["deployed", "destroyed"]

_HISTORY_ACTIONS = {
    "deployed": "TERRAFORM_APPLY_SUCCESS",
    "destroyed": "TERRAFORM_DESTROY_SUCCESS",
}


class StatePersistenceBridge(ABC):
    """Writes a finished job's outputs and status back to the owning workspace."""

    @abstractmethod
    async def save(
        self,
        workspace_id: str,
        outputs: Mapping[str, Any],
        status: DeploymentOutcome,
        *,
        job_id: Optional[str] = None,
    ) -> None: ...


class JsonFileStateBridge(StatePersistenceBridge):
    """
    Layout:
      ${STATE_DIR}/workspaces/<workspace_id>/infra_state.json
        deployment_status   deployed | destroyed
        infra_outputs       flattened terraform outputs (cleared on destroy)
        deployment_history  append-only list of {action, timestamp, job_id, outputs_keys}
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir

    def _write(
        self,
        workspace_id: str,
        outputs: Mapping[str, Any],
        status: DeploymentOutcome,
        job_id: Optional[str],
    ) -> None:
        path = workspace_state_path(self._state_dir, workspace_id)
        safe_mkdir(path.parent)
        current = load_json(path)
        history = list(current.get("deployment_history") or [])
        history.append(
            {
                "action": _HISTORY_ACTIONS.get(status, status.upper()),
                "timestamp": utc_iso(),
                "job_id": job_id,
                "outputs_keys": sorted(outputs),
            }
        )
        record: Dict[str, Any] = {
            "workspace_id": workspace_id,
            "deployment_status": status,
            "infra_outputs": dict(outputs),
            "updated_at": utc_iso(),
            "deployment_history": history,
        }
        atomic_write_json(path, record)

    async def save(
        self,
        workspace_id: str,
        outputs: Mapping[str, Any],
        status: DeploymentOutcome,
        *,
        job_id: Optional[str] = None,
    ) -> None:
        try:
            await asyncio.to_thread(self._write, workspace_id, outputs, status, job_id)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"workspace {workspace_id}: {exc}") from exc
        LOGGER.info(
            "workspace %s: recorded %s with %d outputs", workspace_id, status, len(outputs)
        )

    def load(self, workspace_id: str) -> Dict[str, Any]:
        return load_json(workspace_state_path(self._state_dir, workspace_id))
