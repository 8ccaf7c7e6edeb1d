from __future__ import annotations

import re
from pathlib import Path, PurePosixPath

from .errors import ValidationError

_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def _segment(value: str, label: str) -> str:
    s = str(value or "").strip()
    if not _SAFE_SEGMENT.match(s) or s in {".", ".."}:
        raise ValidationError(f"invalid {label}: {value!r}")
    return s


def workspace_dir(root: Path, workspace_id: str, provider: str) -> Path:
    """
    Working directory for one (workspace, provider) pair.

    Layout:
      ${TERRAFORM_WORK_DIR}/<workspace_id>/<provider>/
        *.tf                 (files written during setup)
        .terraform/          (tool state, wiped at setup)
        tfplan               (plan artifact consumed by apply)
        terraform.tfstate    (kept for a later destroy)
    """
    return (
        root
        / _segment(workspace_id, "workspace id")
        / _segment(provider.lower(), "provider")
    )


def resolve_file_path(work_dir: Path, filename: str) -> Path:
    """Map a file-map key onto work_dir, refusing anything that escapes it."""
    name = str(filename or "").replace("\\", "/").strip()
    rel = PurePosixPath(name)
    if not name or rel.is_absolute() or ".." in rel.parts:
        raise ValidationError(f"refusing to write file outside workspace: {filename!r}")
    return work_dir.joinpath(*rel.parts)


def jobs_root(state_dir: Path) -> Path:
    return state_dir / "jobs"


def workspace_state_path(state_dir: Path, workspace_id: str) -> Path:
    return (
        state_dir
        / "workspaces"
        / _segment(workspace_id, "workspace id")
        / "infra_state.json"
    )
