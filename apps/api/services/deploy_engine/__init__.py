from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import DeploymentOrchestrator

__all__ = ["DeploymentOrchestrator"]


def __getattr__(name: str):
    if name == "DeploymentOrchestrator":
        from .service import DeploymentOrchestrator

        return DeploymentOrchestrator
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
