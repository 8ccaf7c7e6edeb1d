from __future__ import annotations

from typing import Optional


class DeployEngineError(Exception):
    """Base class for every failure the engine reports on a job."""


class CredentialError(DeployEngineError):
    pass


class ValidationError(DeployEngineError):
    """A structural input check failed before any process or network call."""


class PreflightError(DeployEngineError):
    pass


class CommandError(DeployEngineError):
    def __init__(self, stage: str, exit_code: Optional[int]) -> None:
        self.stage = stage
        self.exit_code = exit_code
        super().__init__(f"Terraform {stage} failed with exit code {exit_code}")


class OutputParseError(DeployEngineError):
    pass


class PersistenceError(DeployEngineError):
    pass


class JobNotFoundError(DeployEngineError):
    pass


class InvalidTransitionError(DeployEngineError):
    pass
