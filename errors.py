"""
Error taxonomy shared by the deploy and destroy workflows.

Library code raises these; only the CLI entry points turn them into exit codes.
"""

from dataclasses import dataclass
from typing import Optional


class LabError(Exception):
    """Base class for every failure the lab tooling reports."""


class ConfigurationError(LabError):
    """A configuration value is present but unusable."""


class MissingRequiredParameter(ConfigurationError):
    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(f"Missing required parameters: {', '.join(self.missing)}")


class MalformedDocumentError(ConfigurationError):
    def __init__(self, path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Could not parse {path}: {reason}")


class ContextError(LabError):
    """Subscription could not be selected."""


class NamingConflictError(LabError):
    def __init__(self, name: str, remediation: str):
        self.name = name
        self.remediation = remediation
        super().__init__(f"Resource group '{name}' already exists. {remediation}")


class StateWriteError(LabError):
    def __init__(self, path, reason: str):
        self.path = path
        super().__init__(f"Could not write deployment state to {path}: {reason}")


class RemoteCallError(LabError):
    """An az command exited non-zero (or could not be started)."""

    def __init__(self, command: list[str], returncode: int, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr.strip()
        summary = self.stderr.splitlines()[-1] if self.stderr else f"exit code {returncode}"
        super().__init__(f"{' '.join(command[:3])} failed: {summary}")


@dataclass
class StepResult:
    """Outcome of a single workflow step.

    `advisory` marks steps whose failure is tolerated (terms acceptance,
    teardown deletions). A failed advisory step carries its error but never
    stops the workflow.
    """
    step: str
    ok: bool
    advisory: bool = False
    error: Optional[LabError] = None
    detail: str = ""

    @property
    def swallowed(self) -> bool:
        return not self.ok and self.advisory
