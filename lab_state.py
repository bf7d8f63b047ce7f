"""
Hand-off record between deploy and destroy.

The state file holds plain KEY=value lines and is overwritten wholesale by
every successful deployment. Destroy only reads it.
"""

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from pathlib import Path

from dotenv import dotenv_values

from errors import StateWriteError

STATE_FILE = ".veeam-lab.state"


@dataclass
class DeploymentState:
    """Persistent deployment state."""
    APP_RG_NAME: str = ""
    APP_NAME: str = ""
    MRG_NAME: str = ""
    SUBSCRIPTION_ID: str = ""
    DEPLOYED_AT: str = ""

    def to_lines(self) -> str:
        return ''.join(f"{f.name}={getattr(self, f.name)}\n" for f in fields(self))

    @classmethod
    def from_mapping(cls, d: dict) -> 'DeploymentState':
        known = {f.name for f in fields(cls)}
        return cls(**{k: (v or "") for k, v in d.items() if k in known})

    def as_lookup(self) -> dict:
        """Non-empty fields, keyed like the environment variables they stand in for."""
        lookup = {
            'SUBSCRIPTION_ID': self.SUBSCRIPTION_ID,
            'RG_NAME': self.APP_RG_NAME,
            'VBMA_APP_NAME': self.APP_NAME,
            'VBMA_MRG_NAME': self.MRG_NAME,
        }
        return {k: v for k, v in lookup.items() if v}


class StateManager:
    """Reads and overwrites the single state record."""

    def __init__(self, state_file: Path):
        self.state_file = Path(state_file)

    def exists(self) -> bool:
        return self.state_file.is_file()

    def load(self) -> DeploymentState | None:
        if not self.exists():
            return None
        return DeploymentState.from_mapping(dotenv_values(self.state_file))

    def save(self, state: DeploymentState) -> DeploymentState:
        if not state.DEPLOYED_AT:
            state.DEPLOYED_AT = datetime.now(timezone.utc).isoformat(timespec='seconds')
        try:
            self.state_file.write_text(state.to_lines())
        except OSError as e:
            raise StateWriteError(self.state_file, e.strerror or str(e)) from e
        return state

    def clear(self):
        self.state_file.unlink(missing_ok=True)
