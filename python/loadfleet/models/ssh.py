"""
loadfleet/models/ssh.py

Pydantic models describing one remote-shell target and one file transfer.
"""

from pathlib import Path
from typing import List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SSHTarget(BaseModel):
    """
    Where and as whom to open a remote shell.

    Host keys are never pinned for fleet nodes: they are created for one run and
    their keys are unknown until first contact.
    """

    model_config = ConfigDict(frozen=True)

    user: str
    hostname: str
    port: int = Field(default=22, ge=1, le=65535)
    private_key_path: str

    @field_validator("hostname")
    @classmethod
    def validate_hostname(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("hostname must be a non-empty string")
        return val

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.hostname}"


class TransferSpec(BaseModel):
    """
    One (source, destination) pair. An empty destination means the remote
    user's home directory on uploads.
    """

    model_config = ConfigDict(frozen=True)

    source: str
    destination: str = ""


def transfers_into(paths: List[Path], remote_dir: str) -> List[TransferSpec]:
    """Map every local path onto the same remote directory."""
    return [
        TransferSpec(source=str(path.absolute()), destination=remote_dir)
        for path in paths
    ]
