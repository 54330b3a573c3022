"""Type definitions for Lab Hardener."""

from enum import Enum
from typing import NamedTuple


class HostRole(str, Enum):
    """Lab host roles, derived from the hostname."""

    CONTROL = "control"
    GIT = "git"
    DOCKER = "docker"
    SIEM = "siem"
    TARGET = "tgt"
    UNKNOWN = "unknown"


class PowerState(str, Enum):
    """Proxmox VM power states as reported by ``qm status``."""

    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"
    UNKNOWN = "unknown"


class RegistryValueType(str, Enum):
    """Registry value types accepted by Set-GPRegistryValue."""

    STRING = "String"
    EXPAND_STRING = "ExpandString"
    DWORD = "DWord"
    QWORD = "QWord"
    MULTI_STRING = "MultiString"


class CommandResult(NamedTuple):
    """Result of command execution."""

    success: bool
    stdout: str
    stderr: str
    return_code: int = 0


class RollbackPoint(NamedTuple):
    """Backup information for rollback."""

    original_path: str
    backup_path: str
    timestamp: str


class FirewallRule(NamedTuple):
    """A single ufw allow rule."""

    port: int
    protocol: str = "tcp"

    def __str__(self) -> str:
        return f"{self.port}/{self.protocol}"
