"""Lab Hardener - security baseline, validation and snapshot automation for the SAE lab."""

__version__ = "1.0.0"
__author__ = "Lab Infrastructure Team"
__license__ = "MIT"

from lab_hardener.baseline import BaselineValidator
from lab_hardener.exceptions import (
    ConfigurationError,
    HardenerError,
    OperationSkipped,
    PermanentOperationError,
    ProxmoxError,
    RemoteAuthenticationError,
    RemoteConnectionError,
    SystemRequirementError,
    ValidationError,
)
from lab_hardener.hardener import LabHardener
from lab_hardener.runner import OperationRunner
from lab_hardener.snapshots import SnapshotManager
from lab_hardener.system_info import SystemInfo

__all__ = [
    "LabHardener",
    "BaselineValidator",
    "SnapshotManager",
    "OperationRunner",
    "SystemInfo",
    "HardenerError",
    "ConfigurationError",
    "SystemRequirementError",
    "ValidationError",
    "RemoteConnectionError",
    "RemoteAuthenticationError",
    "ProxmoxError",
    "OperationSkipped",
    "PermanentOperationError",
]
