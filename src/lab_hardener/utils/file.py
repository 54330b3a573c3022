"""File management utilities."""

import shlex
from datetime import datetime
from pathlib import PurePosixPath
from typing import List, Optional

import structlog

from lab_hardener.exceptions import CommandExecutionError
from lab_hardener.types import RollbackPoint
from lab_hardener.utils.command import BaseExecutor

logger = structlog.get_logger(__name__)


class FileManager:
    """Manage file operations on a host with backup and rollback."""

    def __init__(self, executor: BaseExecutor, backup_dir: str) -> None:
        """Initialize file manager.

        Args:
            executor: Executor for the host the files live on
            backup_dir: Directory on that host for storing backups
        """
        self.executor = executor
        self.backup_dir = str(backup_dir)
        self.rollback_points: List[RollbackPoint] = []
        self._backup_dir_ready = False

    def _ensure_backup_dir(self) -> None:
        if self._backup_dir_ready:
            return
        self.executor.execute(
            f"mkdir -p {shlex.quote(self.backup_dir)} && chmod 700 {shlex.quote(self.backup_dir)}",
            needs_root=True,
        )
        self._backup_dir_ready = True

    def backup_file(self, filepath: str) -> Optional[str]:
        """Create timestamped backup of file and register a rollback point.

        Args:
            filepath: Path to file to backup

        Returns:
            Path to backup file or None if source doesn't exist
        """
        if not self.executor.path_exists(filepath, needs_root=True):
            return None

        self._ensure_backup_dir()
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        name = PurePosixPath(filepath).name
        backup_path = f"{self.backup_dir}/{name}.{timestamp}.{len(self.rollback_points)}"

        self.executor.execute(
            f"cp -p {shlex.quote(filepath)} {shlex.quote(backup_path)}", needs_root=True
        )
        self.rollback_points.append(
            RollbackPoint(original_path=filepath, backup_path=backup_path, timestamp=timestamp)
        )
        return backup_path

    def backup_once(self, filepath: str, backup_path: str) -> bool:
        """Copy a file to a fixed backup path unless that backup already exists.

        Returns:
            True if a new backup was written
        """
        if self.executor.path_exists(backup_path, needs_root=True):
            return False
        if not self.executor.path_exists(filepath, needs_root=True):
            return False
        self.executor.execute(
            f"cp -p {shlex.quote(filepath)} {shlex.quote(backup_path)}", needs_root=True
        )
        return True

    def track_new_file(self, filepath: str) -> None:
        """Register a file created from scratch so rollback removes it."""
        self.rollback_points.append(
            RollbackPoint(original_path=filepath, backup_path="", timestamp="")
        )

    def write_file(self, filepath: str, content: str, mode: Optional[str] = None) -> None:
        """Back up, then write content to file.

        Args:
            filepath: Path to file
            content: Content to write
            mode: Optional octal file mode
        """
        if self.backup_file(filepath) is None:
            self.track_new_file(filepath)
        self.executor.write_file(filepath, content, mode=mode)

    def restore_file(self, point: RollbackPoint) -> None:
        """Restore one rollback point."""
        if not point.backup_path:
            self.executor.execute(f"rm -f {shlex.quote(point.original_path)}", needs_root=True)
            return
        self.executor.execute(
            f"cp -p {shlex.quote(point.backup_path)} {shlex.quote(point.original_path)}",
            needs_root=True,
        )

    def rollback_all(self) -> List[str]:
        """Rollback all changes using saved backup points, newest first.

        Returns:
            List of restored file paths
        """
        restored: List[str] = []

        for point in reversed(self.rollback_points):
            try:
                self.restore_file(point)
                restored.append(point.original_path)
            except CommandExecutionError as e:
                logger.error("restore_failed", path=point.original_path, error=str(e))

        self.rollback_points.clear()
        return restored
