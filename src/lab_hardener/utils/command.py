"""Command execution utilities."""

import shlex
import subprocess
from typing import List, Optional

import structlog

from lab_hardener.exceptions import CommandExecutionError
from lab_hardener.types import CommandResult

logger = structlog.get_logger(__name__)


class BaseExecutor:
    """Shared behaviour of local and remote executors.

    Subclasses implement :meth:`_run`; everything else (sudo wrapping,
    dry-run, checking, file helpers) is built on top of it so the hardener,
    validator and Proxmox client never care where a command runs.
    """

    host = "localhost"

    def __init__(self, use_sudo: bool = False, dry_run: bool = False) -> None:
        """Initialize executor.

        Args:
            use_sudo: Whether to wrap commands requiring root in sudo
            dry_run: If True, only record commands without executing
        """
        self.use_sudo = use_sudo
        self.dry_run = dry_run
        self.history: List[str] = []

    def _run(self, cmd: str, timeout: int, input: Optional[str]) -> CommandResult:
        raise NotImplementedError

    def wrap(self, cmd: str, needs_root: bool) -> str:
        """Return the command line that will actually be executed."""
        if needs_root and self.use_sudo:
            return f"sudo -n sh -c {shlex.quote(cmd)}"
        return cmd

    def execute(
        self,
        cmd: str,
        needs_root: bool = False,
        check: bool = True,
        timeout: int = 30,
        input: Optional[str] = None,
        readonly: bool = False,
    ) -> CommandResult:
        """Execute command with optional sudo.

        Args:
            cmd: Shell command to execute
            needs_root: Whether command requires root privileges
            check: Whether to raise exception on failure
            timeout: Command timeout in seconds
            input: Text fed to the command's stdin
            readonly: Command only inspects state and also runs in dry-run mode

        Returns:
            CommandResult with execution details

        Raises:
            CommandExecutionError: If command fails and check=True
        """
        cmd = self.wrap(cmd, needs_root)
        self.history.append(cmd)

        if self.dry_run and not readonly:
            logger.debug("dry_run_command", host=self.host, cmd=cmd)
            return CommandResult(True, f"[DRY RUN] {cmd}", "", 0)

        logger.debug("execute", host=self.host, cmd=cmd)
        result = self._run(cmd, timeout, input)

        if check and not result.success:
            raise CommandExecutionError(
                f"Command failed on {self.host}: {cmd}\nError: {result.stderr.strip()}"
            )

        return result

    def check_command_available(self, command: str) -> bool:
        """Check if command is available on system."""
        result = self.execute(f"command -v {shlex.quote(command)}", check=False, readonly=True)
        return result.success

    def path_exists(self, path: str, needs_root: bool = False) -> bool:
        """Check whether a path exists on the host."""
        result = self.execute(
            f"test -e {shlex.quote(path)}", needs_root=needs_root, check=False, readonly=True
        )
        return result.success

    def read_file(self, path: str, needs_root: bool = False) -> str:
        """Return file content, raising CommandExecutionError if unreadable."""
        return self.execute(f"cat {shlex.quote(path)}", needs_root=needs_root, readonly=True).stdout

    def write_file(self, path: str, content: str, mode: Optional[str] = None) -> None:
        """Write content to a root-owned file through ``tee``.

        Args:
            path: Destination path
            content: File content
            mode: Optional octal mode applied after writing, e.g. ``"0440"``
        """
        self.execute(f"tee {shlex.quote(path)} > /dev/null", needs_root=True, input=content)
        if mode:
            self.execute(f"chmod {mode} {shlex.quote(path)}", needs_root=True)

    def close(self) -> None:
        """Release any transport resources."""

    def __enter__(self) -> "BaseExecutor":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class CommandExecutor(BaseExecutor):
    """Execute commands on the local host with subprocess."""

    def _run(self, cmd: str, timeout: int, input: Optional[str]) -> CommandResult:
        try:
            result = subprocess.run(
                cmd,
                shell=True,
                capture_output=True,
                text=True,
                timeout=timeout,
                input=input,
                check=False,
            )
            return CommandResult(
                success=result.returncode == 0,
                stdout=result.stdout,
                stderr=result.stderr,
                return_code=result.returncode,
            )

        except subprocess.TimeoutExpired:
            return CommandResult(False, "", f"Command timed out after {timeout}s: {cmd}", -1)

        except OSError as e:
            return CommandResult(False, "", f"Command execution failed: {cmd}\nError: {e}", -1)
