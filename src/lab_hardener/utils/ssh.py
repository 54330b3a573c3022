"""SSH transport: run commands and copy files on remote hosts with paramiko."""

import socket
import time
from pathlib import Path
from typing import Callable, Optional

import paramiko
import structlog

from lab_hardener.config import RemoteConfig
from lab_hardener.exceptions import RemoteAuthenticationError, RemoteConnectionError
from lab_hardener.types import CommandResult
from lab_hardener.utils.command import BaseExecutor

logger = structlog.get_logger(__name__)

TRANSIENT_ERRORS = (
    paramiko.ssh_exception.NoValidConnectionsError,
    paramiko.ssh_exception.SSHException,
    socket.timeout,
    TimeoutError,
    ConnectionError,
)


class SSHExecutor(BaseExecutor):
    """Execute commands on a remote host over a paramiko session."""

    def __init__(
        self,
        address: str,
        user: str,
        remote: RemoteConfig,
        port: Optional[int] = None,
        key_file: Optional[Path] = None,
        dry_run: bool = False,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize SSH executor. The connection is opened lazily.

        Args:
            address: Hostname or IP to connect to
            user: Login user; sudo is used for root commands unless this is root
            remote: Transport settings (timeouts, retries, host key policy)
            port: SSH port, defaults to ``remote.port``
            key_file: Private key, defaults to ``remote.key_file`` then the agent
            dry_run: If True, only record commands without executing
        """
        super().__init__(use_sudo=user != "root", dry_run=dry_run)
        self.host = address
        self.user = user
        self.remote = remote
        self.port = port or remote.port
        self.key_file = key_file or remote.key_file
        self._client_factory = client_factory
        self._sleep = sleep
        self._client: Optional[paramiko.SSHClient] = None

    def connect(self) -> paramiko.SSHClient:
        """Open the SSH session, retrying transient network failures.

        Raises:
            RemoteAuthenticationError: On authentication failure, never retried
            RemoteConnectionError: When transient failures outlast the retries
        """
        if self._client is not None:
            return self._client

        attempts = self.remote.retries + 1
        for attempt in range(1, attempts + 1):
            client = self._client_factory()
            if self.remote.strict_host_keys:
                client.load_system_host_keys()
                client.set_missing_host_key_policy(paramiko.RejectPolicy())
            else:
                client.set_missing_host_key_policy(paramiko.WarningPolicy())

            connect_kwargs = {
                "hostname": self.host,
                "port": self.port,
                "username": self.user,
                "timeout": self.remote.connect_timeout,
                "banner_timeout": self.remote.connect_timeout,
                "allow_agent": True,
                "look_for_keys": self.key_file is None,
            }
            if self.key_file is not None:
                connect_kwargs["key_filename"] = str(Path(self.key_file).expanduser())

            try:
                logger.info("ssh_connect", host=self.host, port=self.port, user=self.user, attempt=attempt)
                client.connect(**connect_kwargs)
                self._client = client
                return client

            except paramiko.ssh_exception.AuthenticationException as e:
                client.close()
                raise RemoteAuthenticationError(
                    f"SSH authentication failed for {self.user}@{self.host}: {e}"
                ) from e

            except TRANSIENT_ERRORS as e:
                client.close()
                if attempt < attempts:
                    delay = self.remote.retry_delay * (2 ** (attempt - 1))
                    logger.warning("ssh_connect_retry", host=self.host, attempt=attempt, delay=delay, error=str(e))
                    self._sleep(delay)
                    continue
                raise RemoteConnectionError(
                    f"SSH to {self.host}:{self.port} failed after {attempts} attempts: {e}"
                ) from e

        raise RemoteConnectionError(f"SSH to {self.host} failed")

    def _run(self, cmd: str, timeout: int, input: Optional[str]) -> CommandResult:
        client = self.connect()
        try:
            stdin, stdout, stderr = client.exec_command(cmd, timeout=timeout)
            if input is not None:
                stdin.write(input)
                stdin.flush()
            stdin.channel.shutdown_write()

            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            code = stdout.channel.recv_exit_status()
            return CommandResult(success=code == 0, stdout=out, stderr=err, return_code=code)

        except socket.timeout:
            return CommandResult(False, "", f"Command timed out after {timeout}s: {cmd}", -1)

        except paramiko.SSHException as e:
            return CommandResult(False, "", f"SSH channel error on {self.host}: {e}", -1)

    def put(self, local_path: Path, remote_path: str, mode: Optional[int] = None) -> None:
        """Copy a local file to the remote host over SFTP.

        Args:
            local_path: File to upload
            remote_path: Destination path on the remote host
            mode: Optional permission bits, e.g. ``0o755``
        """
        self.history.append(f"put {local_path} {remote_path}")
        if self.dry_run:
            return

        client = self.connect()
        sftp = client.open_sftp()
        try:
            sftp.put(str(local_path), remote_path)
            if mode is not None:
                sftp.chmod(remote_path, mode)
        finally:
            sftp.close()
        logger.info("uploaded", host=self.host, src=str(local_path), dest=remote_path)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
