"""Tests for the paramiko-backed SSH executor."""

import socket
from unittest import mock

import paramiko
import pytest

from lab_hardener.config import RemoteConfig
from lab_hardener.exceptions import RemoteConnectionError
from lab_hardener.utils.ssh import SSHExecutor


@pytest.fixture
def remote():
    return RemoteConfig(retries=2, retry_delay=2.0, connect_timeout=5, strict_host_keys=False)


def make_client(stdout=b"", stderr=b"", code=0):
    client = mock.MagicMock(spec=paramiko.SSHClient)
    out = mock.MagicMock()
    out.read.return_value = stdout
    out.channel.recv_exit_status.return_value = code
    err = mock.MagicMock()
    err.read.return_value = stderr
    client.exec_command.return_value = (mock.MagicMock(), out, err)
    return client


def make_executor(remote, clients, user="labrat", **kwargs):
    delays = []
    queue = list(clients)
    executor = SSHExecutor(
        "10.0.10.20",
        user,
        remote,
        client_factory=lambda: queue.pop(0),
        sleep=delays.append,
        **kwargs,
    )
    return executor, delays


def test_execute_wraps_root_commands_in_sudo(remote):
    client = make_client(stdout=b"640\n")
    executor, _ = make_executor(remote, [client])

    result = executor.execute("stat -c '%a' /etc/shadow", needs_root=True)

    assert result.stdout == "640\n"
    command = client.exec_command.call_args[0][0]
    assert command == "sudo -n sh -c 'stat -c '\"'\"'%a'\"'\"' /etc/shadow'"
    kwargs = client.connect.call_args[1]
    assert kwargs["hostname"] == "10.0.10.20"
    assert kwargs["username"] == "labrat"
    assert kwargs["port"] == 22


def test_root_user_needs_no_sudo(remote):
    client = make_client()
    executor, _ = make_executor(remote, [client], user="root")
    executor.execute("qm list", needs_root=True)
    assert client.exec_command.call_args[0][0] == "qm list"


def test_stdin_is_written(remote):
    client = make_client()
    executor, _ = make_executor(remote, [client])
    executor.write_file("/etc/logrotate.d/sae-lab", "weekly\n")

    stdin = client.exec_command.return_value[0]
    stdin.write.assert_called_with("weekly\n")
    stdin.channel.shutdown_write.assert_called()


def test_failed_command_result(remote):
    client = make_client(stderr=b"permission denied", code=1)
    executor, _ = make_executor(remote, [client])

    result = executor.execute("cat /etc/shadow", check=False)

    assert not result.success
    assert result.return_code == 1
    assert result.stderr == "permission denied"


def test_connection_reused(remote):
    client = make_client()
    executor, _ = make_executor(remote, [client])
    executor.execute("true")
    executor.execute("true")
    assert client.connect.call_count == 1


def test_transient_errors_retried(remote):
    failing = make_client()
    failing.connect.side_effect = socket.timeout("timed out")
    flaky = make_client()
    flaky.connect.side_effect = paramiko.SSHException("Error reading SSH protocol banner")
    good = make_client(stdout=b"ok")

    executor, delays = make_executor(remote, [failing, flaky, good])

    assert executor.execute("echo ok").stdout == "ok"
    assert delays == [2.0, 4.0]
    failing.close.assert_called()


def test_retries_exhausted(remote):
    clients = [make_client() for _ in range(3)]
    for client in clients:
        client.connect.side_effect = ConnectionRefusedError("refused")

    executor, delays = make_executor(remote, clients)

    with pytest.raises(RemoteConnectionError, match="after 3 attempts"):
        executor.execute("true")
    assert len(delays) == 2


def test_authentication_failure_not_retried(remote):
    client = make_client()
    client.connect.side_effect = paramiko.AuthenticationException("Authentication failed.")
    executor, delays = make_executor(remote, [client, make_client()])

    with pytest.raises(RemoteConnectionError, match="authentication failed"):
        executor.execute("true")
    assert delays == []


def test_key_file_and_host_key_policy(remote, tmp_path):
    remote.strict_host_keys = True
    key = tmp_path / "id_ed25519"
    client = make_client()
    executor, _ = make_executor(remote, [client], key_file=key, port=2222)

    executor.connect()

    kwargs = client.connect.call_args[1]
    assert kwargs["key_filename"] == str(key)
    assert kwargs["look_for_keys"] is False
    assert kwargs["port"] == 2222
    client.load_system_host_keys.assert_called_once()
    policy = client.set_missing_host_key_policy.call_args[0][0]
    assert isinstance(policy, paramiko.RejectPolicy)


def test_put_uses_sftp(remote, tmp_path):
    client = make_client()
    script = tmp_path / "run.sh"
    script.write_text("echo hi\n")
    executor, _ = make_executor(remote, [client])

    executor.put(script, "/tmp/lab-hardener/run.sh", mode=0o700)

    sftp = client.open_sftp.return_value
    sftp.put.assert_called_once_with(str(script), "/tmp/lab-hardener/run.sh")
    sftp.chmod.assert_called_once_with("/tmp/lab-hardener/run.sh", 0o700)
    sftp.close.assert_called_once()


def test_dry_run_never_connects(remote):
    client = make_client()
    executor, _ = make_executor(remote, [client], dry_run=True)

    executor.execute("ufw --force enable", needs_root=True)
    executor.put("/tmp/x", "/tmp/y")

    client.connect.assert_not_called()
    assert executor.history[-1] == "put /tmp/x /tmp/y"


def test_context_manager_closes(remote):
    client = make_client()
    executor, _ = make_executor(remote, [client])
    with executor:
        executor.execute("true")
    client.close.assert_called_once()
