"""Tests for command execution and file backup utilities."""

import pytest

from lab_hardener.exceptions import CommandExecutionError
from lab_hardener.utils.command import CommandExecutor
from lab_hardener.utils.file import FileManager


def test_local_execute():
    result = CommandExecutor().execute("echo hello")
    assert result.success
    assert result.stdout.strip() == "hello"


def test_local_execute_stdin():
    result = CommandExecutor().execute("cat", input="from stdin")
    assert result.stdout == "from stdin"


def test_local_execute_check():
    executor = CommandExecutor()
    with pytest.raises(CommandExecutionError):
        executor.execute("exit 3")
    assert executor.execute("exit 3", check=False).return_code == 3


def test_local_timeout():
    result = CommandExecutor().execute("sleep 5", check=False, timeout=1)
    assert not result.success
    assert result.return_code == -1
    assert "timed out" in result.stderr


def test_sudo_wrapping(make_executor):
    executor = make_executor(use_sudo=True)
    executor.execute("grep x /etc/shadow | wc -l", needs_root=True)
    executor.execute("whoami")
    assert executor.ran == ["sudo -n sh -c 'grep x /etc/shadow | wc -l'", "whoami"]


def test_dry_run_skips_changes(make_executor):
    executor = make_executor(dry_run=True)
    result = executor.execute("ufw --force enable", needs_root=True)
    assert result.stdout == "[DRY RUN] ufw --force enable"
    assert executor.ran == []
    assert executor.history == ["ufw --force enable"]

    assert executor.path_exists("/etc/passwd")
    assert executor.ran == ["test -e /etc/passwd"]


def test_write_file_uses_stdin(executor):
    executor.write_file("/etc/sudoers.d/labrat", "labrat ALL=(ALL) NOPASSWD:ALL\n", mode="440")
    assert executor.ran == ["tee /etc/sudoers.d/labrat > /dev/null", "chmod 440 /etc/sudoers.d/labrat"]
    assert executor.inputs["tee /etc/sudoers.d/labrat > /dev/null"].startswith("labrat ALL")


def test_file_manager_backup_and_rollback(executor):
    manager = FileManager(executor, "/var/backups/lab")
    manager.write_file("/etc/logrotate.d/sae-lab", "content\n")

    backup = manager.rollback_points[0].backup_path
    assert backup.startswith("/var/backups/lab/sae-lab.")
    assert "mkdir -p /var/backups/lab && chmod 700 /var/backups/lab" in executor.ran
    assert f"cp -p /etc/logrotate.d/sae-lab {backup}" in executor.ran

    restored = manager.rollback_all()
    assert restored == ["/etc/logrotate.d/sae-lab"]
    assert executor.ran[-1] == f"cp -p {backup} /etc/logrotate.d/sae-lab"
    assert manager.rollback_points == []


def test_file_manager_removes_new_files(executor):
    executor.on(r"^test -e /etc/fail2ban/jail\.d/sae-ssh\.conf$", code=1)
    manager = FileManager(executor, "/var/backups/lab")
    manager.write_file("/etc/fail2ban/jail.d/sae-ssh.conf", "[sshd]\n")

    assert manager.rollback_all() == ["/etc/fail2ban/jail.d/sae-ssh.conf"]
    assert executor.ran[-1] == "rm -f /etc/fail2ban/jail.d/sae-ssh.conf"


def test_backup_once(executor):
    manager = FileManager(executor, "/var/backups/lab")
    executor.on(r"^test -e /etc/ssh/sshd_config\.backup$", code=1)
    assert manager.backup_once("/etc/ssh/sshd_config", "/etc/ssh/sshd_config.backup")
    assert executor.ran[-1] == "cp -p /etc/ssh/sshd_config /etc/ssh/sshd_config.backup"

    executor.on(r"^test -e /etc/ssh/sshd_config\.backup$")
    assert not manager.backup_once("/etc/ssh/sshd_config", "/etc/ssh/sshd_config.backup")
