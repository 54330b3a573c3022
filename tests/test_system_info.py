"""Tests for system info module."""

from lab_hardener.system_info import SystemInfo
from lab_hardener.types import HostRole


def test_system_info_detection(executor):
    """Test system info detection."""
    executor.on(r"^cat /etc/os-release$", 'NAME="Ubuntu"\nID=ubuntu\nVERSION_ID="22.04"\n')
    executor.on(r"^whoami$", "labrat\n")
    executor.on(r"^id -u$", "1000\n")

    system = SystemInfo(executor, hostname="sae-docker01")

    assert system.hostname == "sae-docker01"
    assert system.role == HostRole.DOCKER
    assert system.distro == "ubuntu"
    assert system.user == "labrat"
    assert not system.is_root
    assert system.has_sudo
    assert system.check_requirements() == []


def test_hostname_detected_when_not_given(executor):
    executor.on(r"^hostname$", "sae-siem01\n")
    system = SystemInfo(executor)
    assert system.hostname == "sae-siem01"
    assert system.role == HostRole.SIEM


def test_requirements_reject_root(executor):
    executor.on(r"^id -u$", "0\n")
    executor.on(r"^whoami$", "root\n")
    executor.on(r"^command -v apt-get$", code=1)

    issues = SystemInfo(executor, hostname="sae-tgt01").check_requirements()

    assert "Run as labrat or automation user with sudo, not root" in issues
    assert any("apt-get" in issue for issue in issues)


def test_requirements_need_sudo_and_sshd_config(executor):
    executor.on(r"^sudo -n true$", code=1)
    executor.on(r"^test -e /etc/ssh/sshd_config$", code=1)
    executor.on(r"^whoami$", "labrat\n")

    issues = SystemInfo(executor, hostname="sae-tgt01").check_requirements()

    assert "User labrat has no passwordless sudo" in issues
    assert "SSH config not found at /etc/ssh/sshd_config" in issues


def test_ssh_service_name(executor, make_executor):
    executor.on(r"list-unit-files sshd\.service", "sshd.service enabled enabled\n")
    assert SystemInfo(executor, hostname="h").ssh_service_name() == "sshd"

    debian = make_executor()
    debian.on(r"^cat /etc/os-release$", "ID=debian\n")
    assert SystemInfo(debian, hostname="h").ssh_service_name() == "ssh"


def test_readonly_checks_run_in_dry_run(make_executor):
    executor = make_executor(dry_run=True)
    executor.on(r"^whoami$", "automation\n")
    system = SystemInfo(executor, hostname="h")
    assert system.user == "automation"
    assert "whoami" in executor.ran
