"""System information detection for Lab Hardener."""

from typing import Dict, List

from lab_hardener.roles import detect_role
from lab_hardener.types import HostRole
from lab_hardener.utils.command import BaseExecutor


class SystemInfo:
    """Detect and store capabilities of the host an executor points at."""

    def __init__(self, executor: BaseExecutor, hostname: str = "") -> None:
        """Initialize system information detection.

        Args:
            executor: Executor for the target host
            hostname: Hostname override; detected with ``hostname`` if empty
        """
        self.executor = executor
        self.hostname = hostname or self._detect_hostname()
        self.role: HostRole = detect_role(self.hostname)
        self.distro = self._detect_distro()
        self.user = self._detect_user()
        self.is_root = self._detect_uid() == 0
        self.has_apt = executor.check_command_available("apt-get")
        self.has_systemd = executor.check_command_available("systemctl")
        self.has_sudo = self._check_sudo()

    def _detect_hostname(self) -> str:
        result = self.executor.execute("hostname", check=False, readonly=True)
        return result.stdout.strip() if result.success else "unknown"

    def _detect_distro(self) -> str:
        """Detect Linux distribution from /etc/os-release."""
        result = self.executor.execute("cat /etc/os-release", check=False, readonly=True)
        if not result.success:
            return "unknown"

        for line in result.stdout.splitlines():
            if line.startswith("ID="):
                return line.split("=", 1)[1].strip().strip('"').lower()
        return "unknown"

    def _detect_user(self) -> str:
        result = self.executor.execute("whoami", check=False, readonly=True)
        return result.stdout.strip() if result.success else "unknown"

    def _detect_uid(self) -> int:
        result = self.executor.execute("id -u", check=False, readonly=True)
        value = result.stdout.strip()
        return int(value) if result.success and value.isdigit() else -1

    def _check_sudo(self) -> bool:
        """Check if the current user can use sudo without a password."""
        if not self.executor.check_command_available("sudo"):
            return False

        result = self.executor.execute("sudo -n true", check=False, readonly=True)
        return result.success

    def ssh_service_name(self) -> str:
        """Return the SSH unit name: ``ssh`` on Debian/Ubuntu, ``sshd`` elsewhere."""
        for name in ("ssh", "sshd"):
            result = self.executor.execute(
                f"systemctl list-unit-files {name}.service --no-legend", check=False, readonly=True
            )
            if result.success and result.stdout.strip().startswith(f"{name}.service"):
                return name
        return "ssh" if self.distro in ("debian", "ubuntu") else "sshd"

    def check_requirements(self) -> List[str]:
        """Check if system meets minimum requirements."""
        issues: List[str] = []

        if self.is_root:
            issues.append("Run as labrat or automation user with sudo, not root")

        if not self.has_sudo:
            issues.append(f"User {self.user} has no passwordless sudo")

        if not self.has_apt:
            issues.append("apt-get not found (Debian/Ubuntu hosts only)")

        if not self.has_systemd:
            issues.append("systemctl not found (systemd required)")

        if not self.executor.path_exists("/etc/ssh/sshd_config", needs_root=True):
            issues.append("SSH config not found at /etc/ssh/sshd_config")

        return issues

    def to_dict(self) -> Dict[str, str]:
        """Convert system info to dictionary."""
        return {
            "hostname": self.hostname,
            "role": self.role.value,
            "distro": self.distro,
            "user": self.user,
            "is_root": str(self.is_root),
            "has_sudo": str(self.has_sudo),
        }
