"""Lab host hardening implementation."""

import shlex
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import structlog

from lab_hardener.config import HardenerConfig
from lab_hardener.exceptions import (
    CommandExecutionError,
    ConfigurationError,
    HardenerError,
    RollbackError,
    ServiceControlError,
    ValidationError,
)
from lab_hardener.roles import ROLE_DESCRIPTIONS, firewall_rules
from lab_hardener.system_info import SystemInfo
from lab_hardener.types import HostRole
from lab_hardener.utils.command import BaseExecutor
from lab_hardener.utils.file import FileManager
from lab_hardener.utils.validation import Validator

logger = structlog.get_logger(__name__)

SSHD_CONFIG = "/etc/ssh/sshd_config"
SSHD_CONFIG_BACKUP = "/etc/ssh/sshd_config.backup"
SSHD_DROP_IN_DIR = "/etc/ssh/sshd_config.d"
FAIL2BAN_JAIL = "/etc/fail2ban/jail.d/sae-ssh.conf"
UNATTENDED_CONF = "/etc/apt/apt.conf.d/50unattended-upgrades-sae"
LOGROTATE_CONF = "/etc/logrotate.d/sae-lab"
LAB_LOG_DIR = "/var/log/sae-lab"
SECURITY_PACKAGES = ("fail2ban", "unattended-upgrades", "rsyslog")

FILE_MODES: Dict[str, str] = {
    "/etc/passwd": "644",
    "/etc/shadow": "640",
    "/etc/sudoers": "440",
    SSHD_CONFIG: "600",
}

APT_ENV = "DEBIAN_FRONTEND=noninteractive"


@dataclass
class HardeningReport:
    """Outcome of a hardening run on one host."""

    hostname: str
    role: HostRole
    user: str
    dry_run: bool = False
    steps: List[str] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    finished_at: Optional[str] = None

    def next_steps(self) -> List[str]:
        return [
            f"Test SSH: ssh homelab-{self.hostname}",
            f"Test automation: ssh sae-{self.hostname}",
            "Run validation: lab-hardener validate",
        ]

    def to_dict(self) -> Dict[str, object]:
        return {
            "hostname": self.hostname,
            "role": self.role.value,
            "user": self.user,
            "dry_run": self.dry_run,
            "steps": list(self.steps),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


class LabHardener:
    """Apply the lab security baseline to one host."""

    def __init__(
        self,
        config: HardenerConfig,
        executor: BaseExecutor,
        hostname: str = "",
        dry_run: bool = False,
    ) -> None:
        """Initialize lab hardener.

        Args:
            config: Configuration object
            executor: Where commands run (local subprocess or SSH session)
            hostname: Hostname used for role detection, detected if empty
            dry_run: If True, only record changes
        """
        self.config = config
        self.executor = executor
        self.dry_run = dry_run
        self.executor.dry_run = dry_run or self.executor.dry_run

        self.system = SystemInfo(executor, hostname=hostname)
        self.file_manager = FileManager(executor, str(config.backup.directory))
        self.validator = Validator()

        self.report = HardeningReport(
            hostname=self.system.hostname,
            role=self.system.role,
            user=self.system.user,
            dry_run=self.dry_run,
        )
        self._apt_updated = False
        self._ssh_service: Optional[str] = None

    @property
    def hostname(self) -> str:
        return self.system.hostname

    @property
    def role(self) -> HostRole:
        return self.system.role

    def preflight_checks(self) -> List[str]:
        """Run preflight safety checks.

        Returns:
            List of blocking issues; empty when hardening may proceed
        """
        logger.info("preflight_start", host=self.hostname)
        issues: List[str] = []

        issues.extend(self.system.check_requirements())
        issues.extend(self.config.validate_config())

        users = set(self.config.users.sudo_users) | set(self.config.users.managed_users)
        if self.role == HostRole.CONTROL:
            users |= set(self.config.users.control_users)
        issues.extend(self.validator.validate_users(sorted(users)))

        for issue in issues:
            logger.error("preflight_issue", host=self.hostname, issue=issue)

        if not issues:
            logger.info("preflight_passed", host=self.hostname)
        return issues

    def run(self) -> HardeningReport:
        """Execute the hardening process.

        Returns:
            HardeningReport describing the completed steps

        Raises:
            ConfigurationError: If preflight checks fail
            HardenerError: If a hardening step fails (after rollback)
        """
        logger.info(
            "hardening_start",
            host=self.hostname,
            role=self.role.value,
            user=self.system.user,
            dry_run=self.dry_run,
        )

        issues = self.preflight_checks()
        if issues:
            raise ConfigurationError(
                f"Preflight checks failed on {self.hostname}: " + "; ".join(issues)
            )

        steps = [
            ("users", self.setup_users),
            ("ssh", self.configure_ssh),
        ]
        if self.config.security.enable_firewall:
            steps.append(("firewall", self.configure_firewall))
        if self.config.security.enable_fail2ban:
            steps.append(("security_tools", self.install_security_tools))
        steps.append(("log_rotation", self.configure_log_rotation))
        steps.append(("permissions", self.secure_files))
        if self.config.security.enable_upgrade:
            steps.append(("update", self.update_system))

        try:
            for name, step in steps:
                step()
                self.report.steps.append(name)

        except KeyboardInterrupt:
            logger.warning("hardening_interrupted", host=self.hostname)
            self.rollback()
            raise

        except HardenerError as e:
            logger.error("hardening_failed", host=self.hostname, step=name, error=str(e))
            self.rollback()
            raise HardenerError(f"Hardening failed on {self.hostname} at step {name}: {e}") from e

        self.report.finished_at = datetime.now().isoformat()
        logger.info("hardening_complete", host=self.hostname, steps=self.report.steps)
        return self.report

    def rollback(self) -> None:
        """Restore every file changed during this run and restart SSH.

        Raises:
            RollbackError: If any file cannot be restored or SSH fails to restart
        """
        expected = len(self.file_manager.rollback_points)
        logger.info("rollback_start", host=self.hostname, files=expected)

        restored = self.file_manager.rollback_all()
        logger.info("files_restored", host=self.hostname, count=len(restored))

        try:
            self._restart_ssh_service()
        except HardenerError as e:
            raise RollbackError(f"Rollback failed on {self.hostname}: {e}") from e

        if len(restored) != expected:
            raise RollbackError(
                f"Rollback incomplete on {self.hostname}: restored {len(restored)} of {expected} files"
            )

    def setup_users(self) -> None:
        """Create managed users and grant passwordless sudo."""
        logger.info("setup_users", host=self.hostname)

        to_create = list(self.config.users.managed_users)
        sudo_users = list(self.config.users.sudo_users)
        if self.role == HostRole.CONTROL:
            to_create.extend(self.config.users.control_users)
            sudo_users.extend(self.config.users.control_users)

        created = set()
        for username in dict.fromkeys(to_create):
            if self._user_exists(username):
                logger.info("user_exists", host=self.hostname, user=username)
                continue
            self.executor.execute(f"useradd -m -s /bin/bash {shlex.quote(username)}", needs_root=True)
            created.add(username)
            logger.info("user_created", host=self.hostname, user=username)

        for username in dict.fromkeys(sudo_users):
            # useradd is only recorded in dry-run, so queued users count as present
            if username not in created and not self._user_exists(username):
                logger.warning("sudo_user_missing", host=self.hostname, user=username)
                continue

            path = f"/etc/sudoers.d/{username}"
            self.file_manager.write_file(path, f"{username} ALL=(ALL) NOPASSWD:ALL\n", mode="440")
            result = self.executor.execute(f"visudo -cf {shlex.quote(path)}", needs_root=True, check=False)
            if not result.success:
                raise ValidationError(f"Invalid sudoers entry {path}: {result.stderr.strip()}")
            logger.info("sudo_configured", host=self.hostname, user=username)

    def configure_ssh(self) -> None:
        """Write the sshd hardening drop-in, validate it and restart SSH."""
        logger.info("configure_ssh", host=self.hostname)

        if self.file_manager.backup_once(SSHD_CONFIG, SSHD_CONFIG_BACKUP):
            logger.info("sshd_config_backed_up", host=self.hostname, path=SSHD_CONFIG_BACKUP)

        self.executor.execute(f"mkdir -p {SSHD_DROP_IN_DIR}", needs_root=True)
        drop_in = f"{SSHD_DROP_IN_DIR}/{self.config.ssh.drop_in_name}"
        self.file_manager.write_file(drop_in, self.render_ssh_config(), mode="644")

        self._validate_ssh_config()
        self._restart_ssh_service()
        logger.info("ssh_configured", host=self.hostname)

    def render_ssh_config(self) -> str:
        """Build the sshd drop-in file content."""
        ssh = self.config.ssh

        def yes_no(flag: bool) -> str:
            return "yes" if flag else "no"

        settings: Dict[str, str] = {
            "PasswordAuthentication": yes_no(ssh.password_authentication),
            "PermitRootLogin": yes_no(ssh.permit_root_login),
            "PubkeyAuthentication": yes_no(ssh.pubkey_authentication),
            "MaxAuthTries": str(ssh.max_auth_tries),
            "ClientAliveInterval": str(ssh.client_alive_interval),
            "ClientAliveCountMax": str(ssh.client_alive_count_max),
            "X11Forwarding": yes_no(ssh.x11_forwarding),
            "PermitEmptyPasswords": "no",
        }

        content = ["# SAE Lab Security Configuration", "# Generated by lab-hardener"]
        content.extend(f"{key} {value}" for key, value in settings.items())
        return "\n".join(content) + "\n"

    def configure_firewall(self) -> None:
        """Reset ufw to deny-by-default with SSH and role ports allowed."""
        logger.info("configure_firewall", host=self.hostname, role=ROLE_DESCRIPTIONS[self.role])

        self._install_packages(["ufw"])

        commands = [
            "ufw --force reset",
            "ufw default deny incoming",
            "ufw default allow outgoing",
            "ufw allow ssh",
        ]
        commands.extend(f"ufw allow {rule}" for rule in firewall_rules(self.role))
        commands.append("ufw --force enable")

        for cmd in commands:
            self.executor.execute(cmd, needs_root=True)

        logger.info("firewall_enabled", host=self.hostname)

    def install_security_tools(self) -> None:
        """Install fail2ban, unattended-upgrades and rsyslog and configure them."""
        logger.info("install_security_tools", host=self.hostname)

        self._install_packages(list(SECURITY_PACKAGES))

        self.file_manager.write_file(FAIL2BAN_JAIL, self.render_jail_config(), mode="644")

        for service in ("fail2ban", "rsyslog"):
            self._control_service(service, "enable --now")

        self.file_manager.write_file(
            UNATTENDED_CONF, 'Unattended-Upgrade::Automatic-Reboot "false";\n', mode="644"
        )
        logger.info("security_tools_configured", host=self.hostname)

    def render_jail_config(self) -> str:
        """Build the fail2ban sshd jail."""
        security = self.config.security
        return (
            "[sshd]\n"
            "enabled = true\n"
            "port = ssh\n"
            "filter = sshd\n"
            f"logpath = {security.fail2ban_logpath}\n"
            f"maxretry = {security.fail2ban_maxretry}\n"
            f"bantime = {security.fail2ban_bantime}\n"
            f"findtime = {security.fail2ban_findtime}\n"
        )

    def configure_log_rotation(self) -> None:
        """Rotate the lab log directory weekly."""
        logger.info("configure_log_rotation", host=self.hostname)

        self.executor.execute(f"mkdir -p {LAB_LOG_DIR} && chmod 750 {LAB_LOG_DIR}", needs_root=True)
        content = (
            f"{LAB_LOG_DIR}/*.log {{\n"
            "    weekly\n"
            "    rotate 12\n"
            "    compress\n"
            "    delaycompress\n"
            "    missingok\n"
            "    notifempty\n"
            "    create 0640 root adm\n"
            "}\n"
        )
        self.file_manager.write_file(LOGROTATE_CONF, content, mode="644")

    def secure_files(self) -> None:
        """Set modes on critical system files."""
        logger.info("secure_files", host=self.hostname)

        for path, mode in FILE_MODES.items():
            self.executor.execute(f"chmod {mode} {path}", needs_root=True)

        logger.info("file_permissions_secured", host=self.hostname)

    def update_system(self) -> None:
        """Refresh package lists and apply upgrades."""
        logger.info("update_system", host=self.hostname)

        self._apt_update()
        self.executor.execute(
            f"{APT_ENV} apt-get upgrade -y -o Dpkg::Options::=--force-confold",
            needs_root=True,
            timeout=1800,
        )
        logger.info("system_updated", host=self.hostname)

    def _user_exists(self, username: str) -> bool:
        result = self.executor.execute(f"id {shlex.quote(username)}", check=False, readonly=True)
        return result.success

    def _apt_update(self) -> None:
        if self._apt_updated:
            return
        self.executor.execute(f"{APT_ENV} apt-get update -qq", needs_root=True, timeout=600)
        self._apt_updated = True

    def _install_packages(self, packages: List[str]) -> None:
        self._apt_update()
        names = " ".join(shlex.quote(p) for p in packages)
        self.executor.execute(f"{APT_ENV} apt-get install -y {names}", needs_root=True, timeout=900)

    def _validate_ssh_config(self) -> None:
        """Validate sshd configuration syntax.

        Raises:
            ValidationError: If configuration is invalid
        """
        result = self.executor.execute("sshd -t", needs_root=True, check=False)
        if not result.success:
            raise ValidationError(f"SSH configuration invalid: {result.stderr.strip()}")
        logger.info("ssh_config_valid", host=self.hostname)

    def _control_service(self, service: str, action: str) -> None:
        """Control a systemd unit.

        Raises:
            ServiceControlError: If service control fails
        """
        try:
            self.executor.execute(f"systemctl {action} {service}", needs_root=True)
        except CommandExecutionError as e:
            raise ServiceControlError(f"Service {service} {action} failed: {e}") from e

    def _restart_ssh_service(self) -> None:
        if self._ssh_service is None:
            self._ssh_service = self.system.ssh_service_name()
        self._control_service(self._ssh_service, "restart")
