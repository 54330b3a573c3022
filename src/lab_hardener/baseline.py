"""Read-only validation of the lab security baseline."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

import structlog

from lab_hardener.config import HardenerConfig
from lab_hardener.hardener import FAIL2BAN_JAIL, FILE_MODES
from lab_hardener.roles import detect_role, firewall_rules
from lab_hardener.types import FirewallRule, HostRole
from lab_hardener.utils.command import BaseExecutor

logger = structlog.get_logger(__name__)

_ADDRESS_PORT_RE = re.compile(r":(\d+)$")


@dataclass
class CheckResult:
    """Outcome of a single baseline check."""

    section: str
    description: str
    passed: bool
    detail: str = ""


@dataclass
class ValidationReport:
    """All check results for one host."""

    hostname: str
    role: HostRole
    checks: List[CheckResult] = field(default_factory=list)
    date: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def passed(self) -> int:
        return sum(1 for c in self.checks if c.passed)

    @property
    def failed(self) -> int:
        return sum(1 for c in self.checks if not c.passed)

    @property
    def total(self) -> int:
        return len(self.checks)

    @property
    def success_rate(self) -> int:
        """Integer percentage of passed checks, 0 when nothing ran."""
        if not self.checks:
            return 0
        return self.passed * 100 // self.total

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def sections(self) -> Dict[str, List[CheckResult]]:
        grouped: Dict[str, List[CheckResult]] = {}
        for check in self.checks:
            grouped.setdefault(check.section, []).append(check)
        return grouped

    def to_dict(self) -> Dict[str, object]:
        return {
            "hostname": self.hostname,
            "role": self.role.value,
            "date": self.date,
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "success_rate": self.success_rate,
            "checks": [
                {
                    "section": c.section,
                    "description": c.description,
                    "passed": c.passed,
                    "detail": c.detail,
                }
                for c in self.checks
            ],
        }


def parse_sshd_effective_config(text: str) -> Dict[str, str]:
    """Parse ``sshd -T`` output into a lowercase keyword -> value mapping."""
    settings: Dict[str, str] = {}
    for line in text.splitlines():
        parts = line.strip().split(None, 1)
        if len(parts) == 2:
            settings.setdefault(parts[0].lower(), parts[1].strip())
    return settings


def parse_ufw_rules(text: str) -> List[Tuple[str, str]]:
    """Parse the rule table of ``ufw status`` into ``(to, action)`` pairs."""
    rules: List[Tuple[str, str]] = []
    in_table = False
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("--"):
            in_table = True
            continue
        if not in_table or not stripped:
            continue
        columns = re.split(r"\s{2,}", stripped)
        if len(columns) >= 2:
            rules.append((columns[0], columns[1]))
    return rules


def ufw_allows(rules: List[Tuple[str, str]], names: Tuple[str, ...]) -> bool:
    """True if any rule whose target is one of ``names`` allows or limits traffic."""
    for target, action in rules:
        base = target.replace("(v6)", "").strip()
        if base in names and action.upper().startswith(("ALLOW", "LIMIT")):
            return True
    return False


def parse_listening_ports(text: str) -> Set[int]:
    """Collect local listening ports from ``ss -tuln`` or ``netstat -tuln`` output."""
    ports: Set[int] = set()
    for line in text.splitlines():
        for token in line.split():
            match = _ADDRESS_PORT_RE.search(token)
            if match:
                ports.add(int(match.group(1)))
                break
    return ports


class BaselineValidator:
    """Run baseline checks against a host through an executor."""

    def __init__(
        self,
        executor: BaseExecutor,
        hostname: str,
        config: Optional[HardenerConfig] = None,
        ssh_service: str = "ssh",
    ) -> None:
        self.executor = executor
        self.hostname = hostname
        self.role = detect_role(hostname)
        self.config = config or HardenerConfig.from_env()
        self.ssh_service = ssh_service
        self.report = ValidationReport(hostname=hostname, role=self.role)
        self._section = ""

    def run(self) -> ValidationReport:
        """Run every section and return the report."""
        logger.info("validation_start", host=self.hostname, role=self.role.value)

        self.validate_users()
        self.validate_ssh()
        self.validate_firewall()
        self.validate_security_tools()
        self.validate_permissions()
        self.validate_network()

        logger.info(
            "validation_complete",
            host=self.hostname,
            passed=self.report.passed,
            failed=self.report.failed,
        )
        return self.report

    def _output(self, cmd: str, needs_root: bool = False) -> Optional[str]:
        result = self.executor.execute(cmd, needs_root=needs_root, check=False, readonly=True)
        return result.stdout if result.success else None

    def _record(self, description: str, passed: bool, detail: str = "") -> bool:
        self.report.checks.append(CheckResult(self._section, description, passed, detail))
        if not passed:
            logger.warning("check_failed", host=self.hostname, check=description, detail=detail)
        return passed

    def _check(
        self,
        description: str,
        cmd: str,
        expected: str,
        needs_root: bool = False,
        exact: bool = False,
    ) -> bool:
        """Pass when ``cmd`` succeeds and its output matches ``expected``.

        With ``exact`` the stripped output must equal ``expected``; otherwise
        containing it is enough.
        """
        output = self._output(cmd, needs_root=needs_root)
        if output is None:
            return self._record(description, False, f"command failed: {cmd}")
        value = output.strip()
        passed = value == expected if exact else expected in value
        return self._record(description, passed, value.splitlines()[0] if value else "")

    def _users(self, base: List[str]) -> List[str]:
        users = list(base)
        if self.role == HostRole.CONTROL:
            users.extend(self.config.users.control_users)
        return list(dict.fromkeys(users))

    def validate_users(self) -> None:
        self._section = "User Configuration"
        required = self._users(["labrat"] + self.config.users.managed_users)
        for user in required:
            self._check(f"{user} user exists", f"id {user}", user)

        for user in self._users(self.config.users.sudo_users):
            self._check(f"{user} passwordless sudo", f"sudo -l -U {user}", "NOPASSWD", needs_root=True)

    def validate_ssh(self) -> None:
        self._section = "SSH Security"
        output = self._output("sshd -T", needs_root=True)
        settings = parse_sshd_effective_config(output or "")

        expected = {
            "passwordauthentication": "no",
            "permitrootlogin": "no",
            "pubkeyauthentication": "yes",
            "maxauthtries": str(self.config.ssh.max_auth_tries),
        }
        labels = {
            "passwordauthentication": "SSH PasswordAuthentication disabled",
            "permitrootlogin": "SSH PermitRootLogin disabled",
            "pubkeyauthentication": "SSH PubkeyAuthentication enabled",
            "maxauthtries": f"SSH MaxAuthTries set to {self.config.ssh.max_auth_tries}",
        }
        for key, value in expected.items():
            actual = settings.get(key, "")
            self._record(labels[key], actual == value, f"{key} {actual}".strip())

        self._check(
            "SSH service running", f"systemctl is-active {self.ssh_service}", "active", exact=True
        )

    def validate_firewall(self) -> None:
        self._section = "Firewall Configuration"
        status = self._output("ufw status verbose", needs_root=True) or ""
        lines = status.strip().splitlines()

        self._record("UFW firewall active", bool(lines) and lines[0].strip() == "Status: active")

        default_line = next((l for l in lines if l.startswith("Default:")), "")
        self._record("UFW default deny incoming", "deny (incoming)" in default_line, default_line)

        rules = parse_ufw_rules(status)
        self._record("SSH allowed", ufw_allows(rules, ("22/tcp", "22", "OpenSSH", "SSH")))

        for rule in firewall_rules(self.role):
            self._record(f"{self._describe(rule)} allowed", ufw_allows(rules, (str(rule),)))

    @staticmethod
    def _describe(rule: FirewallRule) -> str:
        names = {80: "HTTP port", 443: "HTTPS port", 2376: "Docker daemon port", 514: "Syslog"}
        return f"{names.get(rule.port, 'Port')} {rule}"

    def validate_security_tools(self) -> None:
        self._section = "Security Tools"
        self._check("fail2ban service running", "systemctl is-active fail2ban", "active", exact=True)
        self._check("fail2ban service enabled", "systemctl is-enabled fail2ban", "enabled", exact=True)
        self._record(
            "fail2ban SSH jail configured", self.executor.path_exists(FAIL2BAN_JAIL, needs_root=True)
        )
        self._check("rsyslog service running", "systemctl is-active rsyslog", "active", exact=True)
        self._check(
            "unattended-upgrades installed",
            "dpkg-query -W -f='${Status}' unattended-upgrades",
            "install ok installed",
        )

    def validate_permissions(self) -> None:
        self._section = "File Permissions"
        for path, mode in FILE_MODES.items():
            self._check(f"{path} permissions", f"stat -c '%a' {path}", mode, needs_root=True, exact=True)

    def validate_network(self) -> None:
        self._section = "Network Security"
        output = self._output("ss -tuln")
        if output is None:
            output = self._output("netstat -tuln")
        if output is None:
            for description in ("SSH port listening", "No telnet port listening", "No FTP port listening"):
                self._record(description, False, "neither ss nor netstat available")
            return

        ports = parse_listening_ports(output)
        self._record("SSH port listening", 22 in ports)
        self._record("No telnet port listening", 23 not in ports)
        self._record("No FTP port listening", 21 not in ports)
