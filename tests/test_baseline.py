"""Tests for baseline validation."""

import pytest

from lab_hardener.baseline import (
    BaselineValidator,
    parse_listening_ports,
    parse_sshd_effective_config,
    parse_ufw_rules,
    ufw_allows,
)

UFW_STATUS = """Status: active
Logging: on (low)
Default: deny (incoming), allow (outgoing), disabled (routed)
New profiles: skip

To                         Action      From
--                         ------      ----
22/tcp                     ALLOW IN    Anywhere
80/tcp                     ALLOW IN    Anywhere
443/tcp                    ALLOW IN    Anywhere
22/tcp (v6)                ALLOW IN    Anywhere (v6)
"""

SSHD_T = """port 22
maxauthtries 3
permitrootlogin no
pubkeyauthentication yes
passwordauthentication no
x11forwarding no
"""

SS_TULN = """Netid State  Recv-Q Send-Q Local Address:Port Peer Address:Port
udp   UNCONN 0      0      127.0.0.53%lo:53   0.0.0.0:*
tcp   LISTEN 0      128    0.0.0.0:22         0.0.0.0:*
tcp   LISTEN 0      128    [::]:22            [::]:*
"""


@pytest.fixture
def hardened(executor):
    """Executor answering like a fully hardened git server."""
    for user in ("labrat", "automation"):
        executor.on(rf"^id {user}$", f"uid=1000({user}) gid=1000({user}) groups=1000({user})\n")
        executor.on(rf"^sudo -l -U {user}$", f"User {user} may run:\n    (ALL) NOPASSWD: ALL\n")
    executor.on(r"^sshd -T$", SSHD_T)
    executor.on(r"^systemctl is-active (ssh|fail2ban|rsyslog)$", "active\n")
    executor.on(r"^systemctl is-enabled fail2ban$", "enabled\n")
    executor.on(r"^ufw status verbose$", UFW_STATUS)
    executor.on(r"^dpkg-query ", "install ok installed")
    for path, mode in (
        ("/etc/passwd", "644"),
        ("/etc/shadow", "640"),
        ("/etc/sudoers", "440"),
        ("/etc/ssh/sshd_config", "600"),
    ):
        executor.on(rf"^stat -c '%a' {path}$", f"{mode}\n")
    executor.on(r"^ss -tuln$", SS_TULN)
    return executor


def test_hardened_host_passes(test_config, hardened):
    report = BaselineValidator(hardened, "sae-git01", config=test_config).run()

    failed = [c.description for c in report.checks if not c.passed]
    assert failed == []
    assert report.ok
    assert report.total == 26
    assert report.success_rate == 100
    assert list(report.sections()) == [
        "User Configuration",
        "SSH Security",
        "Firewall Configuration",
        "Security Tools",
        "File Permissions",
        "Network Security",
    ]


def test_inactive_is_not_active(test_config, hardened):
    hardened.on(r"^systemctl is-active fail2ban$", "inactive\n", code=3)
    report = BaselineValidator(hardened, "sae-git01", config=test_config).run()

    assert report.failed == 1
    assert report.success_rate == 96
    assert not report.ok


def test_role_ports_checked(test_config, hardened):
    report = BaselineValidator(hardened, "sae-docker01", config=test_config).run()
    failed = [c.description for c in report.checks if not c.passed]
    assert failed == ["Docker daemon port 2376/tcp allowed"]


def test_insecure_sshd_and_telnet(test_config, hardened):
    hardened.on(r"^sshd -T$", SSHD_T.replace("passwordauthentication no", "passwordauthentication yes"))
    hardened.on(r"^ss -tuln$", SS_TULN + "tcp   LISTEN 0      5      0.0.0.0:23         0.0.0.0:*\n")

    report = BaselineValidator(hardened, "sae-tgt01", config=test_config).run()
    failed = {c.description for c in report.checks if not c.passed}
    assert failed == {"SSH PasswordAuthentication disabled", "No telnet port listening"}


def test_netstat_fallback(test_config, hardened):
    hardened.on(r"^ss -tuln$", code=127)
    hardened.on(r"^netstat -tuln$", "tcp        0      0 0.0.0.0:22      0.0.0.0:*       LISTEN\n")
    report = BaselineValidator(hardened, "sae-tgt01", config=test_config).run()
    assert report.ok


def test_validation_runs_in_dry_run(test_config, hardened):
    hardened.dry_run = True
    assert BaselineValidator(hardened, "sae-git01", config=test_config).run().ok


def test_report_to_dict(test_config, hardened):
    data = BaselineValidator(hardened, "sae-tgt01", config=test_config).run().to_dict()
    assert data["hostname"] == "sae-tgt01"
    assert data["role"] == "tgt"
    assert data["failed"] == 0
    assert data["checks"][0]["section"] == "User Configuration"


def test_parse_sshd_effective_config():
    settings = parse_sshd_effective_config("PermitRootLogin no\nmaxauthtries 3\n\n")
    assert settings == {"permitrootlogin": "no", "maxauthtries": "3"}


def test_parse_ufw_rules():
    rules = parse_ufw_rules(UFW_STATUS)
    assert ("80/tcp", "ALLOW IN") in rules
    assert ufw_allows(rules, ("22/tcp",))
    assert not ufw_allows(rules, ("514/udp",))
    assert parse_ufw_rules("Status: inactive\n") == []


def test_parse_listening_ports():
    assert parse_listening_ports(SS_TULN) == {22, 53}
