"""Host roles and their firewall port tables."""

from typing import Dict, List, Tuple

from lab_hardener.types import FirewallRule, HostRole

# Checked in order; first substring match wins.
ROLE_ORDER: Tuple[HostRole, ...] = (
    HostRole.CONTROL,
    HostRole.GIT,
    HostRole.DOCKER,
    HostRole.SIEM,
    HostRole.TARGET,
)

ROLE_PORTS: Dict[HostRole, List[FirewallRule]] = {
    HostRole.CONTROL: [],
    HostRole.GIT: [FirewallRule(80), FirewallRule(443)],
    HostRole.DOCKER: [FirewallRule(2376)],
    HostRole.SIEM: [FirewallRule(514, "tcp"), FirewallRule(514, "udp")],
    HostRole.TARGET: [],
    HostRole.UNKNOWN: [],
}

ROLE_DESCRIPTIONS: Dict[HostRole, str] = {
    HostRole.CONTROL: "Control node (SSH only)",
    HostRole.GIT: "Git server (HTTP/HTTPS)",
    HostRole.DOCKER: "Docker server (Docker daemon)",
    HostRole.SIEM: "SIEM server (Syslog)",
    HostRole.TARGET: "Target system (SSH only)",
    HostRole.UNKNOWN: "Unknown role (SSH only)",
}


def detect_role(hostname: str) -> HostRole:
    """Derive the lab role from a hostname such as ``sae-git01``."""
    name = hostname.lower()
    for role in ROLE_ORDER:
        if role.value in name:
            return role
    return HostRole.UNKNOWN


def firewall_rules(role: HostRole) -> List[FirewallRule]:
    """Ports opened for a role in addition to SSH."""
    return list(ROLE_PORTS[role])
