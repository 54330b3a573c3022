"""Configuration management for Lab Hardener."""

from pathlib import Path
from typing import Annotated, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _split_csv(v: object) -> List[str]:
    if isinstance(v, str):
        return [u.strip() for u in v.split(",") if u.strip()]
    if isinstance(v, (list, tuple)):
        return [str(u).strip() for u in v if str(u).strip()]
    return []


class SSHConfig(BaseSettings):
    """sshd settings written to the hardening drop-in."""

    max_auth_tries: int = Field(default=3, ge=1, le=10)
    client_alive_interval: int = Field(default=300, ge=0)
    client_alive_count_max: int = Field(default=2, ge=0)
    permit_root_login: bool = Field(default=False)
    password_authentication: bool = Field(default=False)
    pubkey_authentication: bool = Field(default=True)
    x11_forwarding: bool = Field(default=False)
    drop_in_name: str = Field(default="sae-security.conf")

    model_config = SettingsConfigDict(
        env_prefix="SSH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


class SecurityConfig(BaseSettings):
    """Security feature configuration."""

    enable_fail2ban: bool = Field(default=True)
    enable_firewall: bool = Field(default=True)
    enable_upgrade: bool = Field(default=True)
    fail2ban_bantime: int = Field(default=3600, ge=60)
    fail2ban_findtime: int = Field(default=600, ge=60)
    fail2ban_maxretry: int = Field(default=3, ge=1)
    fail2ban_logpath: str = Field(default="/var/log/auth.log")

    model_config = SettingsConfigDict(
        env_prefix="SECURITY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class UsersConfig(BaseSettings):
    """Accounts managed by the baseline."""

    sudo_users: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["labrat", "automation"])
    managed_users: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["automation"])
    control_users: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["ansible"])

    model_config = SettingsConfigDict(
        env_prefix="USERS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("sudo_users", "managed_users", "control_users", mode="before")
    @classmethod
    def parse_user_list(cls, v: object) -> List[str]:
        """Parse usernames from comma-separated string or list."""
        return _split_csv(v)


class BackupConfig(BaseSettings):
    """Backup configuration. The directory lives on the hardened host."""

    directory: Path = Field(default=Path("/var/backups/lab-hardener"))

    model_config = SettingsConfigDict(
        env_prefix="BACKUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = Field(default="INFO")
    file: Optional[Path] = Field(default=None)
    json_output: bool = Field(default=False)

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level


class RemoteConfig(BaseSettings):
    """SSH transport settings for fleet operations."""

    user: str = Field(default="labrat")
    port: int = Field(default=22, ge=1, le=65535)
    key_file: Optional[Path] = Field(default=None)
    connect_timeout: int = Field(default=15, ge=1)
    command_timeout: int = Field(default=600, ge=1)
    retries: int = Field(default=2, ge=0, le=10)
    retry_delay: float = Field(default=2.0, ge=0)
    strict_host_keys: bool = Field(default=False)
    staging_dir: str = Field(default="/tmp/lab-hardener")

    model_config = SettingsConfigDict(
        env_prefix="REMOTE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class ProxmoxConfig(BaseSettings):
    """Proxmox node access and snapshot workflow settings."""

    host: str = Field(default="", description="Empty runs qm/pvesm locally")
    user: str = Field(default="root")
    port: int = Field(default=22, ge=1, le=65535)
    key_file: Optional[Path] = Field(default=None)
    storage: str = Field(default="local-lvm")
    volume_group: str = Field(default="pve")
    shutdown_timeout: int = Field(default=180, ge=1)
    force_stop: bool = Field(default=True)
    start_timeout: int = Field(default=120, ge=1)
    poll_interval: float = Field(default=2.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="PVE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class HardenerConfig(BaseSettings):
    """Main configuration container."""

    ssh: SSHConfig = Field(default_factory=SSHConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    users: UsersConfig = Field(default_factory=UsersConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    proxmox: ProxmoxConfig = Field(default_factory=ProxmoxConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def from_env(cls) -> "HardenerConfig":
        """Create configuration from environment variables."""
        return cls(
            ssh=SSHConfig(),
            security=SecurityConfig(),
            users=UsersConfig(),
            backup=BackupConfig(),
            logging=LoggingConfig(),
            remote=RemoteConfig(),
            proxmox=ProxmoxConfig(),
        )

    def validate_config(self) -> List[str]:
        """Validate configuration and return list of issues."""
        issues: List[str] = []

        if not self.users.sudo_users:
            issues.append("No sudo users configured")

        if not self.ssh.password_authentication and not self.ssh.pubkey_authentication:
            issues.append("All authentication methods disabled")

        if self.security.fail2ban_findtime > self.security.fail2ban_bantime:
            issues.append("fail2ban findtime is longer than bantime")

        if not self.backup.directory.is_absolute():
            issues.append(f"Backup directory must be absolute: {self.backup.directory}")

        return issues
