"""Fleet inventory loaded from YAML."""

from pathlib import Path
from typing import Iterable, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from lab_hardener.exceptions import ConfigurationError
from lab_hardener.roles import detect_role
from lab_hardener.types import HostRole


class HostDefaults(BaseModel):
    """Values applied to every host that doesn't set its own."""

    user: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    key_file: Optional[Path] = None


class HostEntry(BaseModel):
    """One managed host."""

    name: str
    address: str
    hostname: str = ""
    user: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    key_file: Optional[Path] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def parse_tags(cls, v: object) -> List[str]:
        if isinstance(v, str):
            return [t.strip() for t in v.split(",") if t.strip()]
        return v or []

    @property
    def effective_hostname(self) -> str:
        return self.hostname or self.name

    @property
    def role(self) -> HostRole:
        return detect_role(self.effective_hostname)


class Inventory(BaseModel):
    """All hosts in the lab."""

    defaults: HostDefaults = Field(default_factory=HostDefaults)
    hosts: List[HostEntry] = Field(default_factory=list)

    @classmethod
    def load(cls, path: Path) -> "Inventory":
        """Read an inventory file.

        Raises:
            ConfigurationError: If the file is missing or malformed
        """
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigurationError(f"Cannot read inventory {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in inventory {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Inventory {path} must be a mapping with a 'hosts' list")

        try:
            inventory = cls.model_validate(data)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid inventory {path}: {e}") from e

        names = [h.name for h in inventory.hosts]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate host names in inventory: {', '.join(duplicates)}")
        return inventory

    def select(self, names: Iterable[str] = (), tags: Iterable[str] = ()) -> List[HostEntry]:
        """Hosts matching any of ``names`` or ``tags``; all hosts when both are empty.

        Raises:
            ConfigurationError: If a requested name is not in the inventory
        """
        names = list(names)
        tags = set(tags)
        known = {h.name for h in self.hosts}
        unknown = [n for n in names if n not in known]
        if unknown:
            raise ConfigurationError(f"Unknown hosts: {', '.join(unknown)}")

        if not names and not tags:
            return list(self.hosts)
        return [h for h in self.hosts if h.name in names or tags.intersection(h.tags)]

    def resolve(self, host: HostEntry) -> HostEntry:
        """Return a copy of ``host`` with inventory defaults filled in."""
        return host.model_copy(
            update={
                "user": host.user or self.defaults.user,
                "port": host.port or self.defaults.port,
                "key_file": host.key_file or self.defaults.key_file,
            }
        )
