"""Input validation utilities."""

import re
from typing import Iterable, List

from lab_hardener.exceptions import ValidationError

SNAPSHOT_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{1,39}$")
USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_.-]{0,31}$")
OU_COMPONENT_RE = re.compile(r"^(OU|DC|CN)=[^=,]+$", re.IGNORECASE)


class Validator:
    """Validate operator inputs before anything touches a host."""

    @staticmethod
    def validate_users(usernames: Iterable[str]) -> List[str]:
        """Validate list of usernames.

        Args:
            usernames: Usernames to validate

        Returns:
            List of validation error messages
        """
        errors: List[str] = []
        usernames = list(usernames)

        if not usernames:
            errors.append("No users specified")
            return errors

        for username in usernames:
            if not username or not username.strip():
                errors.append("Empty username found")
                continue

            if len(username) > 32:
                errors.append(f"Username too long: {username}")
            elif not USERNAME_RE.match(username):
                errors.append(f"Invalid username format: {username}")

        return errors

    @staticmethod
    def validate_snapshot_name(name: str) -> None:
        """Check a snapshot name against Proxmox naming rules.

        Raises:
            ValidationError: If the name would be rejected by ``qm snapshot``
        """
        if name == "current":
            raise ValidationError("Snapshot name 'current' is reserved")
        if not SNAPSHOT_NAME_RE.match(name or ""):
            raise ValidationError(
                f"Invalid snapshot name: {name!r}. Must start with a letter, "
                "contain only letters, digits, '-' or '_' and be 2-40 characters"
            )

    @staticmethod
    def parse_vmids(value: str) -> List[int]:
        """Parse ``100,101,105-107`` into a sorted unique list of VM IDs.

        Raises:
            ValidationError: If any element is not a valid VM ID or range
        """
        vmids = set()
        for part in (p.strip() for p in value.split(",")):
            if not part:
                continue
            try:
                if "-" in part:
                    start, end = (int(x) for x in part.split("-", 1))
                    if start > end:
                        raise ValueError
                    vmids.update(range(start, end + 1))
                else:
                    vmids.add(int(part))
            except ValueError as e:
                raise ValidationError(f"Invalid VM ID or range: {part!r}") from e

        for vmid in vmids:
            if not 100 <= vmid <= 999999999:
                raise ValidationError(f"VM ID out of range: {vmid}")

        if not vmids:
            raise ValidationError("No VM IDs given")
        return sorted(vmids)

    @staticmethod
    def validate_ou(dn: str) -> None:
        """Validate an OU distinguished name such as ``OU=Lab,DC=sae,DC=local``.

        Raises:
            ValidationError: If the DN is malformed
        """
        parts = [p.strip() for p in dn.split(",")] if dn else []
        if not parts or not all(OU_COMPONENT_RE.match(p) for p in parts):
            raise ValidationError(f"Invalid distinguished name: {dn!r}")
        if not parts[0].upper().startswith("OU="):
            raise ValidationError(f"Link target must be an OU: {dn!r}")
        if not parts[-1].upper().startswith("DC="):
            raise ValidationError(f"Distinguished name has no domain component: {dn!r}")
