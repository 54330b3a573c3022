"""Group Policy registry baseline for the Windows side of the lab."""

import base64
from pathlib import Path
from typing import Dict, List, Union

import structlog
import yaml
from pydantic import BaseModel, ValidationError as PydanticValidationError, field_validator, model_validator

from lab_hardener.exceptions import ConfigurationError, PermanentOperationError
from lab_hardener.types import RegistryValueType
from lab_hardener.utils.command import BaseExecutor
from lab_hardener.utils.validation import Validator

logger = structlog.get_logger(__name__)

HKLM = "HKLM\\"


class GpoRegistrySetting(BaseModel):
    """One registry value delivered by Group Policy."""

    key: str
    value_name: str
    type: RegistryValueType
    value: Union[int, str, List[str]]

    @field_validator("key")
    @classmethod
    def check_hive(cls, v: str) -> str:
        if not v.upper().startswith(("HKLM\\", "HKCU\\")):
            raise ValueError(f"Registry key must start with HKLM\\ or HKCU\\: {v}")
        return v

    @model_validator(mode="after")
    def check_value_type(self) -> "GpoRegistrySetting":
        if self.type in (RegistryValueType.DWORD, RegistryValueType.QWORD):
            if not isinstance(self.value, int) or self.value < 0:
                raise ValueError(f"{self.value_name}: {self.type.value} needs a non-negative integer")
        elif self.type == RegistryValueType.MULTI_STRING:
            if not isinstance(self.value, list):
                raise ValueError(f"{self.value_name}: MultiString needs a list of strings")
        elif not isinstance(self.value, str):
            raise ValueError(f"{self.value_name}: {self.type.value} needs a string")
        return self

    def identity(self) -> str:
        return f"{self.key.lower()}\\{self.value_name.lower()}"


def _dword(key: str, name: str, value: int) -> GpoRegistrySetting:
    return GpoRegistrySetting(key=HKLM + key, value_name=name, type=RegistryValueType.DWORD, value=value)


DEFAULT_BASELINE: List[GpoRegistrySetting] = [
    _dword(r"SYSTEM\CurrentControlSet\Services\LanmanServer\Parameters", "SMB1", 0),
    _dword(r"SYSTEM\CurrentControlSet\Services\mrxsmb10", "Start", 4),
    _dword(r"SYSTEM\CurrentControlSet\Control\Lsa", "LmCompatibilityLevel", 5),
    _dword(r"SYSTEM\CurrentControlSet\Control\Lsa", "NoLMHash", 1),
    _dword(r"SYSTEM\CurrentControlSet\Control\Lsa", "RestrictAnonymous", 1),
    _dword(r"SYSTEM\CurrentControlSet\Control\Lsa", "RestrictAnonymousSAM", 1),
    _dword(r"SYSTEM\CurrentControlSet\Control\Lsa", "SCENoApplyLegacyAuditPolicy", 1),
    _dword(r"SOFTWARE\Policies\Microsoft\Windows NT\Terminal Services", "UserAuthentication", 1),
    _dword(r"SOFTWARE\Policies\Microsoft\WindowsFirewall\DomainProfile", "EnableFirewall", 1),
    _dword(r"SOFTWARE\Policies\Microsoft\WindowsFirewall\PrivateProfile", "EnableFirewall", 1),
    _dword(r"SOFTWARE\Policies\Microsoft\WindowsFirewall\PublicProfile", "EnableFirewall", 1),
]


def load_settings(path: Path) -> List[GpoRegistrySetting]:
    """Load registry settings from a YAML list.

    Raises:
        ConfigurationError: If the file is unreadable or a setting is invalid
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or []
    except OSError as e:
        raise ConfigurationError(f"Cannot read GPO settings {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if isinstance(data, dict):
        data = data.get("settings", [])
    if not isinstance(data, list):
        raise ConfigurationError(f"{path} must contain a list of settings")

    try:
        return [GpoRegistrySetting.model_validate(item) for item in data]
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid GPO setting in {path}: {e}") from e


def merge_settings(
    base: List[GpoRegistrySetting], overrides: List[GpoRegistrySetting]
) -> List[GpoRegistrySetting]:
    """Overrides replace base settings with the same key and value name."""
    merged: Dict[str, GpoRegistrySetting] = {s.identity(): s for s in base}
    for setting in overrides:
        merged[setting.identity()] = setting
    return list(merged.values())


def _ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _ps_value(setting: GpoRegistrySetting) -> str:
    if setting.type == RegistryValueType.MULTI_STRING:
        return "@(" + ", ".join(_ps_quote(v) for v in setting.value) + ")"
    if isinstance(setting.value, int):
        return str(setting.value)
    return _ps_quote(setting.value)


def render_gpo_script(name: str, ou: str, settings: List[GpoRegistrySetting]) -> str:
    """Render an idempotent PowerShell script that creates, fills and links a GPO.

    Raises:
        ValidationError: If the OU distinguished name is malformed
    """
    Validator.validate_ou(ou)
    gpo = _ps_quote(name)
    target = _ps_quote(ou)

    lines = [
        "$ErrorActionPreference = 'Stop'",
        "Import-Module GroupPolicy",
        f"$gpo = Get-GPO -Name {gpo} -ErrorAction SilentlyContinue",
        "if (-not $gpo) {",
        f"    $gpo = New-GPO -Name {gpo} -Comment 'SAE Lab security baseline'",
        "}",
    ]
    for setting in settings:
        lines.append(
            f"Set-GPRegistryValue -Name {gpo} -Key {_ps_quote(setting.key)} "
            f"-ValueName {_ps_quote(setting.value_name)} -Type {setting.type.value} "
            f"-Value {_ps_value(setting)} | Out-Null"
        )
    lines.extend(
        [
            f"$links = (Get-GPInheritance -Target {target}).GpoLinks | Where-Object {{ $_.DisplayName -eq {gpo} }}",
            "if (-not $links) {",
            f"    New-GPLink -Name {gpo} -Target {target} -LinkEnabled Yes | Out-Null",
            "}",
            "Write-Output " + _ps_quote(f"GPO {name}: {len(settings)} settings applied, linked to {ou}"),
        ]
    )
    return "\n".join(lines) + "\n"


def encode_powershell(script: str) -> str:
    """Base64 of the UTF-16LE script, as ``-EncodedCommand`` expects."""
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


def apply_gpo(executor: BaseExecutor, name: str, ou: str, settings: List[GpoRegistrySetting]) -> str:
    """Run the rendered script on a Windows domain controller over SSH.

    Returns:
        The script's output

    Raises:
        PermanentOperationError: If PowerShell reports an error
    """
    script = render_gpo_script(name, ou, settings)
    cmd = f"powershell -NoProfile -NonInteractive -EncodedCommand {encode_powershell(script)}"
    logger.info("gpo_apply", host=executor.host, gpo=name, ou=ou, settings=len(settings))
    result = executor.execute(cmd, check=False, timeout=300)
    if not result.success:
        raise PermanentOperationError(
            f"GPO {name} failed on {executor.host}: {(result.stderr or result.stdout).strip()}"
        )
    return result.stdout.strip()
