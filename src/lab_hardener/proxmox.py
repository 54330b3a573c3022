"""Proxmox VE node commands (qm, pvesm, lvs) and their output parsers."""

import re
import shlex
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

import structlog

from lab_hardener.config import ProxmoxConfig
from lab_hardener.exceptions import ProxmoxError
from lab_hardener.types import PowerState
from lab_hardener.utils.command import BaseExecutor

logger = structlog.get_logger(__name__)

KIB = 1024
_UNITS = ("B", "KiB", "MiB", "GiB", "TiB", "PiB")
_SNAPSHOT_LINE_RE = re.compile(
    r"^[\s`|\-]*>\s*(?P<name>\S+)"
    r"(?:\s+(?P<date>\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}))?"
    r"\s*(?P<description>.*)$"
)


@dataclass
class VMInfo:
    vmid: int
    name: str
    status: PowerState


@dataclass
class SnapshotInfo:
    name: str
    created: Optional[str] = None
    description: str = ""


@dataclass
class StoragePool:
    """One row of ``pvesm status``, sizes in bytes."""

    name: str
    type: str
    status: str
    total: int
    used: int
    available: int

    @property
    def used_percent(self) -> float:
        return round(self.used * 100.0 / self.total, 2) if self.total else 0.0


@dataclass
class LogicalVolume:
    """One row of ``lvs``, size in bytes."""

    name: str
    vg: str
    size: int
    data_percent: Optional[float] = None
    origin: str = ""

    @property
    def used(self) -> int:
        """Allocated bytes: thin volumes report a data percent, thick ones don't."""
        if self.data_percent is None:
            return self.size
        return int(self.size * self.data_percent / 100)

    def belongs_to_snapshot_of(self, vmid: int) -> bool:
        disk_prefix = f"vm-{vmid}-disk-"
        return self.name.startswith(f"snap_{disk_prefix}") or (
            bool(self.origin) and self.origin.startswith(disk_prefix)
        )


def format_bytes(value: float) -> str:
    """Render a byte count with binary units, keeping the sign."""
    sign = "-" if value < 0 else ""
    size = float(abs(value))
    for unit in _UNITS:
        if size < 1024 or unit == _UNITS[-1]:
            if unit == "B":
                return f"{sign}{int(size)} B"
            return f"{sign}{size:.2f} {unit}"
        size /= 1024
    return f"{sign}{size:.2f} {_UNITS[-1]}"


def _to_int(value: str) -> int:
    try:
        return int(float(value))
    except ValueError:
        return 0


def parse_qm_status(text: str) -> PowerState:
    """Parse ``qm status <vmid>`` (``status: running``)."""
    for line in text.splitlines():
        key, _, value = line.partition(":")
        if key.strip() == "status":
            try:
                return PowerState(value.strip())
            except ValueError:
                return PowerState.UNKNOWN
    return PowerState.UNKNOWN


def parse_qm_list(text: str) -> List[VMInfo]:
    """Parse the table printed by ``qm list``."""
    vms: List[VMInfo] = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 3 or not parts[0].isdigit():
            continue
        try:
            status = PowerState(parts[2])
        except ValueError:
            status = PowerState.UNKNOWN
        vms.append(VMInfo(vmid=int(parts[0]), name=parts[1], status=status))
    return vms


def parse_qm_listsnapshot(text: str) -> List[SnapshotInfo]:
    """Parse the tree printed by ``qm listsnapshot``; ``current`` is omitted."""
    snapshots: List[SnapshotInfo] = []
    for line in text.splitlines():
        match = _SNAPSHOT_LINE_RE.match(line)
        if not match or match.group("name") == "current":
            continue
        snapshots.append(
            SnapshotInfo(
                name=match.group("name"),
                created=match.group("date"),
                description=match.group("description").strip(),
            )
        )
    return snapshots


def parse_pvesm_status(text: str) -> List[StoragePool]:
    """Parse ``pvesm status``; the tool reports sizes in KiB."""
    pools: List[StoragePool] = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 6 or parts[0] == "Name":
            continue
        pools.append(
            StoragePool(
                name=parts[0],
                type=parts[1],
                status=parts[2],
                total=_to_int(parts[3]) * KIB,
                used=_to_int(parts[4]) * KIB,
                available=_to_int(parts[5]) * KIB,
            )
        )
    return pools


def parse_lvs(text: str) -> List[LogicalVolume]:
    """Parse ``lvs --noheadings --units b --nosuffix --separator "|"`` output.

    Columns: lv_name, vg_name, lv_size, data_percent, origin.
    """
    volumes: List[LogicalVolume] = []
    for line in text.splitlines():
        cols = [c.strip() for c in line.split("|")]
        if len(cols) < 3 or not cols[0]:
            continue
        percent: Optional[float] = None
        if len(cols) > 3 and cols[3]:
            try:
                percent = float(cols[3])
            except ValueError:
                percent = None
        volumes.append(
            LogicalVolume(
                name=cols[0],
                vg=cols[1],
                size=_to_int(cols[2]),
                data_percent=percent,
                origin=cols[4] if len(cols) > 4 else "",
            )
        )
    return volumes


def snapshot_usage(volumes: Iterable[LogicalVolume], vmid: int) -> int:
    """Bytes allocated to snapshot volumes of a VM's disks."""
    return sum(v.used for v in volumes if v.belongs_to_snapshot_of(vmid))


class ProxmoxClient:
    """Run Proxmox CLI tools on a node and return structured results."""

    def __init__(
        self,
        executor: BaseExecutor,
        config: ProxmoxConfig,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.executor = executor
        self.config = config
        self._sleep = sleep
        self._clock = clock

    def _run(self, cmd: str, timeout: int = 60, readonly: bool = False) -> str:
        result = self.executor.execute(
            cmd, needs_root=True, check=False, timeout=timeout, readonly=readonly
        )
        if not result.success:
            raise ProxmoxError(f"{cmd} failed: {(result.stderr or result.stdout).strip()}")
        return result.stdout

    def list_vms(self) -> List[VMInfo]:
        return parse_qm_list(self._run("qm list", readonly=True))

    def vm_status(self, vmid: int) -> PowerState:
        return parse_qm_status(self._run(f"qm status {vmid}", readonly=True))

    def wait_for_state(self, vmid: int, state: PowerState, timeout: float) -> bool:
        """Poll ``qm status`` until the VM reaches ``state`` or time runs out."""
        deadline = self._clock() + timeout
        while True:
            if self.vm_status(vmid) == state:
                return True
            if self._clock() >= deadline:
                return False
            self._sleep(self.config.poll_interval)

    def shutdown(self, vmid: int) -> None:
        """Shut a VM down cleanly, falling back to a hard stop when allowed.

        Raises:
            ProxmoxError: If the VM is still not stopped afterwards
        """
        timeout = self.config.shutdown_timeout
        logger.info("vm_shutdown", vmid=vmid, timeout=timeout)
        result = self.executor.execute(
            f"qm shutdown {vmid} --timeout {timeout}", needs_root=True, check=False, timeout=timeout + 30
        )
        if not result.success:
            if not self.config.force_stop:
                raise ProxmoxError(f"VM {vmid} did not shut down: {result.stderr.strip()}")
            logger.warning("vm_force_stop", vmid=vmid, error=result.stderr.strip())
            self._run(f"qm stop {vmid}", timeout=120)

        if self.executor.dry_run:
            return
        if not self.wait_for_state(vmid, PowerState.STOPPED, timeout=30):
            raise ProxmoxError(f"VM {vmid} is still running after shutdown")

    def start(self, vmid: int) -> None:
        """Start a VM and wait until it reports running.

        Raises:
            ProxmoxError: If start fails or the VM doesn't come up in time
        """
        logger.info("vm_start", vmid=vmid)
        self._run(f"qm start {vmid}", timeout=120)
        if self.executor.dry_run:
            return
        if not self.wait_for_state(vmid, PowerState.RUNNING, timeout=self.config.start_timeout):
            raise ProxmoxError(f"VM {vmid} did not reach running within {self.config.start_timeout}s")

    def list_snapshots(self, vmid: int) -> List[SnapshotInfo]:
        return parse_qm_listsnapshot(self._run(f"qm listsnapshot {vmid}", readonly=True))

    def create_snapshot(self, vmid: int, name: str, description: str = "") -> None:
        cmd = f"qm snapshot {vmid} {shlex.quote(name)}"
        if description:
            cmd += f" --description {shlex.quote(description)}"
        logger.info("snapshot_create", vmid=vmid, snapshot=name)
        self._run(cmd, timeout=1800)

    def delete_snapshot(self, vmid: int, name: str) -> None:
        logger.info("snapshot_delete", vmid=vmid, snapshot=name)
        self._run(f"qm delsnapshot {vmid} {shlex.quote(name)}", timeout=1800)

    def storage_status(self, storage: Optional[str] = None) -> StoragePool:
        """Usage of one storage pool.

        Raises:
            ProxmoxError: If the pool is not listed
        """
        storage = storage or self.config.storage
        pools = parse_pvesm_status(
            self._run(f"pvesm status --storage {shlex.quote(storage)}", readonly=True)
        )
        for pool in pools:
            if pool.name == storage:
                return pool
        raise ProxmoxError(f"Storage {storage} not found in pvesm status")

    def logical_volumes(self, vg: Optional[str] = None) -> List[LogicalVolume]:
        vg = vg or self.config.volume_group
        cmd = (
            'lvs --noheadings --units b --nosuffix --separator "|" '
            f"-o lv_name,vg_name,lv_size,data_percent,origin {shlex.quote(vg)}"
        )
        return parse_lvs(self._run(cmd, readonly=True))

    def snapshot_sizes(self, vmids: Iterable[int]) -> Dict[int, int]:
        """Bytes used by existing snapshots, per VM."""
        volumes = self.logical_volumes()
        return {vmid: snapshot_usage(volumes, vmid) for vmid in vmids}
