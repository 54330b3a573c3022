"""Fleet snapshot workflow: shutdown, snapshot, restore power state, account storage."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import structlog

from lab_hardener.exceptions import OperationSkipped, PermanentOperationError, ProxmoxError
from lab_hardener.proxmox import ProxmoxClient, SnapshotInfo, StoragePool, format_bytes
from lab_hardener.runner import OperationRunner, RunSummary
from lab_hardener.types import PowerState
from lab_hardener.utils.validation import Validator

logger = structlog.get_logger(__name__)


@dataclass
class StorageDelta:
    """Before/after byte counts."""

    before: int
    after: int

    @property
    def delta(self) -> int:
        return self.after - self.before

    def to_dict(self) -> Dict[str, Any]:
        return {
            "before": self.before,
            "after": self.after,
            "delta": self.delta,
            "delta_human": format_bytes(self.delta),
        }


@dataclass
class VMSnapshotResult:
    """What happened to one VM during the workflow."""

    vmid: int
    snapshot: str
    initial_state: PowerState = PowerState.UNKNOWN
    final_state: PowerState = PowerState.UNKNOWN
    was_shut_down: bool = False
    created: bool = False
    restore_error: Optional[str] = None

    @property
    def state_restored(self) -> bool:
        if self.initial_state == PowerState.RUNNING:
            return self.final_state == PowerState.RUNNING
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vmid": self.vmid,
            "snapshot": self.snapshot,
            "initial_state": self.initial_state.value,
            "final_state": self.final_state.value,
            "was_shut_down": self.was_shut_down,
            "created": self.created,
            "state_restored": self.state_restored,
            "restore_error": self.restore_error,
        }


@dataclass
class SnapshotReport:
    """Result of a fleet snapshot run."""

    name: str
    summary: RunSummary
    vms: Dict[int, VMSnapshotResult] = field(default_factory=dict)
    pool: Optional[StorageDelta] = None
    per_vm: Optional[Dict[int, StorageDelta]] = None
    storage: str = ""

    @property
    def ok(self) -> bool:
        return self.summary.ok and all(vm.state_restored for vm in self.vms.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "ok": self.ok,
            "storage": self.storage,
            "pool": self.pool.to_dict() if self.pool else None,
            "per_vm": {str(k): v.to_dict() for k, v in self.per_vm.items()} if self.per_vm is not None else None,
            "vms": {str(k): v.to_dict() for k, v in self.vms.items()},
            "summary": self.summary.to_dict(),
        }


class SnapshotManager:
    """Coordinate snapshots across several VMs on one Proxmox node."""

    def __init__(self, client: ProxmoxClient, runner: Optional[OperationRunner] = None) -> None:
        self.client = client
        self.runner = runner or OperationRunner()

    def _pool_used(self) -> Optional[int]:
        try:
            return self.client.storage_status().used
        except ProxmoxError as e:
            logger.warning("pool_usage_unavailable", error=str(e))
            return None

    def _snapshot_sizes(self, vmids: List[int]) -> Optional[Dict[int, int]]:
        try:
            return self.client.snapshot_sizes(vmids)
        except ProxmoxError as e:
            logger.warning("lvs_unavailable", error=str(e))
            return None

    def create(
        self,
        vmids: Iterable[int],
        name: str,
        description: str = "",
        shutdown: bool = True,
    ) -> SnapshotReport:
        """Snapshot every VM and leave each one in its pre-operation power state.

        Raises:
            ValidationError: If the snapshot name is invalid
        """
        Validator.validate_snapshot_name(name)
        vmids = list(dict.fromkeys(vmids))
        logger.info("snapshot_run_start", snapshot=name, vmids=vmids, shutdown=shutdown)

        pool_before = self._pool_used()
        sizes_before = self._snapshot_sizes(vmids)

        states: Dict[int, VMSnapshotResult] = {}

        def snapshot_vm(vmid: int) -> VMSnapshotResult:
            vm = states.get(vmid)
            if vm is None:
                vm = VMSnapshotResult(vmid=vmid, snapshot=name)
                vm.initial_state = self.client.vm_status(vmid)
                states[vmid] = vm
            if vm.initial_state == PowerState.UNKNOWN:
                raise PermanentOperationError(f"VM {vmid} status could not be determined")

            if any(s.name == name for s in self.client.list_snapshots(vmid)):
                vm.final_state = self.client.vm_status(vmid)
                raise OperationSkipped(f"snapshot {name} already exists on VM {vmid}")

            try:
                if shutdown and self.client.vm_status(vmid) == PowerState.RUNNING:
                    self.client.shutdown(vmid)
                    vm.was_shut_down = True
                self.client.create_snapshot(vmid, name, description)
                vm.created = True
            finally:
                self._restore_state(vm)
            return vm

        summary = self.runner.run("snapshot", vmids, snapshot_vm, key=str)

        self._consistency_sweep(states, summary)

        report = SnapshotReport(name=name, summary=summary, vms=states, storage=self.client.config.storage)
        pool_after = self._pool_used()
        if pool_before is not None and pool_after is not None:
            report.pool = StorageDelta(pool_before, pool_after)
        sizes_after = self._snapshot_sizes(vmids)
        if sizes_before is not None and sizes_after is not None:
            report.per_vm = {
                vmid: StorageDelta(sizes_before.get(vmid, 0), sizes_after.get(vmid, 0)) for vmid in vmids
            }

        logger.info(
            "snapshot_run_complete",
            snapshot=name,
            ok=report.ok,
            pool_delta=format_bytes(report.pool.delta) if report.pool else None,
        )
        return report

    def _restore_state(self, vm: VMSnapshotResult) -> None:
        """Start the VM again if it was running before; record, don't raise."""
        try:
            current = self.client.vm_status(vm.vmid)
            if vm.initial_state == PowerState.RUNNING and current != PowerState.RUNNING:
                self.client.start(vm.vmid)
                current = self.client.vm_status(vm.vmid)
            vm.final_state = current
            vm.restore_error = None
        except ProxmoxError as e:
            vm.restore_error = str(e)
            logger.error("vm_restore_failed", vmid=vm.vmid, error=str(e))

    def _consistency_sweep(self, states: Dict[int, VMSnapshotResult], summary: RunSummary) -> None:
        """Make sure every VM that was running is running again."""
        for vmid, vm in states.items():
            if vm.initial_state != PowerState.RUNNING:
                continue
            if vm.final_state == PowerState.RUNNING and vm.restore_error is None:
                continue

            logger.warning("consistency_sweep", vmid=vmid, final_state=vm.final_state.value)
            self._restore_state(vm)
            if not vm.state_restored:
                result = summary.get(str(vmid))
                if result is not None:
                    result.success = False
                    result.skipped = False
                    result.error = vm.restore_error or f"VM {vmid} left in state {vm.final_state.value}"

    def delete(self, vmids: Iterable[int], name: str) -> RunSummary:
        """Remove a named snapshot from every VM that has it."""
        Validator.validate_snapshot_name(name)

        def delete_one(vmid: int) -> str:
            if not any(s.name == name for s in self.client.list_snapshots(vmid)):
                raise OperationSkipped(f"snapshot {name} not present on VM {vmid}")
            self.client.delete_snapshot(vmid, name)
            return name

        return self.runner.run("delete-snapshot", list(dict.fromkeys(vmids)), delete_one, key=str)

    def list_snapshots(self, vmids: Iterable[int]) -> Dict[int, List[SnapshotInfo]]:
        return {vmid: self.client.list_snapshots(vmid) for vmid in dict.fromkeys(vmids)}

    def usage(self, vmids: Iterable[int] = ()) -> Dict[str, Any]:
        """Current pool usage and per-VM snapshot bytes."""
        pool: StoragePool = self.client.storage_status()
        vmids = list(vmids)
        sizes = self.client.snapshot_sizes(vmids) if vmids else {}
        return {
            "storage": pool.name,
            "type": pool.type,
            "total": pool.total,
            "used": pool.used,
            "available": pool.available,
            "used_percent": pool.used_percent,
            "snapshots": {str(k): v for k, v in sizes.items()},
        }
