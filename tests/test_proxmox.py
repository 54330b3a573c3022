"""Tests for Proxmox command parsing and the node client."""

import pytest

from lab_hardener.config import ProxmoxConfig
from lab_hardener.exceptions import ProxmoxError
from lab_hardener.proxmox import (
    LogicalVolume,
    ProxmoxClient,
    format_bytes,
    parse_lvs,
    parse_pvesm_status,
    parse_qm_list,
    parse_qm_listsnapshot,
    parse_qm_status,
    snapshot_usage,
)
from lab_hardener.types import CommandResult, PowerState

QM_LIST = """      VMID NAME                 STATUS     MEM(MB)    BOOTDISK(GB) PID
       100 sae-control01        running    2048              32.00 1234
       101 sae-git01            stopped    4096              64.00 0
"""

QM_LISTSNAPSHOT = """`-> baseline            2024-01-10 09:00:00     clean install
  `-> pre-deploy        2024-01-15 10:30:00     before deploy
    `-> current                                 You are here!
"""

PVESM_STATUS = """Name             Type     Status           Total            Used       Available        %
local             dir     active        98497780        12345678        81086816   12.53%
local-lvm     lvmthin     active       100000000        25000000        75000000   25.00%
"""

LVS = """  vm-100-disk-0|pve|1073741824|20.00|
  snap_vm-100-disk-0_baseline|pve|1073741824|50.00|vm-100-disk-0
  snap_vm-101-disk-0_baseline|pve|2147483648||vm-101-disk-0
  data|pve|53687091200|10.00|
"""


def test_format_bytes():
    assert format_bytes(0) == "0 B"
    assert format_bytes(1536) == "1.50 KiB"
    assert format_bytes(-1048576) == "-1.00 MiB"
    assert format_bytes(5 * 1024 ** 3) == "5.00 GiB"


def test_parse_qm_status():
    assert parse_qm_status("status: running\n") == PowerState.RUNNING
    assert parse_qm_status("status: stopped\n") == PowerState.STOPPED
    assert parse_qm_status("status: prelaunch\n") == PowerState.UNKNOWN
    assert parse_qm_status("") == PowerState.UNKNOWN


def test_parse_qm_list():
    vms = parse_qm_list(QM_LIST)
    assert [(v.vmid, v.name, v.status) for v in vms] == [
        (100, "sae-control01", PowerState.RUNNING),
        (101, "sae-git01", PowerState.STOPPED),
    ]


def test_parse_qm_listsnapshot():
    snapshots = parse_qm_listsnapshot(QM_LISTSNAPSHOT)
    assert [s.name for s in snapshots] == ["baseline", "pre-deploy"]
    assert snapshots[1].created == "2024-01-15 10:30:00"
    assert snapshots[1].description == "before deploy"


def test_parse_pvesm_status():
    pools = parse_pvesm_status(PVESM_STATUS)
    lvm = pools[1]
    assert lvm.name == "local-lvm"
    assert lvm.type == "lvmthin"
    assert lvm.used == 25000000 * 1024
    assert lvm.used_percent == 25.0


def test_parse_lvs_and_snapshot_usage():
    volumes = parse_lvs(LVS)
    assert len(volumes) == 4
    assert volumes[1].origin == "vm-100-disk-0"
    assert volumes[2].data_percent is None

    assert snapshot_usage(volumes, 100) == 536870912
    assert snapshot_usage(volumes, 101) == 2147483648
    assert snapshot_usage(volumes, 102) == 0


def test_logical_volume_membership():
    assert LogicalVolume("snap_vm-100-disk-1_x", "pve", 1).belongs_to_snapshot_of(100)
    assert not LogicalVolume("snap_vm-1000-disk-1_x", "pve", 1).belongs_to_snapshot_of(100)
    assert not LogicalVolume("vm-100-disk-0", "pve", 1).belongs_to_snapshot_of(100)


@pytest.fixture
def pve_config():
    return ProxmoxConfig(storage="local-lvm", volume_group="pve", poll_interval=0.01)


def make_client(executor, config):
    ticks = iter(range(0, 10000, 5))
    return ProxmoxClient(executor, config, sleep=lambda s: None, clock=lambda: next(ticks))


def test_shutdown_falls_back_to_stop(executor, pve_config):
    executor.on(r"^qm shutdown 100 ", stderr="VM quit/powerdown failed - got timeout", code=255)
    executor.on(r"^qm status 100$", "status: stopped\n")

    make_client(executor, pve_config).shutdown(100)

    assert "qm shutdown 100 --timeout 180" in executor.ran
    assert "qm stop 100" in executor.ran


def test_shutdown_without_force_stop(executor, pve_config):
    pve_config.force_stop = False
    executor.on(r"^qm shutdown 100 ", stderr="timeout", code=255)

    with pytest.raises(ProxmoxError, match="did not shut down"):
        make_client(executor, pve_config).shutdown(100)
    assert "qm stop 100" not in executor.ran


def test_start_waits_for_running(executor, pve_config):
    states = iter(["status: stopped\n", "status: running\n"])
    executor.on_call(r"^qm status 101$", lambda cmd: CommandResult(True, next(states), "", 0))
    make_client(executor, pve_config).start(101)
    assert executor.ran.count("qm status 101") == 2


def test_start_times_out(executor, pve_config):
    pve_config.start_timeout = 20
    executor.on(r"^qm status 101$", "status: stopped\n")
    with pytest.raises(ProxmoxError, match="did not reach running"):
        make_client(executor, pve_config).start(101)


def test_snapshot_commands_quoted(executor, pve_config):
    client = make_client(executor, pve_config)
    client.create_snapshot(100, "pre-deploy", "before the 'big' change")
    client.delete_snapshot(100, "pre-deploy")

    assert executor.ran[0].startswith("qm snapshot 100 pre-deploy --description ")
    assert executor.ran[1] == "qm delsnapshot 100 pre-deploy"


def test_storage_status(executor, pve_config):
    executor.on(r"^pvesm status", PVESM_STATUS)
    client = make_client(executor, pve_config)

    assert client.storage_status().name == "local-lvm"
    with pytest.raises(ProxmoxError, match="not found"):
        client.storage_status("ceph")


def test_snapshot_sizes(executor, pve_config):
    executor.on(r"^lvs ", LVS)
    sizes = make_client(executor, pve_config).snapshot_sizes([100, 101])
    assert sizes == {100: 536870912, 101: 2147483648}


def test_command_failure_raises(executor, pve_config):
    executor.on(r"^qm listsnapshot 999$", stderr="Configuration file 'nodes/pve/qemu-server/999.conf' does not exist", code=2)
    with pytest.raises(ProxmoxError, match="does not exist"):
        make_client(executor, pve_config).list_snapshots(999)
