"""CLI entry point for Lab Hardener."""

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, NoReturn, Optional

from pydantic import ValidationError as PydanticValidationError

from lab_hardener import __version__
from lab_hardener.baseline import BaselineValidator, ValidationReport
from lab_hardener.config import HardenerConfig
from lab_hardener.exceptions import ConfigurationError, HardenerError
from lab_hardener.fleet import FleetOrchestrator, RemoteCommand, select_hosts
from lab_hardener.gpo import DEFAULT_BASELINE, apply_gpo, load_settings, merge_settings, render_gpo_script
from lab_hardener.hardener import LabHardener
from lab_hardener.inventory import Inventory
from lab_hardener.log import configure_logging
from lab_hardener.placeholders import DEFAULT_IGNORES, PlaceholderManager
from lab_hardener.proxmox import ProxmoxClient, format_bytes
from lab_hardener.runner import OperationRunner, RunSummary
from lab_hardener.snapshots import SnapshotManager, SnapshotReport
from lab_hardener.system_info import SystemInfo
from lab_hardener.utils.command import BaseExecutor, CommandExecutor
from lab_hardener.utils.ssh import SSHExecutor
from lab_hardener.utils.validation import Validator


def _csv(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def _add_hardening_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--dry-run", action="store_true", help="Record changes without applying them")
    parser.add_argument("--skip-fail2ban", action="store_true", help="Skip security tools (fail2ban, rsyslog)")
    parser.add_argument("--skip-firewall", action="store_true", help="Skip ufw configuration")
    parser.add_argument("--skip-upgrade", action="store_true", help="Skip apt-get upgrade")
    parser.add_argument("--backup-dir", type=Path, help="Backup directory on the hardened host")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="lab-hardener",
        description="Lab Hardener - security baseline and snapshot automation for lab hosts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Harden this host (run as labrat or automation, not root)
  lab-hardener harden

  # Validate the baseline
  lab-hardener validate --hostname sae-git01

  # Harden every inventory host over SSH, then validate
  lab-hardener fleet --inventory lab.yaml harden --validate

  # Snapshot VMs 100-104 on the Proxmox node
  lab-hardener snapshot --pve-host pve01 create --vmids 100-104 --name pre-deploy

Environment variables:
  SSH_*, SECURITY_*, USERS_*, BACKUP_*, LOG_*, REMOTE_*, PVE_*
  (see README.md for the full list; a .env file is read too)
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Suppress non-error output")
    parser.add_argument("--log-json", action="store_true", help="Emit logs as JSON lines")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")

    sub = parser.add_subparsers(dest="command", required=True)

    harden = sub.add_parser("harden", help="Apply the security baseline to this host")
    harden.add_argument("--hostname", default="", help="Hostname used for role detection")
    harden.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    _add_hardening_flags(harden)

    validate = sub.add_parser("validate", help="Check this host against the baseline")
    validate.add_argument("--hostname", default="", help="Hostname used for role detection")

    fleet = sub.add_parser("fleet", help="Run operations on inventory hosts over SSH")
    fleet.add_argument("--inventory", type=Path, required=True, help="Inventory YAML file")
    fleet.add_argument("--hosts", type=_csv, default=[], help="Comma-separated host names")
    fleet.add_argument("--tags", type=_csv, default=[], help="Comma-separated host tags")
    fleet.add_argument("--retries", type=int, help="Extra attempts per host")
    fleet_sub = fleet.add_subparsers(dest="fleet_command", required=True)

    fleet_harden = fleet_sub.add_parser("harden", help="Harden hosts")
    fleet_harden.add_argument("--validate", action="store_true", help="Validate after hardening")
    _add_hardening_flags(fleet_harden)

    fleet_sub.add_parser("validate", help="Validate hosts")

    fleet_exec = fleet_sub.add_parser("exec", help="Run a command template on hosts")
    fleet_exec.add_argument("template", help="Command; may use {name} {address} {hostname} {role}")
    fleet_exec.add_argument("--sudo", action="store_true", help="Run the command as root")

    fleet_push = fleet_sub.add_parser("push", help="Upload a script and run it on hosts")
    fleet_push.add_argument("script", type=Path, help="Local script to upload")
    fleet_push.add_argument("args", nargs=argparse.REMAINDER, help="Arguments for the script")
    fleet_push.add_argument("--sudo", action="store_true", help="Run the script as root")

    snapshot = sub.add_parser("snapshot", help="Proxmox VM snapshot management")
    snapshot.add_argument("--pve-host", help="Proxmox node to SSH to (default: run locally)")
    snapshot.add_argument("--pve-user", help="SSH user on the Proxmox node")
    snapshot.add_argument("--storage", help="Storage pool for usage accounting")
    snapshot.add_argument("--vg", help="LVM volume group backing the pool")
    snap_sub = snapshot.add_subparsers(dest="snapshot_command", required=True)

    snap_create = snap_sub.add_parser("create", help="Snapshot VMs and restore their power state")
    snap_create.add_argument("--vmids", required=True, help="VM IDs, e.g. 100,101,110-115")
    snap_create.add_argument("--name", required=True, help="Snapshot name")
    snap_create.add_argument("--description", default="", help="Snapshot description")
    snap_create.add_argument("--no-shutdown", action="store_true", help="Snapshot running VMs live")
    snap_create.add_argument("--dry-run", action="store_true", help="Record changes without applying them")

    snap_list = snap_sub.add_parser("list", help="List snapshots")
    snap_list.add_argument("--vmids", required=True, help="VM IDs")

    snap_delete = snap_sub.add_parser("delete", help="Delete a named snapshot")
    snap_delete.add_argument("--vmids", required=True, help="VM IDs")
    snap_delete.add_argument("--name", required=True, help="Snapshot name")
    snap_delete.add_argument("--dry-run", action="store_true", help="Record changes without applying them")

    snap_usage = snap_sub.add_parser("usage", help="Show storage pool and snapshot usage")
    snap_usage.add_argument("--vmids", default="", help="VM IDs to account snapshots for")

    gpo = sub.add_parser("gpo", help="Group Policy registry baseline")
    gpo.add_argument("--name", default="SAE Lab Security Baseline", help="GPO display name")
    gpo.add_argument("--ou", required=True, help="OU distinguished name to link to")
    gpo.add_argument("--settings", type=Path, help="YAML file with extra or overriding settings")
    gpo_sub = gpo.add_subparsers(dest="gpo_command", required=True)
    gpo_sub.add_parser("render", help="Print the PowerShell script")
    gpo_apply = gpo_sub.add_parser("apply", help="Apply on a domain controller over SSH")
    gpo_apply.add_argument("--host", required=True, help="Domain controller address")
    gpo_apply.add_argument("--user", help="SSH user on the domain controller")

    placeholders = sub.add_parser("placeholders", help="Keep .gitkeep files in sync")
    placeholders.add_argument("root", nargs="?", type=Path, default=Path("."), help="Tree root")
    placeholders.add_argument("--check", action="store_true", help="Fail if changes are needed")
    placeholders.add_argument("--dry-run", action="store_true", help="Report without changing files")
    placeholders.add_argument(
        "--ignore", type=_csv, default=[], help="Comma-separated directory names to skip, on top of the defaults"
    )

    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> HardenerConfig:
    """Load configuration from environment and apply CLI overrides.

    Raises:
        ConfigurationError: If environment values are invalid
    """
    try:
        config = HardenerConfig.from_env()
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    if getattr(args, "skip_fail2ban", False):
        config.security.enable_fail2ban = False
    if getattr(args, "skip_firewall", False):
        config.security.enable_firewall = False
    if getattr(args, "skip_upgrade", False):
        config.security.enable_upgrade = False
    if getattr(args, "backup_dir", None):
        config.backup.directory = args.backup_dir
    if getattr(args, "retries", None) is not None:
        config.remote.retries = args.retries
    if getattr(args, "pve_host", None):
        config.proxmox.host = args.pve_host
    if getattr(args, "pve_user", None):
        config.proxmox.user = args.pve_user
    if getattr(args, "storage", None):
        config.proxmox.storage = args.storage
    if getattr(args, "vg", None):
        config.proxmox.volume_group = args.vg
    if args.log_json:
        config.logging.json_output = True

    return config


def _emit_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def print_validation(report: ValidationReport) -> None:
    for section, checks in report.sections().items():
        print(f"\n=== {section} ===")
        for check in checks:
            print(f"Checking {check.description}... {'PASS' if check.passed else 'FAIL'}")

    print("\n=== VALIDATION SUMMARY ===")
    print(f"Hostname: {report.hostname}")
    print(f"Date: {report.date}")
    print(f"Total Checks: {report.total}")
    print(f"Passed: {report.passed}")
    print(f"Failed: {report.failed}")
    print(f"Success Rate: {report.success_rate}%")
    if report.ok:
        print("\nALL SECURITY CHECKS PASSED")
        print(f"Server {report.hostname} meets SAE Lab security baseline")
    else:
        print("\nSOME CHECKS FAILED")
        print("Review failed checks and re-run hardening if needed")


def print_summary(summary: RunSummary) -> None:
    print(f"\n=== {summary.operation.upper()} ===")
    for result in summary.results:
        line = f"  {result.target:<24} {result.status.upper():<8} attempts={result.attempts}"
        if result.error:
            line += f"  {result.error.splitlines()[0]}"
        print(line)
    print(
        f"\nTotal: {summary.total}  Succeeded: {summary.succeeded}  "
        f"Skipped: {summary.skipped}  Failed: {summary.failed}  "
        f"Success Rate: {summary.success_rate}%"
    )


def print_snapshot_report(report: SnapshotReport) -> None:
    print_summary(report.summary)
    print("\nPower state:")
    for vmid, vm in report.vms.items():
        marker = "ok" if vm.state_restored else "NOT RESTORED"
        print(f"  VM {vmid}: {vm.initial_state.value} -> {vm.final_state.value} ({marker})")
    if report.pool:
        print(f"\nStorage {report.storage}: {format_bytes(report.pool.before)} -> "
              f"{format_bytes(report.pool.after)} (delta {format_bytes(report.pool.delta)})")
    if report.per_vm is None:
        print("  Per-VM snapshot usage unavailable")
        return
    for vmid, delta in report.per_vm.items():
        print(f"  VM {vmid} snapshots: {format_bytes(delta.after)} (delta {format_bytes(delta.delta)})")


def run_harden(args: argparse.Namespace, config: HardenerConfig) -> int:
    executor = CommandExecutor(use_sudo=True)
    hardener = LabHardener(config, executor, hostname=args.hostname, dry_run=args.dry_run)

    if not args.quiet and not args.json:
        print("╔══════════════════════════════════════╗")
        print("║  LAB HARDENER - SAE LAB BASELINE     ║")
        print(f"║  Version {__version__:<28}║")
        print("╚══════════════════════════════════════╝\n")
        if args.dry_run:
            print("DRY RUN MODE - No changes will be applied\n")

        print("Configuration Summary:")
        print(f"  Hostname: {hardener.hostname}")
        print(f"  Role: {hardener.role.value}")
        print(f"  User: {hardener.system.user}")
        print(f"  Firewall: {'Enabled' if config.security.enable_firewall else 'Disabled'}")
        print(f"  Fail2ban: {'Enabled' if config.security.enable_fail2ban else 'Disabled'}")
        print(f"  Upgrade: {'Enabled' if config.security.enable_upgrade else 'Disabled'}")
        print(f"  Backup Directory: {config.backup.directory}\n")

        if not args.dry_run and not args.yes:
            response = input("Proceed with hardening? (yes/no): ")
            if response.lower() != "yes":
                print("Aborted.")
                return 0

    report = hardener.run()

    if args.json:
        data: Dict[str, Any] = report.to_dict()
        if args.dry_run:
            data["commands"] = executor.history
        _emit_json(data)
    elif not args.quiet:
        print("\n=== Hardening completed successfully ===")
        for step in report.steps:
            print(f"  done: {step}")
        print("\nNext steps:")
        for i, hint in enumerate(report.next_steps(), 1):
            print(f"{i}. {hint}")
    return 0


def run_validate(args: argparse.Namespace, config: HardenerConfig) -> int:
    executor = CommandExecutor(use_sudo=os.geteuid() != 0)
    system = SystemInfo(executor, hostname=args.hostname)
    validator = BaselineValidator(
        executor, system.hostname, config=config, ssh_service=system.ssh_service_name()
    )
    report = validator.run()
    if args.json:
        _emit_json(report.to_dict())
    elif not args.quiet:
        print("SAE Lab Security Validation")
        print(f"Server: {report.hostname}")
        print_validation(report)
    return 0 if report.ok else 1


def run_fleet(args: argparse.Namespace, config: HardenerConfig) -> int:
    inventory = Inventory.load(args.inventory)
    hosts = select_hosts(inventory, args.hosts, args.tags)
    orchestrator = FleetOrchestrator(config, inventory, dry_run=getattr(args, "dry_run", False))

    if args.fleet_command == "harden":
        summary = orchestrator.harden(hosts, validate=args.validate)
    elif args.fleet_command == "validate":
        summary = orchestrator.validate(hosts)
    elif args.fleet_command == "exec":
        summary = orchestrator.exec(hosts, RemoteCommand(args.template, needs_root=args.sudo))
    else:
        summary = orchestrator.push(hosts, args.script, args.args, needs_root=args.sudo)

    if args.json:
        _emit_json(summary.to_dict())
    elif not args.quiet:
        print_summary(summary)
    return 0 if summary.ok else 1


def proxmox_executor(config: HardenerConfig, dry_run: bool = False) -> BaseExecutor:
    pve = config.proxmox
    if pve.host:
        return SSHExecutor(
            address=pve.host,
            user=pve.user,
            remote=config.remote,
            port=pve.port,
            key_file=pve.key_file,
            dry_run=dry_run,
        )
    return CommandExecutor(use_sudo=os.geteuid() != 0, dry_run=dry_run)


def run_snapshot(args: argparse.Namespace, config: HardenerConfig) -> int:
    dry_run = getattr(args, "dry_run", False)
    with proxmox_executor(config, dry_run=dry_run) as executor:
        client = ProxmoxClient(executor, config.proxmox)
        runner = OperationRunner(retries=config.remote.retries, retry_delay=config.remote.retry_delay)
        manager = SnapshotManager(client, runner)

        if args.snapshot_command == "create":
            report = manager.create(
                Validator.parse_vmids(args.vmids),
                args.name,
                description=args.description,
                shutdown=not args.no_shutdown,
            )
            if args.json:
                _emit_json(report.to_dict())
            elif not args.quiet:
                print_snapshot_report(report)
            return 0 if report.ok else 1

        if args.snapshot_command == "delete":
            summary = manager.delete(Validator.parse_vmids(args.vmids), args.name)
            if args.json:
                _emit_json(summary.to_dict())
            elif not args.quiet:
                print_summary(summary)
            return 0 if summary.ok else 1

        if args.snapshot_command == "list":
            snapshots = manager.list_snapshots(Validator.parse_vmids(args.vmids))
            if args.json:
                _emit_json({str(k): [vars(s) for s in v] for k, v in snapshots.items()})
            else:
                for vmid, items in snapshots.items():
                    print(f"VM {vmid}:")
                    for snap in items or []:
                        print(f"  {snap.name:<24} {snap.created or '':<20} {snap.description}")
                    if not items:
                        print("  (no snapshots)")
            return 0

        vmids = Validator.parse_vmids(args.vmids) if args.vmids else []
        usage = manager.usage(vmids)
        if args.json:
            _emit_json(usage)
        else:
            print(f"Storage {usage['storage']} ({usage['type']}): "
                  f"{format_bytes(usage['used'])} used of {format_bytes(usage['total'])} "
                  f"({usage['used_percent']}%)")
            for vmid, size in usage["snapshots"].items():
                print(f"  VM {vmid} snapshots: {format_bytes(size)}")
        return 0


def run_gpo(args: argparse.Namespace, config: HardenerConfig) -> int:
    settings = list(DEFAULT_BASELINE)
    if args.settings:
        settings = merge_settings(settings, load_settings(args.settings))

    if args.gpo_command == "render":
        sys.stdout.write(render_gpo_script(args.name, args.ou, settings))
        return 0

    executor = SSHExecutor(
        address=args.host, user=args.user or config.remote.user, remote=config.remote
    )
    with executor:
        output = apply_gpo(executor, args.name, args.ou, settings)
    if args.json:
        _emit_json({"gpo": args.name, "ou": args.ou, "output": output})
    elif not args.quiet:
        print(output)
    return 0


def run_placeholders(args: argparse.Namespace, config: HardenerConfig) -> int:
    if not args.root.is_dir():
        raise ConfigurationError(f"Not a directory: {args.root}")
    manager = PlaceholderManager(args.root, ignore=DEFAULT_IGNORES | set(args.ignore))
    report = manager.check() if args.check else manager.sync(dry_run=args.dry_run)

    data = report.to_dict()
    if args.json:
        _emit_json(data)
    elif not args.quiet:
        verb_add, verb_remove = ("would add", "would remove") if report.dry_run else ("added", "removed")
        for path in data["added"]:
            print(f"{verb_add}: {path}")
        for path in data["removed"]:
            print(f"{verb_remove}: {path}")
        if report.consistent:
            print("Placeholders are consistent")
    return 1 if args.check and not report.consistent else 0


COMMANDS: Dict[str, Callable[[argparse.Namespace, HardenerConfig], int]] = {
    "harden": run_harden,
    "validate": run_validate,
    "fleet": run_fleet,
    "snapshot": run_snapshot,
    "gpo": run_gpo,
    "placeholders": run_placeholders,
}


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """Main entry point for CLI.

    Raises:
        SystemExit: Always exits with appropriate code
    """
    args = parse_args(argv)

    try:
        config = load_config(args)
        configure_logging(config.logging, verbose=args.verbose, quiet=args.quiet)
        sys.exit(COMMANDS[args.command](args, config))

    except KeyboardInterrupt:
        print("\n\nInterrupted by user", file=sys.stderr)
        sys.exit(130)

    except HardenerError as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)

    except Exception as e:
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        if args.verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
