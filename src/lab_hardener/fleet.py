"""Remote orchestration of hardening, validation and ad-hoc commands across the lab."""

import shlex
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from lab_hardener.baseline import BaselineValidator, ValidationReport
from lab_hardener.config import HardenerConfig
from lab_hardener.exceptions import (
    ConfigurationError,
    PermanentOperationError,
    RollbackError,
    ValidationError,
)
from lab_hardener.hardener import LabHardener
from lab_hardener.inventory import HostEntry, Inventory
from lab_hardener.runner import OperationRunner, RunSummary
from lab_hardener.system_info import SystemInfo
from lab_hardener.types import CommandResult
from lab_hardener.utils.command import BaseExecutor
from lab_hardener.utils.ssh import SSHExecutor

logger = structlog.get_logger(__name__)

ExecutorFactory = Callable[[HostEntry], BaseExecutor]


def command_output(host: HostEntry, cmd: str, result: CommandResult) -> Dict[str, Any]:
    """Structure a remote command result.

    A non-zero exit is permanent: the command may have had side effects, so
    it is never re-run.
    """
    output = {
        "command": cmd,
        "return_code": result.return_code,
        "stdout": result.stdout.strip(),
        "stderr": result.stderr.strip(),
    }
    if not result.success:
        raise PermanentOperationError(
            f"Command exited {result.return_code} on {host.name}", output=output
        )
    return output


class RemoteCommand:
    """A shell command template rendered per host.

    Placeholders: ``{name}``, ``{address}``, ``{hostname}``, ``{role}``.
    """

    FIELDS = ("name", "address", "hostname", "role")

    def __init__(self, template: str, needs_root: bool = False, timeout: int = 600) -> None:
        self.template = template
        self.needs_root = needs_root
        self.timeout = timeout
        try:
            template.format(**{f: "" for f in self.FIELDS})
        except (KeyError, IndexError, ValueError) as e:
            raise ValidationError(f"Invalid command template {template!r}: {e}") from e

    def render(self, host: HostEntry) -> str:
        return self.template.format(
            name=host.name,
            address=host.address,
            hostname=host.effective_hostname,
            role=host.role.value,
        )

    def run(self, executor: BaseExecutor, host: HostEntry) -> Dict[str, Any]:
        cmd = self.render(host)
        result = executor.execute(cmd, needs_root=self.needs_root, timeout=self.timeout, check=False)
        return command_output(host, cmd, result)


class FleetOrchestrator:
    """Run lab operations on inventory hosts over SSH, one host at a time."""

    def __init__(
        self,
        config: HardenerConfig,
        inventory: Inventory,
        dry_run: bool = False,
        executor_factory: Optional[ExecutorFactory] = None,
        runner: Optional[OperationRunner] = None,
    ) -> None:
        self.config = config
        self.inventory = inventory
        self.dry_run = dry_run
        self.executor_factory = executor_factory or self._ssh_executor
        self.runner = runner or OperationRunner(
            retries=config.remote.retries, retry_delay=config.remote.retry_delay
        )

    def _ssh_executor(self, host: HostEntry) -> BaseExecutor:
        return SSHExecutor(
            address=host.address,
            user=host.user or self.config.remote.user,
            remote=self.config.remote,
            port=host.port,
            key_file=host.key_file,
            dry_run=self.dry_run,
        )

    def _run(
        self,
        operation: str,
        hosts: Sequence[HostEntry],
        func: Callable[[BaseExecutor, HostEntry], Any],
    ) -> RunSummary:
        def on_host(host: HostEntry) -> Any:
            host = self.inventory.resolve(host)
            with self.executor_factory(host) as executor:
                return func(executor, host)

        return self.runner.run(operation, hosts, on_host, key=lambda h: h.name)

    def harden(self, hosts: Sequence[HostEntry], validate: bool = False) -> RunSummary:
        """Harden each host, optionally validating the result."""

        def harden_host(executor: BaseExecutor, host: HostEntry) -> Dict[str, Any]:
            hardener = LabHardener(
                self.config, executor, hostname=host.effective_hostname, dry_run=self.dry_run
            )
            try:
                report = hardener.run()
            except (ConfigurationError, RollbackError) as e:
                raise PermanentOperationError(str(e)) from e

            output: Dict[str, Any] = {"hardening": report.to_dict()}
            if validate and not self.dry_run:
                validation = self._validate(executor, host)
                output["validation"] = validation.to_dict()
                if not validation.ok:
                    raise PermanentOperationError(
                        f"{validation.failed} baseline checks failed on {host.name}", output=output
                    )
            return output

        return self._run("harden", hosts, harden_host)

    def validate(self, hosts: Sequence[HostEntry]) -> RunSummary:
        """Validate each host against the baseline."""

        def validate_host(executor: BaseExecutor, host: HostEntry) -> Dict[str, Any]:
            report = self._validate(executor, host)
            if not report.ok:
                raise PermanentOperationError(
                    f"{report.failed} baseline checks failed on {host.name}", output=report.to_dict()
                )
            return report.to_dict()

        return self._run("validate", hosts, validate_host)

    def _validate(self, executor: BaseExecutor, host: HostEntry) -> ValidationReport:
        service = SystemInfo(executor, hostname=host.effective_hostname).ssh_service_name()
        validator = BaselineValidator(
            executor, host.effective_hostname, config=self.config, ssh_service=service
        )
        return validator.run()

    def exec(self, hosts: Sequence[HostEntry], command: RemoteCommand) -> RunSummary:
        """Run a rendered command template on each host."""
        return self._run("exec", hosts, command.run)

    def push(
        self,
        hosts: Sequence[HostEntry],
        script: Path,
        args: Sequence[str] = (),
        needs_root: bool = False,
    ) -> RunSummary:
        """Upload a local script to each host's staging directory and run it.

        Raises:
            ConfigurationError: If the script does not exist locally
        """
        if not script.is_file():
            raise ConfigurationError(f"Script not found: {script}")

        staging = self.config.remote.staging_dir
        remote_path = f"{staging}/{script.name}"
        arguments = " ".join(shlex.quote(a) for a in args)

        def push_host(executor: BaseExecutor, host: HostEntry) -> Dict[str, Any]:
            if not hasattr(executor, "put"):
                raise PermanentOperationError("push requires a file-transfer capable executor")
            executor.execute(f"mkdir -p {shlex.quote(staging)} && chmod 700 {shlex.quote(staging)}")
            executor.put(script, remote_path, mode=0o700)
            cmd = f"bash {shlex.quote(remote_path)} {arguments}".strip()
            result = executor.execute(
                cmd, needs_root=needs_root, timeout=self.config.remote.command_timeout, check=False
            )
            output = command_output(host, cmd, result)
            logger.info("script_complete", host=host.name, script=script.name)
            return output

        return self._run("push", hosts, push_host)


def select_hosts(inventory: Inventory, names: List[str], tags: List[str]) -> List[HostEntry]:
    hosts = inventory.select(names, tags)
    if not hosts:
        raise ConfigurationError("No inventory hosts matched the selection")
    return hosts
