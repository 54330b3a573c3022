"""Pytest configuration and fixtures."""

import re
from pathlib import Path
from typing import Callable, Dict, List, Optional, Pattern, Tuple, Union

import pytest
import structlog

from lab_hardener.config import HardenerConfig
from lab_hardener.types import CommandResult
from lab_hardener.utils.command import BaseExecutor

Response = Union[CommandResult, Callable[[str], CommandResult]]


class FakeExecutor(BaseExecutor):
    """Executor that answers commands from scripted responses.

    Responses are matched with ``re.search``; the most recently added match
    wins. Unmatched commands succeed with empty output.
    """

    def __init__(self, use_sudo: bool = False, dry_run: bool = False, host: str = "fake") -> None:
        super().__init__(use_sudo=use_sudo, dry_run=dry_run)
        self.host = host
        self.responses: List[Tuple[Pattern[str], Response]] = []
        self.ran: List[str] = []
        self.inputs: Dict[str, Optional[str]] = {}
        self.uploads: List[Tuple[str, str, Optional[int]]] = []
        self.closed = False

    def on(self, pattern: str, stdout: str = "", stderr: str = "", code: int = 0) -> "FakeExecutor":
        self.responses.append((re.compile(pattern), CommandResult(code == 0, stdout, stderr, code)))
        return self

    def on_call(self, pattern: str, func: Callable[[str], CommandResult]) -> "FakeExecutor":
        self.responses.append((re.compile(pattern), func))
        return self

    def _run(self, cmd: str, timeout: int, input: Optional[str]) -> CommandResult:
        self.ran.append(cmd)
        self.inputs[cmd] = input
        for pattern, response in reversed(self.responses):
            if pattern.search(cmd):
                return response(cmd) if callable(response) else response
        return CommandResult(True, "", "", 0)

    def put(self, local_path: Path, remote_path: str, mode: Optional[int] = None) -> None:
        self.history.append(f"put {local_path} {remote_path}")
        self.uploads.append((str(local_path), remote_path, mode))

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def test_config() -> HardenerConfig:
    """Create test configuration."""
    config = HardenerConfig.from_env()
    config.users.sudo_users = ["labrat", "automation"]
    config.users.managed_users = ["automation"]
    config.users.control_users = ["ansible"]
    config.backup.directory = Path("/var/backups/lab-hardener")
    config.remote.retries = 1
    config.remote.retry_delay = 0
    return config



@pytest.fixture
def make_executor() -> Callable[..., FakeExecutor]:
    return FakeExecutor


@pytest.fixture(autouse=True)
def reset_logging():
    """The CLI configures structlog against the captured stderr of one test."""
    yield
    structlog.reset_defaults()
