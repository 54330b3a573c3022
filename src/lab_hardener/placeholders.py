"""Keep ``.gitkeep`` placeholders in sync with directory contents."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Set

import structlog

logger = structlog.get_logger(__name__)

PLACEHOLDER = ".gitkeep"
DEFAULT_IGNORES = frozenset({".git", ".venv", "__pycache__", "node_modules"})


@dataclass
class PlaceholderReport:
    """Placeholders added and removed (or that would be, in dry-run)."""

    root: Path
    added: List[Path] = field(default_factory=list)
    removed: List[Path] = field(default_factory=list)
    dry_run: bool = False

    @property
    def consistent(self) -> bool:
        return not self.added and not self.removed

    def to_dict(self) -> dict:
        return {
            "root": str(self.root),
            "dry_run": self.dry_run,
            "added": [str(p.relative_to(self.root)) for p in self.added],
            "removed": [str(p.relative_to(self.root)) for p in self.removed],
        }


class PlaceholderManager:
    """Add ``.gitkeep`` to empty directories and drop it where it's no longer needed."""

    def __init__(self, root: Path, ignore: Iterable[str] = DEFAULT_IGNORES) -> None:
        self.root = Path(root)
        self.ignore: Set[str] = set(ignore)

    def sync(self, dry_run: bool = False) -> PlaceholderReport:
        """Walk the tree and fix placeholders.

        Ignored directories are not descended into but still count as
        content of their parent.
        """
        report = PlaceholderReport(root=self.root, dry_run=dry_run)

        for dirpath, dirnames, filenames in os.walk(self.root):
            current = Path(dirpath)
            entries = dirnames + filenames
            dirnames[:] = sorted(d for d in dirnames if d not in self.ignore)
            others = [e for e in entries if e != PLACEHOLDER]
            placeholder = current / PLACEHOLDER

            if not entries:
                report.added.append(placeholder)
                if not dry_run:
                    placeholder.touch()
                logger.debug("placeholder_added", path=str(placeholder))
            elif PLACEHOLDER in filenames and others:
                report.removed.append(placeholder)
                if not dry_run:
                    placeholder.unlink()
                logger.debug("placeholder_removed", path=str(placeholder))

        logger.info(
            "placeholders_synced",
            root=str(self.root),
            added=len(report.added),
            removed=len(report.removed),
            dry_run=dry_run,
        )
        return report

    def check(self) -> PlaceholderReport:
        """Report inconsistencies without changing anything."""
        return self.sync(dry_run=True)

