from __future__ import annotations

import os
import re
from pathlib import Path

from ceymail_mc.services.backups.naming import filename_for, parse_filename

_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class InvalidBackupId(ValueError):
    pass


class BackupRootGuard:
    """Confines every identifier-derived path to the backup root."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser().resolve()

    def is_inside(self, candidate: Path) -> bool:
        return str(candidate).startswith(str(self.root) + os.sep)

    def resolve_archive(self, backup_id: str | None) -> Path:
        """Validate ``backup_id`` and return the canonical archive path for it.

        Three independent checks, all before any filesystem access other than
        path canonicalisation: a restrictive charset, containment of the
        resolved path under the root, and the canonical filename pattern.
        """
        if not backup_id or not _ID_RE.match(backup_id):
            raise InvalidBackupId("Invalid backup ID format")

        candidate = self._resolve_inside(filename_for(backup_id))
        if candidate is None:
            raise InvalidBackupId("Invalid backup ID format")

        if parse_filename(candidate.name) is None or candidate.name != filename_for(backup_id):
            raise InvalidBackupId("Invalid backup ID format")
        return candidate

    def internal_path(self, name: str) -> Path:
        """Path for a service-generated file (temp dump, partial archive) inside the root."""
        candidate = self._resolve_inside(name)
        if candidate is None:
            raise ValueError(f"refusing path outside backup root: {name}")
        return candidate

    def _resolve_inside(self, name: str) -> Path | None:
        try:
            # Symlink loops raise RuntimeError on Python < 3.13.
            candidate = (self.root / name).resolve()
        except (OSError, RuntimeError):
            return None
        return candidate if self.is_inside(candidate) else None
