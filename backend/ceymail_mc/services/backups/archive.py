from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Sequence

from ceymail_mc.core.commands import CommandError, PrivilegedRunner

logger = logging.getLogger(__name__)

PARTIAL_PREFIX = ".partial-"


class ArchiveError(CommandError):
    pass


def remove_quietly(path: Optional[Path]) -> None:
    """Best-effort removal; never masks the caller's own outcome."""
    if path is None:
        return
    try:
        if path.exists():
            path.unlink()
    except OSError as exc:
        logger.warning("temp_cleanup_failed", extra={"path": str(path), "stderr": exc.strerror})


def size_or_zero(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


class ArchiveBuilder:
    def __init__(self, privileged: PrivilegedRunner, *, timeout: float = 300.0) -> None:
        self.privileged = privileged
        self.timeout = timeout

    def build(self, partial: Path, final: Path, sources: Sequence[str]) -> int:
        """Write the archive under ``partial`` and rename it to ``final``.

        The final name only appears once the helper has exited cleanly, so
        listings never see a half-written archive.  Returns the archive size,
        measured after the rename (0 if the stat fails).
        """
        try:
            result = self.privileged.run("ceymail-backup", [str(partial), *sources], timeout=self.timeout)
            if not result.ok:
                raise ArchiveError("archive helper failed", exit_code=result.returncode, stderr=result.stderr)
            os.replace(partial, final)
        except CommandError:
            remove_quietly(partial)
            raise
        except OSError as exc:
            remove_quietly(partial)
            raise ArchiveError("could not finalize archive", stderr=exc.strerror or "") from None
        return size_or_zero(final)
