from __future__ import annotations

import logging
import os
import secrets
from pathlib import Path

from ceymail_mc.core.commands import CommandError, PrivilegedRunner

logger = logging.getLogger(__name__)


class ProvisioningError(CommandError):
    pass


class DirectoryProvisioner:
    def __init__(self, privileged: PrivilegedRunner, *, owner: str, timeout: float = 5.0) -> None:
        self.privileged = privileged
        self.owner = owner
        self.timeout = timeout

    def ensure(self, root: Path) -> None:
        """Create ``root`` if needed, then prove the service can write to it."""
        if not root.exists():
            self._run("mkdir", ["-p", str(root)])
            self._run("chown", [self.owner, str(root)])
            logger.info("backup_dir_created", extra={"path": str(root)})
        elif not root.is_dir():
            raise ProvisioningError("Backup path exists but is not a directory")
        self._probe_write(root)

    def _run(self, name: str, args: list[str]) -> None:
        result = self.privileged.run(name, args, timeout=self.timeout)
        if not result.ok:
            raise ProvisioningError(
                f"{name} failed for backup directory",
                exit_code=result.returncode,
                stderr=result.stderr,
            )

    def _probe_write(self, root: Path) -> None:
        # An existing directory may still belong to another user from an
        # earlier partial setup.
        probe = root / f".write-probe-{secrets.token_hex(6)}"
        try:
            fd = os.open(probe, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            os.close(fd)
            probe.unlink()
        except OSError as exc:
            raise ProvisioningError("Backup directory is not writable", stderr=exc.strerror or "") from None
