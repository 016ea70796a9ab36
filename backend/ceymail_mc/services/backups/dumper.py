from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, Optional

from ceymail_mc.core.commands import SAFE_PATH, CommandError, CommandRunner
from ceymail_mc.core.credentials import DatabaseCredentials
from ceymail_mc.services.backups.archive import size_or_zero

logger = logging.getLogger(__name__)

# The restricted archive helper only accepts dump files matching this prefix.
DUMP_PREFIX = ".tmp-dbdump-"
DUMP_SUFFIX = ".sql"


class DumpError(CommandError):
    pass


class DatabaseDumper:
    def __init__(
        self,
        runner: CommandRunner,
        credentials: Callable[[], Optional[DatabaseCredentials]],
        *,
        mysqldump_path: str = "/usr/bin/mysqldump",
        timeout: float = 120.0,
        runtime_mode: str = "production",
        home: str = "/var/lib/ceymail-mc",
    ) -> None:
        self.runner = runner
        self.credentials = credentials
        self.mysqldump_path = mysqldump_path
        self.timeout = timeout
        self.runtime_mode = runtime_mode
        self.home = home

    def reserve(self, root: Path, stamp: str) -> Path:
        """Create the private (0600) temp file the dump will be written into."""
        fd, name = tempfile.mkstemp(prefix=f"{DUMP_PREFIX}{stamp}-", suffix=DUMP_SUFFIX, dir=root)
        os.close(fd)
        return Path(name)

    def build_env(self, creds: DatabaseCredentials) -> dict[str, str]:
        # Never inherit os.environ: it holds the session secret among others.
        return {
            "MYSQL_PWD": creds.password,
            "PATH": SAFE_PATH,
            "HOME": self.home,
            "CEYMAIL_ENV": self.runtime_mode,
        }

    def build_argv(self, creds: DatabaseCredentials, target: Path) -> list[str]:
        return [
            self.mysqldump_path,
            "--single-transaction",
            "--routines",
            "--triggers",
            "-h",
            creds.host,
            "-P",
            str(creds.port),
            "-u",
            creds.user,
            "--databases",
            creds.mail_database,
            creds.dashboard_database,
            "--result-file",
            str(target),
        ]

    def dump(self, target: Path) -> None:
        creds = self.credentials()
        if creds is None:
            raise DumpError("Database credentials are not configured")

        result = self.runner.run(self.build_argv(creds, target), timeout=self.timeout, env=self.build_env(creds))
        if not result.ok:
            raise DumpError("mysqldump failed", exit_code=result.returncode, stderr=result.stderr)
        logger.info("database_dumped", extra={"size_bytes": size_or_zero(target)})
