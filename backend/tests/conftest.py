from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

import pytest
from fastapi.testclient import TestClient

from ceymail_mc.core.commands import CommandResult, PrivilegedRunner
from ceymail_mc.core.credentials import DatabaseCredentials
from ceymail_mc.core.security import create_access_token
from ceymail_mc.main import app
from ceymail_mc.services.backups.archive import ArchiveBuilder
from ceymail_mc.services.backups.dumper import DatabaseDumper
from ceymail_mc.services.backups.provisioner import DirectoryProvisioner
from ceymail_mc.services.backups.selection import ContentSelector
from ceymail_mc.services.backups.service import BackupService, get_backup_service

DB_PASSWORD = "s3cret-db-pass"


class FakeCommandRunner:
    """Stands in for ``CommandRunner``; emulates the commands the service spawns."""

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.handlers: dict[str, Callable[[list[str], Optional[dict]], CommandResult]] = {
            "mkdir": self._mkdir,
            "chown": self._ok,
            "ceymail-backup": self._archive,
            "mysqldump": self._mysqldump,
        }

    @staticmethod
    def command_name(argv: list[str]) -> str:
        executable = argv[2] if argv[0].endswith("sudo") else argv[0]
        return executable.rsplit("/", 1)[-1]

    def names(self) -> list[str]:
        return [call["name"] for call in self.calls]

    def run(self, argv, *, timeout, env=None) -> CommandResult:
        argv = list(argv)
        name = self.command_name(argv)
        self.calls.append({"name": name, "argv": argv, "env": env, "timeout": timeout})
        return self.handlers[name](argv, env)

    @staticmethod
    def _ok(argv, env) -> CommandResult:
        return CommandResult(returncode=0, stdout="", stderr="")

    @staticmethod
    def _mkdir(argv, env) -> CommandResult:
        Path(argv[-1]).mkdir(parents=True, exist_ok=True)
        return CommandResult(returncode=0, stdout="", stderr="")

    @staticmethod
    def _archive(argv, env) -> CommandResult:
        output, sources = argv[3], argv[4:]
        Path(output).write_bytes(("\n".join(sources) + "\n").encode("utf-8") * 8)
        return CommandResult(returncode=0, stdout="", stderr="")

    @staticmethod
    def _mysqldump(argv, env) -> CommandResult:
        target = argv[argv.index("--result-file") + 1]
        Path(target).write_text("-- dump\nCREATE DATABASE ceymail;\n", encoding="utf-8")
        return CommandResult(returncode=0, stdout="", stderr="")


def fixed_clock(start: datetime) -> Callable[[], datetime]:
    ticks = itertools.count()
    return lambda: start + timedelta(seconds=next(ticks))


@pytest.fixture()
def runner() -> FakeCommandRunner:
    return FakeCommandRunner()


@pytest.fixture()
def credentials() -> DatabaseCredentials:
    return DatabaseCredentials(
        host="localhost",
        port=3306,
        user="ceymail",
        password=DB_PASSWORD,
        mail_database="ceymail",
        dashboard_database="ceymail_dashboard",
    )


@pytest.fixture()
def sources(tmp_path: Path) -> dict[str, list[str]]:
    etc = tmp_path / "etc"
    (etc / "postfix").mkdir(parents=True)
    (etc / "postfix" / "main.cf").write_text("myhostname = mail.example.com\n", encoding="utf-8")
    (etc / "opendkim").mkdir()
    vhosts = tmp_path / "var" / "mail" / "vhosts"
    vhosts.mkdir(parents=True)
    return {
        "config": [str(etc / "postfix"), str(etc / "dovecot")],
        "dkim": [str(etc / "opendkim")],
        "mailboxes": [str(vhosts)],
    }


@pytest.fixture()
def backup_root(tmp_path: Path) -> Path:
    return tmp_path / "backups"


@pytest.fixture()
def service(backup_root, runner, credentials, sources) -> BackupService:
    privileged = PrivilegedRunner(sudo_path="/usr/bin/sudo", runner=runner)
    return BackupService(
        backup_root,
        provisioner=DirectoryProvisioner(privileged, owner="ceymail-mc:ceymail-mc"),
        selector=ContentSelector(sources),
        dumper=DatabaseDumper(runner, lambda: credentials),
        archiver=ArchiveBuilder(privileged),
        clock=fixed_clock(datetime(2026, 10, 19, 8, 30, 0, tzinfo=timezone.utc)),
    )


@pytest.fixture()
def client(service):
    app.dependency_overrides[get_backup_service] = lambda: service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    token = create_access_token({"sub": "1", "username": "admin", "role": "admin"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def user_headers() -> dict[str, str]:
    token = create_access_token({"sub": "2", "username": "operator", "role": "user"})
    return {"Authorization": f"Bearer {token}"}
