"""Backup orchestration: create, list, delete and locate archives for download.

Creation runs under the service's ``CreationLock`` and walks
selection → directory provisioning → optional database dump → archive build,
with the temp dump removed on every exit path.  Errors from the external
processes are logged by exit code and stderr only and surface to the caller as
fixed messages.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Callable, Optional

from fastapi import HTTPException, status

from ceymail_mc.core.commands import DEFAULT_PRIVILEGED_COMMANDS, CommandError, CommandRunner, PrivilegedRunner
from ceymail_mc.core.credentials import get_database_credentials
from ceymail_mc.core.observability import (
    backup_creation_in_progress,
    backup_duration_seconds,
    backup_failures_total,
    backup_rejections_total,
    backups_created_total,
)
from ceymail_mc.core.settings import Settings, settings as app_settings
from ceymail_mc.schemas.backup import BackupCreatePayload, BackupRecord
from ceymail_mc.services.backups.archive import PARTIAL_PREFIX, ArchiveBuilder, remove_quietly
from ceymail_mc.services.backups.catalog import list_backups, to_record
from ceymail_mc.services.backups.dumper import DatabaseDumper
from ceymail_mc.services.backups.guard import BackupRootGuard, InvalidBackupId
from ceymail_mc.services.backups.lock import CreationInProgress, CreationLock
from ceymail_mc.services.backups.naming import Contents, backup_id_for, filename_for, parse_filename
from ceymail_mc.services.backups.provisioner import DirectoryProvisioner
from ceymail_mc.services.backups.selection import ContentSelector, SelectionError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackupService:
    def __init__(
        self,
        root: Path,
        *,
        provisioner: DirectoryProvisioner,
        selector: ContentSelector,
        dumper: DatabaseDumper,
        archiver: ArchiveBuilder,
        lock: Optional[CreationLock] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.guard = BackupRootGuard(root)
        self.provisioner = provisioner
        self.selector = selector
        self.dumper = dumper
        self.archiver = archiver
        self.lock = lock or CreationLock()
        self.clock = clock

    @property
    def root(self) -> Path:
        return self.guard.root

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackupService":
        privileged = PrivilegedRunner(
            sudo_path=settings.sudo_path,
            commands={**DEFAULT_PRIVILEGED_COMMANDS, "ceymail-backup": settings.backup_helper_path},
        )
        return cls(
            settings.backup_root,
            provisioner=DirectoryProvisioner(
                privileged,
                owner=settings.backup_owner,
                timeout=settings.dir_command_timeout_seconds,
            ),
            selector=ContentSelector(),
            dumper=DatabaseDumper(
                CommandRunner(),
                lambda: get_database_credentials(settings),
                mysqldump_path=settings.mysqldump_path,
                timeout=settings.dump_timeout_seconds,
                runtime_mode="production" if settings.is_production else "development",
                home=settings.dump_home,
            ),
            archiver=ArchiveBuilder(privileged, timeout=settings.archive_timeout_seconds),
        )

    # ── Create ──────────────────────────────────────────────────────────

    def create(self, payload: BackupCreatePayload) -> BackupRecord:
        contents = Contents(
            config=payload.config,
            database=payload.database,
            dkim=payload.dkim,
            mailboxes=payload.mailboxes,
        )
        try:
            with self.lock.hold():
                backup_creation_in_progress.set(1)
                try:
                    return self._create_locked(contents)
                finally:
                    backup_creation_in_progress.set(0)
        except CreationInProgress as exc:
            backup_rejections_total.labels(reason="in_progress").inc()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        except HTTPException:
            raise
        except Exception as exc:
            backup_failures_total.labels(stage="unexpected").inc()
            logger.exception("backup_create_unexpected_error")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to create backup",
            ) from exc

    def _create_locked(self, contents: Contents) -> BackupRecord:
        started = time.perf_counter()
        try:
            selection = self.selector.select(contents)
        except SelectionError as exc:
            backup_rejections_total.labels(reason="selection").inc()
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

        root = self.root
        try:
            self.provisioner.ensure(root)
        except CommandError as exc:
            raise self._stage_failure("provision", exc, "Backup directory is not available")

        created_at = self.clock()
        backup_id = backup_id_for(created_at, contents)
        final = self.guard.internal_path(filename_for(backup_id))
        if final.exists():
            backup_rejections_total.labels(reason="duplicate").inc()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="A backup with this timestamp already exists",
            )
        partial = self.guard.internal_path(f"{PARTIAL_PREFIX}{final.name}")

        dump_path: Optional[Path] = None
        try:
            if selection.include_database:
                dump_path = self.dumper.reserve(root, created_at.astimezone(timezone.utc).strftime("%Y%m%d%H%M%S"))
                try:
                    self.dumper.dump(dump_path)
                except CommandError as exc:
                    raise self._stage_failure("dump", exc, "Database dump failed")

            sources = list(selection.paths)
            if dump_path is not None:
                sources.append(str(dump_path))
            try:
                size = self.archiver.build(partial, final, sources)
            except CommandError as exc:
                raise self._stage_failure("archive", exc, "Failed to create backup archive")
        finally:
            remove_quietly(dump_path)

        parsed = parse_filename(final.name)
        if parsed is None:  # pragma: no cover - backup_id_for always yields a canonical name
            raise RuntimeError(f"generated non-canonical backup name {final.name}")

        backups_created_total.inc()
        backup_duration_seconds.observe(time.perf_counter() - started)
        logger.info("backup_created", extra={"backup_id": backup_id, "size_bytes": size})
        return to_record(parsed, size)

    def _stage_failure(self, stage: str, exc: CommandError, detail: str) -> HTTPException:
        backup_failures_total.labels(stage=stage).inc()
        # Only the exit code and stderr: the invocation itself may carry credentials.
        logger.error(
            "backup_stage_failed",
            extra={"stage": stage, "exit_code": exc.exit_code, "stderr": exc.stderr or str(exc)},
        )
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)

    # ── List / delete / download ───────────────────────────────────────

    def list_records(self) -> list[BackupRecord]:
        try:
            return list_backups(self.root)
        except OSError as exc:
            logger.exception("backup_list_failed")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to list backups",
            ) from exc

    def _resolve(self, backup_id: Optional[str]) -> Path:
        try:
            return self.guard.resolve_archive(backup_id)
        except InvalidBackupId as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    def delete(self, backup_id: Optional[str]) -> None:
        path = self._resolve(backup_id)
        if not path.is_file():
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Backup not found")
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Backup not found") from exc
        except OSError as exc:
            logger.exception("backup_delete_failed", extra={"backup_id": backup_id})
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to delete backup",
            ) from exc
        logger.info("backup_deleted", extra={"backup_id": backup_id})

    def locate_download(self, backup_id: Optional[str]) -> Path:
        path = self._resolve(backup_id)
        if not path.is_file():
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Backup not found")
        return path


@lru_cache(maxsize=1)
def get_backup_service() -> BackupService:
    return BackupService.from_settings(app_settings)
