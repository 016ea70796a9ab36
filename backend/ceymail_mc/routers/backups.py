from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import FileResponse

from ceymail_mc.core.deps import SessionUser, require_admin
from ceymail_mc.schemas.backup import BackupCreatePayload, BackupDeleteResponse, BackupRecord
from ceymail_mc.services.backups.service import BackupService, get_backup_service

router = APIRouter(prefix="/api/backups", tags=["backups"])


@router.get("", response_model=list[BackupRecord])
def list_backups(
    _admin: SessionUser = Depends(require_admin),
    service: BackupService = Depends(get_backup_service),
) -> list[BackupRecord]:
    return service.list_records()


@router.post("", response_model=BackupRecord, status_code=status.HTTP_201_CREATED)
def create_backup(
    payload: Optional[BackupCreatePayload] = None,
    _admin: SessionUser = Depends(require_admin),
    service: BackupService = Depends(get_backup_service),
) -> BackupRecord:
    return service.create(payload or BackupCreatePayload())


@router.delete("", response_model=BackupDeleteResponse)
def delete_backup(
    backup_id: Optional[str] = Query(default=None, alias="id"),
    _admin: SessionUser = Depends(require_admin),
    service: BackupService = Depends(get_backup_service),
) -> BackupDeleteResponse:
    if not backup_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Backup ID is required")
    service.delete(backup_id)
    return BackupDeleteResponse(message="Backup deleted successfully")


# ``:path`` so ids containing encoded slashes still reach validation (400) instead of 404.
@router.get("/{backup_id:path}/download")
def download_backup(
    backup_id: str,
    _admin: SessionUser = Depends(require_admin),
    service: BackupService = Depends(get_backup_service),
) -> FileResponse:
    path = service.locate_download(backup_id)
    # FileResponse stats the file when sending and streams it in chunks.
    return FileResponse(
        path=path,
        media_type="application/gzip",
        filename=f"{backup_id}.tar.gz",
    )
