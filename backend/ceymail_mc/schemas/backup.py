from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, StrictBool


class BackupState(str, Enum):
    COMPLETE = "complete"
    FAILED = "failed"


class BackupContents(BaseModel):
    config: bool
    database: bool
    dkim: bool
    mailboxes: bool


class BackupRecord(BaseModel):
    id: str
    date: str
    time: str
    size: int
    contents: BackupContents
    status: BackupState


class BackupCreatePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    config: StrictBool = True
    database: StrictBool = True
    dkim: StrictBool = True
    mailboxes: StrictBool = True


class BackupDeleteResponse(BaseModel):
    message: str
