"""Canonical backup filenames.

``ceymail-backup-YYYYMMDD-HHMMSS[-tagset].tar.gz`` is both how new archives are
named and how existing ones are recognised.  The filename is the only metadata
a backup has, so parsing it is how the catalog rebuilds a record.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

PREFIX = "ceymail-backup"
EXTENSION = ".tar.gz"

# Tag order is fixed so the same selection always yields the same name.
TAGS = (
    ("config", "config"),
    ("database", "db"),
    ("dkim", "dkim"),
    ("mailboxes", "mail"),
)

_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
_FILENAME_RE = re.compile(
    r"^ceymail-backup-(\d{4})(\d{2})(\d{2})-(\d{2})(\d{2})(\d{2})(?:-([A-Za-z0-9-]+))?\.tar\.gz$"
)


@dataclass(frozen=True)
class Contents:
    config: bool = True
    database: bool = True
    dkim: bool = True
    mailboxes: bool = True

    def any(self) -> bool:
        return self.config or self.database or self.dkim or self.mailboxes

    def tagset(self) -> str:
        return "-".join(tag for field, tag in TAGS if getattr(self, field))


@dataclass(frozen=True)
class ParsedName:
    id: str
    date: str
    time: str
    contents: Contents


def backup_id_for(created_at: datetime, contents: Contents) -> str:
    stamp = created_at.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)
    tagset = contents.tagset()
    return f"{PREFIX}-{stamp}-{tagset}" if tagset else f"{PREFIX}-{stamp}"


def filename_for(backup_id: str) -> str:
    return f"{backup_id}{EXTENSION}"


def parse_filename(filename: str) -> Optional[ParsedName]:
    match = _FILENAME_RE.match(filename)
    if not match:
        return None
    year, month, day, hour, minute, second, tagset = match.groups()
    try:
        datetime(int(year), int(month), int(day), int(hour), int(minute), int(second))
    except ValueError:
        return None

    if tagset:
        contents = Contents(
            config="config" in tagset,
            database="db" in tagset,
            dkim="dkim" in tagset,
            mailboxes="mail" in tagset,
        )
    else:
        contents = Contents()

    return ParsedName(
        id=filename[: -len(EXTENSION)],
        date=f"{year}-{month}-{day}",
        time=f"{hour}:{minute}:{second}",
        contents=contents,
    )
