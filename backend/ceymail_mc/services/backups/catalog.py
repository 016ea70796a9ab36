from __future__ import annotations

from pathlib import Path

from ceymail_mc.schemas.backup import BackupContents, BackupRecord, BackupState
from ceymail_mc.services.backups.archive import size_or_zero
from ceymail_mc.services.backups.naming import EXTENSION, ParsedName, parse_filename


def to_record(parsed: ParsedName, size: int) -> BackupRecord:
    contents = parsed.contents
    return BackupRecord(
        id=parsed.id,
        date=parsed.date,
        time=parsed.time,
        size=size,
        contents=BackupContents(
            config=contents.config,
            database=contents.database,
            dkim=contents.dkim,
            mailboxes=contents.mailboxes,
        ),
        status=BackupState.COMPLETE if size > 0 else BackupState.FAILED,
    )


def list_backups(root: Path) -> list[BackupRecord]:
    """Newest first; a missing root simply means no backup has been made yet."""
    if not root.is_dir():
        return []

    # Zero-padded timestamps make reverse name order newest-first.
    names = sorted((entry.name for entry in root.iterdir() if entry.name.endswith(EXTENSION)), reverse=True)
    records: list[BackupRecord] = []
    for name in names:
        parsed = parse_filename(name)
        if parsed is None:
            continue
        records.append(to_record(parsed, size_or_zero(root / name)))
    return records
