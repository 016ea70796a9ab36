from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

from ceymail_mc.services.backups.naming import Contents

# Fixed source locations; callers only choose which groups to include.
SOURCE_PATHS: Mapping[str, Sequence[str]] = {
    "config": (
        "/etc/postfix",
        "/etc/dovecot",
        "/etc/spamassassin",
        "/etc/apache2/sites-available",
    ),
    "dkim": ("/etc/opendkim",),
    "mailboxes": ("/var/mail/vhosts",),
}


class SelectionError(ValueError):
    pass


@dataclass(frozen=True)
class Selection:
    contents: Contents
    paths: tuple[str, ...]

    @property
    def include_database(self) -> bool:
        return self.contents.database


class ContentSelector:
    def __init__(self, sources: Mapping[str, Sequence[str]] = SOURCE_PATHS) -> None:
        self.sources = sources

    def select(self, contents: Contents) -> Selection:
        if not contents.any():
            raise SelectionError("At least one backup component must be selected")

        wanted: list[str] = []
        for component in ("config", "dkim", "mailboxes"):
            if getattr(contents, component):
                wanted.extend(self.sources.get(component, ()))
        existing = tuple(path for path in wanted if Path(path).exists())

        # A database-only backup is valid even when no filesystem source exists.
        if not existing and not contents.database:
            raise SelectionError("Nothing to archive: none of the selected paths exist on this server")
        return Selection(contents=contents, paths=existing)
