"""Database credentials for the dump step.

The setup wizard writes ``data/config.json``; older deployments only have a
``DATABASE_URL`` in the environment.  The config file wins when it is readable.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import ArgumentError

from ceymail_mc.core.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3306


@dataclass(frozen=True)
class DatabaseCredentials:
    host: str
    port: int
    user: str
    password: str
    mail_database: str
    dashboard_database: str

    def __repr__(self) -> str:
        return (
            f"DatabaseCredentials(host={self.host!r}, port={self.port}, user={self.user!r}, "
            f"mail_database={self.mail_database!r}, dashboard_database={self.dashboard_database!r})"
        )


def _from_config_file(path: Path) -> Optional[DatabaseCredentials]:
    if not path.is_file():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        database = payload["database"]
        return DatabaseCredentials(
            host=str(database.get("host") or "localhost"),
            port=int(database.get("port") or DEFAULT_PORT),
            user=str(database["user"]),
            password=str(database["password"]),
            mail_database=str(database.get("mailDatabase") or "ceymail"),
            dashboard_database=str(database.get("dashboardDatabase") or "ceymail_dashboard"),
        )
    except (OSError, ValueError, KeyError, TypeError, AttributeError):
        # Corrupted config falls through to the environment.
        logger.warning("config_file_unreadable", extra={"path": str(path)})
        return None


def _from_database_url(settings: Settings) -> Optional[DatabaseCredentials]:
    if not settings.database_url:
        return None
    try:
        url = make_url(settings.database_url)
    except ArgumentError:
        logger.warning("database_url_invalid")
        return None
    if not url.username or url.password is None:
        return None
    return DatabaseCredentials(
        host=url.host or "localhost",
        port=url.port or DEFAULT_PORT,
        user=url.username,
        password=str(url.password),
        mail_database=url.database or settings.mail_database,
        dashboard_database=settings.dashboard_database,
    )


def get_database_credentials(settings: Settings) -> Optional[DatabaseCredentials]:
    """Return credentials or ``None`` when neither source is configured (first-run state)."""
    config_path = Path(settings.config_file).expanduser()
    return _from_config_file(config_path) or _from_database_url(settings)
