"""Central router registry for module-oriented composition."""
from __future__ import annotations

from fastapi import FastAPI

from ceymail_mc.modules.backups.router import ROUTERS as BACKUP_ROUTERS

ALL_ROUTERS = BACKUP_ROUTERS


def include_all_routers(app: FastAPI) -> None:
    for router in ALL_ROUTERS:
        app.include_router(router)
