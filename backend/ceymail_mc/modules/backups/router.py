"""Backups module router aggregation."""
from ceymail_mc.routers import backups

ROUTERS = [backups.router]
