"""Routers package."""

from . import (
    health,
    cron,
    ledger,
)
