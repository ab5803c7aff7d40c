"""Models package."""

from .user import User
from .server import ManagedServer, ServerStatus
from .rewards_ledger import LedgerSourceAction, LedgerSourceCategory, RewardLedgerEntry
