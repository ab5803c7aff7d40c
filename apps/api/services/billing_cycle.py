"""Billing cycle parsing and duration helpers.

Cycles are written as ``{quantity}{unit}`` where unit is one of ``m`` (minute),
``h`` (hour), ``d`` (day), ``month`` or ``y`` (year), e.g. ``1m``, ``24h``,
``30d``, ``6month``, ``1y``. Legacy words such as ``monthly`` or ``weekly`` are
accepted and normalized first.

Months and years are fixed-length spans (30 and 365 days). This is a billing
business rule: prices are defined per fixed span, so no calendar arithmetic
(leap years, variable month lengths) is applied.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Union


class InvalidCycleFormat(ValueError):
    """Raised when a billing cycle string cannot be parsed."""


class CycleUnit(str, enum.Enum):
    MINUTE = "m"
    HOUR = "h"
    DAY = "d"
    MONTH = "month"
    YEAR = "y"


MS_PER_MINUTE = 60 * 1000
MS_PER_HOUR = 60 * MS_PER_MINUTE
MS_PER_DAY = 24 * MS_PER_HOUR

UNIT_MILLISECONDS: Dict[CycleUnit, int] = {
    CycleUnit.MINUTE: MS_PER_MINUTE,
    CycleUnit.HOUR: MS_PER_HOUR,
    CycleUnit.DAY: MS_PER_DAY,
    CycleUnit.MONTH: 30 * MS_PER_DAY,
    CycleUnit.YEAR: 365 * MS_PER_DAY,
}

LEGACY_CYCLES: Dict[str, str] = {
    "monthly": "1month",
    "weekly": "7d",
    "daily": "1d",
    "hourly": "1h",
    "hour": "1h",
    "day": "1d",
    "week": "7d",
    "month": "1month",
    "year": "1y",
    "yearly": "1y",
}

_CYCLE_PATTERN = re.compile(r"^([1-9][0-9]*)\s*(m|h|d|month|y)$")


@dataclass(frozen=True)
class BillingCycle:
    input: str
    quantity: int
    unit: CycleUnit
    duration: timedelta

    @property
    def milliseconds(self) -> int:
        return self.quantity * UNIT_MILLISECONDS[self.unit]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "input": self.input,
            "quantity": self.quantity,
            "unit": self.unit.value,
            "ms": self.milliseconds,
        }


def parse_billing_cycle(value: Any) -> BillingCycle:
    """Parse a billing cycle string into quantity, unit and fixed duration."""
    if not isinstance(value, str) or not value.strip():
        raise InvalidCycleFormat("Invalid billing cycle: expected non-empty string")

    trimmed = value.strip().lower()
    normalized = LEGACY_CYCLES.get(trimmed, trimmed)

    match = _CYCLE_PATTERN.match(normalized)
    if not match:
        raise InvalidCycleFormat(f"Invalid billing cycle format: {value}")

    quantity = int(match.group(1))
    unit = CycleUnit(match.group(2))
    try:
        duration = timedelta(milliseconds=quantity * UNIT_MILLISECONDS[unit])
    except OverflowError as exc:
        raise InvalidCycleFormat(f"Invalid billing cycle: duration out of range: {value}") from exc
    return BillingCycle(input=value, quantity=quantity, unit=unit, duration=duration)


def cycle_duration(cycle: Union[str, BillingCycle]) -> timedelta:
    if isinstance(cycle, BillingCycle):
        return cycle.duration
    return parse_billing_cycle(cycle).duration


def add_cycle(instant: datetime, cycle: Union[str, BillingCycle]) -> datetime:
    """Return ``instant`` advanced by one billing cycle."""
    duration = cycle_duration(cycle)
    try:
        return instant + duration
    except OverflowError as exc:
        label = cycle.input if isinstance(cycle, BillingCycle) else cycle
        raise InvalidCycleFormat(f"Invalid billing cycle: {label} overflows {instant.isoformat()}") from exc


def is_valid_billing_cycle(value: Any) -> bool:
    try:
        parse_billing_cycle(value)
    except InvalidCycleFormat:
        return False
    return True
