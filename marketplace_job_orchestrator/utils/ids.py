"""
Sortable identifier generation for jobs, bids, change orders and payments.

Identifiers have the shape ``PREFIX-YYYYMMDD-HHMMSS-ffffff-XXXX``: a kind
prefix, the UTC creation timestamp down to microseconds, and a random hex
suffix. Within one prefix the identifiers sort lexicographically in creation
order, and the embedded timestamp can be recovered for date-range queries.
"""

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Dict, Any, Callable

from .clock import Clock, utc_now

JOB_PREFIX = "JOB"
BID_PREFIX = "BID"
CHANGE_ORDER_PREFIX = "CO"
PAYMENT_PREFIX = "PAY"

KNOWN_PREFIXES = (JOB_PREFIX, BID_PREFIX, CHANGE_ORDER_PREFIX, PAYMENT_PREFIX)


@dataclass(frozen=True)
class ParsedId:
    """Components recovered from a generated identifier."""
    prefix: str
    created_at: datetime
    suffix: str

    @property
    def date(self) -> str:
        return self.created_at.strftime("%Y-%m-%d")


class IdGenerator:
    """
    Produces unique, monotonically increasing identifiers per entity kind.

    Two identifiers generated by the same instance never share a timestamp;
    when the clock has not advanced the previous timestamp is bumped by one
    microsecond.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utc_now
        self._last: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def generate(self, prefix: str) -> str:
        """Generate an identifier for the given kind prefix."""
        with self._lock:
            now = self._clock().astimezone(timezone.utc)
            last = self._last.get(prefix)
            if last is not None and now <= last:
                now = last + timedelta(microseconds=1)
            self._last[prefix] = now

        suffix = secrets.token_hex(2).upper()
        return f"{prefix}-{now.strftime('%Y%m%d')}-{now.strftime('%H%M%S')}-{now.strftime('%f')}-{suffix}"

    def job_id(self) -> str:
        return self.generate(JOB_PREFIX)

    def bid_id(self) -> str:
        return self.generate(BID_PREFIX)

    def change_order_id(self) -> str:
        return self.generate(CHANGE_ORDER_PREFIX)

    def payment_id(self) -> str:
        return self.generate(PAYMENT_PREFIX)


def parse_id(entity_id: str) -> Optional[ParsedId]:
    """
    Recover the prefix and creation timestamp of a generated identifier.

    Args:
        entity_id: Identifier produced by IdGenerator

    Returns:
        ParsedId, or None if the identifier does not have the generated shape
    """
    if not isinstance(entity_id, str):
        return None

    parts = entity_id.split("-")
    if len(parts) != 5:
        return None

    prefix, date_part, time_part, micro_part, suffix = parts
    if prefix not in KNOWN_PREFIXES:
        return None

    try:
        created_at = datetime.strptime(
            f"{date_part}{time_part}{micro_part}", "%Y%m%d%H%M%S%f"
        ).replace(tzinfo=timezone.utc)
    except ValueError:
        return None

    return ParsedId(prefix=prefix, created_at=created_at, suffix=suffix)


def sort_by_id(items: Iterable[Any], key: Callable[[Any], str], descending: bool = True) -> List[Any]:
    """Sort entities by the creation timestamp embedded in their identifiers."""
    def sort_key(item):
        parsed = parse_id(key(item))
        # Unparseable ids fall back to plain string order after parseable ones
        if parsed is None:
            return (0, datetime.min.replace(tzinfo=timezone.utc), key(item))
        return (1, parsed.created_at, key(item))

    return sorted(items, key=sort_key, reverse=descending)


def in_date_range(entity_id: str, start: datetime, end: datetime) -> bool:
    """Check whether an identifier was created within [start, end]."""
    parsed = parse_id(entity_id)
    if parsed is None:
        return False
    return start <= parsed.created_at <= end
