"""In-memory registry of WhatsApp sessions keyed by session name."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional

from .errors import AlreadyExists


PENDING = "PENDING"
AWAITING_SCAN = "AWAITING_SCAN"
AUTHENTICATED = "AUTHENTICATED"
CONNECTED = "CONNECTED"
AUTH_FAILED = "AUTH_FAILED"
DISCONNECTED = "DISCONNECTED"
TERMINATED = "TERMINATED"

ACTIVE_STATUSES = (PENDING, AWAITING_SCAN, AUTHENTICATED, CONNECTED)
TERMINAL_STATUSES = frozenset({AUTH_FAILED, DISCONNECTED, TERMINATED})


@dataclass(slots=True, eq=False)
class SessionRecord:
    id: str
    client: Any
    status: str = PENDING
    pending_challenge: Optional[str] = None
    challenge_count: int = 0
    first_challenge: Optional[asyncio.Future[str]] = None
    last_error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    released: bool = False

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SessionListing:
    """Restartable view over ``(session, status)`` pairs.

    Every iteration starts from the keys present at that moment, so sessions
    removed while iterating are skipped instead of breaking the loop.
    """

    __slots__ = ("_records",)

    def __init__(self, records: Dict[str, SessionRecord]) -> None:
        self._records = records

    def __iter__(self) -> Iterator[tuple[str, str]]:
        for name in list(self._records):
            record = self._records.get(name)
            if record is not None:
                yield name, record.status

    def __len__(self) -> int:
        return len(self._records)


class SessionRegistry:
    """Owns every :class:`SessionRecord` for the lifetime of the process.

    All methods are synchronous: a lookup and the mutation that follows it run
    inside one event-loop step, so concurrent requests and engine callbacks
    never observe a half-applied change.
    """

    def __init__(self) -> None:
        self._records: Dict[str, SessionRecord] = {}

    def create(self, name: str, factory: Callable[[str], Any]) -> SessionRecord:
        if name in self._records:
            raise AlreadyExists(name)
        record = SessionRecord(id=name, client=factory(name))
        self._records[name] = record
        return record

    def get(self, name: str) -> Optional[SessionRecord]:
        return self._records.get(name)

    def remove(self, name: str, record: Optional[SessionRecord] = None) -> Optional[SessionRecord]:
        current = self._records.get(name)
        if current is None:
            return None
        if record is not None and current is not record:
            return None
        return self._records.pop(name)

    def list(self) -> SessionListing:
        return SessionListing(self._records)

    def drain(self) -> list[SessionRecord]:
        records = list(self._records.values())
        self._records.clear()
        return records

    def stats(self) -> Dict[str, int]:
        counts = {status: 0 for status in ACTIVE_STATUSES}
        for record in self._records.values():
            counts[record.status] = counts.get(record.status, 0) + 1
        return counts

    def __contains__(self, name: object) -> bool:
        return name in self._records

    def __len__(self) -> int:
        return len(self._records)


__all__ = [
    "ACTIVE_STATUSES",
    "AUTHENTICATED",
    "AUTH_FAILED",
    "AWAITING_SCAN",
    "CONNECTED",
    "DISCONNECTED",
    "PENDING",
    "SessionListing",
    "SessionRecord",
    "SessionRegistry",
    "TERMINAL_STATUSES",
    "TERMINATED",
]
