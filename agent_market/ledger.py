"""Append-only journals whose events are linked by sha256 hashes.

Each event hashes its own canonical JSON form (everything but the `hash` field),
and that form includes the previous event's hash, so editing or dropping any
line breaks every hash after it.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from collections.abc import Iterable, Iterator
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from agent_market.schemas import EventType, LedgerEvent, utcnow

JOURNAL_SCHEMA_VERSION = 1


def stable_json_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@runtime_checkable
class Journal(Protocol):
    """What a `LedgerStore` needs from its backing journal."""

    def reset(self) -> None: ...

    def append(
        self,
        event_type: EventType,
        *,
        payload: dict[str, Any] | None = ...,
        ts: datetime | None = ...,
    ) -> LedgerEvent: ...

    def iter_events(self) -> Iterator[LedgerEvent]: ...

    def verify_chain(self) -> None: ...

    def __len__(self) -> int: ...


def event_digest(event: LedgerEvent) -> str:
    body = event.model_dump(mode="json", exclude={"hash"})
    return hashlib.sha256(stable_json_dumps(body).encode("utf-8")).hexdigest()


def seal_event(
    event_type: EventType,
    *,
    prev_hash: str | None,
    payload: dict[str, Any] | None = None,
    ts: datetime | None = None,
) -> LedgerEvent:
    # Round-trip through JSON so the hashed payload is exactly what gets stored.
    event = LedgerEvent(
        schema_version=JOURNAL_SCHEMA_VERSION,
        event_id=str(uuid.uuid4()),
        prev_hash=prev_hash,
        hash="",
        ts=ts or utcnow(),
        type=event_type,
        payload=json.loads(stable_json_dumps(payload or {})),
    )
    event.hash = event_digest(event)
    return event


def verify_events(events: Iterable[LedgerEvent]) -> None:
    """Raise `ValueError` naming the first event whose link or hash does not hold."""
    prev_hash: str | None = None
    for position, event in enumerate(events, start=1):
        if event.prev_hash != prev_hash:
            raise ValueError(f"journal prev_hash mismatch at event {position} ({event.event_id})")
        if event.hash != event_digest(event):
            raise ValueError(f"journal hash mismatch at event {position} ({event.event_id})")
        prev_hash = event.hash


class _ChainedJournal:
    """Shared chaining; subclasses decide where sealed events are kept."""

    _tail_hash: str | None = None

    def _persist(self, event: LedgerEvent) -> None:
        raise NotImplementedError

    def append(
        self,
        event_type: EventType,
        *,
        payload: dict[str, Any] | None = None,
        ts: datetime | None = None,
    ) -> LedgerEvent:
        event = seal_event(event_type, prev_hash=self._tail_hash, payload=payload, ts=ts)
        self._persist(event)
        self._tail_hash = event.hash
        return event

    def iter_events(self) -> Iterator[LedgerEvent]:
        raise NotImplementedError

    def verify_chain(self) -> None:
        verify_events(self.iter_events())


class HashChainedJournal(_ChainedJournal):
    """JSONL file journal, one sealed event per line. Reopening continues the chain."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        last: str | None = None
        for last in self._lines():
            pass
        self._tail_hash = None if last is None else LedgerEvent.model_validate_json(last).hash

    @property
    def path(self) -> Path:
        return self._path

    def _lines(self) -> Iterator[str]:
        if not self._path.exists():
            return
        with self._path.open("r", encoding="utf-8") as f:
            for raw in f:
                line = raw.strip()
                if line:
                    yield line

    def reset(self) -> None:
        self._path.write_text("", encoding="utf-8")
        self._tail_hash = None

    def _persist(self, event: LedgerEvent) -> None:
        with self._path.open("a", encoding="utf-8") as f:
            f.write(stable_json_dumps(event.model_dump(mode="json")) + "\n")

    def iter_events(self) -> Iterator[LedgerEvent]:
        for line in self._lines():
            yield LedgerEvent.model_validate_json(line)

    def __len__(self) -> int:
        return sum(1 for _ in self._lines())


class InMemoryJournal(_ChainedJournal):
    """List-backed journal for tests and throwaway engines."""

    def __init__(self) -> None:
        self._events: list[LedgerEvent] = []
        self._tail_hash = None

    def reset(self) -> None:
        self._events.clear()
        self._tail_hash = None

    def _persist(self, event: LedgerEvent) -> None:
        self._events.append(event)

    def iter_events(self) -> Iterator[LedgerEvent]:
        for event in self._events:
            yield event.model_copy(deep=True)

    def verify_chain(self) -> None:
        verify_events(self._events)

    def __len__(self) -> int:
        return len(self._events)
