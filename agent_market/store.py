"""Keyed record store with an atomic, journaled unit of work.

Every mutation goes through `LedgerStore.unit_of_work`: the caller names the
records it will touch, the store locks exactly those (sorted, so two units of
work over overlapping keys cannot deadlock), hands out private copies, and on
clean exit commits the staged records and rows together with one journal event.
An exception inside the block discards everything that was staged.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from typing import Any, TypeVar

from pydantic import BaseModel

from agent_market.ledger import InMemoryJournal, Journal
from agent_market.logging_config import get_logger
from agent_market.schemas import (
    Agent,
    Dispute,
    EventType,
    LedgerEvent,
    Notification,
    Task,
)
from agent_market.state import (
    ROW_TYPES,
    MarketState,
    agent_key,
    dispute_key,
    encode_commit,
    replay_journal,
    split_key,
    task_key,
)

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


class UnitOfWork:
    """Staged writes for one operation. Obtain via `LedgerStore.unit_of_work`."""

    def __init__(self, store: LedgerStore, action: EventType, keys: frozenset[str]) -> None:
        self._store = store
        self.action = action
        self._keys = keys
        self._working: dict[str, BaseModel] = {}
        self._dirty: set[str] = set()
        self._rows: list[tuple[str, BaseModel]] = []
        self.notifications: list[Notification] = []
        self.event: LedgerEvent | None = None

    def get(self, key: str) -> BaseModel | None:
        if key in self._working:
            return self._working[key]
        committed = self._store._state.get(key)
        if committed is None:
            return None
        copy = committed.model_copy(deep=True)
        if key in self._keys:
            self._working[key] = copy
        return copy

    def _typed(self, key: str, model: type[M]) -> M | None:
        record = self.get(key)
        if record is None:
            return None
        assert isinstance(record, model)
        return record

    def agent(self, agent_id: str) -> Agent | None:
        return self._typed(agent_key(agent_id), Agent)

    def task(self, task_id: str) -> Task | None:
        return self._typed(task_key(task_id), Task)

    def dispute(self, dispute_id: str) -> Dispute | None:
        return self._typed(dispute_key(dispute_id), Dispute)

    def put(self, key: str, record: BaseModel) -> None:
        if key not in self._keys:
            raise RuntimeError(f"unit of work does not hold a lock on {key}")
        split_key(key)
        self._working[key] = record
        self._dirty.add(key)

    def put_agent(self, agent: Agent) -> None:
        self.put(agent_key(agent.id), agent)

    def put_task(self, task: Task) -> None:
        self.put(task_key(task.id), task)

    def put_dispute(self, dispute: Dispute) -> None:
        self.put(dispute_key(dispute.id), dispute)

    def append(self, table: str, row: BaseModel) -> None:
        if table not in ROW_TYPES:
            raise ValueError(f"unknown table: {table}")
        self._rows.append((table, row))

    def rows(self, table: str, owner: str) -> list[BaseModel]:
        """Committed rows for `owner` followed by the ones staged in this unit of work."""
        _, index_field = ROW_TYPES[table]
        committed = [r.model_copy(deep=True) for r in self._store._rows_for(table, owner)]
        staged = [r for t, r in self._rows if t == table and str(getattr(r, index_field)) == owner]
        return committed + staged

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)

    @property
    def has_writes(self) -> bool:
        return bool(self._dirty or self._rows)

    def _validated(self) -> tuple[dict[str, BaseModel], list[tuple[str, BaseModel]]]:
        # Working copies are mutated in place, so re-run validation before anything lands.
        records = {
            key: type(self._working[key]).model_validate(self._working[key].model_dump())
            for key in sorted(self._dirty)
        }
        rows = [(table, type(row).model_validate(row.model_dump())) for table, row in self._rows]
        return records, rows


class LedgerStore:
    def __init__(self, journal: Journal | None = None) -> None:
        self._journal: Journal = journal if journal is not None else InMemoryJournal()
        self._state = MarketState()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._commit_lock = threading.Lock()

    @classmethod
    def restore(cls, journal: Journal) -> LedgerStore:
        """Rebuild a store from its journal after checking the hash chain."""
        journal.verify_chain()
        store = cls(journal)
        store._state = replay_journal(events=journal.iter_events())
        logger.info("store_restored", events=len(journal))
        return store

    @property
    def journal(self) -> Journal:
        return self._journal

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def unit_of_work(self, action: EventType, *keys: str) -> Iterator[UnitOfWork]:
        ordered = sorted(set(keys))
        for key in ordered:
            split_key(key)
        with ExitStack() as stack:
            for key in ordered:
                stack.enter_context(self._lock_for(key))
            uow = UnitOfWork(self, action, frozenset(ordered))
            yield uow
            if uow.has_writes:
                self._commit(uow)

    def _commit(self, uow: UnitOfWork) -> None:
        records, rows = uow._validated()
        payload = encode_commit(records=records, rows=rows)
        with self._commit_lock:
            uow.event = self._journal.append(uow.action, payload=payload)
            self._state.apply(records=records, rows=rows)

    def compare_and_set(
        self,
        action: EventType,
        key: str,
        *,
        expected: dict[str, Any],
        changes: dict[str, Any],
        rows: list[tuple[str, BaseModel]] | None = None,
    ) -> bool:
        """Apply `changes` to one record only if every `expected` field still matches."""
        with self.unit_of_work(action, key) as uow:
            current = uow.get(key)
            if current is None:
                return False
            if any(getattr(current, name) != value for name, value in expected.items()):
                return False
            updated = type(current).model_validate({**current.model_dump(), **changes})
            uow.put(key, updated)
            for table, row in rows or []:
                uow.append(table, row)
        return True

    # --- reads (always copies) ----------------------------------------------

    def get(self, key: str) -> BaseModel | None:
        record = self._state.get(key)
        return None if record is None else record.model_copy(deep=True)

    def agent(self, agent_id: str) -> Agent | None:
        record = self.get(agent_key(agent_id))
        assert record is None or isinstance(record, Agent)
        return record

    def task(self, task_id: str) -> Task | None:
        record = self.get(task_key(task_id))
        assert record is None or isinstance(record, Task)
        return record

    def dispute(self, dispute_id: str) -> Dispute | None:
        record = self.get(dispute_key(dispute_id))
        assert record is None or isinstance(record, Dispute)
        return record

    def values(self, kind: str) -> list[BaseModel]:
        with self._commit_lock:
            records = list(self._state.records[kind].values())
        return [r.model_copy(deep=True) for r in records]

    def agents(self) -> list[Agent]:
        return [a for a in self.values("agent") if isinstance(a, Agent)]

    def tasks(self) -> list[Task]:
        return [t for t in self.values("task") if isinstance(t, Task)]

    def disputes(self) -> list[Dispute]:
        return [d for d in self.values("dispute") if isinstance(d, Dispute)]

    def _rows_for(self, table: str, owner: str) -> list[BaseModel]:
        with self._commit_lock:
            return self._state.rows_for(table, owner)

    def rows(self, table: str, owner: str | None = None) -> list[BaseModel]:
        with self._commit_lock:
            found = self._state.rows[table][:] if owner is None else self._state.rows_for(table, owner)
        return [r.model_copy(deep=True) for r in found]

    def disputes_for_task(self, task_id: str) -> list[Dispute]:
        with self._commit_lock:
            ids = self._state.dispute_ids_for_task(task_id)
        out = [self.dispute(did) for did in ids]
        return [d for d in out if d is not None]

    def snapshot(self) -> dict[str, Any]:
        with self._commit_lock:
            return self._state.snapshot()
