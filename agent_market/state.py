from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel

from agent_market.schemas import (
    Agent,
    Badge,
    Dispute,
    LedgerEvent,
    ReputationEvent,
    Review,
    Task,
    TaskLogEntry,
    Transaction,
)

RECORD_TYPES: dict[str, type[BaseModel]] = {
    "agent": Agent,
    "task": Task,
    "dispute": Dispute,
}

# Append-only tables and the field each one is indexed by.
ROW_TYPES: dict[str, tuple[type[BaseModel], str]] = {
    "transactions": (Transaction, "agent_id"),
    "task_logs": (TaskLogEntry, "task_id"),
    "reputation_events": (ReputationEvent, "agent_id"),
    "badges": (Badge, "agent_id"),
    "reviews": (Review, "task_id"),
}


def record_key(kind: str, record_id: str) -> str:
    if kind not in RECORD_TYPES:
        raise ValueError(f"unknown record kind: {kind}")
    return f"{kind}:{record_id}"


def agent_key(agent_id: str) -> str:
    return record_key("agent", agent_id)


def task_key(task_id: str) -> str:
    return record_key("task", task_id)


def dispute_key(dispute_id: str) -> str:
    return record_key("dispute", dispute_id)


def split_key(key: str) -> tuple[str, str]:
    kind, sep, record_id = key.partition(":")
    if not sep or kind not in RECORD_TYPES or not record_id:
        raise ValueError(f"malformed record key: {key!r}")
    return kind, record_id


class MarketState:
    """Committed records and append-only rows, plus the secondary indexes over them.

    Not thread-safe on its own; LedgerStore serializes every `apply` call.
    """

    def __init__(self) -> None:
        self.records: dict[str, dict[str, BaseModel]] = {kind: {} for kind in RECORD_TYPES}
        self.rows: dict[str, list[BaseModel]] = {table: [] for table in ROW_TYPES}
        self._row_index: dict[tuple[str, str], list[BaseModel]] = {}
        self._disputes_by_task: dict[str, list[str]] = {}

    def get(self, key: str) -> BaseModel | None:
        kind, record_id = split_key(key)
        return self.records[kind].get(record_id)

    def rows_for(self, table: str, owner: str) -> list[BaseModel]:
        return list(self._row_index.get((table, owner), ()))

    def dispute_ids_for_task(self, task_id: str) -> list[str]:
        return list(self._disputes_by_task.get(task_id, ()))

    def apply(
        self,
        *,
        records: dict[str, BaseModel],
        rows: Iterable[tuple[str, BaseModel]],
    ) -> None:
        for key, record in records.items():
            kind, record_id = split_key(key)
            if kind == "dispute" and record_id not in self.records[kind]:
                assert isinstance(record, Dispute)
                self._disputes_by_task.setdefault(record.task_id, []).append(record_id)
            self.records[kind][record_id] = record

        for table, row in rows:
            _, index_field = ROW_TYPES[table]
            self.rows[table].append(row)
            owner = str(getattr(row, index_field))
            self._row_index.setdefault((table, owner), []).append(row)

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready dump of everything, used to compare a live store with a replayed one."""
        return {
            "records": {
                kind: {rid: rec.model_dump(mode="json") for rid, rec in sorted(recs.items())}
                for kind, recs in self.records.items()
            },
            "rows": {
                table: [row.model_dump(mode="json") for row in rows]
                for table, rows in self.rows.items()
            },
        }


def encode_commit(
    *,
    records: dict[str, BaseModel],
    rows: Iterable[tuple[str, BaseModel]],
) -> dict[str, Any]:
    return {
        "records": {key: rec.model_dump(mode="json") for key, rec in records.items()},
        "rows": [{"table": table, "row": row.model_dump(mode="json")} for table, row in rows],
    }


def decode_commit(
    payload: dict[str, Any],
) -> tuple[dict[str, BaseModel], list[tuple[str, BaseModel]]]:
    records: dict[str, BaseModel] = {}
    for key, raw in (payload.get("records") or {}).items():
        kind, _ = split_key(key)
        records[key] = RECORD_TYPES[kind].model_validate(raw)

    rows: list[tuple[str, BaseModel]] = []
    for item in payload.get("rows") or []:
        table = str(item["table"])
        if table not in ROW_TYPES:
            raise ValueError(f"unknown table in journal: {table}")
        row_type, _ = ROW_TYPES[table]
        rows.append((table, row_type.model_validate(item["row"])))
    return records, rows


def replay_journal(*, events: Iterable[LedgerEvent]) -> MarketState:
    """Rebuild committed state by re-applying every journaled unit of work in order."""
    state = MarketState()
    for event in events:
        records, rows = decode_commit(event.payload)
        state.apply(records=records, rows=rows)
    return state
