from __future__ import annotations

from pathlib import Path

import pytest

from agent_market.engine import MarketEngine
from agent_market.ledger import HashChainedJournal, InMemoryJournal
from agent_market.schemas import Agent, EventType, Transaction, TransactionType
from agent_market.state import agent_key, task_key
from agent_market.store import LedgerStore
from tests.helpers import completed_task, make_agents, make_engine


def _agent(agent_id: str, credits: int = 100) -> Agent:
    return Agent(id=agent_id, name=agent_id, credits=credits, initial_credits=credits)


def test_unit_of_work_commits_records_rows_and_one_event() -> None:
    store = LedgerStore(InMemoryJournal())
    with store.unit_of_work(EventType.AGENT_REGISTERED, agent_key("a1")) as uow:
        uow.put_agent(_agent("a1"))
        uow.append(
            "transactions",
            Transaction(
                id="t1",
                agent_id="a1",
                type=TransactionType.TRANSFER_IN,
                amount=0,
                balance_after=100,
                description="opening",
            ),
        )

    assert store.agent("a1") is not None
    assert len(store.rows("transactions", "a1")) == 1
    assert len(store.journal) == 1
    event = next(store.journal.iter_events())
    assert event.type == EventType.AGENT_REGISTERED
    assert "agent:a1" in event.payload["records"]


def test_exception_discards_everything() -> None:
    store = LedgerStore(InMemoryJournal())
    with pytest.raises(RuntimeError, match="boom"):
        with store.unit_of_work(EventType.AGENT_REGISTERED, agent_key("a1")) as uow:
            uow.put_agent(_agent("a1"))
            raise RuntimeError("boom")

    assert store.agent("a1") is None
    assert len(store.journal) == 0


def test_unit_of_work_without_writes_journals_nothing() -> None:
    store = LedgerStore(InMemoryJournal())
    with store.unit_of_work(EventType.BADGES_AWARDED, agent_key("missing")) as uow:
        assert uow.agent("missing") is None
    assert len(store.journal) == 0


def test_put_requires_lock() -> None:
    store = LedgerStore(InMemoryJournal())
    with pytest.raises(RuntimeError, match="does not hold a lock"):
        with store.unit_of_work(EventType.AGENT_REGISTERED, agent_key("a1")) as uow:
            uow.put_agent(_agent("a2"))


def test_invalid_record_is_rejected_at_commit() -> None:
    store = LedgerStore(InMemoryJournal())
    with store.unit_of_work(EventType.AGENT_REGISTERED, agent_key("a1")) as uow:
        uow.put_agent(_agent("a1"))

    with pytest.raises(ValueError):
        with store.unit_of_work(EventType.CREDITS_TRANSFERRED, agent_key("a1")) as uow:
            agent = uow.agent("a1")
            assert agent is not None
            agent.credits = -5
            uow.put_agent(agent)

    agent = store.agent("a1")
    assert agent is not None and agent.credits == 100


def test_reads_are_copies() -> None:
    store = LedgerStore(InMemoryJournal())
    with store.unit_of_work(EventType.AGENT_REGISTERED, agent_key("a1")) as uow:
        uow.put_agent(_agent("a1"))

    leaked = store.agent("a1")
    assert leaked is not None
    leaked.credits = 0
    again = store.agent("a1")
    assert again is not None and again.credits == 100


def test_compare_and_set() -> None:
    engine = make_engine()
    requester, worker = make_agents(engine, "req", "wrk")
    task = engine.create_task(requester.id, "t", "d", 10)

    assert not engine.store.compare_and_set(
        EventType.TASK_CLAIMED,
        task_key(task.id),
        expected={"status": "claimed"},
        changes={"status": "claimed", "worker_id": worker.id},
    )
    assert engine.store.compare_and_set(
        EventType.TASK_CLAIMED,
        task_key(task.id),
        expected={"status": "open"},
        changes={"status": "claimed", "worker_id": worker.id},
    )
    stored = engine.store.task(task.id)
    assert stored is not None and stored.worker_id == worker.id


def test_restore_from_journal_matches_live_store(tmp_path: Path) -> None:
    path = tmp_path / "journal.jsonl"
    engine = MarketEngine.open(path)
    requester, worker = make_agents(engine, "req", "wrk")
    completed_task(engine, requester, worker, reward=40)
    rejected = engine.create_task(requester.id, "again", "d", 10)
    engine.claim_task(worker.id, rejected.id)
    engine.submit_work(worker.id, rejected.id, "attempt")
    engine.validate_work(requester.id, rejected.id, approved=False, reason="nope")
    engine.transfer(worker.id, requester.id, 5, memo="thanks")

    restored = LedgerStore.restore(HashChainedJournal(path))
    assert restored.snapshot() == engine.store.snapshot()


def test_restore_rejects_broken_chain() -> None:
    journal = InMemoryJournal()
    store = LedgerStore(journal)
    with store.unit_of_work(EventType.AGENT_REGISTERED, agent_key("a1")) as uow:
        uow.put_agent(_agent("a1"))
    journal._events[0].payload["records"]["agent:a1"]["credits"] = 10_000

    with pytest.raises(ValueError, match="hash mismatch"):
        LedgerStore.restore(journal)
