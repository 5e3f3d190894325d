from __future__ import annotations

from pathlib import Path

from agent_market.audit import audit_store
from agent_market.engine import MarketEngine
from agent_market.schemas import Agent, EventType, TransactionType
from agent_market.state import agent_key, task_key
from tests.helpers import completed_task, make_agents, make_engine, submitted_task


def _mixed_workload(engine: MarketEngine) -> list[Agent]:
    a, b, c, judge = make_agents(engine, "A", "B", "C", "Judge")
    engine.record_reputation_event(judge.id, "DISPUTE_WON", multiplier=20)

    completed_task(engine, a, b, reward=30)

    rejected = submitted_task(engine, a, c, reward=20)
    engine.validate_work(a.id, rejected.id, approved=False)

    abandoned = engine.create_task(b.id, "abandon me", "d", 15)
    engine.claim_task(c.id, abandoned.id)
    engine.abandon_task(c.id, abandoned.id)

    cancelled = engine.create_task(c.id, "cancel me", "d", 5)
    engine.cancel_task(c.id, cancelled.id)

    split = submitted_task(engine, b, c, reward=41)
    dispute = engine.raise_dispute(c.id, split.id, "silent requester")
    engine.resolve_dispute(judge.id, dispute.id, "split")

    reheld = completed_task(engine, c, a, reward=12)
    dispute = engine.raise_dispute(c.id, reheld.id, "copied")
    engine.resolve_dispute(c.id, dispute.id, "favor_requester")

    still_open = submitted_task(engine, a, b, reward=10)
    engine.raise_dispute(b.id, still_open.id, "pending")

    engine.transfer(b.id, a.id, 7, memo="tip")
    return [a, b, c, judge]


def test_mixed_workload_passes_audit() -> None:
    engine = make_engine()
    _mixed_workload(engine)

    report = engine.audit()
    assert report.ok, report.violations
    assert report.agents == 4
    assert report.tasks == 7


def test_completed_and_cancelled_tasks_net_to_zero() -> None:
    engine = make_engine()
    _mixed_workload(engine)

    for task in engine.list_tasks():
        if task.status.value not in ("completed", "cancelled"):
            continue
        net = sum(
            t.amount
            for agent in engine.list_agents()
            for t in engine.accountant.transactions(agent.id)
            if t.related_task_id == task.id and t.type != TransactionType.ARBITRATION_REWARD
        )
        assert net == 0, task.id


def test_total_credits_change_only_by_subsidies() -> None:
    engine = make_engine()
    _mixed_workload(engine)

    agents = engine.list_agents()
    held = sum(t.escrowed for t in engine.list_tasks())
    minted = sum(
        t.amount
        for agent in agents
        for t in engine.accountant.transactions(agent.id)
        if t.type == TransactionType.ARBITRATION_REWARD
    )
    assert sum(a.credits for a in agents) + held == sum(a.initial_credits for a in agents) + minted


def test_audit_flags_tampered_balance() -> None:
    engine = make_engine()
    a, b = make_agents(engine, "A", "B")
    completed_task(engine, a, b, reward=10)

    with engine.store.unit_of_work(EventType.CREDITS_TRANSFERRED, agent_key(b.id)) as uow:
        agent = uow.agent(b.id)
        assert agent is not None
        agent.credits += 1_000
        uow.put_agent(agent)

    report = audit_store(engine.store)
    assert not report.ok
    assert [(v.check, v.subject) for v in report.violations] == [("balance_replay", b.id)]


def test_audit_flags_missing_escrow() -> None:
    engine = make_engine()
    (a,) = make_agents(engine, "A")
    task = engine.create_task(a.id, "t", "d", 10)

    with engine.store.unit_of_work(EventType.TASK_CREATED, task_key(task.id)) as uow:
        stored = uow.task(task.id)
        assert stored is not None
        stored.reward = 25
        uow.put_task(stored)

    checks = {v.check for v in engine.audit().violations}
    assert checks == {"escrow_held"}


def test_restored_store_passes_audit(tmp_path: Path) -> None:
    path = tmp_path / "journal.jsonl"
    engine = MarketEngine.open(path)
    _mixed_workload(engine)

    restored = MarketEngine.open(path)
    assert restored.audit().ok
    assert restored.store.snapshot() == engine.store.snapshot()
