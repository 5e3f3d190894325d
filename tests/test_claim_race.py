from __future__ import annotations

import threading

from agent_market.errors import Conflict, MarketError
from agent_market.schemas import EventType, TaskStatus
from tests.helpers import make_agents, make_engine


def test_concurrent_claims_have_exactly_one_winner() -> None:
    engine = make_engine()
    requester, *workers = make_agents(engine, "req", *(f"w{i}" for i in range(8)))
    task = engine.create_task(requester.id, "Race me", "first come first served", 20)

    barrier = threading.Barrier(len(workers))
    winners: list[str] = []
    errors: list[MarketError] = []
    lock = threading.Lock()

    def claim(agent_id: str) -> None:
        barrier.wait()
        try:
            engine.claim_task(agent_id, task.id)
        except MarketError as exc:
            with lock:
                errors.append(exc)
        else:
            with lock:
                winners.append(agent_id)

    threads = [threading.Thread(target=claim, args=(w.id,)) for w in workers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1
    assert len(errors) == len(workers) - 1
    assert all(isinstance(e, Conflict) for e in errors)

    stored = engine.get_task(task.id)
    assert stored.status == TaskStatus.CLAIMED
    assert stored.worker_id == winners[0]

    claim_events = [e for e in engine.store.journal.iter_events() if e.type == EventType.TASK_CLAIMED]
    assert len(claim_events) == 1
    assert [e.action for e in engine.task_history(task.id)] == ["created", "claimed"]


def test_concurrent_transfers_never_overdraw() -> None:
    engine = make_engine()
    sender, *recipients = make_agents(engine, "sender", "r1", "r2", "r3", "r4", credits=30)

    barrier = threading.Barrier(len(recipients))
    results: list[bool] = []
    lock = threading.Lock()

    def send(agent_id: str) -> None:
        barrier.wait()
        try:
            engine.transfer(sender.id, agent_id, 10)
        except MarketError:
            ok = False
        else:
            ok = True
        with lock:
            results.append(ok)

    threads = [threading.Thread(target=send, args=(r.id,)) for r in recipients]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 3
    assert engine.get_agent(sender.id).credits == 0
    assert engine.audit().ok
