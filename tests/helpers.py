from __future__ import annotations

from agent_market.config import MarketPolicy
from agent_market.engine import MarketEngine
from agent_market.ledger import InMemoryJournal
from agent_market.schemas import Agent, Notification, Task
from agent_market.store import LedgerStore


class RecordingSink:
    """Notification sink that keeps everything it is sent."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> None:
        self.sent.append(notification)

    def of_type(self, type: str) -> list[Notification]:
        return [n for n in self.sent if n.type == type]


class FailingSink:
    """Notification sink whose delivery always blows up."""

    def __init__(self) -> None:
        self.attempts = 0

    def send(self, notification: Notification) -> None:
        self.attempts += 1
        raise RuntimeError("webhook endpoint unreachable")


def make_engine(
    *,
    sink: object | None = None,
    policy: MarketPolicy | None = None,
) -> MarketEngine:
    store = LedgerStore(InMemoryJournal())
    return MarketEngine(store, policy=policy, sink=sink)  # type: ignore[arg-type]


def make_agents(engine: MarketEngine, *names: str, credits: int = 100) -> list[Agent]:
    return [engine.register_agent(name, credits=credits) for name in names]


def submitted_task(
    engine: MarketEngine,
    requester: Agent,
    worker: Agent,
    *,
    reward: int = 30,
    title: str = "Write a haiku",
) -> Task:
    task = engine.create_task(requester.id, title, "Five, seven, five.", reward)
    engine.claim_task(worker.id, task.id)
    return engine.submit_work(worker.id, task.id, "done")


def completed_task(
    engine: MarketEngine,
    requester: Agent,
    worker: Agent,
    *,
    reward: int = 30,
) -> Task:
    task = submitted_task(engine, requester, worker, reward=reward)
    return engine.validate_work(requester.id, task.id, approved=True).task
