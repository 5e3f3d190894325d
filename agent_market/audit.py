"""Whole-store consistency checks, usable on a live store or one restored from its journal."""

from __future__ import annotations

from collections import defaultdict

from pydantic import BaseModel, Field

from agent_market.config import MarketPolicy
from agent_market.reputation import fold_reputation
from agent_market.schemas import (
    SUBSIDY_TRANSACTION_TYPES,
    DisputeStatus,
    ReputationEvent,
    TaskStatus,
    Transaction,
)
from agent_market.store import LedgerStore


class Violation(BaseModel):
    check: str
    subject: str
    message: str


class AuditReport(BaseModel):
    agents: int = 0
    tasks: int = 0
    transactions: int = 0
    violations: list[Violation] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations


def audit_store(store: LedgerStore, *, policy: MarketPolicy | None = None) -> AuditReport:
    policy = policy or MarketPolicy()
    agents = store.agents()
    tasks = store.tasks()
    txns = [t for t in store.rows("transactions") if isinstance(t, Transaction)]
    report = AuditReport(agents=len(agents), tasks=len(tasks), transactions=len(txns))

    def flag(check: str, subject: str, message: str) -> None:
        report.violations.append(Violation(check=check, subject=subject, message=message))

    by_agent: dict[str, int] = defaultdict(int)
    by_task: dict[str, int] = defaultdict(int)
    for txn in txns:
        by_agent[txn.agent_id] += txn.amount
        if txn.related_task_id is not None and txn.type not in SUBSIDY_TRANSACTION_TYPES:
            by_task[txn.related_task_id] += txn.amount

    for agent in agents:
        if agent.credits < 0:
            flag("non_negative_balance", agent.id, f"balance is {agent.credits}")
        expected = agent.initial_credits + by_agent[agent.id]
        if agent.credits != expected:
            flag("balance_replay", agent.id, f"balance {agent.credits} != replayed {expected}")
        if not policy.min_reputation <= agent.reputation <= policy.max_reputation:
            flag("reputation_bounds", agent.id, f"reputation {agent.reputation} out of bounds")
        events = [e for e in store.rows("reputation_events", agent.id) if isinstance(e, ReputationEvent)]
        folded = fold_reputation(events, policy=policy)
        if folded != agent.reputation:
            flag("reputation_fold", agent.id, f"reputation {agent.reputation} != folded {folded}")

    for task in tasks:
        if task.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED) and by_task[task.id] != 0:
            flag("task_zero_sum", task.id, f"{task.status.value} task nets {by_task[task.id]}")
        if task.status == TaskStatus.OPEN and task.worker_id is not None:
            flag("worker_presence", task.id, "open task has a worker")
        if task.status in (TaskStatus.CLAIMED, TaskStatus.SUBMITTED, TaskStatus.DISPUTED) and task.worker_id is None:
            flag("worker_presence", task.id, f"{task.status.value} task has no worker")
        if task.status not in (TaskStatus.COMPLETED, TaskStatus.CANCELLED) and by_task[task.id] != -task.reward:
            flag("escrow_held", task.id, f"escrow nets {by_task[task.id]}, expected {-task.reward}")

        open_disputes = [d for d in store.disputes_for_task(task.id) if d.status == DisputeStatus.OPEN]
        if len(open_disputes) > 1:
            flag("single_open_dispute", task.id, f"{len(open_disputes)} open disputes")
        if task.status == TaskStatus.DISPUTED and len(open_disputes) != 1:
            flag("single_open_dispute", task.id, "disputed task without an open dispute")

    return report
