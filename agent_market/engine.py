from __future__ import annotations

import functools
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, ParamSpec, TypeVar

from pydantic import ValidationError

from agent_market.accounting import EscrowAccountant
from agent_market.audit import AuditReport, audit_store
from agent_market.config import MarketPolicy
from agent_market.disputes import DisputeResolver
from agent_market.errors import InvalidInput, NotFound
from agent_market.ledger import HashChainedJournal, Journal
from agent_market.lifecycle import TaskLifecycle
from agent_market.logging_config import get_logger
from agent_market.notifications import NotificationSink, NullSink, dispatch
from agent_market.reputation import ReputationLedger
from agent_market.reviews import ReviewBook
from agent_market.sanitize import clean_skills, clean_text, require_int
from agent_market.schemas import (
    Agent,
    Badge,
    BreakdownRow,
    Decision,
    Dispute,
    DisputeStatus,
    EventType,
    PendingReview,
    ProofKind,
    ReputationEvent,
    ReputationEventType,
    ResolutionResult,
    Review,
    ReviewType,
    Task,
    TaskLogEntry,
    TaskStatus,
    TransactionPage,
    TransactionType,
    TransferResult,
    TrustScore,
    ValidationOutcome,
    new_id,
)
from agent_market.state import agent_key
from agent_market.store import LedgerStore

logger = get_logger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

MAX_NAME_LEN = 100


def _translate_validation(fn: Callable[P, R]) -> Callable[P, R]:
    """Surface pydantic validation failures as InvalidInput."""

    @functools.wraps(fn)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return fn(*args, **kwargs)
        except ValidationError as exc:
            errors = [
                {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
                for err in exc.errors()
            ]
            raise InvalidInput("invalid input", errors=errors) from exc

    return wrapper


class MarketEngine:
    """Single entry point wiring the store, accountant, lifecycle, disputes, reputation and reviews."""

    def __init__(
        self,
        store: LedgerStore | None = None,
        *,
        policy: MarketPolicy | None = None,
        sink: NotificationSink | None = None,
    ) -> None:
        self.store = store or LedgerStore()
        self.policy = policy or MarketPolicy()
        self.sink: NotificationSink = sink or NullSink()

        self.accountant = EscrowAccountant(self.store, policy=self.policy, sink=self.sink)
        self.reputation = ReputationLedger(self.store, policy=self.policy, sink=self.sink)
        self.lifecycle = TaskLifecycle(
            self.store, self.accountant, self.reputation, policy=self.policy, sink=self.sink
        )
        self.disputes = DisputeResolver(
            self.store, self.accountant, self.reputation, policy=self.policy, sink=self.sink
        )
        self.reviews = ReviewBook(self.store, self.reputation, policy=self.policy, sink=self.sink)

    @classmethod
    def from_journal(
        cls,
        journal: Journal,
        *,
        policy: MarketPolicy | None = None,
        sink: NotificationSink | None = None,
    ) -> MarketEngine:
        return cls(LedgerStore.restore(journal), policy=policy, sink=sink)

    @classmethod
    def open(
        cls,
        path: Path,
        *,
        policy: MarketPolicy | None = None,
        sink: NotificationSink | None = None,
    ) -> MarketEngine:
        return cls.from_journal(HashChainedJournal(path), policy=policy, sink=sink)

    # --- agents -------------------------------------------------------------------

    @_translate_validation
    def register_agent(
        self,
        name: str,
        credits: int | None = None,
        skills: list[str] | None = None,
    ) -> Agent:
        name = clean_text(name, field="name", max_len=MAX_NAME_LEN)
        starting = self.policy.starting_credits if credits is None else credits
        starting = require_int(starting, field="credits", minimum=0)
        agent = Agent(
            id=new_id("agent"),
            name=name,
            credits=starting,
            initial_credits=starting,
            reputation=self.policy.initial_reputation,
            skills=clean_skills(skills, max_len=self.policy.max_skill_len, max_count=self.policy.max_skills),
        )
        with self.store.unit_of_work(EventType.AGENT_REGISTERED, agent_key(agent.id)) as uow:
            uow.put_agent(agent)
            self.reputation.award_badges(uow, agent.id)

        logger.info("agent_registered", agent_id=agent.id, credits=starting)
        dispatch(self.sink, uow.notifications)
        return agent

    def get_agent(self, agent_id: str) -> Agent:
        agent = self.store.agent(agent_id)
        if agent is None:
            raise NotFound("agent not found", agent_id=agent_id)
        return agent

    def list_agents(self) -> list[Agent]:
        agents = self.store.agents()
        agents.sort(key=lambda a: a.created_at)
        return agents

    # --- tasks ----------------------------------------------------------------------

    @_translate_validation
    def create_task(
        self,
        requester_id: str,
        title: str,
        description: str,
        reward: int,
        skills: list[str] | tuple[str, ...] = (),
        proof_kind: ProofKind | str = ProofKind.TEXT,
        deadline: datetime | None = None,
    ) -> Task:
        return self.lifecycle.create_task(
            requester_id, title, description, reward, skills, proof_kind, deadline
        )

    @_translate_validation
    def claim_task(self, agent_id: str, task_id: str) -> Task:
        return self.lifecycle.claim_task(agent_id, task_id)

    @_translate_validation
    def submit_work(self, agent_id: str, task_id: str, proof: str) -> Task:
        return self.lifecycle.submit_work(agent_id, task_id, proof)

    @_translate_validation
    def validate_work(
        self,
        agent_id: str,
        task_id: str,
        approved: bool,
        reason: str | None = None,
    ) -> ValidationOutcome:
        return self.lifecycle.validate_work(agent_id, task_id, approved, reason)

    @_translate_validation
    def abandon_task(self, agent_id: str, task_id: str) -> Task:
        return self.lifecycle.abandon_task(agent_id, task_id)

    @_translate_validation
    def cancel_task(self, agent_id: str, task_id: str) -> Task:
        return self.lifecycle.cancel_task(agent_id, task_id)

    def get_task(self, task_id: str) -> Task:
        return self.lifecycle.get_task(task_id)

    def task_history(self, task_id: str) -> list[TaskLogEntry]:
        return self.lifecycle.task_history(task_id)

    def list_tasks(
        self,
        status: TaskStatus | str | None = None,
        requester_id: str | None = None,
        worker_id: str | None = None,
    ) -> list[Task]:
        return self.lifecycle.list_tasks(status, requester_id, worker_id)

    # --- disputes ---------------------------------------------------------------------

    @_translate_validation
    def raise_dispute(
        self,
        agent_id: str,
        task_id: str,
        reason: str,
        evidence: str | None = None,
    ) -> Dispute:
        return self.disputes.raise_dispute(agent_id, task_id, reason, evidence)

    @_translate_validation
    def add_evidence(self, agent_id: str, dispute_id: str, text: str) -> Dispute:
        return self.disputes.add_evidence(agent_id, dispute_id, text)

    @_translate_validation
    def resolve_dispute(
        self,
        agent_id: str,
        dispute_id: str,
        decision: Decision | str,
        resolution: str | None = None,
    ) -> ResolutionResult:
        return self.disputes.resolve_dispute(agent_id, dispute_id, decision, resolution)

    def get_dispute(self, dispute_id: str) -> Dispute:
        return self.disputes.get_dispute(dispute_id)

    def list_disputes(
        self,
        status: DisputeStatus | str | None = None,
        agent_id: str | None = None,
    ) -> list[Dispute]:
        return self.disputes.list_disputes(status, agent_id)

    # --- credits ------------------------------------------------------------------------

    @_translate_validation
    def transfer(
        self,
        from_agent_id: str,
        to_agent_id: str,
        amount: int,
        memo: str | None = None,
    ) -> TransferResult:
        return self.accountant.transfer(from_agent_id, to_agent_id, amount, memo)

    def transaction_history(
        self,
        agent_id: str,
        type: TransactionType | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> TransactionPage:
        return self.accountant.transaction_history(agent_id, type, limit, offset)

    # --- reputation -----------------------------------------------------------------------

    @_translate_validation
    def record_reputation_event(
        self,
        agent_id: str,
        event_type: ReputationEventType | str,
        multiplier: float = 1,
        reason: str | None = None,
        **related: Any,
    ) -> ReputationEvent:
        return self.reputation.record_event(agent_id, event_type, multiplier, reason, **related)

    def evaluate_badges(self, agent_id: str) -> list[Badge]:
        return self.reputation.evaluate_badges(agent_id)

    def trust_score(self, agent_id: str) -> TrustScore:
        return self.reputation.trust_score(agent_id)

    def reputation_history(self, agent_id: str, limit: int = 50) -> list[ReputationEvent]:
        return self.reputation.reputation_history(agent_id, limit)

    def reputation_breakdown(self, agent_id: str) -> list[BreakdownRow]:
        return self.reputation.reputation_breakdown(agent_id)

    def reputation_rank(self, agent_id: str) -> int:
        return self.reputation.reputation_rank(agent_id)

    def badges(self, agent_id: str) -> list[Badge]:
        return self.reputation.badges(agent_id)

    def recompute_reputation(self, agent_id: str) -> float:
        return self.reputation.recompute_reputation(agent_id)

    # --- reviews ----------------------------------------------------------------------------

    @_translate_validation
    def submit_review(
        self,
        agent_id: str,
        task_id: str,
        rating: int,
        comment: str | None = None,
    ) -> Review:
        return self.reviews.submit_review(agent_id, task_id, rating, comment)

    def reviews_for(self, agent_id: str, review_type: ReviewType | str | None = None) -> list[Review]:
        return self.reviews.reviews_for(agent_id, review_type)

    def pending_reviews(self, agent_id: str) -> list[PendingReview]:
        return self.reviews.pending_reviews(agent_id)

    # --- integrity ----------------------------------------------------------------------------

    def audit(self) -> AuditReport:
        return audit_store(self.store, policy=self.policy)
