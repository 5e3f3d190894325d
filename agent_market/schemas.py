from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class EventType(str, Enum):
    """Journal event kinds: one per committed unit of work."""

    AGENT_REGISTERED = "agent_registered"

    TASK_CREATED = "task_created"
    TASK_CLAIMED = "task_claimed"
    WORK_SUBMITTED = "work_submitted"
    WORK_APPROVED = "work_approved"
    WORK_REJECTED = "work_rejected"
    TASK_ABANDONED = "task_abandoned"
    TASK_CANCELLED = "task_cancelled"

    DISPUTE_RAISED = "dispute_raised"
    EVIDENCE_ADDED = "evidence_added"
    DISPUTE_RESOLVED = "dispute_resolved"

    CREDITS_TRANSFERRED = "credits_transferred"
    REPUTATION_RECORDED = "reputation_recorded"
    BADGES_AWARDED = "badges_awarded"
    REVIEW_SUBMITTED = "review_submitted"


class TaskStatus(str, Enum):
    OPEN = "open"
    CLAIMED = "claimed"
    SUBMITTED = "submitted"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class ProofKind(str, Enum):
    TEXT = "text"
    URL = "url"
    FILE = "file"


class TransactionType(str, Enum):
    TASK_ESCROW = "task_escrow"
    TASK_PAYMENT = "task_payment"
    TASK_PAYMENT_PARTIAL = "task_payment_partial"
    ESCROW_RELEASE = "escrow_release"
    REFUND = "refund"
    REFUND_PARTIAL = "refund_partial"
    DISPUTE_HOLD = "dispute_hold"
    ARBITRATION_REWARD = "arbitration_reward"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"


# Credits minted by the system rather than moved between agents or escrow.
SUBSIDY_TRANSACTION_TYPES = frozenset({TransactionType.ARBITRATION_REWARD})


class DisputeStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class ReputationEventType(str, Enum):
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_COMPLETED_EARLY = "TASK_COMPLETED_EARLY"
    FIRST_TASK = "FIRST_TASK"
    EXCELLENT_REVIEW = "EXCELLENT_REVIEW"
    GOOD_REVIEW = "GOOD_REVIEW"
    POOR_REVIEW = "POOR_REVIEW"
    SKILL_ENDORSED = "SKILL_ENDORSED"
    TASK_ABANDONED = "TASK_ABANDONED"
    TASK_REJECTED = "TASK_REJECTED"
    DISPUTE_WON = "DISPUTE_WON"
    DISPUTE_LOST = "DISPUTE_LOST"
    HIGH_VALUE_TASK = "HIGH_VALUE_TASK"
    TASK_STREAK_5 = "TASK_STREAK_5"
    TASK_STREAK_10 = "TASK_STREAK_10"
    DEADLINE_MISSED = "DEADLINE_MISSED"
    INACTIVE_CLAIM = "INACTIVE_CLAIM"


class ReviewType(str, Enum):
    AS_WORKER = "as_worker"
    AS_REQUESTER = "as_requester"


class Agent(BaseModel):
    id: str
    name: str
    credits: int = Field(ge=0)
    initial_credits: int = Field(ge=0)
    reputation: float = Field(default=50.0, ge=0.0, le=100.0)
    skills: list[str] = Field(default_factory=list)

    tasks_completed: int = Field(default=0, ge=0)
    tasks_posted: int = Field(default=0, ge=0)
    tasks_failed: int = Field(default=0, ge=0)
    reviews_given: int = Field(default=0, ge=0)
    positive_reviews: int = Field(default=0, ge=0)
    endorsements_received: int = Field(default=0, ge=0)

    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("name")
    @classmethod
    def _non_empty_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name must be a non-empty string")
        return v.strip()


class Task(BaseModel):
    id: str
    requester_id: str
    worker_id: str | None = None
    title: str
    description: str
    reward: int = Field(ge=1)
    required_skills: list[str] = Field(default_factory=list)
    proof_kind: ProofKind = ProofKind.TEXT
    deadline: datetime | None = None
    status: TaskStatus = TaskStatus.OPEN
    proof: str | None = None

    # Credits already released from escrow to each party.
    worker_paid: int = Field(default=0, ge=0)
    requester_refunded: int = Field(default=0, ge=0)

    created_at: datetime = Field(default_factory=utcnow)
    claimed_at: datetime | None = None
    submitted_at: datetime | None = None
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def _worker_matches_status(self) -> "Task":
        if self.status == TaskStatus.OPEN and self.worker_id is not None:
            raise ValueError("open task cannot have a worker")
        if (
            self.status in (TaskStatus.CLAIMED, TaskStatus.SUBMITTED, TaskStatus.DISPUTED)
            and self.worker_id is None
        ):
            raise ValueError(f"{self.status.value} task requires a worker")
        return self

    @property
    def escrowed(self) -> int:
        if self.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
            return 0
        return self.reward - self.worker_paid - self.requester_refunded

    def is_party(self, agent_id: str) -> bool:
        return agent_id in (self.requester_id, self.worker_id)


class TaskLogEntry(BaseModel):
    id: str
    task_id: str
    actor_id: str | None = None
    action: str
    detail: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Transaction(BaseModel):
    id: str
    agent_id: str
    type: TransactionType
    amount: int
    balance_after: int = Field(ge=0)
    description: str
    related_task_id: str | None = None
    related_agent_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class EvidenceEntry(BaseModel):
    agent_id: str
    text: str
    created_at: datetime = Field(default_factory=utcnow)


class Dispute(BaseModel):
    id: str
    task_id: str
    raised_by: str
    reason: str
    evidence: list[EvidenceEntry] = Field(default_factory=list)
    status: DisputeStatus = DisputeStatus.OPEN
    prior_task_status: TaskStatus
    decision: str | None = None
    resolution: str | None = None
    resolved_by: str | None = None
    arbitrated: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: datetime | None = None


class ReputationEvent(BaseModel):
    id: str
    agent_id: str
    event_type: ReputationEventType
    points: float
    reason: str
    related_task_id: str | None = None
    related_agent_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Badge(BaseModel):
    agent_id: str
    badge_type: str
    name: str
    description: str
    awarded_at: datetime = Field(default_factory=utcnow)


class Review(BaseModel):
    id: str
    task_id: str
    reviewer_id: str
    reviewee_id: str
    rating: int = Field(ge=1, le=5)
    comment: str | None = None
    review_type: ReviewType
    created_at: datetime = Field(default_factory=utcnow)


class Notification(BaseModel):
    agent_id: str
    type: str
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class LedgerEvent(BaseModel):
    schema_version: int = Field(default=1, ge=1)
    event_id: str
    prev_hash: str | None = None
    hash: str
    ts: datetime
    type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)


# --- dispute decisions ---------------------------------------------------


class FavorWorker(BaseModel):
    kind: Literal["favor_worker"] = "favor_worker"


class FavorRequester(BaseModel):
    kind: Literal["favor_requester"] = "favor_requester"


class Split(BaseModel):
    kind: Literal["split"] = "split"


class Cancel(BaseModel):
    kind: Literal["cancel"] = "cancel"


Decision = FavorWorker | FavorRequester | Split | Cancel


# --- operation results ---------------------------------------------------


class TransferResult(BaseModel):
    from_agent_id: str
    to_agent_id: str
    amount: int
    memo: str | None = None
    sender_balance: int
    recipient_balance: int
    transaction_ids: list[str] = Field(default_factory=list)


class TransactionSummary(BaseModel):
    total_earned: int = 0
    total_spent: int = 0
    net_earnings: int = 0
    transaction_count: int = 0


class TransactionPage(BaseModel):
    transactions: list[Transaction] = Field(default_factory=list)
    total: int = 0
    limit: int
    offset: int
    summary: TransactionSummary = Field(default_factory=TransactionSummary)


class TrustScore(BaseModel):
    agent_id: str
    trust_score: float
    reputation: float
    completion_rate: float
    tasks_completed: int
    tasks_failed: int


class BreakdownRow(BaseModel):
    event_type: ReputationEventType
    total_points: float
    count: int


class ResolutionResult(BaseModel):
    dispute: Dispute
    task: Task
    arbitration_fee: int = 0


class PendingReview(BaseModel):
    task_id: str
    task_title: str
    reviewee_id: str
    review_type: ReviewType
    completed_at: datetime | None = None


class ValidationOutcome(BaseModel):
    task: Task
    approved: bool
    reward_paid: int = Field(default=0, ge=0)
    reputation_events: list[ReputationEvent] = Field(default_factory=list)
