"""Task lifecycle: posting, claiming, submission, validation and withdrawal.

    open ──claim──▶ claimed ──submit──▶ submitted ──approve──▶ completed
     │  ◀──abandon──┘                      │  │                   │
     │  ◀──────────────reject──────────────┘  └──▶ disputed ◀─────┘
     └──cancel──▶ cancelled                        │
                                                   └──▶ completed | cancelled

Disputes drive the transitions into and out of `disputed` (see disputes.py);
everything else lives here.
"""

from __future__ import annotations

from datetime import datetime

from agent_market.accounting import EscrowAccountant
from agent_market.config import MarketPolicy
from agent_market.errors import Conflict, Forbidden, InsufficientCredits, InvalidInput, InvalidState, NotFound
from agent_market.logging_config import get_logger
from agent_market.notifications import NotificationSink, NullSink, dispatch, make_notification
from agent_market.reputation import ReputationLedger
from agent_market.sanitize import clean_optional_text, clean_skills, clean_text, is_http_url, require_int
from agent_market.schemas import (
    EventType,
    ProofKind,
    ReputationEvent,
    ReputationEventType,
    Task,
    TaskLogEntry,
    TaskStatus,
    TransactionType,
    ValidationOutcome,
    new_id,
    utcnow,
)
from agent_market.state import agent_key, task_key
from agent_market.store import LedgerStore, UnitOfWork

logger = get_logger(__name__)

# Valid transitions: {from_status: {allowed_to_statuses}}
_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.OPEN: {TaskStatus.CLAIMED, TaskStatus.CANCELLED},
    TaskStatus.CLAIMED: {TaskStatus.SUBMITTED, TaskStatus.OPEN},
    TaskStatus.SUBMITTED: {TaskStatus.COMPLETED, TaskStatus.OPEN, TaskStatus.DISPUTED},
    TaskStatus.COMPLETED: {TaskStatus.DISPUTED},
    TaskStatus.DISPUTED: {TaskStatus.COMPLETED, TaskStatus.CANCELLED},
    TaskStatus.CANCELLED: set(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in _TRANSITIONS.get(current, set())


def transition(task: Task, target: TaskStatus) -> None:
    """Move `task` to `target` in place, or raise InvalidState."""
    if not can_transition(task.status, target):
        allowed = ", ".join(sorted(s.value for s in _TRANSITIONS.get(task.status, set())))
        raise InvalidState(
            f"cannot move task from {task.status.value} to {target.value}",
            task_id=task.id,
            status=task.status.value,
            allowed=allowed,
        )
    task.status = target


def log_task_event(
    uow: UnitOfWork,
    task_id: str,
    actor_id: str | None,
    action: str,
    detail: str | None = None,
) -> TaskLogEntry:
    entry = TaskLogEntry(
        id=new_id("log"),
        task_id=task_id,
        actor_id=actor_id,
        action=action,
        detail=detail,
    )
    uow.append("task_logs", entry)
    return entry


def locked_task(uow: UnitOfWork, task_id: str, *, worker_id: str | None) -> Task:
    """Re-read a task under its lock and check its worker is the one the caller locked."""
    task = uow.task(task_id)
    if task is None:
        raise NotFound("task not found", task_id=task_id)
    if task.worker_id != worker_id:
        raise Conflict("task changed concurrently", task_id=task_id)
    return task


class TaskLifecycle:
    def __init__(
        self,
        store: LedgerStore,
        accountant: EscrowAccountant,
        reputation: ReputationLedger,
        *,
        policy: MarketPolicy | None = None,
        sink: NotificationSink | None = None,
    ) -> None:
        self._store = store
        self._accountant = accountant
        self._reputation = reputation
        self._policy = policy or MarketPolicy()
        self._sink: NotificationSink = sink or NullSink()

    def _require_task(self, task_id: str) -> Task:
        task = self._store.task(task_id)
        if task is None:
            raise NotFound("task not found", task_id=task_id)
        return task

    def _require_agent_exists(self, agent_id: str) -> None:
        if self._store.agent(agent_id) is None:
            raise NotFound("agent not found", agent_id=agent_id)

    # --- operations -------------------------------------------------------------

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
        p = self._policy
        title = clean_text(title, field="title", max_len=p.max_title_len)
        description = clean_text(description, field="description", max_len=p.max_description_len)
        reward = require_int(reward, field="reward", minimum=1)
        required_skills = clean_skills(skills, max_len=p.max_skill_len, max_count=p.max_skills)
        try:
            proof_kind = ProofKind(proof_kind)
        except ValueError as exc:
            raise InvalidInput("unknown proof kind", proof_kind=str(proof_kind)) from exc

        task_id = new_id("task")
        with self._store.unit_of_work(
            EventType.TASK_CREATED, task_key(task_id), agent_key(requester_id)
        ) as uow:
            requester = uow.agent(requester_id)
            if requester is None:
                raise NotFound("agent not found", agent_id=requester_id)
            if requester.credits < reward:
                raise InsufficientCredits(
                    "insufficient credits",
                    agent_id=requester_id,
                    available=requester.credits,
                    required=reward,
                )
            self._accountant.record_transaction(
                uow,
                requester_id,
                TransactionType.TASK_ESCROW,
                -reward,
                f"Escrowed for task: {title}",
                related_task_id=task_id,
            )
            requester = uow.agent(requester_id)
            assert requester is not None
            requester.tasks_posted += 1
            uow.put_agent(requester)

            task = Task(
                id=task_id,
                requester_id=requester_id,
                title=title,
                description=description,
                reward=reward,
                required_skills=required_skills,
                proof_kind=proof_kind,
                deadline=deadline,
            )
            uow.put_task(task)
            log_task_event(uow, task_id, requester_id, "created", f"Reward: {reward} credits")
            self._reputation.award_badges(uow, requester_id)

        logger.info("task_created", task_id=task_id, requester_id=requester_id, reward=reward)
        dispatch(self._sink, uow.notifications)
        return task

    def claim_task(self, agent_id: str, task_id: str) -> Task:
        task = self._require_task(task_id)
        agent = self._store.agent(agent_id)
        if agent is None:
            raise NotFound("agent not found", agent_id=agent_id)
        if agent_id == task.requester_id:
            raise Forbidden("cannot claim your own task", task_id=task_id)
        if task.status == TaskStatus.CLAIMED and task.worker_id != agent_id:
            raise Conflict("task was claimed by another agent", task_id=task_id)
        if task.status != TaskStatus.OPEN:
            raise InvalidState("task is not open", task_id=task_id, status=task.status.value)

        claimed = self._store.compare_and_set(
            EventType.TASK_CLAIMED,
            task_key(task_id),
            expected={"status": TaskStatus.OPEN},
            changes={"status": TaskStatus.CLAIMED, "worker_id": agent_id, "claimed_at": utcnow()},
            rows=[
                (
                    "task_logs",
                    TaskLogEntry(id=new_id("log"), task_id=task_id, actor_id=agent_id, action="claimed"),
                )
            ],
        )
        current = self._require_task(task_id)
        if not claimed or current.worker_id != agent_id or current.status != TaskStatus.CLAIMED:
            logger.info("claim_conflict", task_id=task_id, agent_id=agent_id)
            raise Conflict("task was claimed by another agent", task_id=task_id)

        logger.info("task_claimed", task_id=task_id, worker_id=agent_id)
        dispatch(
            self._sink,
            [
                make_notification(
                    task.requester_id,
                    "task_claimed",
                    "Task Claimed",
                    f'Your task "{task.title}" has been claimed by {agent.name}',
                    task_id=task_id,
                    worker_id=agent_id,
                )
            ],
        )
        return current

    def submit_work(self, agent_id: str, task_id: str, proof: str) -> Task:
        proof = clean_text(proof, field="proof", max_len=self._policy.max_proof_len)

        with self._store.unit_of_work(EventType.WORK_SUBMITTED, task_key(task_id)) as uow:
            task = uow.task(task_id)
            if task is None:
                raise NotFound("task not found", task_id=task_id)
            if task.worker_id != agent_id:
                raise Forbidden("you are not the worker for this task", task_id=task_id)
            if task.status != TaskStatus.CLAIMED:
                raise InvalidState("task is not in claimed status", task_id=task_id, status=task.status.value)
            if task.proof_kind == ProofKind.URL and not is_http_url(proof):
                raise InvalidInput("proof must be an http(s) URL", field="proof")

            transition(task, TaskStatus.SUBMITTED)
            task.proof = proof
            task.submitted_at = utcnow()
            uow.put_task(task)
            log_task_event(uow, task_id, agent_id, "submitted", proof[:200])
            uow.notify(
                make_notification(
                    task.requester_id,
                    "work_submitted",
                    "Work Submitted",
                    f'Work was submitted for your task "{task.title}"',
                    task_id=task_id,
                )
            )

        logger.info("work_submitted", task_id=task_id, worker_id=agent_id)
        dispatch(self._sink, uow.notifications)
        return task

    def validate_work(
        self,
        agent_id: str,
        task_id: str,
        approved: bool,
        reason: str | None = None,
    ) -> ValidationOutcome:
        if not isinstance(approved, bool):
            raise InvalidInput("approved must be a boolean", field="approved")
        reason = clean_optional_text(reason, field="reason", max_len=self._policy.max_reason_len)

        seen = self._require_task(task_id)
        if seen.requester_id != agent_id:
            raise Forbidden("only the requester can validate", task_id=task_id)
        if seen.status != TaskStatus.SUBMITTED or seen.worker_id is None:
            raise InvalidState("task is not in submitted status", task_id=task_id, status=seen.status.value)
        worker_id = seen.worker_id

        action = EventType.WORK_APPROVED if approved else EventType.WORK_REJECTED
        keys = (task_key(task_id), agent_key(seen.requester_id), agent_key(worker_id))
        with self._store.unit_of_work(action, *keys) as uow:
            task = locked_task(uow, task_id, worker_id=worker_id)
            if task.status != TaskStatus.SUBMITTED:
                raise InvalidState("task is not in submitted status", task_id=task_id, status=task.status.value)
            if approved:
                events = self._approve(uow, task, reason)
                reward_paid = task.reward
            else:
                events = self._reject(uow, task, reason)
                reward_paid = 0

        logger.info(
            "work_approved" if approved else "work_rejected",
            task_id=task_id,
            worker_id=worker_id,
            reward_paid=reward_paid,
        )
        dispatch(self._sink, uow.notifications)
        return ValidationOutcome(
            task=task,
            approved=approved,
            reward_paid=reward_paid,
            reputation_events=events,
        )

    def _approve(self, uow: UnitOfWork, task: Task, reason: str | None) -> list[ReputationEvent]:
        worker_id = task.worker_id
        assert worker_id is not None
        self._accountant.record_transaction(
            uow,
            worker_id,
            TransactionType.TASK_PAYMENT,
            task.reward,
            f"Payment for task: {task.title}",
            related_task_id=task.id,
            related_agent_id=task.requester_id,
        )
        worker = uow.agent(worker_id)
        assert worker is not None
        worker.tasks_completed += 1
        uow.put_agent(worker)

        transition(task, TaskStatus.COMPLETED)
        task.worker_paid = task.reward
        task.completed_at = utcnow()
        uow.put_task(task)
        log_task_event(uow, task.id, task.requester_id, "approved", reason or "Work accepted")

        events = [
            self._reputation.apply_event(
                uow,
                worker_id,
                ReputationEventType.TASK_COMPLETED,
                related_task_id=task.id,
                related_agent_id=task.requester_id,
            )
        ]
        if task.reward >= self._policy.high_value_reward:
            events.append(
                self._reputation.apply_event(
                    uow,
                    worker_id,
                    ReputationEventType.HIGH_VALUE_TASK,
                    reason=f"Completed high-value task ({task.reward} credits)",
                    related_task_id=task.id,
                )
            )
        if worker.tasks_completed == 1:
            events.append(
                self._reputation.apply_event(
                    uow, worker_id, ReputationEventType.FIRST_TASK, related_task_id=task.id
                )
            )
        uow.notify(
            make_notification(
                worker_id,
                "payment",
                "Payment Received",
                f'You earned {task.reward} credits for completing "{task.title}"',
                task_id=task.id,
                amount=task.reward,
            )
        )
        return events

    def _reject(self, uow: UnitOfWork, task: Task, reason: str | None) -> list[ReputationEvent]:
        worker_id = task.worker_id
        assert worker_id is not None
        # Release and immediately re-escrow: the reward stays held for the next claimer.
        self._accountant.record_transaction(
            uow,
            task.requester_id,
            TransactionType.ESCROW_RELEASE,
            task.reward,
            f"Escrow released on rejection: {task.title}",
            related_task_id=task.id,
            related_agent_id=worker_id,
        )
        self._accountant.record_transaction(
            uow,
            task.requester_id,
            TransactionType.TASK_ESCROW,
            -task.reward,
            f"Re-escrowed for reopened task: {task.title}",
            related_task_id=task.id,
        )
        worker = uow.agent(worker_id)
        assert worker is not None
        worker.tasks_failed += 1
        uow.put_agent(worker)

        transition(task, TaskStatus.OPEN)
        task.worker_id = None
        task.claimed_at = None
        task.submitted_at = None
        task.proof = None
        uow.put_task(task)
        log_task_event(uow, task.id, task.requester_id, "rejected", reason or "Work rejected")

        event = self._reputation.apply_event(
            uow,
            worker_id,
            ReputationEventType.TASK_REJECTED,
            reason=reason or "Work rejected",
            related_task_id=task.id,
            related_agent_id=task.requester_id,
        )
        uow.notify(
            make_notification(
                worker_id,
                "rejection",
                "Work Rejected",
                f'Your work on "{task.title}" was rejected: {reason or "No reason provided"}',
                task_id=task.id,
                reason=reason,
            )
        )
        return [event]

    def abandon_task(self, agent_id: str, task_id: str) -> Task:
        seen = self._require_task(task_id)
        if seen.worker_id != agent_id:
            raise Forbidden("you are not the worker for this task", task_id=task_id)

        with self._store.unit_of_work(
            EventType.TASK_ABANDONED, task_key(task_id), agent_key(agent_id)
        ) as uow:
            task = locked_task(uow, task_id, worker_id=agent_id)
            if task.status != TaskStatus.CLAIMED:
                raise InvalidState("can only abandon claimed tasks", task_id=task_id, status=task.status.value)
            transition(task, TaskStatus.OPEN)
            task.worker_id = None
            task.claimed_at = None
            uow.put_task(task)
            log_task_event(uow, task_id, agent_id, "abandoned")
            self._reputation.apply_event(
                uow,
                agent_id,
                ReputationEventType.TASK_ABANDONED,
                related_task_id=task_id,
                related_agent_id=task.requester_id,
            )
            uow.notify(
                make_notification(
                    task.requester_id,
                    "task_abandoned",
                    "Task Abandoned",
                    f'Your task "{task.title}" was abandoned and is open again',
                    task_id=task_id,
                )
            )

        logger.info("task_abandoned", task_id=task_id, worker_id=agent_id)
        dispatch(self._sink, uow.notifications)
        return task

    def cancel_task(self, agent_id: str, task_id: str) -> Task:
        seen = self._require_task(task_id)
        if seen.requester_id != agent_id:
            raise Forbidden("only the requester can cancel", task_id=task_id)

        with self._store.unit_of_work(
            EventType.TASK_CANCELLED, task_key(task_id), agent_key(agent_id)
        ) as uow:
            task = uow.task(task_id)
            assert task is not None
            if task.status != TaskStatus.OPEN:
                raise InvalidState("can only cancel open tasks", task_id=task_id, status=task.status.value)
            self._accountant.record_transaction(
                uow,
                agent_id,
                TransactionType.REFUND,
                task.reward,
                f"Refund for cancelled task: {task.title}",
                related_task_id=task_id,
            )
            transition(task, TaskStatus.CANCELLED)
            task.requester_refunded = task.reward
            uow.put_task(task)
            log_task_event(uow, task_id, agent_id, "cancelled")

        logger.info("task_cancelled", task_id=task_id, requester_id=agent_id, refunded=task.reward)
        dispatch(self._sink, uow.notifications)
        return task

    # --- reads --------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task:
        return self._require_task(task_id)

    def task_history(self, task_id: str) -> list[TaskLogEntry]:
        self._require_task(task_id)
        return [e for e in self._store.rows("task_logs", task_id) if isinstance(e, TaskLogEntry)]

    def list_tasks(
        self,
        status: TaskStatus | str | None = None,
        requester_id: str | None = None,
        worker_id: str | None = None,
    ) -> list[Task]:
        if status is not None:
            try:
                status = TaskStatus(status)
            except ValueError as exc:
                raise InvalidInput("unknown task status", status=str(status)) from exc
        tasks = [
            t
            for t in self._store.tasks()
            if (status is None or t.status == status)
            and (requester_id is None or t.requester_id == requester_id)
            and (worker_id is None or t.worker_id == worker_id)
        ]
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return tasks
