from __future__ import annotations

import math
from typing import Any, assert_never

from agent_market.accounting import EscrowAccountant
from agent_market.config import MarketPolicy
from agent_market.errors import Conflict, Forbidden, InvalidInput, InvalidState, NotFound
from agent_market.lifecycle import locked_task, log_task_event, transition
from agent_market.logging_config import get_logger
from agent_market.notifications import NotificationSink, NullSink, dispatch, make_notification
from agent_market.reputation import ReputationLedger
from agent_market.sanitize import clean_optional_text, clean_text
from agent_market.schemas import (
    Cancel,
    Decision,
    Dispute,
    DisputeStatus,
    EventType,
    EvidenceEntry,
    FavorRequester,
    FavorWorker,
    ResolutionResult,
    ReputationEventType,
    Split,
    Task,
    TaskStatus,
    TransactionType,
    new_id,
    utcnow,
)
from agent_market.state import agent_key, dispute_key, task_key
from agent_market.store import LedgerStore, UnitOfWork

logger = get_logger(__name__)

_DECISIONS: dict[str, type[FavorWorker | FavorRequester | Split | Cancel]] = {
    "favor_worker": FavorWorker,
    "favor_requester": FavorRequester,
    "split": Split,
    "cancel": Cancel,
}


def parse_decision(raw: Decision | str | dict[str, Any]) -> Decision:
    if isinstance(raw, (FavorWorker, FavorRequester, Split, Cancel)):
        return raw
    kind = raw.get("kind") if isinstance(raw, dict) else raw
    model = _DECISIONS.get(str(kind).strip().lower()) if kind is not None else None
    if model is None:
        raise InvalidInput(
            "decision must be one of: " + ", ".join(_DECISIONS),
            decision=str(kind),
        )
    return model()


def arbitration_fee(reward: int, *, policy: MarketPolicy) -> int:
    return min(policy.arbitration_fee_cap, math.floor(reward * policy.arbitration_fee_rate))


class DisputeResolver:
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

    def raise_dispute(
        self,
        agent_id: str,
        task_id: str,
        reason: str,
        evidence: str | None = None,
    ) -> Dispute:
        p = self._policy
        reason = clean_text(reason, field="reason", max_len=p.max_reason_len)
        evidence = clean_optional_text(evidence, field="evidence", max_len=p.max_evidence_len)

        seen = self._store.task(task_id)
        if seen is None:
            raise NotFound("task not found", task_id=task_id)
        if not seen.is_party(agent_id):
            raise Forbidden("you are not involved in this task", task_id=task_id)
        # An open dispute has already moved the task to disputed.
        self._refuse_second_dispute(task_id)
        if seen.status not in (TaskStatus.SUBMITTED, TaskStatus.COMPLETED):
            raise InvalidState(
                "can only dispute submitted or completed tasks",
                task_id=task_id,
                status=seen.status.value,
            )
        worker_id = seen.worker_id
        assert worker_id is not None

        dispute_id = new_id("disp")
        keys = (
            task_key(task_id),
            dispute_key(dispute_id),
            agent_key(seen.requester_id),
            agent_key(worker_id),
        )
        with self._store.unit_of_work(EventType.DISPUTE_RAISED, *keys) as uow:
            task = locked_task(uow, task_id, worker_id=worker_id)
            self._refuse_second_dispute(task_id)
            prior_status = task.status
            if prior_status not in (TaskStatus.SUBMITTED, TaskStatus.COMPLETED):
                raise InvalidState(
                    "can only dispute submitted or completed tasks",
                    task_id=task_id,
                    status=prior_status.value,
                )
            if prior_status == TaskStatus.COMPLETED:
                self._rehold_released(uow, task)

            transition(task, TaskStatus.DISPUTED)
            uow.put_task(task)

            dispute = Dispute(
                id=dispute_id,
                task_id=task_id,
                raised_by=agent_id,
                reason=reason,
                evidence=[EvidenceEntry(agent_id=agent_id, text=evidence)] if evidence else [],
                prior_task_status=prior_status,
            )
            uow.put_dispute(dispute)
            log_task_event(uow, task_id, agent_id, "disputed", reason[:200])

            other = task.requester_id if agent_id == worker_id else worker_id
            uow.notify(
                make_notification(
                    other,
                    "dispute",
                    "Dispute Raised",
                    f'A dispute has been raised for task "{task.title}"',
                    dispute_id=dispute_id,
                    task_id=task_id,
                )
            )

        logger.info(
            "dispute_raised",
            dispute_id=dispute_id,
            task_id=task_id,
            raised_by=agent_id,
            prior_status=prior_status.value,
        )
        dispatch(self._sink, uow.notifications)
        return dispute

    def _refuse_second_dispute(self, task_id: str) -> None:
        for existing in self._store.disputes_for_task(task_id):
            if existing.status == DisputeStatus.OPEN:
                raise Conflict(
                    "an open dispute already exists for this task",
                    dispute_id=existing.id,
                )

    def _rehold_released(self, uow: UnitOfWork, task: Task) -> None:
        # Pull already-released credits back so the full reward sits in escrow again.
        if task.worker_paid and task.worker_id is not None:
            self._accountant.record_transaction(
                uow,
                task.worker_id,
                TransactionType.DISPUTE_HOLD,
                -task.worker_paid,
                f"Held pending dispute: {task.title}",
                related_task_id=task.id,
            )
        if task.requester_refunded:
            self._accountant.record_transaction(
                uow,
                task.requester_id,
                TransactionType.DISPUTE_HOLD,
                -task.requester_refunded,
                f"Held pending dispute: {task.title}",
                related_task_id=task.id,
            )
        task.worker_paid = 0
        task.requester_refunded = 0

    def add_evidence(self, agent_id: str, dispute_id: str, text: str) -> Dispute:
        text = clean_text(text, field="evidence", max_len=self._policy.max_evidence_len)

        with self._store.unit_of_work(EventType.EVIDENCE_ADDED, dispute_key(dispute_id)) as uow:
            dispute = uow.dispute(dispute_id)
            if dispute is None:
                raise NotFound("dispute not found", dispute_id=dispute_id)
            if dispute.status != DisputeStatus.OPEN:
                raise InvalidState("dispute is not open", dispute_id=dispute_id)
            task = self._store.task(dispute.task_id)
            assert task is not None
            if agent_id != dispute.raised_by and not task.is_party(agent_id):
                raise Forbidden("you are not involved in this dispute", dispute_id=dispute_id)
            dispute.evidence.append(EvidenceEntry(agent_id=agent_id, text=text))
            uow.put_dispute(dispute)

        logger.info(
            "evidence_added",
            dispute_id=dispute_id,
            agent_id=agent_id,
            evidence_count=len(dispute.evidence),
        )
        return dispute

    def resolve_dispute(
        self,
        agent_id: str,
        dispute_id: str,
        decision: Decision | str,
        resolution: str | None = None,
    ) -> ResolutionResult:
        decision = parse_decision(decision)
        resolution = clean_optional_text(
            resolution, field="resolution", max_len=self._policy.max_reason_len
        )

        seen = self._store.dispute(dispute_id)
        if seen is None:
            raise NotFound("dispute not found", dispute_id=dispute_id)
        seen_task = self._store.task(seen.task_id)
        assert seen_task is not None and seen_task.worker_id is not None
        worker_id = seen_task.worker_id
        requester_id = seen_task.requester_id

        keys = (
            dispute_key(dispute_id),
            task_key(seen.task_id),
            agent_key(requester_id),
            agent_key(worker_id),
            agent_key(agent_id),
        )
        with self._store.unit_of_work(EventType.DISPUTE_RESOLVED, *keys) as uow:
            dispute = uow.dispute(dispute_id)
            assert dispute is not None
            if dispute.status != DisputeStatus.OPEN:
                raise InvalidState("dispute is not open", dispute_id=dispute_id)
            resolver = uow.agent(agent_id)
            if resolver is None:
                raise NotFound("agent not found", agent_id=agent_id)

            involved = agent_id in (dispute.raised_by, requester_id, worker_id)
            arbitrated = not involved and resolver.reputation >= self._policy.arbitrator_min_reputation
            if not involved and not arbitrated:
                raise Forbidden(
                    "only involved parties or high-reputation arbitrators can resolve disputes",
                    dispute_id=dispute_id,
                    reputation=resolver.reputation,
                )

            task = locked_task(uow, dispute.task_id, worker_id=worker_id)
            if task.status != TaskStatus.DISPUTED:
                raise InvalidState("task is not disputed", task_id=task.id, status=task.status.value)

            self._apply_decision(uow, decision, dispute, task)

            fee = 0
            if arbitrated:
                fee = arbitration_fee(task.reward, policy=self._policy)
                if fee > 0:
                    self._accountant.record_transaction(
                        uow,
                        agent_id,
                        TransactionType.ARBITRATION_REWARD,
                        fee,
                        f"Arbitration reward: {task.title}",
                        related_task_id=task.id,
                    )

            dispute.status = DisputeStatus.RESOLVED
            dispute.decision = decision.kind
            dispute.resolution = resolution or decision.kind
            dispute.resolved_by = agent_id
            dispute.arbitrated = arbitrated
            dispute.resolved_at = utcnow()
            uow.put_dispute(dispute)
            uow.put_task(task)
            log_task_event(uow, task.id, agent_id, "dispute_resolved", decision.kind)

            for party in (requester_id, worker_id):
                uow.notify(
                    make_notification(
                        party,
                        "dispute_resolved",
                        "Dispute Resolved",
                        f'The dispute for "{task.title}" has been resolved: {decision.kind}',
                        dispute_id=dispute_id,
                        decision=decision.kind,
                    )
                )

        logger.info(
            "dispute_resolved",
            dispute_id=dispute_id,
            task_id=task.id,
            decision=decision.kind,
            resolved_by=agent_id,
            arbitration_fee=fee,
        )
        dispatch(self._sink, uow.notifications)
        return ResolutionResult(dispute=dispute, task=task, arbitration_fee=fee)

    def _apply_decision(
        self,
        uow: UnitOfWork,
        decision: Decision,
        dispute: Dispute,
        task: Task,
    ) -> None:
        worker_id = task.worker_id
        assert worker_id is not None
        requester_id = task.requester_id
        reward = task.reward

        if isinstance(decision, FavorWorker):
            self._accountant.record_transaction(
                uow,
                worker_id,
                TransactionType.TASK_PAYMENT,
                reward,
                f"Task completed (after dispute): {task.title}",
                related_task_id=task.id,
                related_agent_id=requester_id,
            )
            if dispute.prior_task_status == TaskStatus.SUBMITTED:
                worker = uow.agent(worker_id)
                assert worker is not None
                worker.tasks_completed += 1
                uow.put_agent(worker)
            task.worker_paid = reward
            transition(task, TaskStatus.COMPLETED)
            task.completed_at = task.completed_at or utcnow()
            self._reputation.apply_event(
                uow, worker_id, ReputationEventType.DISPUTE_WON, related_task_id=task.id
            )
            self._reputation.apply_event(
                uow, requester_id, ReputationEventType.DISPUTE_LOST, related_task_id=task.id
            )
        elif isinstance(decision, FavorRequester):
            self._accountant.record_transaction(
                uow,
                requester_id,
                TransactionType.REFUND,
                reward,
                f"Refund (dispute won): {task.title}",
                related_task_id=task.id,
            )
            worker = uow.agent(worker_id)
            assert worker is not None
            worker.tasks_failed += 1
            uow.put_agent(worker)
            task.requester_refunded = reward
            transition(task, TaskStatus.CANCELLED)
            self._reputation.apply_event(
                uow, requester_id, ReputationEventType.DISPUTE_WON, related_task_id=task.id
            )
            self._reputation.apply_event(
                uow, worker_id, ReputationEventType.DISPUTE_LOST, related_task_id=task.id
            )
        elif isinstance(decision, Split):
            half = reward // 2
            if half > 0:
                self._accountant.record_transaction(
                    uow,
                    requester_id,
                    TransactionType.REFUND_PARTIAL,
                    half,
                    f"Partial refund (dispute split): {task.title}",
                    related_task_id=task.id,
                )
            self._accountant.record_transaction(
                uow,
                worker_id,
                TransactionType.TASK_PAYMENT_PARTIAL,
                reward - half,
                f"Partial payment (dispute split): {task.title}",
                related_task_id=task.id,
                related_agent_id=requester_id,
            )
            task.requester_refunded = half
            task.worker_paid = reward - half
            transition(task, TaskStatus.COMPLETED)
            task.completed_at = task.completed_at or utcnow()
        elif isinstance(decision, Cancel):
            self._accountant.record_transaction(
                uow,
                requester_id,
                TransactionType.REFUND,
                reward,
                f"Refund (dispute cancelled): {task.title}",
                related_task_id=task.id,
            )
            task.requester_refunded = reward
            transition(task, TaskStatus.CANCELLED)
        else:
            assert_never(decision)

    # --- reads ------------------------------------------------------------------

    def get_dispute(self, dispute_id: str) -> Dispute:
        dispute = self._store.dispute(dispute_id)
        if dispute is None:
            raise NotFound("dispute not found", dispute_id=dispute_id)
        return dispute

    def list_disputes(
        self,
        status: DisputeStatus | str | None = None,
        agent_id: str | None = None,
    ) -> list[Dispute]:
        if status is not None:
            try:
                status = DisputeStatus(status)
            except ValueError as exc:
                raise InvalidInput("unknown dispute status", status=str(status)) from exc

        out: list[Dispute] = []
        for dispute in self._store.disputes():
            if status is not None and dispute.status != status:
                continue
            if agent_id is not None and agent_id != dispute.raised_by:
                task = self._store.task(dispute.task_id)
                if task is None or not task.is_party(agent_id):
                    continue
            out.append(dispute)
        out.sort(key=lambda d: d.created_at, reverse=True)
        return out
