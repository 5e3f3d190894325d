from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass

from agent_market.badges import BADGES, AgentStats
from agent_market.config import MarketPolicy
from agent_market.errors import InvalidInput, NotFound
from agent_market.logging_config import get_logger
from agent_market.notifications import NotificationSink, NullSink, dispatch, make_notification
from agent_market.sanitize import require_finite
from agent_market.schemas import (
    Badge,
    BreakdownRow,
    EventType,
    ReputationEvent,
    ReputationEventType,
    TrustScore,
    new_id,
)
from agent_market.state import agent_key
from agent_market.store import LedgerStore, UnitOfWork

logger = get_logger(__name__)


@dataclass(frozen=True)
class PointRule:
    points: float
    description: str


POINTS: dict[ReputationEventType, PointRule] = {
    ReputationEventType.TASK_COMPLETED: PointRule(3, "Completed a task"),
    ReputationEventType.TASK_COMPLETED_EARLY: PointRule(1, "Completed task before deadline"),
    ReputationEventType.FIRST_TASK: PointRule(5, "Completed first task"),
    ReputationEventType.EXCELLENT_REVIEW: PointRule(2, "Received 5-star review"),
    ReputationEventType.GOOD_REVIEW: PointRule(1, "Received 4-star review"),
    ReputationEventType.POOR_REVIEW: PointRule(-2, "Received 1-2 star review"),
    ReputationEventType.SKILL_ENDORSED: PointRule(0.5, "Skill endorsed by another agent"),
    ReputationEventType.TASK_ABANDONED: PointRule(-2, "Abandoned a claimed task"),
    ReputationEventType.TASK_REJECTED: PointRule(-5, "Work was rejected"),
    ReputationEventType.DISPUTE_WON: PointRule(2, "Won a dispute"),
    ReputationEventType.DISPUTE_LOST: PointRule(-3, "Lost a dispute"),
    ReputationEventType.HIGH_VALUE_TASK: PointRule(2, "Completed high-value task"),
    ReputationEventType.TASK_STREAK_5: PointRule(3, "Completed 5 tasks in a row"),
    ReputationEventType.TASK_STREAK_10: PointRule(5, "Completed 10 tasks in a row"),
    ReputationEventType.DEADLINE_MISSED: PointRule(-3, "Missed task deadline"),
    ReputationEventType.INACTIVE_CLAIM: PointRule(-1, "Claimed task went inactive"),
}


def _clamp(v: float, *, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def parse_event_type(raw: ReputationEventType | str) -> ReputationEventType:
    try:
        return ReputationEventType(raw)
    except ValueError as exc:
        raise InvalidInput("unknown reputation event type", event_type=str(raw)) from exc


class ReputationLedger:
    """Append-only reputation log per agent, with the clamped score kept alongside.

    The stored score is always the fold of the log from the initial reputation,
    clamping after every step; `recompute_reputation` re-derives it.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        policy: MarketPolicy | None = None,
        sink: NotificationSink | None = None,
    ) -> None:
        self._store = store
        self._policy = policy or MarketPolicy()
        self._sink: NotificationSink = sink or NullSink()

    # --- writes inside a caller's unit of work -------------------------------

    def apply_event(
        self,
        uow: UnitOfWork,
        agent_id: str,
        event_type: ReputationEventType | str,
        *,
        multiplier: float = 1,
        reason: str | None = None,
        related_task_id: str | None = None,
        related_agent_id: str | None = None,
    ) -> ReputationEvent:
        event_type = parse_event_type(event_type)
        multiplier = require_finite(multiplier, field="multiplier")
        agent = uow.agent(agent_id)
        if agent is None:
            raise NotFound("agent not found", agent_id=agent_id)

        rule = POINTS[event_type]
        points = rule.points * multiplier
        reason = reason or rule.description

        agent.reputation = _clamp(
            agent.reputation + points,
            lo=self._policy.min_reputation,
            hi=self._policy.max_reputation,
        )
        if event_type == ReputationEventType.SKILL_ENDORSED:
            agent.endorsements_received += 1
        uow.put_agent(agent)

        event = ReputationEvent(
            id=new_id("rep"),
            agent_id=agent_id,
            event_type=event_type,
            points=points,
            reason=reason,
            related_task_id=related_task_id,
            related_agent_id=related_agent_id,
        )
        uow.append("reputation_events", event)

        if abs(points) >= self._policy.notify_reputation_delta:
            sign = "+" if points > 0 else ""
            uow.notify(
                make_notification(
                    agent_id,
                    "reputation",
                    "Reputation Increased" if points > 0 else "Reputation Decreased",
                    f"{sign}{points:.1f} points: {reason}",
                    event_type=event_type.value,
                    points=points,
                )
            )

        self.award_badges(uow, agent_id)
        return event

    def award_badges(self, uow: UnitOfWork, agent_id: str) -> list[Badge]:
        agent = uow.agent(agent_id)
        if agent is None:
            raise NotFound("agent not found", agent_id=agent_id)
        held = {b.badge_type for b in uow.rows("badges", agent_id) if isinstance(b, Badge)}
        stats = AgentStats.from_agent(agent)

        awarded: list[Badge] = []
        for spec in BADGES:
            if spec.badge_type in held or not spec.check(stats):
                continue
            badge = Badge(
                agent_id=agent_id,
                badge_type=spec.badge_type,
                name=spec.name,
                description=spec.description,
            )
            uow.append("badges", badge)
            uow.notify(
                make_notification(
                    agent_id,
                    "badge",
                    "New Badge Earned!",
                    f'You earned the "{spec.name}" badge: {spec.description}',
                    badge_type=spec.badge_type,
                )
            )
            awarded.append(badge)
        return awarded

    # --- standalone operations ------------------------------------------------

    def record_event(
        self,
        agent_id: str,
        event_type: ReputationEventType | str,
        multiplier: float = 1,
        reason: str | None = None,
        related_task_id: str | None = None,
        related_agent_id: str | None = None,
    ) -> ReputationEvent:
        event_type = parse_event_type(event_type)
        with self._store.unit_of_work(EventType.REPUTATION_RECORDED, agent_key(agent_id)) as uow:
            event = self.apply_event(
                uow,
                agent_id,
                event_type,
                multiplier=multiplier,
                reason=reason,
                related_task_id=related_task_id,
                related_agent_id=related_agent_id,
            )
        logger.info(
            "reputation_recorded",
            agent_id=agent_id,
            event_type=event_type.value,
            points=event.points,
        )
        dispatch(self._sink, uow.notifications)
        return event

    def evaluate_badges(self, agent_id: str) -> list[Badge]:
        with self._store.unit_of_work(EventType.BADGES_AWARDED, agent_key(agent_id)) as uow:
            awarded = self.award_badges(uow, agent_id)
        if awarded:
            logger.info(
                "badges_awarded",
                agent_id=agent_id,
                badges=[b.badge_type for b in awarded],
            )
        dispatch(self._sink, uow.notifications)
        return awarded

    # --- reads ----------------------------------------------------------------

    def _events(self, agent_id: str) -> list[ReputationEvent]:
        if self._store.agent(agent_id) is None:
            raise NotFound("agent not found", agent_id=agent_id)
        return [
            e for e in self._store.rows("reputation_events", agent_id) if isinstance(e, ReputationEvent)
        ]

    def trust_score(self, agent_id: str) -> TrustScore:
        agent = self._store.agent(agent_id)
        if agent is None:
            raise NotFound("agent not found", agent_id=agent_id)
        total = agent.tasks_completed + agent.tasks_failed
        rate = agent.tasks_completed / total if total > 0 else 0.5
        score = agent.reputation * 0.6 + rate * 100 * 0.4
        return TrustScore(
            agent_id=agent_id,
            trust_score=round(score, 1),
            reputation=agent.reputation,
            completion_rate=round(rate * 100, 1),
            tasks_completed=agent.tasks_completed,
            tasks_failed=agent.tasks_failed,
        )

    def reputation_history(self, agent_id: str, limit: int = 50) -> list[ReputationEvent]:
        events = self._events(agent_id)
        return list(reversed(events))[: max(0, int(limit))]

    def reputation_breakdown(self, agent_id: str) -> list[BreakdownRow]:
        totals: dict[ReputationEventType, float] = defaultdict(float)
        counts: dict[ReputationEventType, int] = defaultdict(int)
        for event in self._events(agent_id):
            totals[event.event_type] += event.points
            counts[event.event_type] += 1
        rows = [
            BreakdownRow(event_type=et, total_points=totals[et], count=counts[et]) for et in totals
        ]
        rows.sort(key=lambda r: r.total_points, reverse=True)
        return rows

    def reputation_rank(self, agent_id: str) -> int:
        agent = self._store.agent(agent_id)
        if agent is None:
            raise NotFound("agent not found", agent_id=agent_id)
        return 1 + sum(1 for other in self._store.agents() if other.reputation > agent.reputation)

    def badges(self, agent_id: str) -> list[Badge]:
        if self._store.agent(agent_id) is None:
            raise NotFound("agent not found", agent_id=agent_id)
        return [b for b in self._store.rows("badges", agent_id) if isinstance(b, Badge)]

    def recompute_reputation(self, agent_id: str) -> float:
        return fold_reputation(self._events(agent_id), policy=self._policy)


def fold_reputation(events: list[ReputationEvent], *, policy: MarketPolicy) -> float:
    score = policy.initial_reputation
    for event in events:
        score = _clamp(score + event.points, lo=policy.min_reputation, hi=policy.max_reputation)
    return score
