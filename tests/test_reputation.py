from __future__ import annotations

from pathlib import Path

import pytest

from agent_market.badges import AgentStats, eligible_badges
from agent_market.config import MarketPolicy
from agent_market.engine import MarketEngine
from agent_market.errors import InvalidInput, NotFound
from agent_market.reputation import POINTS, fold_reputation
from agent_market.schemas import ReputationEvent, ReputationEventType
from tests.helpers import RecordingSink, completed_task, make_agents, make_engine


def test_points_table_matches_event_types() -> None:
    assert set(POINTS) == set(ReputationEventType)
    assert POINTS[ReputationEventType.TASK_COMPLETED].points == 3
    assert POINTS[ReputationEventType.TASK_REJECTED].points == -5


def test_reputation_is_clamped_at_both_ends() -> None:
    engine = make_engine()
    (a,) = make_agents(engine, "A")

    engine.record_reputation_event(a.id, ReputationEventType.DISPUTE_WON, multiplier=40)
    assert engine.get_agent(a.id).reputation == 100
    engine.record_reputation_event(a.id, "FIRST_TASK")
    assert engine.get_agent(a.id).reputation == 100

    engine.record_reputation_event(a.id, ReputationEventType.TASK_REJECTED, multiplier=30)
    assert engine.get_agent(a.id).reputation == 0
    engine.record_reputation_event(a.id, ReputationEventType.DEADLINE_MISSED)
    assert engine.get_agent(a.id).reputation == 0

    engine.record_reputation_event(a.id, ReputationEventType.GOOD_REVIEW)
    assert engine.get_agent(a.id).reputation == 1
    assert engine.recompute_reputation(a.id) == engine.get_agent(a.id).reputation


def test_recompute_matches_stored_after_workload() -> None:
    engine = make_engine()
    a, b = make_agents(engine, "A", "B")
    completed_task(engine, a, b, reward=60)
    task = engine.create_task(a.id, "again", "d", 10)
    engine.claim_task(b.id, task.id)
    engine.abandon_task(b.id, task.id)
    engine.record_reputation_event(b.id, ReputationEventType.SKILL_ENDORSED, related_agent_id=a.id)

    for agent in (a, b):
        assert engine.recompute_reputation(agent.id) == engine.get_agent(agent.id).reputation


def test_fold_reputation_clamps_each_step() -> None:
    policy = MarketPolicy()
    events = [
        ReputationEvent(id=f"r{i}", agent_id="a", event_type=et, points=pts, reason="x")
        for i, (et, pts) in enumerate(
            [
                (ReputationEventType.DISPUTE_WON, 80.0),
                (ReputationEventType.TASK_REJECTED, -5.0),
            ]
        )
    ]
    # 50 + 80 clamps to 100 before the penalty applies.
    assert fold_reputation(events, policy=policy) == 95
    assert fold_reputation([], policy=policy) == policy.initial_reputation


def test_unknown_event_type_is_rejected() -> None:
    engine = make_engine()
    (a,) = make_agents(engine, "A")
    with pytest.raises(InvalidInput, match="unknown reputation event type"):
        engine.record_reputation_event(a.id, "BRIBERY")
    with pytest.raises(NotFound):
        engine.record_reputation_event("agent_missing", ReputationEventType.GOOD_REVIEW)
    assert engine.reputation_history(a.id) == []


@pytest.mark.parametrize("multiplier", [float("inf"), float("-inf"), float("nan"), "2", None, True, -1])
def test_bad_multiplier_is_rejected(multiplier: object) -> None:
    engine = make_engine()
    (a,) = make_agents(engine, "A")
    events_before = len(engine.store.journal)

    with pytest.raises(InvalidInput, match="multiplier"):
        engine.record_reputation_event(a.id, "TASK_COMPLETED", multiplier=multiplier)  # type: ignore[arg-type]

    assert engine.get_agent(a.id).reputation == 50
    assert len(engine.store.journal) == events_before


def test_journal_reopens_after_fractional_multiplier(tmp_path: Path) -> None:
    path = tmp_path / "journal.jsonl"
    engine = MarketEngine.open(path)
    (a,) = make_agents(engine, "A")
    with pytest.raises(InvalidInput):
        engine.record_reputation_event(a.id, "TASK_COMPLETED", multiplier=float("inf"))
    engine.record_reputation_event(a.id, "TASK_COMPLETED", multiplier=0.5)

    reopened = MarketEngine.open(path)
    assert reopened.get_agent(a.id).reputation == 51.5
    assert reopened.recompute_reputation(a.id) == 51.5


def test_skill_endorsement_counts_and_badge() -> None:
    sink = RecordingSink()
    engine = make_engine(sink=sink)
    a, b = make_agents(engine, "A", "B")
    event = engine.record_reputation_event(
        b.id, ReputationEventType.SKILL_ENDORSED, related_agent_id=a.id
    )

    assert event.points == 0.5
    assert event.related_agent_id == a.id
    assert engine.get_agent(b.id).endorsements_received == 1
    assert "endorsed" in {badge.badge_type for badge in engine.badges(b.id)}
    # Half a point is below the notification threshold.
    assert sink.of_type("reputation") == []


def test_large_changes_notify() -> None:
    sink = RecordingSink()
    engine = make_engine(sink=sink)
    (a,) = make_agents(engine, "A")
    engine.record_reputation_event(a.id, ReputationEventType.POOR_REVIEW)

    notes = sink.of_type("reputation")
    assert len(notes) == 1
    assert notes[0].title == "Reputation Decreased"
    assert notes[0].message.startswith("-2.0 points")


def test_trust_score() -> None:
    engine = make_engine()
    a, b = make_agents(engine, "A", "B")

    fresh = engine.trust_score(b.id)
    assert fresh.completion_rate == 50.0
    assert fresh.trust_score == 50.0

    completed_task(engine, a, b, reward=10)
    score = engine.trust_score(b.id)
    assert score.tasks_completed == 1
    assert score.completion_rate == 100.0
    assert score.trust_score == round(58 * 0.6 + 40, 1)


def test_history_breakdown_and_rank() -> None:
    engine = make_engine()
    a, b, c = make_agents(engine, "A", "B", "C")
    completed_task(engine, a, b, reward=10)
    completed_task(engine, a, b, reward=10)
    engine.record_reputation_event(c.id, ReputationEventType.POOR_REVIEW)

    history = engine.reputation_history(b.id)
    assert [e.event_type for e in history] == [
        ReputationEventType.TASK_COMPLETED,
        ReputationEventType.FIRST_TASK,
        ReputationEventType.TASK_COMPLETED,
    ]
    assert len(engine.reputation_history(b.id, limit=1)) == 1

    breakdown = engine.reputation_breakdown(b.id)
    assert [(r.event_type, r.total_points, r.count) for r in breakdown] == [
        (ReputationEventType.TASK_COMPLETED, 6, 2),
        (ReputationEventType.FIRST_TASK, 5, 1),
    ]

    assert engine.reputation_rank(b.id) == 1
    assert engine.reputation_rank(a.id) == 2
    assert engine.reputation_rank(c.id) == 3


def test_rank_ties_share_position() -> None:
    engine = make_engine()
    a, b = make_agents(engine, "A", "B")
    assert engine.reputation_rank(a.id) == engine.reputation_rank(b.id) == 1


class TestBadges:
    def test_newcomer_awarded_on_registration(self) -> None:
        engine = make_engine()
        (a,) = make_agents(engine, "A")
        assert [b.badge_type for b in engine.badges(a.id)] == ["newcomer"]

    def test_badges_are_awarded_once(self) -> None:
        sink = RecordingSink()
        engine = make_engine(sink=sink)
        a, b = make_agents(engine, "A", "B")
        completed_task(engine, a, b, reward=10)
        completed_task(engine, a, b, reward=10)

        held = [badge.badge_type for badge in engine.badges(b.id)]
        assert held.count("first_task") == 1
        assert engine.evaluate_badges(b.id) == []
        first_task_notes = [n for n in sink.of_type("badge") if n.data["badge_type"] == "first_task"]
        assert len(first_task_notes) == 1

    def test_evaluate_badges_catches_up(self) -> None:
        engine = make_engine()
        (a,) = make_agents(engine, "A", credits=1_000)
        # Registration already evaluated the starting balance.
        assert "wealthy" in {b.badge_type for b in engine.badges(a.id)}
        assert engine.evaluate_badges(a.id) == []

    def test_eligibility_predicates(self) -> None:
        stats = AgentStats(
            tasks_completed=10,
            tasks_posted=0,
            tasks_failed=0,
            credits=0,
            reputation=91,
            skill_count=5,
            endorsements_received=0,
            reviews_given=0,
            positive_reviews=0,
        )
        names = {b.badge_type for b in eligible_badges(stats)}
        assert {"newcomer", "first_task", "task_master_10", "perfect", "trusted", "legendary", "skilled_5"} <= names
        assert "task_master_50" not in names
        assert "wealthy" not in names

    def test_unknown_agent(self) -> None:
        engine = make_engine()
        with pytest.raises(NotFound):
            engine.evaluate_badges("agent_missing")
        with pytest.raises(NotFound):
            engine.trust_score("agent_missing")
