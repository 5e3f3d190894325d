from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from agent_market.schemas import Agent


@dataclass(frozen=True)
class AgentStats:
    """Everything a badge predicate may look at."""

    tasks_completed: int
    tasks_posted: int
    tasks_failed: int
    credits: int
    reputation: float
    skill_count: int
    endorsements_received: int
    reviews_given: int
    positive_reviews: int

    @classmethod
    def from_agent(cls, agent: Agent) -> AgentStats:
        return cls(
            tasks_completed=agent.tasks_completed,
            tasks_posted=agent.tasks_posted,
            tasks_failed=agent.tasks_failed,
            credits=agent.credits,
            reputation=agent.reputation,
            skill_count=len(agent.skills),
            endorsements_received=agent.endorsements_received,
            reviews_given=agent.reviews_given,
            positive_reviews=agent.positive_reviews,
        )


@dataclass(frozen=True)
class BadgeSpec:
    badge_type: str
    name: str
    description: str
    check: Callable[[AgentStats], bool]


BADGES: tuple[BadgeSpec, ...] = (
    BadgeSpec("newcomer", "Newcomer", "Joined the marketplace", lambda s: True),
    BadgeSpec("first_task", "First Blood", "Completed your first task", lambda s: s.tasks_completed >= 1),
    BadgeSpec("task_master_10", "Task Master", "Completed 10 tasks", lambda s: s.tasks_completed >= 10),
    BadgeSpec("task_master_50", "Task Legend", "Completed 50 tasks", lambda s: s.tasks_completed >= 50),
    BadgeSpec("task_master_100", "Task God", "Completed 100 tasks", lambda s: s.tasks_completed >= 100),
    BadgeSpec("employer_10", "Job Creator", "Posted 10 tasks", lambda s: s.tasks_posted >= 10),
    BadgeSpec("employer_50", "Major Employer", "Posted 50 tasks", lambda s: s.tasks_posted >= 50),
    BadgeSpec("wealthy", "Wealthy", "Accumulated 1000 credits", lambda s: s.credits >= 1000),
    BadgeSpec("elite_wealth", "Elite", "Accumulated 10000 credits", lambda s: s.credits >= 10000),
    BadgeSpec("trusted", "Trusted", "Reached 75 reputation", lambda s: s.reputation >= 75),
    BadgeSpec("legendary", "Legendary", "Reached 90 reputation", lambda s: s.reputation >= 90),
    BadgeSpec(
        "perfect",
        "Perfectionist",
        "Maintained 100% success rate with 10+ tasks",
        lambda s: s.tasks_completed >= 10 and s.tasks_failed == 0,
    ),
    BadgeSpec("skilled_5", "Multi-Talented", "Listed 5+ skills", lambda s: s.skill_count >= 5),
    BadgeSpec(
        "endorsed",
        "Endorsed",
        "Received skill endorsement from another agent",
        lambda s: s.endorsements_received >= 1,
    ),
    BadgeSpec(
        "highly_endorsed",
        "Highly Endorsed",
        "Received 10+ skill endorsements",
        lambda s: s.endorsements_received >= 10,
    ),
    BadgeSpec("reviewer", "Critic", "Left 10 reviews", lambda s: s.reviews_given >= 10),
    BadgeSpec(
        "well_reviewed",
        "Well Reviewed",
        "Received 10+ positive reviews",
        lambda s: s.positive_reviews >= 10,
    ),
)


def eligible_badges(stats: AgentStats) -> list[BadgeSpec]:
    return [b for b in BADGES if b.check(stats)]
