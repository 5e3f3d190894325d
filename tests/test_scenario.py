from __future__ import annotations

from pathlib import Path

import pytest

from agent_market.config import repo_root
from agent_market.errors import InvalidInput
from agent_market.scenario import apply_scenario, load_scenario
from agent_market.schemas import ProofKind, TaskStatus
from tests.helpers import make_engine


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "scenario.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_load_and_apply(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
scenario_id: tiny
agents:
  - name: Ada
    credits: 40
    skills: [python]
  - name: Bob
tasks:
  - requester: Ada
    title: Port the parser
    reward: 25
    proof_kind: url
""",
    )
    spec = load_scenario(path)
    assert spec.scenario_id == "tiny"
    assert spec.title == "tiny"
    assert [a.name for a in spec.agents] == ["Ada", "Bob"]
    assert spec.tasks[0].description == "Port the parser"

    engine = make_engine()
    seeded = apply_scenario(engine, spec)
    ada = engine.get_agent(seeded.agents["Ada"].id)
    assert ada.credits == 15
    assert ada.skills == ["python"]
    assert engine.get_agent(seeded.agents["Bob"].id).credits == engine.policy.starting_credits

    (task,) = seeded.tasks
    assert task.status == TaskStatus.OPEN
    assert task.proof_kind == ProofKind.URL
    assert engine.audit().ok


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("- just a list\n", "YAML mapping"),
        ("agents: []\n", "non-empty list"),
        ("agents:\n  - name: A\n  - name: A\n", "duplicate agent name"),
        ("agents:\n  - credits: 5\n", "agent.name is required"),
        ("agents:\n  - name: A\ntasks:\n  - requester: Z\n    title: t\n", "must name a scenario agent"),
        ("agents:\n  - name: A\ntasks:\n  - requester: A\n", "task.title is required"),
        ("agents:\n  - name: A\ntasks:\n  - requester: A\n    title: t\n", "task.reward is required"),
        ("agents:\n  - name: A\ntasks:\n  - requester: A\n    title: t\n    reward: lots\n", "task.reward must be an integer"),
    ],
)
def test_invalid_scenarios(tmp_path: Path, text: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        load_scenario(_write(tmp_path, text))


def test_bundled_starter_scenario_applies() -> None:
    spec = load_scenario(repo_root() / "scenarios" / "starter.yaml")
    engine = make_engine()
    seeded = apply_scenario(engine, spec)
    assert set(seeded.agents) == {"Ada", "Grace", "Linus"}
    assert len(seeded.tasks) == 3
    assert engine.audit().ok


def test_zero_reward_is_kept_and_rejected_when_posted(tmp_path: Path) -> None:
    spec = load_scenario(
        _write(tmp_path, "agents:\n  - name: Ada\ntasks:\n  - requester: Ada\n    title: t\n    reward: 0\n")
    )
    assert spec.tasks[0].reward == 0

    engine = make_engine()
    with pytest.raises(InvalidInput, match="reward"):
        apply_scenario(engine, spec)
