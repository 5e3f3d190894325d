from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from agent_market.schemas import Agent, Task

if TYPE_CHECKING:
    from agent_market.engine import MarketEngine


@dataclass(frozen=True)
class AgentSeed:
    name: str
    credits: int | None = None
    skills: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TaskSeed:
    requester: str
    title: str
    description: str
    reward: int
    skills: list[str] = field(default_factory=list)
    proof_kind: str = "text"


@dataclass(frozen=True)
class ScenarioSpec:
    scenario_id: str
    title: str
    agents: list[AgentSeed]
    tasks: list[TaskSeed]


@dataclass(frozen=True)
class SeededMarket:
    agents: dict[str, Agent]
    tasks: list[Task]


def _str_list(raw: Any, *, what: str) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError(f"{what} must be a list")
    return [str(x) for x in raw]


def load_scenario(path: Path) -> ScenarioSpec:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("scenario must be a YAML mapping")

    scenario_id = str(data.get("scenario_id") or data.get("id") or path.stem)
    title = str(data.get("title") or scenario_id)

    raw_agents = data.get("agents")
    if not isinstance(raw_agents, list) or not raw_agents:
        raise ValueError("scenario.agents must be a non-empty list")

    agents: list[AgentSeed] = []
    seen: set[str] = set()
    for raw in raw_agents:
        if not isinstance(raw, dict):
            raise ValueError("each agent must be a mapping")
        name = str(raw.get("name") or "").strip()
        if not name:
            raise ValueError("agent.name is required")
        if name in seen:
            raise ValueError(f"duplicate agent name: {name}")
        seen.add(name)
        credits = raw.get("credits")
        agents.append(
            AgentSeed(
                name=name,
                credits=int(credits) if credits is not None else None,
                skills=_str_list(raw.get("skills"), what="agent.skills"),
            )
        )

    tasks: list[TaskSeed] = []
    for raw in data.get("tasks") or []:
        if not isinstance(raw, dict):
            raise ValueError("each task must be a mapping")
        requester = str(raw.get("requester") or "").strip()
        if requester not in seen:
            raise ValueError(f"task.requester must name a scenario agent: {requester!r}")
        task_title = str(raw.get("title") or "").strip()
        if not task_title:
            raise ValueError("task.title is required")
        reward = raw.get("reward")
        if reward is None:
            raise ValueError(f"task.reward is required: {task_title!r}")
        if isinstance(reward, bool) or not isinstance(reward, int):
            raise ValueError(f"task.reward must be an integer: {reward!r}")
        tasks.append(
            TaskSeed(
                requester=requester,
                title=task_title,
                description=str(raw.get("description") or task_title),
                reward=reward,
                skills=_str_list(raw.get("skills"), what="task.skills"),
                proof_kind=str(raw.get("proof_kind") or "text"),
            )
        )

    return ScenarioSpec(scenario_id=scenario_id, title=title, agents=agents, tasks=tasks)


def apply_scenario(engine: MarketEngine, spec: ScenarioSpec) -> SeededMarket:
    """Register the scenario's agents, then post its tasks on their behalf."""
    agents: dict[str, Agent] = {}
    for seed in spec.agents:
        agents[seed.name] = engine.register_agent(seed.name, credits=seed.credits, skills=seed.skills)

    tasks: list[Task] = []
    for seed in spec.tasks:
        tasks.append(
            engine.create_task(
                agents[seed.requester].id,
                seed.title,
                seed.description,
                seed.reward,
                skills=seed.skills,
                proof_kind=seed.proof_kind,
            )
        )
    return SeededMarket(agents=agents, tasks=tasks)
