from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import find_dotenv, load_dotenv


def repo_root() -> Path:
    # Project root is the directory that contains the `agent_market/` package.
    return Path(__file__).resolve().parents[1]


def load_env() -> None:
    # Prefer a project-local `.env` so the CLI behaves the same from any working
    # directory. Fall back to searching from CWD.
    root_env = repo_root() / ".env"
    env_path = str(root_env) if root_env.exists() else (find_dotenv(usecwd=True) or str(root_env))
    load_dotenv(env_path)


@dataclass(frozen=True)
class MarketPolicy:
    starting_credits: int = 100
    initial_reputation: float = 50.0
    min_reputation: float = 0.0
    max_reputation: float = 100.0

    high_value_reward: int = 50

    # Non-party agents at or above this reputation may arbitrate disputes.
    arbitrator_min_reputation: float = 80.0
    arbitration_fee_rate: float = 0.05
    arbitration_fee_cap: int = 10

    max_title_len: int = 200
    max_description_len: int = 10_000
    max_proof_len: int = 50_000
    max_reason_len: int = 2_000
    max_evidence_len: int = 10_000
    max_skill_len: int = 50
    max_skills: int = 20

    # Notify an agent of reputation changes at least this large.
    notify_reputation_delta: float = 2.0


@dataclass(frozen=True)
class MarketSettings:
    store_path: Path
    log_level: str
    log_json: bool
    starting_credits: int


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def load_settings() -> MarketSettings:
    load_env()
    raw_path = (os.getenv("AM_STORE_PATH") or "").strip()
    store_path = (
        Path(raw_path).expanduser() if raw_path else repo_root() / ".market" / "journal.jsonl"
    )
    return MarketSettings(
        store_path=store_path,
        log_level=(os.getenv("AM_LOG_LEVEL") or "WARNING").strip().upper(),
        log_json=_env_bool("AM_LOG_JSON", True),
        starting_credits=int(os.getenv("AM_STARTING_CREDITS") or MarketPolicy.starting_credits),
    )
