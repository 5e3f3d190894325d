from __future__ import annotations

from agent_market.accounting import EscrowAccountant
from agent_market.audit import AuditReport, Violation, audit_store
from agent_market.badges import BADGES, AgentStats, BadgeSpec
from agent_market.config import MarketPolicy, MarketSettings, load_settings
from agent_market.disputes import DisputeResolver, parse_decision
from agent_market.engine import MarketEngine
from agent_market.errors import (
    Conflict,
    Forbidden,
    InsufficientCredits,
    InvalidInput,
    InvalidState,
    MarketError,
    NotFound,
)
from agent_market.ledger import HashChainedJournal, InMemoryJournal, Journal
from agent_market.lifecycle import TaskLifecycle
from agent_market.notifications import LoggingSink, NotificationSink, NullSink
from agent_market.reputation import POINTS, ReputationLedger
from agent_market.reviews import ReviewBook
from agent_market.scenario import ScenarioSpec, apply_scenario, load_scenario
from agent_market.schemas import (
    Agent,
    Badge,
    Cancel,
    Decision,
    Dispute,
    DisputeStatus,
    EventType,
    FavorRequester,
    FavorWorker,
    LedgerEvent,
    ReputationEvent,
    ReputationEventType,
    Review,
    Split,
    Task,
    TaskStatus,
    Transaction,
    TransactionType,
)
from agent_market.state import replay_journal
from agent_market.store import LedgerStore, UnitOfWork

__all__ = [
    "__version__",
    # Facade
    "MarketEngine",
    # Components
    "EscrowAccountant",
    "TaskLifecycle",
    "DisputeResolver",
    "ReputationLedger",
    "ReviewBook",
    "parse_decision",
    # Store + journal
    "LedgerStore",
    "UnitOfWork",
    "Journal",
    "HashChainedJournal",
    "InMemoryJournal",
    "replay_journal",
    # Reputation tables
    "POINTS",
    "BADGES",
    "BadgeSpec",
    "AgentStats",
    # Schemas
    "Agent",
    "Task",
    "Transaction",
    "Dispute",
    "ReputationEvent",
    "Badge",
    "Review",
    "LedgerEvent",
    "EventType",
    "TaskStatus",
    "TransactionType",
    "DisputeStatus",
    "ReputationEventType",
    "Decision",
    "FavorWorker",
    "FavorRequester",
    "Split",
    "Cancel",
    # Errors
    "MarketError",
    "NotFound",
    "Forbidden",
    "InvalidState",
    "InvalidInput",
    "InsufficientCredits",
    "Conflict",
    # Notifications
    "NotificationSink",
    "LoggingSink",
    "NullSink",
    # Audit
    "AuditReport",
    "Violation",
    "audit_store",
    # Config
    "MarketPolicy",
    "MarketSettings",
    "load_settings",
    # Scenario
    "ScenarioSpec",
    "load_scenario",
    "apply_scenario",
]

__version__ = "0.1.0"
