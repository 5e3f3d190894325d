from __future__ import annotations

import argparse
import json
from dataclasses import replace
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from agent_market.config import MarketPolicy, load_settings
from agent_market.engine import MarketEngine
from agent_market.errors import MarketError
from agent_market.ledger import HashChainedJournal
from agent_market.logging_config import configure_logging
from agent_market.notifications import LoggingSink
from agent_market.scenario import apply_scenario, load_scenario
from agent_market.schemas import ProofKind, TransactionType


def _existing_path(value: str) -> Path:
    p = Path(value)
    if not p.exists():
        raise argparse.ArgumentTypeError(f"path not found: {value}")
    return p


def _scenario_path(value: str) -> Path:
    p = _existing_path(value)
    if p.suffix.lower() not in {".yml", ".yaml"}:
        raise argparse.ArgumentTypeError(f"scenario must be YAML: {value}")
    return p


def _jsonable(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    if isinstance(obj, dict):
        return {str(k): _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_jsonable(v) for v in obj]
    return obj


def _emit(obj: Any) -> None:
    print(json.dumps(_jsonable(obj), indent=2, sort_keys=True, ensure_ascii=False))


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="agent-market", description="credit-based task marketplace")
    ap.add_argument("--store", type=Path, default=None, help="journal path (default: AM_STORE_PATH)")
    sub = ap.add_subparsers(dest="cmd", required=True)

    init_p = sub.add_parser("init", help="start a fresh journal, optionally seeded from a scenario")
    init_p.add_argument("--scenario", type=_scenario_path, default=None)
    init_p.add_argument("--overwrite", action="store_true")

    agent_p = sub.add_parser("agent", help="agent records")
    agent_sub = agent_p.add_subparsers(dest="agent_cmd", required=True)
    add_p = agent_sub.add_parser("add", help="register an agent")
    add_p.add_argument("name")
    add_p.add_argument("--credits", type=int, default=None)
    add_p.add_argument("--skill", action="append", default=[])
    show_p = agent_sub.add_parser("show", help="agent profile with trust score and badges")
    show_p.add_argument("agent_id")

    task_p = sub.add_parser("task", help="task lifecycle")
    task_sub = task_p.add_subparsers(dest="task_cmd", required=True)
    create_p = task_sub.add_parser("create", help="post a task and escrow its reward")
    create_p.add_argument("--requester", required=True)
    create_p.add_argument("--title", required=True)
    create_p.add_argument("--description", required=True)
    create_p.add_argument("--reward", type=int, required=True)
    create_p.add_argument("--skill", action="append", default=[])
    create_p.add_argument("--proof-kind", choices=[k.value for k in ProofKind], default="text")
    for name, help_text in (
        ("claim", "claim an open task"),
        ("abandon", "give up a claimed task"),
        ("cancel", "cancel an open task and refund its reward"),
    ):
        p = task_sub.add_parser(name, help=help_text)
        p.add_argument("agent_id")
        p.add_argument("task_id")
    submit_p = task_sub.add_parser("submit", help="submit proof of work")
    submit_p.add_argument("agent_id")
    submit_p.add_argument("task_id")
    submit_p.add_argument("--proof", required=True)
    validate_p = task_sub.add_parser("validate", help="approve or reject submitted work")
    validate_p.add_argument("agent_id")
    validate_p.add_argument("task_id")
    verdict = validate_p.add_mutually_exclusive_group(required=True)
    verdict.add_argument("--approve", action="store_true")
    verdict.add_argument("--reject", action="store_true")
    validate_p.add_argument("--reason", default=None)
    task_show_p = task_sub.add_parser("show", help="task with its history and disputes")
    task_show_p.add_argument("task_id")

    dispute_p = sub.add_parser("dispute", help="dispute resolution")
    dispute_sub = dispute_p.add_subparsers(dest="dispute_cmd", required=True)
    raise_p = dispute_sub.add_parser("raise", help="dispute a submitted or completed task")
    raise_p.add_argument("agent_id")
    raise_p.add_argument("task_id")
    raise_p.add_argument("--reason", required=True)
    raise_p.add_argument("--evidence", default=None)
    evidence_p = dispute_sub.add_parser("evidence", help="append evidence to an open dispute")
    evidence_p.add_argument("agent_id")
    evidence_p.add_argument("dispute_id")
    evidence_p.add_argument("--text", required=True)
    resolve_p = dispute_sub.add_parser("resolve", help="settle an open dispute")
    resolve_p.add_argument("agent_id")
    resolve_p.add_argument("dispute_id")
    resolve_p.add_argument(
        "--decision",
        required=True,
        choices=["favor_worker", "favor_requester", "split", "cancel"],
    )
    resolve_p.add_argument("--resolution", default=None)

    review_p = sub.add_parser("review", help="rate the other party of a completed task")
    review_p.add_argument("agent_id")
    review_p.add_argument("task_id")
    review_p.add_argument("--rating", type=int, required=True)
    review_p.add_argument("--comment", default=None)

    transfer_p = sub.add_parser("transfer", help="send credits to another agent")
    transfer_p.add_argument("from_agent_id")
    transfer_p.add_argument("to_agent_id")
    transfer_p.add_argument("amount", type=int)
    transfer_p.add_argument("--memo", default=None)

    history_p = sub.add_parser("history", help="an agent's transactions, newest first")
    history_p.add_argument("agent_id")
    history_p.add_argument("--type", choices=[t.value for t in TransactionType], default=None)
    history_p.add_argument("--limit", type=int, default=50)
    history_p.add_argument("--offset", type=int, default=0)

    sub.add_parser("audit", help="check balances, escrow and reputation invariants")
    sub.add_parser("verify", help="verify the journal hash chain")
    return ap


def _run(args: argparse.Namespace, *, store_path: Path, policy: MarketPolicy) -> int:
    if args.cmd == "init":
        journal = HashChainedJournal(store_path)
        if len(journal) and not args.overwrite:
            raise SystemExit(f"journal already exists (use --overwrite): {store_path}")
        journal.reset()
        engine = MarketEngine.from_journal(journal, policy=policy, sink=LoggingSink())
        out: dict[str, Any] = {"store": str(store_path)}
        if args.scenario is not None:
            seeded = apply_scenario(engine, load_scenario(args.scenario))
            out["agents"] = {name: a.id for name, a in seeded.agents.items()}
            out["tasks"] = [t.id for t in seeded.tasks]
        _emit(out)
        return 0

    if args.cmd == "verify":
        journal = HashChainedJournal(store_path)
        try:
            journal.verify_chain()
        except ValueError as exc:
            _emit({"ok": False, "error": str(exc)})
            return 1
        _emit({"ok": True, "events": len(journal)})
        return 0

    engine = MarketEngine.open(store_path, policy=policy, sink=LoggingSink())

    if args.cmd == "agent":
        if args.agent_cmd == "add":
            _emit(engine.register_agent(args.name, credits=args.credits, skills=args.skill))
            return 0
        if args.agent_cmd == "show":
            _emit(
                {
                    "agent": engine.get_agent(args.agent_id),
                    "trust": engine.trust_score(args.agent_id),
                    "rank": engine.reputation_rank(args.agent_id),
                    "badges": engine.badges(args.agent_id),
                }
            )
            return 0
        raise AssertionError(f"unhandled agent_cmd: {args.agent_cmd}")

    if args.cmd == "task":
        if args.task_cmd == "create":
            _emit(
                engine.create_task(
                    args.requester,
                    args.title,
                    args.description,
                    args.reward,
                    skills=args.skill,
                    proof_kind=args.proof_kind,
                )
            )
        elif args.task_cmd == "claim":
            _emit(engine.claim_task(args.agent_id, args.task_id))
        elif args.task_cmd == "submit":
            _emit(engine.submit_work(args.agent_id, args.task_id, args.proof))
        elif args.task_cmd == "validate":
            _emit(engine.validate_work(args.agent_id, args.task_id, bool(args.approve), args.reason))
        elif args.task_cmd == "abandon":
            _emit(engine.abandon_task(args.agent_id, args.task_id))
        elif args.task_cmd == "cancel":
            _emit(engine.cancel_task(args.agent_id, args.task_id))
        elif args.task_cmd == "show":
            _emit(
                {
                    "task": engine.get_task(args.task_id),
                    "history": engine.task_history(args.task_id),
                    "disputes": engine.store.disputes_for_task(args.task_id),
                }
            )
        else:
            raise AssertionError(f"unhandled task_cmd: {args.task_cmd}")
        return 0

    if args.cmd == "dispute":
        if args.dispute_cmd == "raise":
            _emit(engine.raise_dispute(args.agent_id, args.task_id, args.reason, args.evidence))
        elif args.dispute_cmd == "evidence":
            _emit(engine.add_evidence(args.agent_id, args.dispute_id, args.text))
        elif args.dispute_cmd == "resolve":
            _emit(engine.resolve_dispute(args.agent_id, args.dispute_id, args.decision, args.resolution))
        else:
            raise AssertionError(f"unhandled dispute_cmd: {args.dispute_cmd}")
        return 0

    if args.cmd == "review":
        _emit(engine.submit_review(args.agent_id, args.task_id, args.rating, args.comment))
        return 0

    if args.cmd == "transfer":
        _emit(engine.transfer(args.from_agent_id, args.to_agent_id, args.amount, args.memo))
        return 0

    if args.cmd == "history":
        _emit(engine.transaction_history(args.agent_id, args.type, args.limit, args.offset))
        return 0

    if args.cmd == "audit":
        report = engine.audit()
        _emit({"ok": report.ok, **report.model_dump(mode="json")})
        return 0 if report.ok else 1

    raise AssertionError(f"unhandled cmd: {args.cmd}")


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = load_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json)

    store_path = args.store or settings.store_path
    policy = replace(MarketPolicy(), starting_credits=settings.starting_credits)
    try:
        return _run(args, store_path=store_path, policy=policy)
    except MarketError as exc:
        _emit(exc.to_dict())
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
