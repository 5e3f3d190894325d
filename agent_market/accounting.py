"""Credit movement between agents and task escrow.

Escrow is not an account of its own: a task's escrowed amount is its reward
minus whatever has already been released to either party (see `Task.escrowed`).
Every balance change is paired with exactly one Transaction row, so an agent's
balance always equals its starting credits plus the sum of its transactions.
"""

from __future__ import annotations

from agent_market.config import MarketPolicy
from agent_market.errors import InsufficientCredits, InvalidInput, NotFound
from agent_market.logging_config import get_logger
from agent_market.notifications import NotificationSink, NullSink, dispatch, make_notification
from agent_market.sanitize import clean_optional_text, require_int
from agent_market.schemas import (
    EventType,
    Transaction,
    TransactionPage,
    TransactionSummary,
    TransactionType,
    TransferResult,
    new_id,
)
from agent_market.state import agent_key
from agent_market.store import LedgerStore, UnitOfWork

logger = get_logger(__name__)

MAX_HISTORY_LIMIT = 200


class EscrowAccountant:
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

    def record_transaction(
        self,
        uow: UnitOfWork,
        agent_id: str,
        type: TransactionType,
        amount: int,
        description: str,
        *,
        related_task_id: str | None = None,
        related_agent_id: str | None = None,
    ) -> Transaction:
        """Apply a signed balance change and its Transaction row inside `uow`."""
        agent = uow.agent(agent_id)
        if agent is None:
            raise NotFound("agent not found", agent_id=agent_id)
        balance_after = agent.credits + amount
        if balance_after < 0:
            raise InsufficientCredits(
                "insufficient credits",
                agent_id=agent_id,
                available=agent.credits,
                required=-amount,
            )
        agent.credits = balance_after
        uow.put_agent(agent)

        txn = Transaction(
            id=new_id("txn"),
            agent_id=agent_id,
            type=type,
            amount=amount,
            balance_after=balance_after,
            description=description,
            related_task_id=related_task_id,
            related_agent_id=related_agent_id,
        )
        uow.append("transactions", txn)
        return txn

    def transfer(
        self,
        from_agent_id: str,
        to_agent_id: str,
        amount: int,
        memo: str | None = None,
    ) -> TransferResult:
        amount = require_int(amount, field="amount", minimum=1)
        if from_agent_id == to_agent_id:
            raise InvalidInput("cannot transfer to yourself", agent_id=from_agent_id)
        memo = clean_optional_text(memo, field="memo", max_len=self._policy.max_reason_len)

        with self._store.unit_of_work(
            EventType.CREDITS_TRANSFERRED, agent_key(from_agent_id), agent_key(to_agent_id)
        ) as uow:
            sender = uow.agent(from_agent_id)
            if sender is None:
                raise NotFound("sender not found", agent_id=from_agent_id)
            recipient = uow.agent(to_agent_id)
            if recipient is None:
                raise NotFound("recipient not found", agent_id=to_agent_id)

            suffix = f": {memo}" if memo else ""
            out_txn = self.record_transaction(
                uow,
                from_agent_id,
                TransactionType.TRANSFER_OUT,
                -amount,
                f"Transfer to {recipient.name}{suffix}",
                related_agent_id=to_agent_id,
            )
            in_txn = self.record_transaction(
                uow,
                to_agent_id,
                TransactionType.TRANSFER_IN,
                amount,
                f"Transfer from {sender.name}{suffix}",
                related_agent_id=from_agent_id,
            )
            uow.notify(
                make_notification(
                    to_agent_id,
                    "transfer",
                    f"Received {amount} credits",
                    f"{sender.name} sent you {amount} credits{suffix}",
                    from_agent_id=from_agent_id,
                    amount=amount,
                )
            )

        logger.info(
            "credits_transferred",
            from_agent_id=from_agent_id,
            to_agent_id=to_agent_id,
            amount=amount,
        )
        dispatch(self._sink, uow.notifications)
        return TransferResult(
            from_agent_id=from_agent_id,
            to_agent_id=to_agent_id,
            amount=amount,
            memo=memo,
            sender_balance=out_txn.balance_after,
            recipient_balance=in_txn.balance_after,
            transaction_ids=[out_txn.id, in_txn.id],
        )

    def transactions(self, agent_id: str) -> list[Transaction]:
        """All of an agent's transactions, oldest first."""
        return [t for t in self._store.rows("transactions", agent_id) if isinstance(t, Transaction)]

    def transaction_history(
        self,
        agent_id: str,
        type: TransactionType | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> TransactionPage:
        if self._store.agent(agent_id) is None:
            raise NotFound("agent not found", agent_id=agent_id)
        if type is not None:
            try:
                type = TransactionType(type)
            except ValueError as exc:
                raise InvalidInput("unknown transaction type", type=str(type)) from exc
        limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
        offset = max(0, int(offset))

        all_txns = self.transactions(agent_id)
        earned = sum(t.amount for t in all_txns if t.amount > 0)
        spent = sum(-t.amount for t in all_txns if t.amount < 0)
        summary = TransactionSummary(
            total_earned=earned,
            total_spent=spent,
            net_earnings=earned - spent,
            transaction_count=len(all_txns),
        )

        matching = [t for t in reversed(all_txns) if type is None or t.type == type]
        return TransactionPage(
            transactions=matching[offset : offset + limit],
            total=len(matching),
            limit=limit,
            offset=offset,
            summary=summary,
        )
