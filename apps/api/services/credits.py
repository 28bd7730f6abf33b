"""Credit ledger: balance reads, idempotent top-ups, atomic debits and usage logging."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_balance import CreditBalance
from models.transaction import Transaction
from models.usage_log import UsageLog
from services.errors import InsufficientCredit, InvalidAmount

logger = logging.getLogger(__name__)


def _insert(db: AsyncSession, model):
    """Return a dialect-specific INSERT supporting ON CONFLICT clauses."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise RuntimeError(f"Unsupported database dialect for credit ledger: {dialect}")


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount("Invalid credit amount")
    return amount


async def get_balance(user_id: str, db: AsyncSession) -> int:
    """Return the user's balance; a missing row is an implicit zero balance."""
    result = await db.execute(select(CreditBalance.balance).where(CreditBalance.user_id == user_id))
    return int(result.scalar_one_or_none() or 0)


async def ensure_balance_record(user_id: str, db: AsyncSession) -> int:
    """Create a zero balance row when the user has none and return the balance."""
    await db.execute(
        _insert(db, CreditBalance)
        .values(user_id=user_id, balance=0)
        .on_conflict_do_nothing(index_elements=[CreditBalance.user_id])
    )
    await db.commit()
    return await get_balance(user_id, db)


async def credit_idempotent(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    transaction_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Add credits at most once per transaction_id.

    The transaction row and the balance increment are committed together, so a
    replayed transaction_id never changes the balance.
    """
    grant = _validate_amount(amount)

    if transaction_id:
        recorded = await db.execute(
            _insert(db, Transaction)
            .values(transaction_id=transaction_id, user_id=user_id, credits_added=grant)
            .on_conflict_do_nothing(index_elements=[Transaction.transaction_id])
            .returning(Transaction.id)
        )
        if recorded.scalar_one_or_none() is None:
            await db.rollback()
            logger.info("Transaction %s already processed for user %s", transaction_id, user_id)
            return {"balance": await get_balance(user_id, db), "applied": False}

    stmt = _insert(db, CreditBalance).values(user_id=user_id, balance=grant)
    stmt = stmt.on_conflict_do_update(
        index_elements=[CreditBalance.user_id],
        set_={
            "balance": CreditBalance.balance + stmt.excluded.balance,
            "updated_at": func.now(),
        },
    ).returning(CreditBalance.balance)
    result = await db.execute(stmt)
    new_balance = int(result.scalar_one())
    await db.commit()

    logger.info("Added %s credits to user %s. New balance: %s", grant, user_id, new_balance)
    return {"balance": new_balance, "applied": True}


async def debit(user_id: str, db: AsyncSession, *, amount: int = 1) -> Dict[str, Any]:
    """Atomically take `amount` credits, refusing (not clamping) when short."""
    cost = _validate_amount(amount)
    result = await db.execute(
        update(CreditBalance)
        .where(CreditBalance.user_id == user_id, CreditBalance.balance >= cost)
        .values(balance=CreditBalance.balance - cost, updated_at=func.now())
        .returning(CreditBalance.balance)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        await db.rollback()
        available = await get_balance(user_id, db)
        raise InsufficientCredit(
            f"Insufficient credits. Required: {cost}, available: {available}.",
            balance=available,
            required=cost,
        )
    await db.commit()
    logger.info("Debited %s credits from user %s. New balance: %s", cost, user_id, new_balance)
    return {"balance": int(new_balance)}


async def debit_one(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    return await debit(user_id, db, amount=1)


async def log_usage(
    user_id: str,
    db: AsyncSession,
    *,
    credits_used: int,
    theme_name: Optional[str],
) -> bool:
    """Append a usage row. Failures are logged and reported as False, never raised."""
    try:
        db.add(UsageLog(user_id=user_id, credits_used=int(credits_used), theme_name=theme_name or "Unknown"))
        await db.commit()
        return True
    except Exception as exc:
        logger.warning("Usage log write failed for user %s: %s", user_id, exc)
        try:
            await db.rollback()
        except Exception:
            logger.exception("Rollback after usage log failure failed for user %s", user_id)
        return False
