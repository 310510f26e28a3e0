"""
Transaction State Machine.

Every function here works on a ``User`` candidate that the caller commits
afterwards. Validation always runs before the first mutation, so a raised
error leaves the candidate untouched.

    PENDING -+-> COMPLETED
             +-> FAILED

COMPLETED and FAILED are terminal.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from .accrual import Number, to_decimal
from .errors import (
    AlreadySettledError,
    BelowMinimumWithdrawalError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidTransactionHashError,
    TransactionNotFoundError,
)
from .models import (
    Currency,
    Decision,
    GlobalSettings,
    MiningPlan,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset] = {
    TransactionStatus.PENDING: frozenset({TransactionStatus.COMPLETED, TransactionStatus.FAILED}),
    TransactionStatus.COMPLETED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
}


def _new_transaction(**fields) -> Transaction:
    return Transaction(id=str(uuid4()), **fields)


def transition(tx: Transaction, new_status: TransactionStatus, now: datetime,
               performed_by: Optional[str] = None) -> None:
    if new_status not in ALLOWED_TRANSITIONS[tx.status]:
        raise AlreadySettledError(f"Transaction {tx.id} is already {tx.status.value}")
    tx.status = new_status
    tx.settled_at = now
    tx.settled_by = performed_by


def get_transaction(user: User, tx_id: str) -> Transaction:
    tx = user.find_transaction(tx_id)
    if tx is None:
        raise TransactionNotFoundError(f"Transaction {tx_id} not found for user {user.id}")
    return tx


def validate_tx_hash(tx_hash: str, min_length: int) -> str:
    cleaned = (tx_hash or "").strip()
    if len(cleaned) < min_length or any(c.isspace() for c in cleaned):
        raise InvalidTransactionHashError(
            f"Transaction hash must be at least {min_length} characters without spaces"
        )
    return cleaned


def _positive_amount(amount: Number) -> Decimal:
    amount = to_decimal(amount)
    if amount <= 0:
        raise InvalidAmountError(f"Amount must be positive, got {amount}")
    return amount


def apply_withdraw(user: User, amount: Number, settings: GlobalSettings, now: datetime) -> Transaction:
    """Escrow ``amount`` out of the balance and log a PENDING withdrawal."""
    amount = _positive_amount(amount)
    if amount > user.balance:
        raise InsufficientBalanceError(
            f"Insufficient balance: requested {amount} ZEC, available {user.balance} ZEC"
        )
    if amount < settings.min_withdrawal_amount:
        raise BelowMinimumWithdrawalError(
            f"Minimum withdrawal is {settings.min_withdrawal_amount} ZEC, requested {amount} ZEC"
        )

    tx = _new_transaction(
        type=TransactionType.WITHDRAW,
        amount=amount,
        currency=Currency.ZEC,
        timestamp=now,
        status=TransactionStatus.PENDING,
    )
    user.balance -= amount
    user.transactions.append(tx)
    return tx


def apply_deposit(user: User, plan: MiningPlan, currency: Currency, tx_hash: str,
                  min_hash_length: int, now: datetime) -> Transaction:
    """Log a PENDING plan purchase. Deposits are not escrowed: the balance is untouched."""
    cleaned = validate_tx_hash(tx_hash, min_hash_length)
    tx = _new_transaction(
        type=TransactionType.DEPOSIT,
        amount=plan.price_zec,
        currency=currency,
        tx_hash=cleaned,
        timestamp=now,
        status=TransactionStatus.PENDING,
        plan_id=plan.id,
        plan_hash_rate=plan.hash_rate,
    )
    user.transactions.append(tx)
    return tx


def apply_settlement(user: User, tx_id: str, decision: Decision, now: datetime,
                     performed_by: Optional[str] = None) -> Transaction:
    tx = get_transaction(user, tx_id)
    approve = decision == Decision.APPROVE
    transition(tx, TransactionStatus.COMPLETED if approve else TransactionStatus.FAILED, now, performed_by)

    if tx.type == TransactionType.WITHDRAW and not approve:
        user.balance += tx.amount
    elif tx.type == TransactionType.DEPOSIT and approve and tx.plan_id:
        user.active_hash_rate += tx.plan_hash_rate or 0
        if tx.plan_id not in user.active_plans:
            user.active_plans.append(tx.plan_id)
    return tx


def apply_manual_withdraw(user: User, amount: Number, now: datetime, performed_by: str) -> Transaction:
    """Admin payout: deduct immediately and log a COMPLETED withdrawal. No minimum applies."""
    amount = _positive_amount(amount)
    if amount > user.balance:
        raise InsufficientBalanceError(
            f"Insufficient balance: requested {amount} ZEC, available {user.balance} ZEC"
        )

    tx = _new_transaction(
        type=TransactionType.WITHDRAW,
        amount=amount,
        currency=Currency.ZEC,
        timestamp=now,
        status=TransactionStatus.COMPLETED,
        settled_at=now,
        settled_by=performed_by,
    )
    user.balance -= amount
    user.transactions.append(tx)
    return tx
