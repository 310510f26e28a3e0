"""
Settlement Authority.

Admin-side resolution of PENDING transactions. All effects of a decision
(status change, escrow refund, hash-rate grant) are applied to a single
candidate and committed together, so a second decision on the same
transaction sees the terminal state and raises AlreadySettledError.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .accrual import Number, apply_accrual
from .models import Decision, GlobalSettings, PendingTransaction, Transaction, User
from .store import LedgerStore
from .transactions import apply_manual_withdraw, apply_settlement
from .writer import LedgerWriter

logger = logging.getLogger(__name__)


class SettlementAuthority:
    def __init__(self, store: LedgerStore, writer: LedgerWriter,
                 settings_provider: Callable[[], GlobalSettings],
                 clock: Callable[[], float]):
        self.store = store
        self.writer = writer
        self._settings = settings_provider
        self._clock = clock

    def list_pending(self) -> list[PendingTransaction]:
        """PENDING transactions of every user, grouped per user in history order."""
        pending = []
        for user in self.store.list():
            for tx in user.transactions:
                if tx.is_pending():
                    pending.append(PendingTransaction(
                        user_id=user.id, login_address=user.login_address, transaction=tx,
                    ))
        return pending

    def settle(self, user_id: str, tx_id: str, decision: Decision,
               performed_by: Optional[str] = None) -> tuple[User, Transaction]:
        settings = self._settings()
        now_ts = self._clock()
        now = datetime.fromtimestamp(now_ts, tz=timezone.utc)

        def _settle(user: User) -> Transaction:
            apply_accrual(user, settings, now_ts)
            return apply_settlement(user, tx_id, decision, now, performed_by)

        user, tx = self.writer.mutate(user_id, _settle)
        logger.info(
            f"{decision.value} {tx.type.value} {tx.id} for user {user_id} "
            f"({tx.amount} ZEC) by {performed_by or 'admin'}: now {tx.status.value}"
        )
        return user, tx

    def manual_withdraw(self, performed_by: str, user_id: str, amount: Number) -> tuple[User, Transaction]:
        settings = self._settings()
        now_ts = self._clock()
        now = datetime.fromtimestamp(now_ts, tz=timezone.utc)

        def _withdraw(user: User) -> Transaction:
            apply_accrual(user, settings, now_ts)
            return apply_manual_withdraw(user, amount, now, performed_by)

        user, tx = self.writer.mutate(user_id, _withdraw)
        logger.info(f"Manual withdrawal {tx.id} of {tx.amount} ZEC from user {user_id} by {performed_by}")
        return user, tx
