"""
Referral Attribution.

A referrer earns ``referral_bonus_hash_rate`` once per registration they
brought in. Unknown referrers and self-referrals are ignored on purpose:
a bad invite link must never block a signup.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from .accrual import apply_accrual
from .errors import UnknownUserError
from .models import (
    Currency,
    GlobalSettings,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from .store import LedgerStore
from .writer import LedgerWriter

logger = logging.getLogger(__name__)


def apply_referral_bonus(referrer: User, referred_user_id: str, settings: GlobalSettings,
                         now: datetime) -> Transaction:
    tx = Transaction(
        id=str(uuid4()),
        type=TransactionType.REFERRAL_BONUS,
        amount=Decimal("0"),
        currency=Currency.ZEC,
        timestamp=now,
        status=TransactionStatus.COMPLETED,
        referred_user_id=referred_user_id,
        settled_at=now,
    )
    referrer.active_hash_rate += settings.referral_bonus_hash_rate
    referrer.referral_count += 1
    referrer.transactions.append(tx)
    return tx


class ReferralAttribution:
    def __init__(self, store: LedgerStore, writer: LedgerWriter):
        self.store = store
        self.writer = writer

    def resolve_referrer(self, referrer_id: Optional[str], login_address: str) -> Optional[str]:
        """Return ``referrer_id`` if it names an existing user other than the registrant."""
        if not referrer_id:
            return None
        try:
            referrer = self.store.get(referrer_id)
        except UnknownUserError:
            logger.info(f"Ignoring unknown referrer {referrer_id}")
            return None
        if referrer.login_address == login_address:
            logger.info(f"Ignoring self-referral for {login_address}")
            return None
        return referrer.id

    def attribute(self, referrer_id: str, referred_user_id: str, settings: GlobalSettings,
                  now: datetime, accrue_at: float) -> Transaction:
        """
        Grant the bonus to ``referrer_id``.

        Called exactly once, after the referred user has been stored; the
        bonus is never re-granted for the same registration.
        """
        def _grant(referrer: User) -> Transaction:
            # Earnings up to now are credited at the old rate before the bonus lands
            apply_accrual(referrer, settings, accrue_at)
            return apply_referral_bonus(referrer, referred_user_id, settings, now)

        referrer, tx = self.writer.mutate(referrer_id, _grant)
        logger.info(
            f"Referral bonus of {settings.referral_bonus_hash_rate} H/s granted to {referrer.id} "
            f"(referrals: {referrer.referral_count})"
        )
        return tx
