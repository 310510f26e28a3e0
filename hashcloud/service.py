import logging
import threading
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import uuid4

from .accrual import Number, accrue, apply_accrual, earnings_per_second
from .config import DEFAULT_PLANS, DEFAULT_SETTINGS, AppConfig, get_config
from .errors import (
    AddressAlreadyRegisteredError,
    InsufficientBalanceError,
    InvalidAddressError,
    TransientWriteError,
)
from .models import (
    BalanceResponse,
    Currency,
    Decision,
    GlobalSettings,
    MiningPlan,
    PendingTransaction,
    Transaction,
    User,
)
from .referral import ReferralAttribution
from .settlement import SettlementAuthority
from .store import InMemoryCatalog, InMemoryLedgerStore, JsonFileLedgerStore, LedgerStore
from .transactions import apply_deposit, apply_withdraw
from .writer import LedgerWriter

logger = logging.getLogger(__name__)


class HashCloudService:
    def __init__(self, store: Optional[LedgerStore] = None,
                 catalog: Optional[InMemoryCatalog] = None,
                 config: Optional[AppConfig] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or get_config()
        if store is None:
            store = JsonFileLedgerStore(self.config.data_file) if self.config.data_file else InMemoryLedgerStore()
        self.store = store
        self.catalog = catalog or InMemoryCatalog(DEFAULT_SETTINGS, DEFAULT_PLANS)
        self.clock = clock
        self.writer = LedgerWriter(self.store, max_retries=self.config.max_write_retries)
        self.referrals = ReferralAttribution(self.store, self.writer)
        self.settlement = SettlementAuthority(self.store, self.writer, self.catalog.get_settings, clock)
        self._settings_lock = threading.Lock()

    def _now(self) -> tuple[float, datetime]:
        ts = self.clock()
        return ts, datetime.fromtimestamp(ts, tz=timezone.utc)

    # --- registration ---

    def register_user(self, login_address: str, referrer_id: Optional[str] = None) -> User:
        address = (login_address or "").strip()
        if len(address) < self.config.min_address_length:
            raise InvalidAddressError(
                f"Login address must be at least {self.config.min_address_length} characters"
            )
        if self.store.find_by_address(address):
            raise AddressAlreadyRegisteredError(f"Address {address} already registered")

        settings = self.catalog.get_settings()
        ts, now = self._now()
        referred_by = self.referrals.resolve_referrer(referrer_id, address)

        user = self.store.add(User(
            id=str(uuid4()),
            login_address=address,
            balance=Decimal("0"),
            active_hash_rate=self.config.baseline_hash_rate,
            joined_at=now,
            last_accrual_at=ts,
            transactions=[],
            active_plans=[],
            referral_count=0,
            referred_by=referred_by,
            version=0,
        ))
        logger.info(f"Registered user {user.id} ({address})")

        if referred_by:
            try:
                self.referrals.attribute(referred_by, user.id, settings, now, ts)
            except TransientWriteError:
                # The registration itself is committed; the bonus is not retried on later logins
                logger.error(
                    f"Referral bonus for {referred_by} (referred user {user.id}) was not granted: "
                    f"referrer record stayed contended after {self.config.max_write_retries} attempts"
                )
        return user

    def login(self, login_address: str, referrer_id: Optional[str] = None) -> User:
        """Return the account for ``login_address``, registering it on first sight."""
        existing = self.store.find_by_address((login_address or "").strip())
        if existing:
            return existing
        return self.register_user(login_address, referrer_id)

    # --- reads ---

    def get_user(self, user_id: str) -> User:
        return self.store.get(user_id)

    def list_users(self) -> list[User]:
        return self.store.list()

    def get_transactions(self, user_id: str) -> list[Transaction]:
        return self.store.get(user_id).transactions

    # --- accrual ---

    def accrue(self, user: User, elapsed_seconds) -> Decimal:
        return accrue(user, elapsed_seconds, self.catalog.get_settings())

    def sync_balance(self, user_id: str) -> User:
        """Credit earnings since the last accrual watermark and commit them."""
        settings = self.catalog.get_settings()
        ts, _ = self._now()
        user, earned = self.writer.mutate(user_id, lambda u: apply_accrual(u, settings, ts))
        logger.debug(f"Accrued {earned} ZEC for user {user_id}")
        return user

    def get_balance(self, user_id: str) -> BalanceResponse:
        user = self.sync_balance(user_id)
        return BalanceResponse(
            user_id=user.id,
            balance=user.balance,
            active_hash_rate=user.active_hash_rate,
            earnings_per_second=earnings_per_second(user, self.catalog.get_settings()),
            last_accrual_at=user.last_accrual_at,
        )

    # --- user-initiated transactions ---

    def submit_withdraw(self, user_id: str, amount: Optional[Number] = None) -> tuple[User, Transaction]:
        settings = self.catalog.get_settings()
        ts, now = self._now()

        def _withdraw(user: User) -> Transaction:
            apply_accrual(user, settings, ts)
            if amount is None and user.balance == 0:
                raise InsufficientBalanceError(f"User {user_id} has no balance to withdraw")
            return apply_withdraw(user, user.balance if amount is None else amount, settings, now)

        user, tx = self.writer.mutate(user_id, _withdraw)
        logger.info(f"Withdrawal {tx.id} of {tx.amount} ZEC requested by user {user_id}")
        return user, tx

    def submit_deposit(self, user_id: str, plan_id: str, currency: Currency,
                       tx_hash: str) -> tuple[User, Transaction]:
        plan = self.catalog.get_plan(plan_id)
        _, now = self._now()
        min_length = self.config.min_tx_hash_length

        user, tx = self.writer.mutate(
            user_id, lambda u: apply_deposit(u, plan, currency, tx_hash, min_length, now)
        )
        logger.info(f"Deposit {tx.id} for plan {plan.id} ({tx.amount} ZEC via {currency.value}) submitted by user {user_id}")
        return user, tx

    # --- admin ---

    def list_pending(self) -> list[PendingTransaction]:
        return self.settlement.list_pending()

    def settle(self, user_id: str, tx_id: str, decision: Decision,
               performed_by: Optional[str] = None) -> tuple[User, Transaction]:
        return self.settlement.settle(user_id, tx_id, decision, performed_by)

    def manual_withdraw(self, admin: str, user_id: str, amount: Number) -> tuple[User, Transaction]:
        return self.settlement.manual_withdraw(admin, user_id, amount)

    def get_settings(self) -> GlobalSettings:
        return self.catalog.get_settings()

    def update_settings(self, settings: GlobalSettings, performed_by: Optional[str] = None) -> GlobalSettings:
        """
        Replace the global settings.

        A new ``base_mining_rate`` only applies from now on: every user is
        first flushed at the outgoing rate, then the settings are swapped.
        """
        with self._settings_lock:
            previous = self.catalog.get_settings()
            if settings.base_mining_rate != previous.base_mining_rate:
                ts, _ = self._now()
                users = self.store.list()
                for user in users:
                    self.writer.mutate(user.id, lambda u: apply_accrual(u, previous, ts))
                logger.info(
                    f"Flushed accrual for {len(users)} users at {previous.base_mining_rate} "
                    f"before mining rate change to {settings.base_mining_rate}"
                )
            return self.catalog.set_settings(settings, performed_by)

    def get_plans(self) -> list[MiningPlan]:
        return self.catalog.get_plans()

    def update_plans(self, plans: list[MiningPlan], performed_by: Optional[str] = None) -> list[MiningPlan]:
        return self.catalog.set_plans(plans, performed_by)

    def payment_address(self, currency: Currency) -> Optional[str]:
        return self.catalog.get_settings().payment_address(currency)
