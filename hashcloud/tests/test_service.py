"""
Tests for the service facade.

Tests cover:
1. Registration and login
2. Referral attribution
3. Lazy accrual
4. Withdrawal and deposit round trips through settlement
5. Concurrent settlement of one transaction
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from hashcloud.errors import (
    AddressAlreadyRegisteredError,
    AlreadySettledError,
    InsufficientBalanceError,
    InvalidAddressError,
    InvalidAmountError,
    InvalidTransactionHashError,
    TransactionNotFoundError,
    UnknownPlanError,
    UnknownUserError,
)
from hashcloud.models import Currency, Decision, TransactionStatus, TransactionType

ALICE = "t1AliceZecAddress0001"
BOB = "t1BobZecAddress000002"
CAROL = "t1CarolZecAddress0003"
TX_HASH = "0x9f2c4e7a1b3d5f60"


class TestRegistration:
    def test_new_user_starts_at_baseline(self, service):
        user = service.register_user(ALICE)

        assert user.login_address == ALICE
        assert user.balance == 0
        assert user.active_hash_rate == service.config.baseline_hash_rate
        assert user.transactions == []
        assert user.referred_by is None

    def test_short_address_rejected(self, service):
        with pytest.raises(InvalidAddressError):
            service.register_user("t1short")

    def test_duplicate_address_rejected(self, service):
        service.register_user(ALICE)
        with pytest.raises(AddressAlreadyRegisteredError):
            service.register_user(ALICE)

    def test_login_returns_existing_account(self, service):
        first = service.login(ALICE)
        again = service.login(ALICE)

        assert again.id == first.id
        assert len(service.list_users()) == 1

    def test_unknown_user(self, service):
        with pytest.raises(UnknownUserError):
            service.get_user("nobody")


class TestReferral:
    def test_referrer_gets_bonus_once(self, service):
        referrer = service.register_user(ALICE)
        bonus = service.get_settings().referral_bonus_hash_rate

        referred = service.register_user(BOB, referrer_id=referrer.id)

        updated = service.get_user(referrer.id)
        assert updated.active_hash_rate == referrer.active_hash_rate + bonus
        assert updated.referral_count == 1
        assert referred.referred_by == referrer.id

        bonuses = [t for t in updated.transactions if t.type == TransactionType.REFERRAL_BONUS]
        assert len(bonuses) == 1
        assert bonuses[0].status == TransactionStatus.COMPLETED
        assert bonuses[0].amount == 0
        assert bonuses[0].referred_user_id == referred.id

    def test_each_registration_counts(self, service):
        referrer = service.register_user(ALICE)
        service.register_user(BOB, referrer_id=referrer.id)
        service.register_user(CAROL, referrer_id=referrer.id)

        assert service.get_user(referrer.id).referral_count == 2

    def test_login_of_existing_user_grants_nothing(self, service):
        referrer = service.register_user(ALICE)
        service.login(BOB, referrer_id=referrer.id)
        service.login(BOB, referrer_id=referrer.id)

        assert service.get_user(referrer.id).referral_count == 1

    def test_unknown_referrer_is_ignored(self, service):
        existing = service.register_user(ALICE)

        user = service.register_user(BOB, referrer_id="does-not-exist")

        assert user.referred_by is None
        assert service.get_user(existing.id).referral_count == 0
        assert service.get_user(existing.id).active_hash_rate == existing.active_hash_rate

    def test_referrer_earnings_accrue_at_old_rate_first(self, service, clock):
        referrer = service.register_user(ALICE)
        clock.advance(100)

        service.register_user(BOB, referrer_id=referrer.id)

        # 10 kH/s * 1e-10 * 100 s, before the bonus raised the rate
        assert service.get_user(referrer.id).balance == Decimal("0.0001")


class TestAccrualFlush:
    def test_sync_balance_commits_earnings(self, service, clock):
        user = service.register_user(ALICE)
        clock.advance(3600)

        synced = service.sync_balance(user.id)

        assert synced.balance == Decimal("0.0036")
        assert service.get_user(user.id).balance == Decimal("0.0036")

    def test_nothing_lost_between_flushes(self, service, clock):
        user = service.register_user(ALICE)
        clock.advance(1800)
        service.sync_balance(user.id)
        clock.advance(1800)

        assert service.sync_balance(user.id).balance == Decimal("0.0036")

    def test_clock_going_backwards_never_reduces_balance(self, service, clock):
        user = service.register_user(ALICE)
        clock.advance(3600)
        service.sync_balance(user.id)
        clock.advance(-600)

        synced = service.sync_balance(user.id)

        assert synced.balance == Decimal("0.0036")

    def test_rate_change_only_applies_going_forward(self, service, clock):
        user = service.register_user(ALICE)
        clock.advance(86400)
        settings = service.get_settings()

        service.update_settings(settings.model_copy(update={"base_mining_rate": settings.base_mining_rate * 1000}))

        # One day at the old rate, committed before the new rate took effect
        assert service.sync_balance(user.id).balance == Decimal("0.0864")
        clock.advance(1)
        # 10 kH/s * 1e-7 * 1 s
        assert service.sync_balance(user.id).balance == Decimal("0.0874")

    def test_settings_change_without_rate_change_keeps_watermark(self, service, clock):
        user = service.register_user(ALICE)
        clock.advance(3600)

        service.update_settings(service.get_settings().model_copy(update={"min_withdrawal_amount": Decimal("0.1")}))

        assert service.get_user(user.id).balance == 0
        assert service.sync_balance(user.id).balance == Decimal("0.0036")

    def test_balance_response(self, service, clock):
        user = service.register_user(ALICE)
        clock.advance(10)

        balance = service.get_balance(user.id)

        assert balance.balance == Decimal("0.00001")
        assert balance.earnings_per_second == Decimal("0.000001")


class TestWithdrawFlow:
    def test_accrued_balance_too_small(self, service, clock):
        user = service.register_user(ALICE)
        clock.advance(3600)

        with pytest.raises(InsufficientBalanceError):
            service.submit_withdraw(user.id, Decimal("0.01"))

        assert service.sync_balance(user.id).balance == Decimal("0.0036")

    def test_approve(self, service, fund):
        user = service.register_user(ALICE)
        fund(user.id, "0.1")

        user, tx = service.submit_withdraw(user.id, Decimal("0.05"))
        assert user.balance == Decimal("0.05")
        assert tx.status == TransactionStatus.PENDING

        user, tx = service.settle(user.id, tx.id, Decision.APPROVE, "admin")
        assert tx.status == TransactionStatus.COMPLETED
        assert user.balance == Decimal("0.05")

    def test_reject_refunds(self, service, fund):
        user = service.register_user(ALICE)
        fund(user.id, "0.1")
        _, tx = service.submit_withdraw(user.id, Decimal("0.05"))

        user, tx = service.settle(user.id, tx.id, Decision.REJECT, "admin")

        assert tx.status == TransactionStatus.FAILED
        assert user.balance == Decimal("0.1")

    def test_float_amounts(self, service, fund):
        user = service.register_user(ALICE)
        fund(user.id, "0.1")

        user, tx = service.submit_withdraw(user.id, 0.05)
        assert tx.amount == Decimal("0.05")
        assert user.balance == Decimal("0.05")

        user, tx = service.manual_withdraw("admin", user.id, 0.05)
        assert tx.amount == Decimal("0.05")
        assert user.balance == 0

    @pytest.mark.parametrize("amount", [float("nan"), float("inf"), "lots"])
    def test_non_numeric_amount_rejected(self, service, fund, amount):
        user = service.register_user(ALICE)
        fund(user.id, "0.1")

        with pytest.raises(InvalidAmountError):
            service.submit_withdraw(user.id, amount)

        assert service.get_user(user.id).balance == Decimal("0.1")

    def test_withdraw_everything_by_default(self, service, fund):
        user = service.register_user(ALICE)
        fund(user.id, "0.3")

        user, tx = service.submit_withdraw(user.id)

        assert tx.amount == Decimal("0.3")
        assert user.balance == 0

    def test_withdraw_everything_with_empty_balance(self, service):
        user = service.register_user(ALICE)
        with pytest.raises(InsufficientBalanceError):
            service.submit_withdraw(user.id)

    def test_balance_never_negative(self, service, fund):
        user = service.register_user(ALICE)
        fund(user.id, "0.2")
        txs = []
        for _ in range(4):
            try:
                _, tx = service.submit_withdraw(user.id, Decimal("0.07"))
                txs.append(tx)
            except InsufficientBalanceError:
                pass
            assert service.get_user(user.id).balance >= 0

        assert len(txs) == 2
        service.settle(user.id, txs[0].id, Decision.REJECT)
        service.settle(user.id, txs[1].id, Decision.APPROVE)
        assert service.get_user(user.id).balance == Decimal("0.13")

    def test_manual_withdraw(self, service, fund):
        user = service.register_user(ALICE)
        fund(user.id, "0.02")

        user, tx = service.manual_withdraw("admin", user.id, Decimal("0.02"))

        assert tx.status == TransactionStatus.COMPLETED
        assert user.balance == 0
        assert service.list_pending() == []


class TestDepositFlow:
    def test_approve_grants_plan_once(self, service):
        user = service.register_user(ALICE)
        plan = service.get_plans()[0]

        _, tx = service.submit_deposit(user.id, plan.id, Currency.BTC, TX_HASH)
        service.settle(user.id, tx.id, Decision.APPROVE)
        with pytest.raises(AlreadySettledError):
            service.settle(user.id, tx.id, Decision.APPROVE)

        updated = service.get_user(user.id)
        assert updated.active_hash_rate == user.active_hash_rate + plan.hash_rate
        assert updated.active_plans == [plan.id]

    def test_second_settle_leaves_state_identical(self, service):
        user = service.register_user(ALICE)
        _, tx = service.submit_deposit(user.id, "plan_starter", Currency.LTC, TX_HASH)
        service.settle(user.id, tx.id, Decision.APPROVE)
        after_first = service.get_user(user.id)

        with pytest.raises(AlreadySettledError):
            service.settle(user.id, tx.id, Decision.REJECT)

        assert service.get_user(user.id) == after_first

    def test_reject_changes_nothing(self, service):
        user = service.register_user(ALICE)
        _, tx = service.submit_deposit(user.id, "plan_starter", Currency.BTC, TX_HASH)

        _, tx = service.settle(user.id, tx.id, Decision.REJECT)

        updated = service.get_user(user.id)
        assert tx.status == TransactionStatus.FAILED
        assert updated.active_hash_rate == user.active_hash_rate
        assert updated.active_plans == []

    def test_terms_frozen_at_submission(self, service):
        user = service.register_user(ALICE)
        starter = service.get_plans()[0]
        _, tx = service.submit_deposit(user.id, starter.id, Currency.BTC, TX_HASH)

        # Admin reprices the plan and drops the rest of the catalog before approval
        service.update_plans([starter.model_copy(update={"hash_rate": 1})])
        service.settle(user.id, tx.id, Decision.APPROVE)

        assert service.get_user(user.id).active_hash_rate == user.active_hash_rate + starter.hash_rate

    def test_unknown_plan(self, service):
        user = service.register_user(ALICE)
        with pytest.raises(UnknownPlanError):
            service.submit_deposit(user.id, "plan_missing", Currency.BTC, TX_HASH)

    def test_invalid_hash_leaves_no_transaction(self, service):
        user = service.register_user(ALICE)
        with pytest.raises(InvalidTransactionHashError):
            service.submit_deposit(user.id, "plan_starter", Currency.BTC, "abc")
        assert service.get_transactions(user.id) == []

    def test_rate_change_applies_from_approval(self, service, clock):
        user = service.register_user(ALICE)
        plan = service.get_plans()[0]
        _, tx = service.submit_deposit(user.id, plan.id, Currency.BTC, TX_HASH)
        clock.advance(100)

        service.settle(user.id, tx.id, Decision.APPROVE)
        assert service.get_user(user.id).balance == Decimal("0.0001")

        clock.advance(10)
        rate = service.get_settings().base_mining_rate
        expected = Decimal("0.0001") + (10_000 + plan.hash_rate) * rate * 10
        assert service.sync_balance(user.id).balance == expected


class TestSettlementAuthority:
    def test_pending_across_users(self, service, fund):
        alice = service.register_user(ALICE)
        bob = service.register_user(BOB)
        fund(alice.id, "1")
        service.submit_withdraw(alice.id, Decimal("0.5"))
        service.submit_deposit(bob.id, "plan_starter", Currency.BTC, TX_HASH)
        service.submit_deposit(alice.id, "plan_advanced", Currency.USDT_TRC20, TX_HASH)

        pending = service.list_pending()

        assert len(pending) == 3
        by_user = {}
        for item in pending:
            by_user.setdefault(item.user_id, []).append(item.transaction.type)
        assert by_user[alice.id] == [TransactionType.WITHDRAW, TransactionType.DEPOSIT]
        assert by_user[bob.id] == [TransactionType.DEPOSIT]

    def test_unknown_transaction(self, service):
        user = service.register_user(ALICE)
        with pytest.raises(TransactionNotFoundError):
            service.settle(user.id, "missing", Decision.APPROVE)

    def test_concurrent_rejects_refund_once(self, service, fund):
        user = service.register_user(ALICE)
        fund(user.id, "0.1")
        _, tx = service.submit_withdraw(user.id, Decimal("0.05"))

        def attempt(_):
            try:
                service.settle(user.id, tx.id, Decision.REJECT)
                return "settled"
            except AlreadySettledError:
                return "already"

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(16)))

        assert results.count("settled") == 1
        assert results.count("already") == 15
        assert service.get_user(user.id).balance == Decimal("0.1")

    def test_concurrent_flush_and_withdraw_do_not_lose_updates(self, service, fund, clock):
        user = service.register_user(ALICE)
        fund(user.id, "1")

        def work(i):
            if i % 2:
                service.sync_balance(user.id)
            else:
                service.submit_withdraw(user.id, Decimal("0.05"))

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(work, range(20)))

        # 10 withdrawals of 0.05 escrowed; no time passed so nothing accrued
        assert service.get_user(user.id).balance == Decimal("0.5")
        assert len(service.list_pending()) == 10
