"""
Value engine for a cloud hash-rate rental service

This module provides:
- Lazy, time-based balance accrual from an assigned hash rate
- Withdrawal escrow and plan-purchase deposits: pending → completed / failed
- Admin settlement and manual payouts that never double-apply effects
- One-shot referral bonuses granted at registration
- Optimistic-concurrency ledger store adapters
"""

from .accrual import accrue
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
from .service import HashCloudService

__all__ = [
    "accrue",
    "Currency",
    "Decision",
    "GlobalSettings",
    "MiningPlan",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "User",
    "HashCloudService",
]
