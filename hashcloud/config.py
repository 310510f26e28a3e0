"""Runtime configuration and the default admin-owned records.

Values are read once from the environment (and a local ``.env`` file when
present). Engine calls never read this module implicitly; the service passes
what it needs into every call.
"""

import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .models import GlobalSettings, HashUnit, MiningPlan, PaymentConfig


@dataclass(frozen=True)
class AppConfig:
    """Process-level knobs for the value engine."""

    # Hash rate every new account starts with (H/s)
    baseline_hash_rate: int = 10 * HashUnit.KH
    min_tx_hash_length: int = 10
    min_address_length: int = 10
    max_write_retries: int = 3
    admin_token: str = "dev-admin-token"
    data_file: Optional[str] = None
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.baseline_hash_rate < 0:
            raise ValueError(f"baseline_hash_rate must be >= 0, got {self.baseline_hash_rate}")
        if self.max_write_retries < 1:
            raise ValueError(f"max_write_retries must be >= 1, got {self.max_write_retries}")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def load_config() -> AppConfig:
    load_dotenv(Path.cwd() / ".env")
    return AppConfig(
        baseline_hash_rate=_int_env("HASHCLOUD_BASELINE_HASH_RATE", 10 * HashUnit.KH),
        min_tx_hash_length=_int_env("HASHCLOUD_MIN_TX_HASH_LENGTH", 10),
        min_address_length=_int_env("HASHCLOUD_MIN_ADDRESS_LENGTH", 10),
        max_write_retries=_int_env("HASHCLOUD_MAX_WRITE_RETRIES", 3),
        admin_token=os.getenv("HASHCLOUD_ADMIN_TOKEN", "dev-admin-token"),
        data_file=os.getenv("HASHCLOUD_DATA_FILE") or None,
        log_level=os.getenv("HASHCLOUD_LOG_LEVEL", "INFO").upper(),
    )


@lru_cache
def get_config() -> AppConfig:
    return load_config()


def configure_logging(config: AppConfig) -> None:
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


DEFAULT_SETTINGS = GlobalSettings(
    zec_to_usd=Decimal("32.50"),
    base_mining_rate=Decimal("0.0000000001"),
    min_withdrawal_amount=Decimal("0.05"),
    referral_bonus_hash_rate=5 * HashUnit.KH,
    support_email="contact@example.com",
    payment_config=PaymentConfig(
        btc_address="bc1qxy2kgdygjrsqtzq2n0yrf2493p83kkfjhx0wlh",
        ltc_address="ltc1q5g5258n7f3d53q553957539753957",
        usdt_trc20_address="TKP7...TRC20Address",
        usdt_bep20_address="0x71C...BEP20Address",
    ),
)

DEFAULT_PLANS = [
    MiningPlan(
        id="plan_starter", name="Starter Cloud",
        hash_rate=1 * HashUnit.GH, hash_rate_label="1 GH/s",
        price_zec=Decimal("0.5"), daily_profit=Decimal("0.015"),
        features=["Instant activation", "Daily payouts"],
    ),
    MiningPlan(
        id="plan_advanced", name="Advanced Rig",
        hash_rate=100 * HashUnit.GH, hash_rate_label="100 GH/s",
        price_zec=Decimal("45"), daily_profit=Decimal("1.6"),
        features=["Priority pool", "Daily payouts"],
    ),
    MiningPlan(
        id="plan_enterprise", name="Enterprise Farm",
        hash_rate=1 * HashUnit.TH, hash_rate_label="1 TH/s",
        price_zec=Decimal("420"), daily_profit=Decimal("18.5"),
        features=["Dedicated hardware", "Priority pool", "Daily payouts"],
    ),
]
