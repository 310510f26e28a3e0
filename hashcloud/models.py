from datetime import datetime
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class HashUnit(IntEnum):
    KH = 1_000
    MH = 1_000_000
    GH = 1_000_000_000
    TH = 1_000_000_000_000


class TransactionType(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    MINING_REWARD = "MINING_REWARD"
    PURCHASE = "PURCHASE"
    REFERRAL_BONUS = "REFERRAL_BONUS"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Decision(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class Currency(str, Enum):
    ZEC = "ZEC"
    BTC = "BTC"
    LTC = "LTC"
    USDT_TRC20 = "USDT_TRC20"
    USDT_BEP20 = "USDT_BEP20"


class Transaction(BaseModel):
    id: str
    type: TransactionType
    amount: Decimal = Field(..., ge=0)
    currency: Optional[Currency] = None
    tx_hash: Optional[str] = None
    timestamp: datetime
    status: TransactionStatus
    plan_id: Optional[str] = None
    # Hash rate of the plan as it was priced when the deposit was submitted
    plan_hash_rate: Optional[int] = Field(default=None, gt=0)
    referred_user_id: Optional[str] = None
    settled_at: Optional[datetime] = None
    settled_by: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING


class User(BaseModel):
    id: str
    login_address: str
    balance: Decimal = Field(..., ge=0)
    active_hash_rate: int = Field(..., ge=0)
    joined_at: datetime
    last_accrual_at: float
    transactions: list[Transaction]
    active_plans: list[str]
    referral_count: int = Field(..., ge=0)
    referred_by: Optional[str]
    version: int = Field(..., ge=0)

    model_config = ConfigDict(extra="forbid")

    def find_transaction(self, tx_id: str) -> Optional[Transaction]:
        for tx in self.transactions:
            if tx.id == tx_id:
                return tx
        return None


class MiningPlan(BaseModel):
    id: str
    name: str
    hash_rate: int = Field(..., gt=0, description="Hash rate granted in H/s")
    hash_rate_label: str
    price_zec: Decimal = Field(..., gt=0)
    daily_profit: Decimal = Field(default=Decimal("0"), ge=0)
    features: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class PaymentConfig(BaseModel):
    btc_address: str
    ltc_address: str
    usdt_trc20_address: str
    usdt_bep20_address: str

    model_config = ConfigDict(extra="forbid")


class GlobalSettings(BaseModel):
    zec_to_usd: Decimal = Field(..., ge=0)
    base_mining_rate: Decimal = Field(..., ge=0, description="ZEC per H per second")
    min_withdrawal_amount: Decimal = Field(..., ge=0)
    referral_bonus_hash_rate: int = Field(..., ge=0)
    support_email: str
    payment_config: PaymentConfig

    model_config = ConfigDict(extra="forbid")

    def payment_address(self, currency: Currency) -> Optional[str]:
        addresses = {
            Currency.BTC: self.payment_config.btc_address,
            Currency.LTC: self.payment_config.ltc_address,
            Currency.USDT_TRC20: self.payment_config.usdt_trc20_address,
            Currency.USDT_BEP20: self.payment_config.usdt_bep20_address,
        }
        return addresses.get(currency)


class RegisterRequest(BaseModel):
    login_address: str = Field(..., description="ZEC address used for login and withdrawals")
    referrer_id: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "login_address": "t1Rv4exT7bqhZqi2j7xz8bUHDMxwosrjADU",
            "referrer_id": "550e8400-e29b-41d4-a716-446655440000"
        }
    })


class WithdrawRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, description="Omit to withdraw the whole balance")


class DepositRequest(BaseModel):
    plan_id: str
    currency: Currency
    tx_hash: str


class SettleRequest(BaseModel):
    decision: Decision
    performed_by: Optional[str] = None


class ManualWithdrawRequest(BaseModel):
    amount: Decimal
    performed_by: str


class TransactionResponse(BaseModel):
    user_id: str
    transaction: Transaction
    balance: Decimal
    active_hash_rate: int
    message: str


class PendingTransaction(BaseModel):
    user_id: str
    login_address: str
    transaction: Transaction


class BalanceResponse(BaseModel):
    user_id: str
    balance: Decimal
    active_hash_rate: int
    earnings_per_second: Decimal
    last_accrual_at: float


class PaymentAddressResponse(BaseModel):
    currency: Currency
    address: str
