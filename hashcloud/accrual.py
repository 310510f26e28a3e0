"""
Accrual Engine.

Earnings are ``active_hash_rate * base_mining_rate * elapsed_seconds``.
Instead of a per-session timer, accrual is applied lazily from the user's
persisted ``last_accrual_at`` watermark whenever the record is touched, so
a crash between flushes loses nothing: the next read recomputes the gap.

The watermark is wall-clock epoch seconds, since it has to mean the same
thing across processes and restarts. A backwards clock step credits
nothing, but a forward step (NTP correction, manual change) is credited as
elapsed mining time; accrual is only as trustworthy as the host clock.

Lazy accrual uses the settings in force when the gap is flushed, so any
change to ``base_mining_rate`` must flush every user at the old rate first
(see ``HashCloudService.update_settings``).
"""

from decimal import Decimal, InvalidOperation
from typing import Union

from .errors import InvalidAmountError
from .models import GlobalSettings, User

Number = Union[int, float, Decimal]


def to_decimal(value: Number) -> Decimal:
    """Convert ints and floats through their decimal repr; non-finite or non-numeric input is rejected."""
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation as e:
            raise InvalidAmountError(f"Not a number: {value!r}") from e
    if not result.is_finite():
        raise InvalidAmountError(f"Not a finite number: {value!r}")
    return result


def accrue(user: User, elapsed_seconds: Number, settings: GlobalSettings) -> Decimal:
    """Earnings for ``elapsed_seconds`` at the user's current hash rate. Negative time counts as zero."""
    elapsed = max(to_decimal(elapsed_seconds), Decimal("0"))
    return user.active_hash_rate * settings.base_mining_rate * elapsed


def earnings_per_second(user: User, settings: GlobalSettings) -> Decimal:
    return accrue(user, 1, settings)


def apply_accrual(user: User, settings: GlobalSettings, now: float) -> Decimal:
    """
    Credit everything earned since ``user.last_accrual_at`` onto the candidate.

    The watermark only moves forward: if the clock reads earlier than the
    stored watermark (e.g. after a clock adjustment) nothing is credited and
    the watermark is left alone.
    """
    if now <= user.last_accrual_at:
        return Decimal("0")
    earnings = accrue(user, now - user.last_accrual_at, settings)
    user.balance += earnings
    user.last_accrual_at = now
    return earnings
