"""
Ledger Primitives - integer money arithmetic.

All amounts are integer rupiah. The platform fee is floored, so the
analyst's net share absorbs the rounding and fee + net == gross holds
for every split.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_FLOOR, Decimal
from typing import Optional

from datapraktis.core.exceptions import ValidationError


@dataclass(frozen=True)
class FeeSplit:
    """Gross amount divided between platform and analyst."""
    gross: int
    fee: int
    net: int


def validate_amount(amount: int) -> int:
    """Reject anything that is not a positive integer amount."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"Amount must be an integer, got {amount!r}")
    if amount <= 0:
        raise ValidationError(f"Amount must be positive, got {amount}")
    return amount


def split_fee(amount: int, rate: Decimal) -> FeeSplit:
    """
    Split a gross amount into platform fee and analyst net.

    Args:
        amount: Gross amount in rupiah
        rate: Commission rate in [0, 1), e.g. Decimal("0.10")

    Returns:
        FeeSplit with fee = floor(amount * rate) and net = amount - fee
    """
    validate_amount(amount)
    rate = Decimal(rate)
    if rate < 0 or rate >= 1:
        raise ValidationError(f"Fee rate must be in [0, 1), got {rate}")

    fee = int((Decimal(amount) * rate).to_integral_value(rounding=ROUND_FLOOR))
    return FeeSplit(gross=amount, fee=fee, net=amount - fee)


def format_rupiah(amount: int) -> str:
    """Rp 1.000.000"""
    return "Rp " + f"{amount:,}".replace(",", ".")


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hold_release_time(released_at: datetime, hold_days: int) -> datetime:
    """When released funds become withdrawable."""
    return ensure_utc(released_at) + timedelta(days=hold_days)
