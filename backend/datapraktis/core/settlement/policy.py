"""
Settlement Policy - configuration inputs to the engine.
"""

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from datapraktis.core.config import Settings, settings as default_settings


@dataclass(frozen=True)
class SettlementPolicy:
    """Tunable values shared by every settlement service."""

    fee_rate: Decimal = Decimal("0.10")
    security_hold_days: int = 5
    review_window_days: int = 14
    revision_limit: int = 3
    min_withdrawal_amount: int = 100_000
    min_proposal_budget: int = 500_000

    @property
    def review_window(self) -> timedelta:
        return timedelta(days=self.review_window_days)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SettlementPolicy":
        settings = settings or default_settings
        return cls(
            fee_rate=settings.PLATFORM_FEE_RATE,
            security_hold_days=settings.SECURITY_HOLD_DAYS,
            review_window_days=settings.REVIEW_WINDOW_DAYS,
            revision_limit=settings.DEFAULT_REVISION_LIMIT,
            min_withdrawal_amount=settings.MIN_WITHDRAWAL_AMOUNT,
            min_proposal_budget=settings.MIN_PROPOSAL_BUDGET,
        )
