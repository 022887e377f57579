"""
DataPraktis Settlement Engine
=============================

Engagement formation, milestone escrow and analyst payouts.

Components:
- ledger: integer money arithmetic and fee splitting
- transitions: status transition tables and compare-and-swap writes
- EscrowService: milestone funding and gateway callbacks
- MilestoneService: submit / approve / revise workflow
- EngagementService: projects, proposals, engagement formation
- AutoReleaseScheduler: timed settlement of unreviewed milestones
- BalanceService: derived analyst balance and withdrawals
"""

from datapraktis.core.settlement.auto_release import AutoReleaseScheduler, SweepReport
from datapraktis.core.settlement.balance import Balance, BalanceService
from datapraktis.core.settlement.conversations import ConversationService
from datapraktis.core.settlement.engagement import EngagementService, MilestonePlan
from datapraktis.core.settlement.escrow import CallbackOutcome, EscrowService
from datapraktis.core.settlement.gateway import (
    GatewayNotification,
    MidtransGateway,
    PaymentGateway,
)
from datapraktis.core.settlement.ledger import FeeSplit, split_fee
from datapraktis.core.settlement.milestones import ApprovalOutcome, MilestoneService
from datapraktis.core.settlement.policy import SettlementPolicy

__all__ = [
    "ApprovalOutcome",
    "AutoReleaseScheduler",
    "Balance",
    "BalanceService",
    "CallbackOutcome",
    "ConversationService",
    "EngagementService",
    "EscrowService",
    "FeeSplit",
    "GatewayNotification",
    "MidtransGateway",
    "MilestonePlan",
    "MilestoneService",
    "PaymentGateway",
    "SettlementPolicy",
    "SweepReport",
    "split_fee",
]
