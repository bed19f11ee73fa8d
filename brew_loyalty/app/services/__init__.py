from .accrual import AccrualLedger, AccrualResult, PurchaseMetadata
from .chain import ChainLedgerClient, ChainSnapshot, TxResult, build_chain_client
from .guard import DriftWarning, ReconciliationGuard
from .loyalty import LoyaltyService
from .poller import PollResult, ReconciliationPoller
from .redemption import RedemptionResult, RedemptionService
from .repository import LoyaltyRepository

__all__ = [
    "AccrualLedger",
    "AccrualResult",
    "ChainLedgerClient",
    "ChainSnapshot",
    "DriftWarning",
    "LoyaltyRepository",
    "LoyaltyService",
    "PollResult",
    "PurchaseMetadata",
    "ReconciliationGuard",
    "ReconciliationPoller",
    "RedemptionResult",
    "RedemptionService",
    "TxResult",
    "build_chain_client",
]
