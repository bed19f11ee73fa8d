from .db import Customer as CustomerModel
from .db import DriftRecord as DriftRecordModel
from .db import PurchaseRecord as PurchaseRecordModel
from .db import RewardRedemptionRecord as RewardRedemptionRecordModel
from .schemas import (
    AuditResponse,
    ChainCounters,
    CustomerResponse,
    CustomerSummaryResponse,
    DriftResponse,
    ProductInfo,
    PurchaseHistoryResponse,
    PurchaseRequest,
    PurchaseResponse,
    PurchaseSyncRequest,
    ReconciliationResponse,
    ReconciliationStatus,
    RedemptionRequest,
    RedemptionResponse,
    RedemptionSyncRequest,
    StampRequest,
)

__all__ = [
    "AuditResponse",
    "ChainCounters",
    "CustomerResponse",
    "CustomerSummaryResponse",
    "DriftResponse",
    "ProductInfo",
    "PurchaseHistoryResponse",
    "PurchaseRequest",
    "PurchaseResponse",
    "PurchaseSyncRequest",
    "ReconciliationResponse",
    "ReconciliationStatus",
    "RedemptionRequest",
    "RedemptionResponse",
    "RedemptionSyncRequest",
    "StampRequest",
    "CustomerModel",
    "PurchaseRecordModel",
    "RewardRedemptionRecordModel",
    "DriftRecordModel",
]
