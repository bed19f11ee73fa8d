from typing import Optional

from fastapi import APIRouter, Depends

from ..core.dependencies import get_loyalty_service
from ..models import (
    AuditResponse,
    CustomerSummaryResponse,
    DriftResponse,
    PurchaseHistoryResponse,
    PurchaseRequest,
    PurchaseSyncRequest,
    ReconciliationResponse,
    RedemptionRequest,
    RedemptionResponse,
    RedemptionSyncRequest,
    StampRequest,
)
from ..services import LoyaltyService


purchase_router = APIRouter(prefix="/purchases", tags=["purchases"])

@purchase_router.post("", response_model=ReconciliationResponse)
def create_purchase(
    payload: PurchaseRequest,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> ReconciliationResponse:
    return service.purchase(payload)

@purchase_router.post("/sync", response_model=ReconciliationResponse)
def sync_purchase(
    payload: PurchaseSyncRequest,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> ReconciliationResponse:
    return service.sync_purchase(payload)

stamp_router = APIRouter(prefix="/stamps", tags=["stamps"])

@stamp_router.post("", response_model=ReconciliationResponse)
def award_stamp(
    payload: StampRequest,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> ReconciliationResponse:
    return service.award_stamp(payload)

redemption_router = APIRouter(prefix="/redemptions", tags=["redemptions"])

@redemption_router.post("", response_model=ReconciliationResponse)
def redeem_reward(
    payload: RedemptionRequest,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> ReconciliationResponse:
    return service.redeem(payload)

@redemption_router.post("/sync", response_model=ReconciliationResponse)
def sync_redemption(
    payload: RedemptionSyncRequest,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> ReconciliationResponse:
    return service.sync_redemption(payload)

customer_router = APIRouter(prefix="/customers", tags=["customers"])

@customer_router.get("/{wallet_address}", response_model=CustomerSummaryResponse)
def get_customer(
    wallet_address: str,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> CustomerSummaryResponse:
    return service.get_summary(wallet_address)

@customer_router.get("/{wallet_address}/purchases", response_model=PurchaseHistoryResponse)
def get_purchases(
    wallet_address: str,
    limit: int = 50,
    cursor: str | None = None,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> PurchaseHistoryResponse:
    return service.get_purchases(wallet_address, limit=limit, cursor=cursor)

@customer_router.get("/{wallet_address}/redemptions", response_model=list[RedemptionResponse])
def get_redemptions(
    wallet_address: str,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> list[RedemptionResponse]:
    return service.get_redemptions(wallet_address)

@customer_router.get("/{wallet_address}/reconciliation", response_model=AuditResponse)
def audit_customer(
    wallet_address: str,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> AuditResponse:
    return service.audit(wallet_address)

reconciliation_router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])

@reconciliation_router.get("/drift", response_model=list[DriftResponse])
def list_drift(
    wallet: Optional[str] = None,
    limit: int = 100,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> list[DriftResponse]:
    return service.list_drift(wallet, limit=limit)

__all__ = [
    "purchase_router",
    "stamp_router",
    "redemption_router",
    "customer_router",
    "reconciliation_router",
]
