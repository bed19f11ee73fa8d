from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ReconciliationStatus(str, Enum):
    RECONCILED = "reconciled"
    DEGRADED_RECONCILED = "degraded_reconciled"


class ProductInfo(BaseModel):
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    outlet_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CustomerResponse(BaseModel):
    wallet_address: str
    stamp_count: int = Field(..., ge=0)
    pending_rewards: int = Field(..., ge=0)
    total_volume: Decimal = Field(..., ge=0, description="Cumulative spend in token base units")
    last_purchase_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ChainCounters(BaseModel):
    stamp_count: int
    pending_rewards: int


class DriftResponse(BaseModel):
    wallet_address: str
    tx_hash: Optional[str] = None
    operation: str
    on_chain: ChainCounters
    off_chain: ChainCounters
    stale_read: bool = False
    created_at: Optional[datetime] = None


class ReconciliationResponse(BaseModel):
    customer: CustomerResponse
    status: ReconciliationStatus
    tx_hash: str
    block_number: Optional[int] = None
    reward_earned: bool = False
    duplicate: bool = False
    on_chain: Optional[ChainCounters] = None
    drift: list[DriftResponse] = Field(default_factory=list)


class PurchaseRequest(ProductInfo):
    wallet_address: str = Field(..., min_length=1)
    amount: int = Field(..., ge=1, description="Price in token base units (must be >= 1)")
    stamps_awarded: int = Field(default=1, ge=1)
    reward_threshold: Optional[int] = Field(default=None, ge=1)


class PurchaseSyncRequest(ProductInfo):
    wallet_address: str = Field(..., min_length=1)
    tx_hash: str = Field(..., min_length=1)
    price: int = Field(..., ge=1, description="Price in token base units (must be >= 1)")
    stamps_awarded: int = Field(default=1, ge=1)
    reward_threshold: Optional[int] = Field(default=None, ge=1)


class StampRequest(BaseModel):
    wallet_address: str = Field(..., min_length=1)
    reward_threshold: Optional[int] = Field(default=None, ge=1)
    memo: Optional[str] = Field(default=None, description="Why the stamp was granted")


class RedemptionRequest(BaseModel):
    wallet_address: str = Field(..., min_length=1)


class RedemptionSyncRequest(BaseModel):
    wallet_address: str = Field(..., min_length=1)
    tx_hash: str = Field(..., min_length=1)
    reward_amount: Optional[int] = Field(default=None, ge=0)


class PurchaseResponse(BaseModel):
    id: UUID
    wallet_address: str
    tx_hash: str
    block_number: Optional[int] = None
    price: Decimal
    stamps_awarded: int
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    outlet_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class PurchaseHistoryResponse(BaseModel):
    items: list[PurchaseResponse]
    next_cursor: Optional[str] = None


class RedemptionResponse(BaseModel):
    id: UUID
    wallet_address: str
    tx_hash: str
    block_number: Optional[int] = None
    reward_amount: Optional[Decimal] = None
    created_at: datetime


class CustomerSummaryResponse(BaseModel):
    customer: CustomerResponse
    reward_threshold: int
    stamps_to_next_reward: int
    purchase_count: int
    redemption_count: int


class AuditResponse(BaseModel):
    wallet_address: str
    status: Literal["in_sync", "drift", "unavailable"]
    on_chain: Optional[ChainCounters] = None
    off_chain: ChainCounters
