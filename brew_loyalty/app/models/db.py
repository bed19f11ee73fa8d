from __future__ import annotations
from datetime import datetime, UTC
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID, uuid4
from sqlalchemy import JSON, Column, Numeric, String
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel

# Token amounts are whole numbers of the token's smallest unit (wei-style),
# which overflow BIGINT, hence NUMERIC(78, 0).
TOKEN_DIGITS = 78


def utcnow() -> datetime:
    return datetime.now(UTC)


class TokenAmount(TypeDecorator):
    """Exact whole token units.

    NUMERIC(78, 0) where the database has it. SQLite would bind the value as
    a float, so there it is stored as decimal text instead.
    """

    impl = Numeric(TOKEN_DIGITS, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(TOKEN_DIGITS))
        return dialect.type_descriptor(Numeric(TOKEN_DIGITS, 0, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        amount = Decimal(value)
        if amount != amount.to_integral_value():
            raise ValueError(f"Token amounts must be whole base units, got {value}")
        if dialect.name == "sqlite":
            return str(int(amount))
        return amount

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


def token_column(nullable: bool = False) -> Column:
    return Column(TokenAmount(), nullable=nullable)


class Customer(SQLModel, table=True):
    __tablename__ = "customers"

    wallet_address: str = Field(primary_key=True)
    stamp_count: int = Field(default=0, ge=0)
    pending_rewards: int = Field(default=0, ge=0)
    total_volume: Decimal = Field(default=Decimal(0), sa_column=token_column())
    last_purchase_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

class PurchaseRecord(SQLModel, table=True):
    __tablename__ = "purchase_history"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    wallet_address: str = Field(index=True)
    tx_hash: str = Field(unique=True, index=True)
    block_number: Optional[int] = None
    price: Decimal = Field(sa_column=token_column())
    stamps_awarded: int = 1
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    outlet_id: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, index=True)

class RewardRedemptionRecord(SQLModel, table=True):
    __tablename__ = "reward_history"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    wallet_address: str = Field(index=True)
    tx_hash: str = Field(unique=True, index=True)
    block_number: Optional[int] = None
    reward_amount: Optional[Decimal] = Field(default=None, sa_column=token_column(nullable=True))
    created_at: datetime = Field(default_factory=utcnow, index=True)

class DriftRecord(SQLModel, table=True):
    __tablename__ = "reconciliation_drift"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    wallet_address: str = Field(index=True)
    tx_hash: Optional[str] = None
    operation: str
    on_chain_stamp_count: int
    on_chain_pending_rewards: int
    off_chain_stamp_count: int
    off_chain_pending_rewards: int
    stale_read: bool = False
    created_at: datetime = Field(default_factory=utcnow, index=True)
