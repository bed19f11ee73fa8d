from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel import Session, select

from ..models import (
    CustomerModel,
    DriftRecordModel,
    PurchaseRecordModel,
    RewardRedemptionRecordModel,
)


class LoyaltyRepository:
    """Thin data access layer around the SQLModel session.

    Every write that races with other requests is a single conditional
    statement; nothing here does a blind read-then-overwrite.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _insert(self, model: Any):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(model)
        if dialect == "sqlite":
            return sqlite.insert(model)
        raise NotImplementedError(f"Upserts are not supported on {dialect}")

    # Customers ----------------------------------------------------------
    def get_customer(self, wallet_address: str) -> Optional[CustomerModel]:
        return self.session.get(CustomerModel, wallet_address, populate_existing=True)

    def ensure_customer(self, wallet_address: str, now: datetime) -> None:
        stmt = (
            self._insert(CustomerModel)
            .values(
                wallet_address=wallet_address,
                stamp_count=0,
                pending_rewards=0,
                total_volume=Decimal(0),
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["wallet_address"])
        )
        self.session.execute(stmt)

    def apply_accrual(
        self,
        *,
        wallet_address: str,
        observed_stamp_count: int,
        observed_volume: Decimal,
        new_stamp_count: int,
        new_volume: Decimal,
        rewards_earned: int,
        now: datetime,
    ) -> bool:
        """Compare-and-set on (stamp_count, total_volume); rewards are an in-SQL increment.

        The new volume is an exact integer computed by the caller; no token
        arithmetic happens in SQL.
        """
        stmt = (
            update(CustomerModel)
            .where(CustomerModel.wallet_address == wallet_address)
            .where(CustomerModel.stamp_count == observed_stamp_count)
            .where(CustomerModel.total_volume == observed_volume)
            .values(
                stamp_count=new_stamp_count,
                pending_rewards=CustomerModel.pending_rewards + rewards_earned,
                total_volume=new_volume,
                last_purchase_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def consume_reward(self, wallet_address: str, now: datetime) -> bool:
        stmt = (
            update(CustomerModel)
            .where(CustomerModel.wallet_address == wallet_address)
            .where(CustomerModel.pending_rewards > 0)
            .values(
                pending_rewards=CustomerModel.pending_rewards - 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    # Purchase history ---------------------------------------------------
    def insert_purchase(
        self,
        *,
        wallet_address: str,
        tx_hash: str,
        block_number: Optional[int],
        price: Decimal,
        stamps_awarded: int,
        product_id: Optional[str],
        product_name: Optional[str],
        outlet_id: Optional[str],
        meta: dict[str, Any],
        now: datetime,
    ) -> bool:
        """Insert-or-ignore on tx_hash. Returns False when the hash was already recorded."""
        stmt = (
            self._insert(PurchaseRecordModel)
            .values(
                id=uuid4(),
                wallet_address=wallet_address,
                tx_hash=tx_hash,
                block_number=block_number,
                price=price,
                stamps_awarded=stamps_awarded,
                product_id=product_id,
                product_name=product_name,
                outlet_id=outlet_id,
                meta=meta,
                created_at=now,
            )
            .on_conflict_do_nothing(index_elements=["tx_hash"])
        )
        return self.session.execute(stmt).rowcount == 1

    def get_purchase(self, tx_hash: str) -> Optional[PurchaseRecordModel]:
        stmt = select(PurchaseRecordModel).where(PurchaseRecordModel.tx_hash == tx_hash)
        return self.session.exec(stmt).first()

    def list_purchases(self, wallet_address: str) -> list[PurchaseRecordModel]:
        stmt = (
            select(PurchaseRecordModel)
            .where(PurchaseRecordModel.wallet_address == wallet_address)
            .order_by(PurchaseRecordModel.created_at.desc())
        )
        return list(self.session.exec(stmt))

    def count_purchases(self, wallet_address: str) -> int:
        stmt = (
            select(func.count())
            .select_from(PurchaseRecordModel)
            .where(PurchaseRecordModel.wallet_address == wallet_address)
        )
        return int(self.session.exec(stmt).one())

    # Reward history -----------------------------------------------------
    def insert_redemption(
        self,
        *,
        wallet_address: str,
        tx_hash: str,
        block_number: Optional[int],
        reward_amount: Optional[Decimal],
        now: datetime,
    ) -> bool:
        stmt = (
            self._insert(RewardRedemptionRecordModel)
            .values(
                id=uuid4(),
                wallet_address=wallet_address,
                tx_hash=tx_hash,
                block_number=block_number,
                reward_amount=reward_amount,
                created_at=now,
            )
            .on_conflict_do_nothing(index_elements=["tx_hash"])
        )
        return self.session.execute(stmt).rowcount == 1

    def get_redemption(self, tx_hash: str) -> Optional[RewardRedemptionRecordModel]:
        stmt = select(RewardRedemptionRecordModel).where(
            RewardRedemptionRecordModel.tx_hash == tx_hash
        )
        return self.session.exec(stmt).first()

    def list_redemptions(self, wallet_address: str) -> list[RewardRedemptionRecordModel]:
        stmt = (
            select(RewardRedemptionRecordModel)
            .where(RewardRedemptionRecordModel.wallet_address == wallet_address)
            .order_by(RewardRedemptionRecordModel.created_at.desc())
        )
        return list(self.session.exec(stmt))

    def count_redemptions(self, wallet_address: str) -> int:
        stmt = (
            select(func.count())
            .select_from(RewardRedemptionRecordModel)
            .where(RewardRedemptionRecordModel.wallet_address == wallet_address)
        )
        return int(self.session.exec(stmt).one())

    # Drift --------------------------------------------------------------
    def add_drift(self, record: DriftRecordModel) -> DriftRecordModel:
        self.session.add(record)
        self.session.flush()
        self.session.refresh(record)
        return record

    def list_drift(self, wallet_address: Optional[str] = None, limit: int = 100) -> list[DriftRecordModel]:
        stmt = select(DriftRecordModel)
        if wallet_address is not None:
            stmt = stmt.where(DriftRecordModel.wallet_address == wallet_address)
        stmt = stmt.order_by(DriftRecordModel.created_at.desc()).limit(limit)
        return list(self.session.exec(stmt))
