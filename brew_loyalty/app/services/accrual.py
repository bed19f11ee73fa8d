from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Optional

from sqlmodel import Session

from ..core.errors import ConcurrentUpdateError, ValidationError
from ..models import CustomerModel
from .repository import LoyaltyRepository


logger = logging.getLogger(__name__)


def normalize_wallet(wallet_address: Optional[str]) -> str:
    wallet = (wallet_address or "").strip().lower()
    if not wallet:
        raise ValidationError("wallet_address is required")
    return wallet


def apply_threshold(stamp_count: int, reward_threshold: int) -> tuple[int, int]:
    """Fold a raw stamp count into (stamps left over, rewards earned).

    A single purchase may award more stamps than the threshold, so this
    loops rather than assuming at most one crossing.
    """
    if reward_threshold < 1:
        raise ValidationError("reward_threshold must be >= 1")
    rewards = 0
    while stamp_count >= reward_threshold:
        stamp_count -= reward_threshold
        rewards += 1
    return stamp_count, rewards


@dataclass(frozen=True)
class PurchaseMetadata:
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    outlet_id: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AccrualResult:
    customer: CustomerModel
    reward_earned: bool
    rewards_earned: int
    duplicate: bool


class AccrualLedger:
    """Durable, idempotent recording of confirmed purchases."""

    def __init__(
        self,
        session: Session,
        repository: Optional[LoyaltyRepository] = None,
        *,
        max_retries: int = 5,
    ) -> None:
        self.session = session
        self.repository = repository or LoyaltyRepository(session)
        self.max_retries = max_retries

    def record_purchase(
        self,
        wallet_address: str,
        tx_hash: str,
        block_number: Optional[int],
        price: int | Decimal,
        stamps_awarded: int,
        reward_threshold: int,
        metadata: Optional[PurchaseMetadata] = None,
    ) -> AccrualResult:
        wallet = normalize_wallet(wallet_address)
        tx_hash = (tx_hash or "").strip().lower()
        if not tx_hash:
            raise ValidationError("tx_hash is required")
        price = Decimal(price)
        if price < 0 or price != price.to_integral_value():
            raise ValidationError("price must be a non-negative integer amount of base units")
        if stamps_awarded < 1:
            raise ValidationError("stamps_awarded must be >= 1")
        if reward_threshold < 1:
            raise ValidationError("reward_threshold must be >= 1")
        metadata = metadata or PurchaseMetadata()
        now = datetime.now(UTC)

        try:
            inserted = self.repository.insert_purchase(
                wallet_address=wallet,
                tx_hash=tx_hash,
                block_number=block_number,
                price=price,
                stamps_awarded=stamps_awarded,
                product_id=metadata.product_id,
                product_name=metadata.product_name,
                outlet_id=metadata.outlet_id,
                meta=metadata.extra,
                now=now,
            )
            if not inserted:
                self.session.rollback()
                existing = self.repository.get_purchase(tx_hash)
                if existing is not None and existing.wallet_address != wallet:
                    raise ValidationError(
                        f"Transaction {tx_hash} is already recorded for another wallet"
                    )
                customer = self.repository.get_customer(wallet)
                logger.info(
                    "idempotent.purchase.hit",
                    extra={"wallet": wallet, "tx_hash": tx_hash},
                )
                return AccrualResult(
                    customer=customer, reward_earned=False, rewards_earned=0, duplicate=True
                )

            self.repository.ensure_customer(wallet, now)
            rewards_earned = self._accrue(wallet, stamps_awarded, reward_threshold, price, now)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        customer = self.repository.get_customer(wallet)
        logger.info(
            "purchase.recorded",
            extra={
                "wallet": wallet,
                "tx_hash": tx_hash,
                "stamps_awarded": stamps_awarded,
                "stamp_count": customer.stamp_count,
                "pending_rewards": customer.pending_rewards,
                "rewards_earned": rewards_earned,
            },
        )
        return AccrualResult(
            customer=customer,
            reward_earned=rewards_earned > 0,
            rewards_earned=rewards_earned,
            duplicate=False,
        )

    def _accrue(
        self,
        wallet: str,
        stamps_awarded: int,
        reward_threshold: int,
        price: Decimal,
        now: datetime,
    ) -> int:
        for attempt in range(1, self.max_retries + 1):
            current = self.repository.get_customer(wallet)
            observed = current.stamp_count if current is not None else 0
            observed_volume = int(current.total_volume) if current is not None else 0
            new_stamp_count, rewards_earned = apply_threshold(
                observed + stamps_awarded, reward_threshold
            )
            applied = self.repository.apply_accrual(
                wallet_address=wallet,
                observed_stamp_count=observed,
                observed_volume=Decimal(observed_volume),
                new_stamp_count=new_stamp_count,
                new_volume=Decimal(observed_volume + int(price)),
                rewards_earned=rewards_earned,
                now=now,
            )
            if applied:
                return rewards_earned
            logger.info(
                "purchase.accrual.conflict",
                extra={"wallet": wallet, "attempt": attempt, "observed": observed},
            )
        raise ConcurrentUpdateError(
            f"Could not apply purchase for {wallet} after {self.max_retries} attempts"
        )
