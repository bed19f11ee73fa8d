from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Optional

from sqlmodel import Session

from ..core.errors import CustomerNotFoundError, InsufficientRewardsError, ValidationError
from ..models import CustomerModel
from .accrual import normalize_wallet
from .repository import LoyaltyRepository


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedemptionResult:
    customer: CustomerModel
    duplicate: bool


class RedemptionService:
    """Consumes one pending reward per call.

    The decrement is a conditional UPDATE guarded by ``pending_rewards > 0``
    and commits together with the reward_history row, so two concurrent
    calls against a single pending reward cannot both succeed.
    """

    def __init__(self, session: Session, repository: Optional[LoyaltyRepository] = None) -> None:
        self.session = session
        self.repository = repository or LoyaltyRepository(session)

    def ensure_redeemable(self, wallet_address: str) -> CustomerModel:
        """Read-only pre-check used before touching the chain."""
        wallet = normalize_wallet(wallet_address)
        customer = self.repository.get_customer(wallet)
        # No ledger row yet reads as zero pending rewards.
        if customer is None or customer.pending_rewards <= 0:
            raise InsufficientRewardsError(f"Customer {wallet} has no pending rewards")
        return customer

    def redeem(
        self,
        wallet_address: str,
        tx_hash: str,
        block_number: Optional[int],
        reward_amount: Optional[int | Decimal] = None,
    ) -> RedemptionResult:
        wallet = normalize_wallet(wallet_address)
        tx_hash = (tx_hash or "").strip().lower()
        if not tx_hash:
            raise ValidationError("tx_hash is required")
        amount = Decimal(reward_amount) if reward_amount is not None else None
        if amount is not None and amount < 0:
            raise ValidationError("reward_amount must be >= 0")
        now = datetime.now(UTC)

        try:
            inserted = self.repository.insert_redemption(
                wallet_address=wallet,
                tx_hash=tx_hash,
                block_number=block_number,
                reward_amount=amount,
                now=now,
            )
            if not inserted:
                self.session.rollback()
                existing = self.repository.get_redemption(tx_hash)
                if existing is not None and existing.wallet_address != wallet:
                    raise ValidationError(
                        f"Transaction {tx_hash} is already recorded for another wallet"
                    )
                customer = self._require_customer(wallet)
                logger.info(
                    "idempotent.redemption.hit",
                    extra={"wallet": wallet, "tx_hash": tx_hash},
                )
                return RedemptionResult(customer=customer, duplicate=True)

            if not self.repository.consume_reward(wallet, now):
                self.session.rollback()
                raise InsufficientRewardsError(f"Customer {wallet} has no pending rewards")

            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        customer = self._require_customer(wallet)
        logger.info(
            "reward.redeemed",
            extra={
                "wallet": wallet,
                "tx_hash": tx_hash,
                "pending_rewards": customer.pending_rewards,
            },
        )
        return RedemptionResult(customer=customer, duplicate=False)

    def _require_customer(self, wallet: str) -> CustomerModel:
        customer = self.repository.get_customer(wallet)
        if customer is None:
            raise CustomerNotFoundError(f"Customer {wallet} not found")
        return customer
