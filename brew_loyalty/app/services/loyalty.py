from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from ..core.config import Settings
from ..core.errors import (
    ChainError,
    ConcurrentUpdateError,
    CustomerNotFoundError,
    InsufficientRewardsError,
    ReconciliationWarning,
    ValidationError,
)
from ..models import (
    AuditResponse,
    ChainCounters,
    CustomerModel,
    CustomerResponse,
    CustomerSummaryResponse,
    DriftRecordModel,
    DriftResponse,
    PurchaseHistoryResponse,
    PurchaseRecordModel,
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
from .accrual import AccrualLedger, PurchaseMetadata, normalize_wallet
from .chain import (
    PURCHASE_FUNCTIONS,
    REDEMPTION_FUNCTIONS,
    ChainLedgerClient,
    ChainSnapshot,
    TxResult,
)
from .guard import DriftWarning, ReconciliationGuard, off_chain_counters
from .poller import ACCRUAL, REDEMPTION, PollResult, ReconciliationPoller
from .redemption import RedemptionService
from .repository import LoyaltyRepository


logger = logging.getLogger(__name__)


class LoyaltyService:
    def __init__(
        self,
        session: Session,
        settings: Settings,
        chain: Optional[ChainLedgerClient] = None,
        poller: Optional[ReconciliationPoller] = None,
        repository: Optional[LoyaltyRepository] = None,
    ) -> None:
        self.session = session
        self.settings = settings
        self.chain = chain
        self.poller = poller
        self.repository = repository or LoyaltyRepository(session)
        self.accrual = AccrualLedger(
            session, self.repository, max_retries=settings.accrual_max_retries
        )
        self.redemption = RedemptionService(session, self.repository)
        self.guard = ReconciliationGuard(session, self.repository)

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    def _require_chain(self) -> tuple[ChainLedgerClient, ReconciliationPoller]:
        if self.chain is None or self.poller is None:
            raise ChainError("chain-not-configured", "Chain ledger is not configured")
        return self.chain, self.poller

    def _threshold(self, override: Optional[int]) -> int:
        threshold = override if override is not None else self._chain_threshold()
        if threshold < 1:
            raise ValidationError("reward_threshold must be >= 1")
        return threshold

    def _chain_threshold(self) -> int:
        """The contract's rewardThreshold(); Settings only covers an unreachable node."""
        if self.chain is None:
            return self.settings.reward_threshold
        try:
            return self.chain.get_reward_threshold()
        except ChainError as exc:
            logger.warning(
                "reward.threshold.unavailable",
                extra={"reason": exc.reason, "fallback": self.settings.reward_threshold},
            )
            return self.settings.reward_threshold

    def _customer_to_response(self, customer: CustomerModel) -> CustomerResponse:
        return CustomerResponse(
            wallet_address=customer.wallet_address,
            stamp_count=customer.stamp_count,
            pending_rewards=customer.pending_rewards,
            total_volume=customer.total_volume,
            last_purchase_at=customer.last_purchase_at,
            created_at=customer.created_at,
            updated_at=customer.updated_at,
        )

    @staticmethod
    def _counters(snapshot: Optional[ChainSnapshot]) -> Optional[ChainCounters]:
        if snapshot is None:
            return None
        return ChainCounters(
            stamp_count=snapshot.stamp_count, pending_rewards=snapshot.pending_rewards
        )

    def _warning_to_response(self, warning: DriftWarning) -> DriftResponse:
        return DriftResponse(
            wallet_address=warning.wallet_address,
            tx_hash=warning.tx_hash,
            operation=warning.operation,
            on_chain=self._counters(warning.on_chain),
            off_chain=self._counters(warning.off_chain),
            stale_read=warning.stale_read,
        )

    def _drift_record_to_response(self, record: DriftRecordModel) -> DriftResponse:
        return DriftResponse(
            wallet_address=record.wallet_address,
            tx_hash=record.tx_hash,
            operation=record.operation,
            on_chain=ChainCounters(
                stamp_count=record.on_chain_stamp_count,
                pending_rewards=record.on_chain_pending_rewards,
            ),
            off_chain=ChainCounters(
                stamp_count=record.off_chain_stamp_count,
                pending_rewards=record.off_chain_pending_rewards,
            ),
            stale_read=record.stale_read,
            created_at=record.created_at,
        )

    def _purchase_to_response(self, record: PurchaseRecordModel) -> PurchaseResponse:
        return PurchaseResponse(
            id=record.id,
            wallet_address=record.wallet_address,
            tx_hash=record.tx_hash,
            block_number=record.block_number,
            price=record.price,
            stamps_awarded=record.stamps_awarded,
            product_id=record.product_id,
            product_name=record.product_name,
            outlet_id=record.outlet_id,
            metadata=record.meta or {},
            created_at=record.created_at,
        )

    def _build_response(
        self,
        customer: CustomerModel,
        tx: TxResult,
        poll: PollResult,
        drift: list[DriftWarning],
        *,
        reward_earned: bool = False,
        duplicate: bool = False,
    ) -> ReconciliationResponse:
        if poll.converged and not drift:
            status = ReconciliationStatus.RECONCILED
        else:
            status = ReconciliationStatus.DEGRADED_RECONCILED
        return ReconciliationResponse(
            customer=self._customer_to_response(customer),
            status=status,
            tx_hash=tx.tx_hash,
            block_number=tx.block_number,
            reward_earned=reward_earned,
            duplicate=duplicate,
            on_chain=self._counters(poll.snapshot),
            drift=[self._warning_to_response(w) for w in drift],
        )

    def _reconcile_accrual(
        self,
        *,
        wallet: str,
        tx: TxResult,
        price: int,
        stamps_awarded: int,
        reward_threshold: int,
        metadata: PurchaseMetadata,
        operation: str,
        cancel: Optional[threading.Event],
    ) -> ReconciliationResponse:
        _, poller = self._require_chain()
        poll = poller.poll(wallet, mined_block=tx.block_number, kind=ACCRUAL, cancel=cancel)

        try:
            result = self.accrual.record_purchase(
                wallet,
                tx.tx_hash,
                tx.block_number,
                price,
                stamps_awarded,
                reward_threshold,
                metadata,
            )
        except (SQLAlchemyError, ConcurrentUpdateError) as exc:
            logger.error(
                "purchase.sync.pending",
                extra={"wallet": wallet, "tx_hash": tx.tx_hash, "error": str(exc)},
            )
            raise ReconciliationWarning(
                "Payment succeeded but the loyalty ledger could not be updated; retry the sync",
                tx_hash=tx.tx_hash,
                wallet_address=wallet,
            ) from exc

        drift = self.guard.check(result.customer, poll, operation=operation, tx_hash=tx.tx_hash)
        return self._build_response(
            result.customer,
            tx,
            poll,
            drift,
            reward_earned=result.reward_earned,
            duplicate=result.duplicate,
        )

    def _reconcile_redemption(
        self,
        *,
        wallet: str,
        tx: TxResult,
        reward_amount: Optional[int],
        cancel: Optional[threading.Event],
    ) -> ReconciliationResponse:
        _, poller = self._require_chain()
        poll = poller.poll(wallet, mined_block=tx.block_number, kind=REDEMPTION, cancel=cancel)

        try:
            result = self.redemption.redeem(wallet, tx.tx_hash, tx.block_number, reward_amount)
        except InsufficientRewardsError as exc:
            # The chain already paid out; the ledger lost a race or never saw the reward.
            customer = self.repository.get_customer(wallet)
            if customer is not None:
                warning = self.guard.compare(
                    customer,
                    poll.snapshot,
                    operation="redemption",
                    tx_hash=tx.tx_hash,
                    stale_read=poll.stale,
                )
                if warning is not None:
                    self.guard.record(warning)
            raise ReconciliationWarning(
                "Reward redeemed on-chain but the ledger shows no pending reward; retry the sync",
                tx_hash=tx.tx_hash,
                wallet_address=wallet,
            ) from exc
        except SQLAlchemyError as exc:
            logger.error(
                "redemption.sync.pending",
                extra={"wallet": wallet, "tx_hash": tx.tx_hash, "error": str(exc)},
            )
            raise ReconciliationWarning(
                "Reward redeemed on-chain but the loyalty ledger could not be updated; retry the sync",
                tx_hash=tx.tx_hash,
                wallet_address=wallet,
            ) from exc

        drift = self.guard.check(result.customer, poll, operation="redemption", tx_hash=tx.tx_hash)
        return self._build_response(result.customer, tx, poll, drift, duplicate=result.duplicate)

    def _reward_amount(self) -> Optional[int]:
        chain, _ = self._require_chain()
        try:
            return chain.get_reward_token_amount()
        except ChainError as exc:
            logger.info("reward.amount.unavailable", extra={"reason": exc.reason})
            return None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def purchase(
        self,
        payload: PurchaseRequest,
        cancel: Optional[threading.Event] = None,
    ) -> ReconciliationResponse:
        wallet = normalize_wallet(payload.wallet_address)
        if payload.amount <= 0:
            raise ValidationError("amount must be positive")
        threshold = self._threshold(payload.reward_threshold)
        chain, _ = self._require_chain()

        tx = chain.submit_purchase(wallet, payload.amount)
        logger.info(
            "purchase.mined",
            extra={"wallet": wallet, "tx_hash": tx.tx_hash, "block_number": tx.block_number},
        )
        return self._reconcile_accrual(
            wallet=wallet,
            tx=tx,
            price=payload.amount,
            stamps_awarded=payload.stamps_awarded,
            reward_threshold=threshold,
            metadata=PurchaseMetadata(
                product_id=payload.product_id,
                product_name=payload.product_name,
                outlet_id=payload.outlet_id,
                extra=payload.metadata,
            ),
            operation="purchase",
            cancel=cancel,
        )

    def sync_purchase(
        self,
        payload: PurchaseSyncRequest,
        cancel: Optional[threading.Event] = None,
    ) -> ReconciliationResponse:
        wallet = normalize_wallet(payload.wallet_address)
        if payload.price <= 0:
            raise ValidationError("price must be positive")
        threshold = self._threshold(payload.reward_threshold)
        chain, _ = self._require_chain()

        tx = chain.confirm_transaction(
            payload.tx_hash, functions=PURCHASE_FUNCTIONS, wallet=wallet
        )
        return self._reconcile_accrual(
            wallet=wallet,
            tx=tx,
            price=payload.price,
            stamps_awarded=payload.stamps_awarded,
            reward_threshold=threshold,
            metadata=PurchaseMetadata(
                product_id=payload.product_id,
                product_name=payload.product_name,
                outlet_id=payload.outlet_id,
                extra=payload.metadata,
            ),
            operation="purchase",
            cancel=cancel,
        )

    def award_stamp(
        self,
        payload: StampRequest,
        cancel: Optional[threading.Event] = None,
    ) -> ReconciliationResponse:
        wallet = normalize_wallet(payload.wallet_address)
        threshold = self._threshold(payload.reward_threshold)
        chain, _ = self._require_chain()

        tx = chain.submit_stamp(wallet)
        extra = {"source": "manual-stamp"}
        if payload.memo:
            extra["memo"] = payload.memo
        return self._reconcile_accrual(
            wallet=wallet,
            tx=tx,
            price=0,
            stamps_awarded=1,
            reward_threshold=threshold,
            metadata=PurchaseMetadata(extra=extra),
            operation="stamp",
            cancel=cancel,
        )

    def redeem(
        self,
        payload: RedemptionRequest,
        cancel: Optional[threading.Event] = None,
    ) -> ReconciliationResponse:
        wallet = normalize_wallet(payload.wallet_address)
        self.redemption.ensure_redeemable(wallet)
        chain, _ = self._require_chain()

        tx = chain.submit_redeem(wallet)
        logger.info(
            "redemption.mined",
            extra={"wallet": wallet, "tx_hash": tx.tx_hash, "block_number": tx.block_number},
        )
        return self._reconcile_redemption(
            wallet=wallet, tx=tx, reward_amount=self._reward_amount(), cancel=cancel
        )

    def sync_redemption(
        self,
        payload: RedemptionSyncRequest,
        cancel: Optional[threading.Event] = None,
    ) -> ReconciliationResponse:
        wallet = normalize_wallet(payload.wallet_address)
        chain, _ = self._require_chain()

        tx = chain.confirm_transaction(
            payload.tx_hash, functions=REDEMPTION_FUNCTIONS, wallet=wallet
        )
        reward_amount = payload.reward_amount
        if reward_amount is None:
            reward_amount = self._reward_amount()
        return self._reconcile_redemption(
            wallet=wallet, tx=tx, reward_amount=reward_amount, cancel=cancel
        )

    def get_customer(self, wallet_address: str) -> CustomerModel:
        wallet = normalize_wallet(wallet_address)
        customer = self.repository.get_customer(wallet)
        if customer is None:
            raise CustomerNotFoundError(f"Customer {wallet} not found")
        return customer

    def get_summary(self, wallet_address: str) -> CustomerSummaryResponse:
        customer = self.get_customer(wallet_address)
        threshold = self._threshold(None)
        return CustomerSummaryResponse(
            customer=self._customer_to_response(customer),
            reward_threshold=threshold,
            stamps_to_next_reward=max(threshold - customer.stamp_count, 0),
            purchase_count=self.repository.count_purchases(customer.wallet_address),
            redemption_count=self.repository.count_redemptions(customer.wallet_address),
        )

    def get_purchases(
        self,
        wallet_address: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> PurchaseHistoryResponse:
        customer = self.get_customer(wallet_address)
        if limit < 1:
            raise ValidationError("limit must be >= 1")

        records = self.repository.list_purchases(customer.wallet_address)

        start_index = 0
        if cursor:
            try:
                cursor_ts = datetime.fromisoformat(cursor)
            except ValueError as exc:
                raise ValidationError("Invalid cursor") from exc
            for idx, record in enumerate(records):
                if record.created_at.isoformat() == cursor_ts.isoformat():
                    start_index = idx + 1
                    break

        page = records[start_index : start_index + limit]
        next_cursor = None
        if start_index + limit < len(records):
            next_cursor = page[-1].created_at.isoformat()

        return PurchaseHistoryResponse(
            items=[self._purchase_to_response(record) for record in page],
            next_cursor=next_cursor,
        )

    def get_redemptions(self, wallet_address: str) -> list[RedemptionResponse]:
        customer = self.get_customer(wallet_address)
        return [
            RedemptionResponse(
                id=record.id,
                wallet_address=record.wallet_address,
                tx_hash=record.tx_hash,
                block_number=record.block_number,
                reward_amount=record.reward_amount,
                created_at=record.created_at,
            )
            for record in self.repository.list_redemptions(customer.wallet_address)
        ]

    def audit(self, wallet_address: str) -> AuditResponse:
        customer = self.get_customer(wallet_address)
        on_chain = None
        if self.poller is not None:
            on_chain = self.poller.read_once(customer.wallet_address)
        return AuditResponse(
            wallet_address=customer.wallet_address,
            status=self.guard.audit(customer, on_chain),
            on_chain=self._counters(on_chain),
            off_chain=self._counters(off_chain_counters(customer)),
        )

    def list_drift(self, wallet_address: Optional[str] = None, limit: int = 100) -> list[DriftResponse]:
        wallet = normalize_wallet(wallet_address) if wallet_address else None
        return [
            self._drift_record_to_response(record)
            for record in self.repository.list_drift(wallet, limit=limit)
        ]
