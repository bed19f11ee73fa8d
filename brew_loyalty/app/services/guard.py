from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from ..models import CustomerModel, DriftRecordModel
from .chain import ChainSnapshot
from .poller import PollResult
from .repository import LoyaltyRepository


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DriftWarning:
    wallet_address: str
    operation: str
    on_chain: ChainSnapshot
    off_chain: ChainSnapshot
    tx_hash: Optional[str] = None
    stale_read: bool = False


def off_chain_counters(customer: CustomerModel) -> ChainSnapshot:
    return ChainSnapshot(stamp_count=customer.stamp_count, pending_rewards=customer.pending_rewards)


class ReconciliationGuard:
    """Flags disagreement between on-chain counters and the ledger row.

    Either side may be the stale one depending on propagation timing, so
    drift is reported and stored, never corrected.
    """

    def __init__(self, session: Session, repository: Optional[LoyaltyRepository] = None) -> None:
        self.session = session
        self.repository = repository or LoyaltyRepository(session)

    def compare(
        self,
        customer: CustomerModel,
        on_chain: Optional[ChainSnapshot],
        *,
        operation: str,
        tx_hash: Optional[str] = None,
        stale_read: bool = False,
    ) -> Optional[DriftWarning]:
        if on_chain is None:
            return None
        off_chain = off_chain_counters(customer)
        if off_chain == on_chain:
            return None
        return DriftWarning(
            wallet_address=customer.wallet_address,
            operation=operation,
            on_chain=on_chain,
            off_chain=off_chain,
            tx_hash=tx_hash,
            stale_read=stale_read,
        )

    def check(
        self,
        customer: CustomerModel,
        poll: PollResult,
        *,
        operation: str,
        tx_hash: Optional[str] = None,
    ) -> list[DriftWarning]:
        warning = self.compare(
            customer,
            poll.snapshot,
            operation=operation,
            tx_hash=tx_hash,
            stale_read=poll.stale,
        )
        if warning is None:
            return []
        self.record(warning)
        return [warning]

    def audit(self, customer: CustomerModel, on_chain: Optional[ChainSnapshot]) -> str:
        """On-demand comparison; nothing is persisted."""
        if on_chain is None:
            return "unavailable"
        warning = self.compare(customer, on_chain, operation="audit")
        return "in_sync" if warning is None else "drift"

    def record(self, warning: DriftWarning) -> None:
        logger.warning(
            "reconciliation.drift",
            extra={
                "wallet": warning.wallet_address,
                "tx_hash": warning.tx_hash,
                "operation": warning.operation,
                "on_chain_stamp_count": warning.on_chain.stamp_count,
                "on_chain_pending_rewards": warning.on_chain.pending_rewards,
                "off_chain_stamp_count": warning.off_chain.stamp_count,
                "off_chain_pending_rewards": warning.off_chain.pending_rewards,
                "stale_read": warning.stale_read,
            },
        )
        try:
            self.repository.add_drift(
                DriftRecordModel(
                    wallet_address=warning.wallet_address,
                    tx_hash=warning.tx_hash,
                    operation=warning.operation,
                    on_chain_stamp_count=warning.on_chain.stamp_count,
                    on_chain_pending_rewards=warning.on_chain.pending_rewards,
                    off_chain_stamp_count=warning.off_chain.stamp_count,
                    off_chain_pending_rewards=warning.off_chain.pending_rewards,
                    stale_read=warning.stale_read,
                )
            )
            self.session.commit()
        except SQLAlchemyError:
            # The ledger write is already committed; the log line above is the record of last resort.
            self.session.rollback()
            logger.exception(
                "reconciliation.drift.persist_failed",
                extra={"wallet": warning.wallet_address, "tx_hash": warning.tx_hash},
            )
