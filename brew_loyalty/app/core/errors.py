from __future__ import annotations

from typing import Optional


class LoyaltyError(Exception):
    """Base class for every domain error raised by the loyalty services."""


class ValidationError(LoyaltyError):
    """Raised when input is rejected before touching the chain or the store."""


class ChainError(LoyaltyError):
    """Raised when the chain ledger rejects, reverts, or cannot be reached.

    ``reason`` is a short machine-readable tag such as
    ``transaction-reverted`` or ``rpc-unavailable``.
    """

    def __init__(
        self,
        reason: str,
        message: Optional[str] = None,
        *,
        is_user_rejection: bool = False,
    ) -> None:
        super().__init__(message or reason)
        self.reason = reason
        self.is_user_rejection = is_user_rejection


class InsufficientRewardsError(LoyaltyError):
    """Raised when a redemption is attempted with no pending rewards."""


class CustomerNotFoundError(LoyaltyError):
    """Raised when a wallet has no ledger row yet."""


class ConcurrentUpdateError(LoyaltyError):
    """Raised when optimistic ledger updates keep losing to other writers."""


class ReconciliationWarning(LoyaltyError):
    """The on-chain transaction succeeded but the off-chain write did not.

    Not a failure of the payment: callers report "payment succeeded, sync
    pending" and retry the sync for ``tx_hash`` later.
    """

    def __init__(self, message: str, *, tx_hash: str, wallet_address: str) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash
        self.wallet_address = wallet_address
