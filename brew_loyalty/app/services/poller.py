"""Post-transaction polling for fresh on-chain counters.

A mined block is not visible to every RPC node at the same moment, so the
first read after a receipt can still return the pre-transaction counters.
The poller retries with a linearly growing delay and reports whether it
actually observed the transaction's effect (``converged``) or had to give up
with the best reading it got.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..core.config import Settings
from ..core.errors import ChainError
from .chain import ChainSnapshot


logger = logging.getLogger(__name__)

ACCRUAL = "accrual"
REDEMPTION = "redemption"


@dataclass(frozen=True)
class PollResult:
    snapshot: Optional[ChainSnapshot]
    baseline: Optional[ChainSnapshot]
    converged: bool
    attempts: int
    cancelled: bool = False

    @property
    def stale(self) -> bool:
        return not self.converged


class ReconciliationPoller:
    def __init__(
        self,
        chain,
        *,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        final_delay: float = 2.0,
        initial_delay: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.chain = chain
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.final_delay = final_delay
        self.initial_delay = initial_delay
        self.sleep = sleep

    @classmethod
    def from_settings(
        cls,
        chain,
        settings: Settings,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "ReconciliationPoller":
        return cls(
            chain,
            max_attempts=settings.poll_max_attempts,
            base_delay=settings.poll_base_delay_seconds,
            final_delay=settings.poll_final_delay_seconds,
            initial_delay=settings.poll_initial_delay_seconds,
            sleep=sleep,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def read_once(self, wallet: str, block_identifier="latest") -> Optional[ChainSnapshot]:
        try:
            return self.chain.get_counters(wallet, block_identifier)
        except ChainError as exc:
            logger.info(
                "poll.read.failed",
                extra={"wallet": wallet, "block": str(block_identifier), "reason": exc.reason},
            )
            return None

    def baseline_for(self, wallet: str, mined_block: Optional[int]) -> Optional[ChainSnapshot]:
        """Counters as they stood just before ``mined_block``."""
        if mined_block is None or mined_block < 1:
            return None
        return self.read_once(wallet, mined_block - 1)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------
    def poll(
        self,
        wallet: str,
        *,
        mined_block: Optional[int] = None,
        kind: str = ACCRUAL,
        cancel: Optional[threading.Event] = None,
    ) -> PollResult:
        baseline = self.baseline_for(wallet, mined_block)
        best = baseline
        latest: Optional[ChainSnapshot] = None
        attempts = 0

        if self.initial_delay and not self._cancelled(cancel):
            self.sleep(self.initial_delay)

        for attempt in range(1, self.max_attempts + 1):
            if self._cancelled(cancel):
                return self._finish(wallet, best or latest, baseline, False, attempts, cancelled=True)

            attempts = attempt
            fetched = self.read_once(wallet)
            if fetched is not None:
                latest = fetched
                if best is None:
                    best = fetched
                elif self._progressed(best, fetched, kind):
                    best = fetched
                    # Without a baseline the first read has nothing to compare against.
                    if baseline is not None or attempt > 1:
                        return self._finish(wallet, best, baseline, True, attempts)

            if attempt < self.max_attempts:
                if self._cancelled(cancel):
                    return self._finish(wallet, best or latest, baseline, False, attempts, cancelled=True)
                self.sleep(attempt * self.base_delay)

        # Degraded path: nothing moved. One longer wait, one last read.
        if self._cancelled(cancel):
            return self._finish(wallet, latest or best, baseline, False, attempts, cancelled=True)
        self.sleep(self.final_delay)
        attempts += 1
        final = self.read_once(wallet)
        reference = best
        if final is not None:
            latest = final
            if reference is not None and self._progressed(reference, final, kind):
                return self._finish(wallet, final, baseline, True, attempts)

        return self._finish(wallet, latest or best, baseline, False, attempts)

    @staticmethod
    def _progressed(before: ChainSnapshot, after: ChainSnapshot, kind: str) -> bool:
        if kind == REDEMPTION:
            return after.pending_rewards < before.pending_rewards
        return after.rank() > before.rank()

    @staticmethod
    def _cancelled(cancel: Optional[threading.Event]) -> bool:
        return cancel is not None and cancel.is_set()

    def _finish(
        self,
        wallet: str,
        snapshot: Optional[ChainSnapshot],
        baseline: Optional[ChainSnapshot],
        converged: bool,
        attempts: int,
        *,
        cancelled: bool = False,
    ) -> PollResult:
        result = PollResult(
            snapshot=snapshot,
            baseline=baseline,
            converged=converged,
            attempts=attempts,
            cancelled=cancelled,
        )
        event = "poll.converged" if converged else "poll.cancelled" if cancelled else "poll.degraded"
        log = logger.info if converged else logger.warning
        log(
            event,
            extra={
                "wallet": wallet,
                "attempts": attempts,
                "stamp_count": snapshot.stamp_count if snapshot else None,
                "pending_rewards": snapshot.pending_rewards if snapshot else None,
            },
        )
        return result
