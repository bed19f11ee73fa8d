import threading

from ..services import ChainSnapshot, ReconciliationPoller
from ..services.poller import REDEMPTION
from .conftest import WALLET


def test_converges_on_first_read_when_baseline_known(fake_chain, poller, sleeps) -> None:
    tx = fake_chain.submit_purchase(WALLET, 2)

    result = poller.poll(WALLET, mined_block=tx.block_number)

    assert result.converged
    assert result.attempts == 1
    assert result.baseline == ChainSnapshot(stamp_count=0, pending_rewards=0)
    assert result.snapshot == ChainSnapshot(stamp_count=1, pending_rewards=0)
    assert sleeps == []


def test_lagging_node_backs_off_linearly(fake_chain, poller, sleeps) -> None:
    fake_chain.lag_reads = 2
    tx = fake_chain.submit_purchase(WALLET, 2)

    result = poller.poll(WALLET, mined_block=tx.block_number)

    assert result.converged
    assert result.attempts == 3
    assert result.snapshot.stamp_count == 1
    assert sleeps == [1.0, 2.0]


def test_never_fresh_returns_last_read_after_final_extended_wait(fake_chain, poller, sleeps) -> None:
    fake_chain.submit_purchase(WALLET, 2)
    fake_chain.lag_reads = 100
    tx = fake_chain.submit_purchase(WALLET, 2)

    result = poller.poll(WALLET, mined_block=tx.block_number)

    assert not result.converged
    assert result.stale
    assert result.attempts == 6
    assert result.snapshot == ChainSnapshot(stamp_count=1, pending_rewards=0)
    assert sleeps == [1.0, 2.0, 3.0, 4.0, 2.0]


def test_without_baseline_first_read_only_seeds_best(fake_chain, poller, sleeps) -> None:
    fake_chain.fail_block_reads = True
    tx = fake_chain.submit_purchase(WALLET, 2)

    result = poller.poll(WALLET, mined_block=tx.block_number)

    # Nothing to compare the first read against, so it never counts as convergence.
    assert result.baseline is None
    assert not result.converged
    assert result.snapshot.stamp_count == 1
    assert sleeps == [1.0, 2.0, 3.0, 4.0, 2.0]


def test_without_baseline_increase_after_first_read_converges(fake_chain, poller, sleeps) -> None:
    fake_chain.fail_block_reads = True
    fake_chain.lag_reads = 1
    tx = fake_chain.submit_purchase(WALLET, 2)

    result = poller.poll(WALLET, mined_block=tx.block_number)

    assert result.converged
    assert result.attempts == 2
    assert sleeps == [1.0]


def test_read_failures_are_retried(fake_chain, poller, sleeps) -> None:
    tx = fake_chain.submit_purchase(WALLET, 2)
    fake_chain.fail_reads = 2

    result = poller.poll(WALLET, mined_block=tx.block_number)

    assert result.converged
    assert result.attempts == 3
    assert sleeps == [1.0, 2.0]


def test_all_reads_failing_returns_without_raising(fake_chain, poller) -> None:
    tx = fake_chain.submit_purchase(WALLET, 2)
    fake_chain.fail_block_reads = True
    fake_chain.fail_reads = 100

    result = poller.poll(WALLET, mined_block=tx.block_number)

    assert not result.converged
    assert result.snapshot is None


def test_threshold_crossing_counts_as_progress(fake_chain, poller) -> None:
    for _ in range(7):
        fake_chain.submit_purchase(WALLET, 2)
    tx = fake_chain.submit_purchase(WALLET, 2)

    result = poller.poll(WALLET, mined_block=tx.block_number)

    assert result.baseline == ChainSnapshot(stamp_count=7, pending_rewards=0)
    assert result.snapshot == ChainSnapshot(stamp_count=0, pending_rewards=1)
    assert result.converged


def test_redemption_progress_is_a_pending_decrease(fake_chain, poller) -> None:
    for _ in range(8):
        fake_chain.submit_purchase(WALLET, 2)
    tx = fake_chain.submit_redeem(WALLET)

    result = poller.poll(WALLET, mined_block=tx.block_number, kind=REDEMPTION)

    assert result.converged
    assert result.snapshot.pending_rewards == 0


def test_cancelled_poll_stops_before_reading(fake_chain, poller, sleeps) -> None:
    tx = fake_chain.submit_purchase(WALLET, 2)
    cancel = threading.Event()
    cancel.set()

    result = poller.poll(WALLET, mined_block=tx.block_number, cancel=cancel)

    assert result.cancelled
    assert not result.converged
    assert result.attempts == 0
    assert sleeps == []


def test_cancel_between_attempts(fake_chain, sleeps) -> None:
    cancel = threading.Event()

    def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        cancel.set()

    poller = ReconciliationPoller(fake_chain, sleep=_sleep)
    fake_chain.lag_reads = 100
    tx = fake_chain.submit_purchase(WALLET, 2)

    result = poller.poll(WALLET, mined_block=tx.block_number, cancel=cancel)

    assert result.cancelled
    assert result.attempts == 1
    assert sleeps == [1.0]


def test_initial_settle_delay(fake_chain, sleeps) -> None:
    poller = ReconciliationPoller(fake_chain, initial_delay=1.5, sleep=sleeps.append)
    tx = fake_chain.submit_purchase(WALLET, 2)

    poller.poll(WALLET, mined_block=tx.block_number)

    assert sleeps == [1.5]
