"""
Background fee updates.

One long-lived task waits for the ledger database to become ready, then
evolves the fee once per interval until it is told to stop. Every wait
goes through a threading.Event, so stop() interrupts it immediately.
"""

import logging
import threading
from decimal import Decimal
from typing import Callable, Optional

from .fees import FeeEngine

logger = logging.getLogger(__name__)

DEFAULT_UPDATE_INTERVAL = 3600.0
DEFAULT_READINESS_POLL = 5.0


class FeeUpdateScheduler:
    """Periodic fee mutator with its own cooperative shutdown signal."""

    def __init__(
        self,
        fees: FeeEngine,
        readiness_check: Callable[[], bool],
        update_interval: float = DEFAULT_UPDATE_INTERVAL,
        readiness_poll: float = DEFAULT_READINESS_POLL,
        seed_if_empty: bool = False,
    ):
        """Initialize the scheduler.

        Args:
            fees: Engine whose timeline is evolved
            readiness_check: Returns True once storage is usable
            update_interval: Seconds between fee updates
            readiness_poll: Seconds between readiness checks at startup
            seed_if_empty: Seed an empty timeline before the first update
        """
        if update_interval <= 0:
            raise ValueError("update_interval must be > 0")
        if readiness_poll <= 0:
            raise ValueError("readiness_poll must be > 0")
        self.fees = fees
        self.readiness_check = readiness_check
        self.update_interval = update_interval
        self.readiness_poll = readiness_poll
        self.seed_if_empty = seed_if_empty
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def wait_until_ready(self) -> bool:
        """Poll storage until it is ready. False if stopped first."""
        while not self._stop.is_set():
            try:
                if self.readiness_check():
                    return True
            except Exception:
                logger.exception("Readiness check failed")
            logger.info("Preparing database...")
            if self._stop.wait(self.readiness_poll):
                break
        return False

    def tick(self) -> Optional[Decimal]:
        """Run one fee update. Errors are logged and the schedule continues."""
        try:
            new_fee = self.fees.evolve_fee()
        except Exception:
            logger.exception("An error occurred while updating the fee")
            return None
        logger.info("Fee updated to %s", new_fee)
        return new_fee

    def run(self) -> None:
        """Block until stop() is called, updating the fee every interval."""
        logger.info("Fee update scheduler is starting")
        if not self.wait_until_ready():
            logger.info("Fee update scheduler stopped before storage was ready")
            return

        if self.seed_if_empty:
            try:
                if self.fees.current_fee() == 0:
                    self.fees.seed_fee()
            except Exception:
                logger.exception("Could not seed the fee timeline")

        while not self._stop.is_set():
            self.tick()
            if self._stop.wait(self.update_interval):
                break
        logger.info("Fee update scheduler has stopped")

    def start(self) -> threading.Thread:
        """Run the scheduler in a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("Fee update scheduler is already running")
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="fee-update-scheduler", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal shutdown and wait for the running thread to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
