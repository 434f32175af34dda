# lifecycle_engine/health_checker/monitor.py
"""
Health Monitor - periodically polls supervisor state of RUNNING customers.

Runs as a separate process. A crashed unit moves its customer to ERROR;
an unreachable supervisor never changes any status.
"""

import logging
import signal
import threading
from typing import Dict, Optional

from lifecycle_engine.core.models import CustomerStatus
from lifecycle_engine.core.repository import CustomerRepository
from lifecycle_engine.orchestrator.lifecycle import CustomerLifecycleManager

logger = logging.getLogger(__name__)


class HealthMonitor:
    def __init__(
        self,
        manager: CustomerLifecycleManager,
        customers: CustomerRepository,
        check_interval: float = 30,
    ):
        """
        Args:
            manager: Lifecycle manager used to record results under the customer's lock
            customers: Registry to find RUNNING customers
            check_interval: Seconds between cycles
        """
        self.manager = manager
        self.customers = customers
        self.check_interval = check_interval
        self._stop = threading.Event()

        logger.info(f"Health Monitor initialized (interval {check_interval}s)")

    def start(self, install_signal_handlers: bool = True) -> None:
        """Run until stopped by a signal or `stop()`."""
        logger.info("=" * 80)
        logger.info("🏥 HEALTH MONITOR STARTED")
        logger.info("=" * 80)

        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

        while not self._stop.is_set():
            try:
                self.run_cycle()
            except Exception as e:
                logger.error(f"Error in health cycle: {e}", exc_info=True)

            self._stop.wait(self.check_interval)

        logger.info("Health Monitor stopped")

    def stop(self) -> None:
        self._stop.set()

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, stopping...")
        self.stop()

    def run_cycle(self) -> Dict[str, Optional[Dict[str, str]]]:
        """
        Single pass over RUNNING customers.

        Returns per-domain service states (None where the check was skipped).
        """
        running = list(self.customers.list_by_status(CustomerStatus.RUNNING))
        if not running:
            logger.debug("No running customers to check")
            return {}

        logger.info(f"Checking {len(running)} customer(s)")

        results = {}
        for customer in running:
            try:
                results[customer.domain] = self.manager.check_health(customer.customer_id)
            except Exception as e:
                logger.error(f"[{customer.domain}] health check failed: {e}")
                results[customer.domain] = None
        return results
