# lifecycle_engine/health_checker/checker.py
"""
HTTP health probing for a customer's services.

Used by the provisioning pipeline as its final step: each service gets a
bounded number of attempts within a total time budget, never more.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import requests

from lifecycle_engine.core.errors import StepFailed
from lifecycle_engine.core.models import SERVICES, Customer

logger = logging.getLogger(__name__)


# Status codes that count as healthy, per service
ACCEPTED_STATUS: Dict[str, Tuple[int, ...]] = {
    "backend": (200,),
    "admin": (200, 404),
    "store": (200,),
}


def probe_url(customer: Customer, service: str) -> str:
    """
    Local customers are probed on the loopback port directly,
    production customers through their public domain.
    """
    if customer.is_local:
        port = customer.ports.for_service(service)
        path = "/health" if service == "backend" else ""
        return f"http://127.0.0.1:{port}{path}"

    base = f"https://{customer.domain}"
    return {
        "backend": f"{base}/api/health",
        "admin": f"{base}/qpanel",
        "store": base,
    }[service]


@dataclass
class ProbeResult:
    service: str
    url: str
    healthy: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    attempts: int = 1


class ServiceHealthChecker:
    def __init__(
        self,
        attempts: int = 5,
        interval_seconds: float = 2.0,
        request_timeout_seconds: float = 5.0,
        total_timeout_seconds: float = 60.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            attempts: Maximum probes per service
            interval_seconds: Pause between failed probes
            request_timeout_seconds: Timeout of a single HTTP request
            total_timeout_seconds: Budget for the whole check across services
        """
        self.attempts = attempts
        self.interval_seconds = interval_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self.total_timeout_seconds = total_timeout_seconds
        self._session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock

    def probe(self, customer: Customer, service: str) -> ProbeResult:
        """Single HTTP probe, no retries."""
        url = probe_url(customer, service)
        try:
            response = self._session.get(
                url, timeout=self.request_timeout_seconds, allow_redirects=False
            )
        except requests.exceptions.RequestException as e:
            logger.debug(f"[{customer.domain}] ❌ {service} probe error: {e}")
            return ProbeResult(service, url, healthy=False, error=str(e))

        healthy = response.status_code in ACCEPTED_STATUS[service]
        if not healthy:
            logger.debug(f"[{customer.domain}] ❌ {service} returned {response.status_code}")
        return ProbeResult(service, url, healthy=healthy, status_code=response.status_code)

    def wait_until_healthy(self, customer: Customer) -> Dict[str, ProbeResult]:
        """
        Probe every service until healthy or out of attempts.

        Raises StepFailed naming the first service that never became healthy.
        """
        deadline = self._clock() + self.total_timeout_seconds
        results = {}

        for service in SERVICES:
            result = None
            for attempt in range(1, self.attempts + 1):
                result = self.probe(customer, service)
                result.attempts = attempt
                if result.healthy:
                    break
                if attempt == self.attempts or self._clock() + self.interval_seconds > deadline:
                    break
                self._sleep(self.interval_seconds)

            results[service] = result
            if not result.healthy:
                reason = result.error or f"HTTP {result.status_code}"
                raise StepFailed(
                    "health_check",
                    f"{service} unhealthy after {result.attempts} attempt(s): {reason}",
                )
            logger.info(f"[{customer.domain}] ✅ {service} healthy ({result.url})")

        return results

    def check(self, customer: Customer) -> Dict[str, ProbeResult]:
        """One probe per service, no retries. For on-demand status views."""
        return {service: self.probe(customer, service) for service in SERVICES}
