"""
Health verification for a freshly started service.
"""

import time
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from .errors import HealthCheckFailed
from .models import HealthCheckResult, utc_now

logger = logging.getLogger(__name__)

SECURITY_HEADERS = ("X-Content-Type-Options", "X-Frame-Options", "Strict-Transport-Security")


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


@dataclass
class LoadCheckResult:
    """Concurrent GETs against one endpoint."""
    total: int
    succeeded: int
    elapsed: float
    average_latency: float

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "elapsed": round(self.elapsed, 4),
            "average_latency": round(self.average_latency, 4),
        }


class HealthVerifier:
    """Polls a health endpoint with bounded retries and a fixed interval."""

    def __init__(
        self,
        timeout: float = 5.0,
        slow_response_threshold: Optional[float] = 1.0,
        http: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        on_attempt: Optional[Callable[[HealthCheckResult], None]] = None,
    ):
        self.timeout = timeout
        self.slow_response_threshold = slow_response_threshold
        self.http = http or requests.Session()
        self.sleep = sleep
        self.on_attempt = on_attempt

    def probe(self, url: str, attempt: int = 1) -> HealthCheckResult:
        """Issue a single GET and record the outcome. Never raises."""
        started = time.monotonic()
        timestamp = utc_now()
        try:
            response = self.http.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            return HealthCheckResult(
                attempt=attempt,
                timestamp=timestamp,
                success=False,
                latency=time.monotonic() - started,
                url=url,
                error=f"Request failed: {e}",
            )

        latency = time.monotonic() - started
        success = _is_success(response.status_code)
        return HealthCheckResult(
            attempt=attempt,
            timestamp=timestamp,
            success=success,
            latency=latency,
            url=url,
            status_code=response.status_code,
            error=None if success else f"HTTP {response.status_code}",
        )

    def verify(self, url: str, max_attempts: int = 30, interval: float = 2.0) -> List[HealthCheckResult]:
        """
        Poll ``url`` until it answers 2xx.

        Args:
            url: Health endpoint
            max_attempts: Maximum number of requests
            interval: Fixed delay between attempts in seconds

        Returns:
            All attempts, the last one successful

        Raises:
            HealthCheckFailed: If no attempt succeeded
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        logger.info(f"Checking health endpoint {url}")
        results: List[HealthCheckResult] = []

        for attempt in range(1, max_attempts + 1):
            result = self.probe(url, attempt)
            results.append(result)
            if self.on_attempt:
                self.on_attempt(result)

            if result.success:
                logger.info(f"Health check passed on attempt {attempt} ({result.latency:.3f}s)")
                if self.slow_response_threshold and result.latency > self.slow_response_threshold:
                    logger.warning(f"Health endpoint slower than expected: {result.latency:.3f}s")
                return results

            if attempt < max_attempts:
                logger.info(f"Health check attempt {attempt}/{max_attempts} failed ({result.error}), retrying...")
                if interval > 0:
                    self.sleep(interval)

        logger.error(f"Health check failed after {max_attempts} attempts")
        raise HealthCheckFailed(url, max_attempts, results, reason=results[-1].error or "")

    def probe_metrics(self, url: str) -> HealthCheckResult:
        """Single best-effort probe of the metrics endpoint."""
        result = self.probe(url)
        if result.success:
            logger.info("Metrics endpoint is accessible")
        else:
            logger.warning(f"Metrics endpoint is not accessible: {result.error}")
        return result

    def probe_security_headers(self, url: str) -> Dict[str, bool]:
        """Report which common security headers the endpoint sends. Advisory only."""
        try:
            response = self.http.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Security header probe failed: {e}")
            return {}

        present = {header: header in response.headers for header in SECURITY_HEADERS}
        for header, found in present.items():
            if not found:
                logger.warning(f"Missing {header} header")
        return present

    def check_under_load(self, url: str, requests_count: int = 10) -> LoadCheckResult:
        """
        Fire ``requests_count`` GETs at once and report the average latency.

        Advisory only: failures are counted, never raised.
        """
        if requests_count < 1:
            raise ValueError("requests_count must be >= 1")

        logger.info(f"Running light load test: {requests_count} concurrent requests to {url}")
        started = time.monotonic()
        with ThreadPoolExecutor(max_workers=requests_count) as pool:
            results = list(pool.map(lambda n: self.probe(url, n), range(1, requests_count + 1)))
        elapsed = time.monotonic() - started

        result = LoadCheckResult(
            total=requests_count,
            succeeded=sum(1 for r in results if r.success),
            elapsed=elapsed,
            average_latency=sum(r.latency for r in results) / requests_count,
        )
        logger.info(f"Load test completed in {elapsed:.3f}s, average response time {result.average_latency:.3f}s")
        if result.failed:
            logger.warning(f"{result.failed} of {requests_count} concurrent requests failed")
        return result
