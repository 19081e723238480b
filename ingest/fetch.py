import hashlib
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable

import httpx

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; PriceTracker/1.0)"


@dataclass(frozen=True)
class RateLimitConfig:
    requests_per_second: float = 2.0
    max_retries: int = 3
    initial_backoff_ms: int = 1000
    max_backoff_ms: int = 30000


class FetchRetryError(Exception):
    """
    Raised when a request keeps failing with retryable errors.

    Attributes:
        url: The requested URL
        attempts: Total number of attempts made
        last_status: HTTP status of the last response, if any
        last_error: Exception raised by the last attempt, if any
    """

    def __init__(
        self,
        url: str,
        attempts: int,
        last_status: int | None = None,
        last_error: Exception | None = None,
    ):
        self.url = url
        self.attempts = attempts
        self.last_status = last_status
        self.last_error = last_error
        reason = f"status {last_status}" if last_status else f"error {last_error}"
        super().__init__(f"Fetching {url} failed after {attempts} attempts ({reason})")


class RateLimiter:
    """
    Enforces a minimum interval between requests.

    Safe to share between threads.
    """

    def __init__(self, config: RateLimitConfig | None = None):
        self.config = config or RateLimitConfig()
        self.min_interval = 1.0 / max(self.config.requests_per_second, 0.01)
        self._last_request = 0.0
        self._lock = threading.Lock()

    def wait(self):
        with self._lock:
            elapsed = time.monotonic() - self._last_request
            delay = self.min_interval - elapsed
            if delay > 0:
                time.sleep(delay)
            self._last_request = time.monotonic()


def compute_sha256(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def is_retryable_status(status: int) -> bool:
    return status == 429 or 500 <= status < 600


def calculate_backoff(
    attempt: int,
    config: RateLimitConfig,
    status: int | None = None,
) -> float:
    """
    Backoff before the next attempt, in seconds.

    Exponential in the attempt number (x3 per attempt when rate limited
    with 429, x2 otherwise), capped at max_backoff_ms, with +/-25% jitter.
    """
    multiplier = 3 if status == 429 else 2
    delay_ms = min(config.initial_backoff_ms * multiplier**attempt, config.max_backoff_ms)
    delay_ms *= 1 + random.uniform(-0.25, 0.25)
    return max(delay_ms, 0) / 1000


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def fetch_with_retry(
    url: str,
    limiter: RateLimiter,
    config: RateLimitConfig | None = None,
    client: httpx.Client | None = None,
    method: str = "GET",
    headers: dict[str, str] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> httpx.Response:
    """
    Perform a rate-limited HTTP request, retrying transient failures.

    Retries on 429, 5xx and network errors, up to max_retries times.
    A 429 response with a Retry-After header waits as the server asks.
    Other 4xx responses fail immediately.

    Args:
        url: URL to request
        limiter: Rate limiter shared by requests to the same source
        config: Retry configuration (defaults to the limiter's)
        client: httpx client to use (a temporary one is created if None)
        method: HTTP method
        headers: Extra request headers

    Returns:
        The successful response

    Raises:
        httpx.HTTPStatusError: On a non-retryable HTTP error status
        FetchRetryError: If all attempts fail
    """
    config = config or limiter.config
    own_client = client is None
    if client is None:
        client = httpx.Client(timeout=30.0, follow_redirects=True)

    request_headers = {"User-Agent": USER_AGENT}
    if headers:
        request_headers.update(headers)

    last_status = None
    last_error = None
    attempts = 0

    try:
        for attempt in range(config.max_retries + 1):
            limiter.wait()
            attempts += 1
            logger.debug(f"{method} {url} (attempt {attempts})")

            try:
                response = client.request(method, url, headers=request_headers)
            except httpx.TransportError as e:
                last_error = e
                last_status = None
                logger.warning(f"Request to {url} failed: {e}")
                if attempt < config.max_retries:
                    sleep(calculate_backoff(attempt, config))
                continue

            if response.is_success or response.is_redirect:
                return response

            if not is_retryable_status(response.status_code):
                response.raise_for_status()
                return response

            last_status = response.status_code
            last_error = None
            logger.warning(f"Request to {url} returned {last_status}")

            if attempt >= config.max_retries:
                break

            delay = None
            if last_status == 429:
                retry_after = parse_retry_after(response.headers.get("retry-after"))
                if retry_after is not None:
                    delay = retry_after + random.uniform(0, 1)
            if delay is None:
                delay = calculate_backoff(attempt, config, last_status)

            logger.debug(f"Retrying {url} in {delay:.2f}s")
            sleep(delay)
    finally:
        if own_client:
            client.close()

    raise FetchRetryError(url, attempts, last_status, last_error)
