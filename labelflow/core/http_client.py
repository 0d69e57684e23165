"""
Resilient HTTP Client for External API Calls

- Exponential backoff with jitter (base 200ms, multiplier 2, cap 5s, +/-20%)
- 429 detection with Retry-After header respect
- Retries 5xx and network errors
- Returns the final response; classification stays with the caller

Sleep is injectable so retry timing can be asserted without waiting.
"""
import asyncio
import logging
import random
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 0.2           # Base delay in seconds
    max_delay: float = 5.0            # Maximum delay cap
    exponential_base: float = 2.0     # Exponential backoff multiplier
    jitter_factor: float = 0.2        # Random jitter (0-1)

    # Status codes that should trigger retry
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)

    @classmethod
    def from_settings(cls, settings, max_retries: Optional[int] = None) -> "RetryConfig":
        return cls(
            max_retries=settings.HTTP_MAX_RETRIES if max_retries is None else max_retries,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            exponential_base=settings.RETRY_MULTIPLIER,
            jitter_factor=settings.RETRY_JITTER_FACTOR,
        )


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """
    Calculate delay with exponential backoff and jitter.

    Formula: min(base * (exp_base ^ attempt) +/- jitter, max_delay)
    Jitter prevents thundering herd when multiple clients retry simultaneously.
    """
    delay = config.base_delay * (config.exponential_base ** attempt)

    # Add random jitter (+/- jitter_factor of the delay)
    jitter = delay * config.jitter_factor * (2 * random.random() - 1)
    delay += jitter

    return max(0.0, min(delay, config.max_delay))


_SECONDS_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*s?\s*$", re.IGNORECASE)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header.

    Accepts delta-seconds ("2", "2.5", "2s") or an HTTP date.
    Returns None when the header is absent or unparseable.
    """
    if not value:
        return None

    match = _SECONDS_RE.match(value)
    if match:
        return float(match.group(1))

    try:
        retry_date = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_date is None:
        return None
    if retry_date.tzinfo is None:
        retry_date = retry_date.replace(tzinfo=timezone.utc)
    return max(0.0, (retry_date - datetime.now(timezone.utc)).total_seconds())


def downstream_request_id(response: Optional[httpx.Response]) -> Optional[str]:
    """Pull the remote system's request id from a response, if it sent one."""
    if response is None:
        return None
    for header in ("x-request-id", "x-correlation-id", "request-id", "x-amzn-requestid"):
        value = response.headers.get(header)
        if value:
            return value
    return None


class ResilientHTTPClient:
    """
    Async HTTP client with shared retry policy.

    Usage:
        async with ResilientHTTPClient(base_url="https://api.example.com") as client:
            response = await client.request("GET", "/orders/1")
    """

    def __init__(
        self,
        base_url: str = "",
        retry_config: Optional[RetryConfig] = None,
        timeout: float = 30.0,
        default_headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        name: str = "http",
    ):
        self.base_url = base_url
        self.retry_config = retry_config or RetryConfig()
        self.timeout = timeout
        self.default_headers = default_headers or {}
        self.name = name
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def init(self):
        """Initialize client without context manager. Must call close() when done."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self.default_headers,
                transport=self._transport,
            )
        return self

    async def close(self):
        """Close the client. Use this when not using context manager."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send_once(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Single attempt, no retry. Network errors propagate as httpx errors."""
        await self.init()
        return await self._client.request(method, url, **kwargs)

    async def request(
        self,
        method: str,
        url: str,
        **kwargs
    ) -> httpx.Response:
        """
        Make HTTP request with retries on 429, 5xx and network errors.

        Returns the last response received (possibly a 429/5xx once retries are
        used up). Raises the last httpx.TransportError when every attempt
        failed at the network level.
        """
        cfg = self.retry_config
        last_error: Optional[httpx.TransportError] = None

        for attempt in range(cfg.max_retries + 1):
            try:
                response = await self.send_once(method, url, **kwargs)
            except httpx.TransportError as e:
                last_error = e
                if attempt >= cfg.max_retries:
                    break
                delay = calculate_backoff(attempt, cfg)
                logger.warning(
                    f"[{self.name}] {method} {url}: {type(e).__name__}, "
                    f"retry {attempt + 1}/{cfg.max_retries} in {delay:.2f}s"
                )
                await self._sleep(delay)
                continue

            if response.status_code not in cfg.retryable_status_codes or attempt >= cfg.max_retries:
                return response

            if response.status_code == 429:
                hinted = parse_retry_after(response.headers.get("retry-after"))
                delay = hinted if hinted is not None else calculate_backoff(attempt, cfg)
            else:
                delay = calculate_backoff(attempt, cfg)

            logger.warning(
                f"[{self.name}] {method} {url}: HTTP {response.status_code}, "
                f"retry {attempt + 1}/{cfg.max_retries} in {delay:.2f}s"
            )
            await self._sleep(delay)

        raise last_error
