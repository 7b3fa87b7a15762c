from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from stocksync.clients.ratelimit import TokenBucket
from stocksync.errors import RemoteError, StopRequested, TerminalRemoteError, TransientRemoteError

RETRYABLE_HTTP_STATUSES = {429, 500, 502, 503, 504}
TRANSIENT_TRANSPORT_ERRORS = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)

ResponseCheck = Callable[[httpx.Response], None]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    jitter_seconds: float = 1.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff(self, attempt: int, rng: random.Random) -> float:
        jitter = rng.uniform(0, self.jitter_seconds) if self.jitter_seconds > 0 else 0.0
        return (2**attempt) * self.base_delay_seconds + jitter


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_HTTP_STATUSES or status_code >= 500


def _body_excerpt(response: httpx.Response, limit: int = 500) -> str:
    try:
        text = response.text
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        return "<unreadable body>"
    return text if len(text) <= limit else f"{text[:limit]}..."


class RateLimitedRetryClient:
    """The single outbound path to a remote API.

    Each attempt takes a token from the shared limiter (when one is given), then
    sends the request. Transient failures are retried with exponential backoff
    plus jitter; terminal failures are raised at once. Once the stop event is
    set, no further request leaves the process.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        limiter: TokenBucket | None = None,
        policy: RetryPolicy | None = None,
        name: str = "remote",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self.http = http
        self.limiter = limiter
        self.policy = policy or RetryPolicy()
        self.name = name
        self._sleep = sleep
        self._rng = rng or random.Random()
        self.stop_event = stop_event

    async def request(
        self,
        method: str,
        url: str,
        *,
        check: ResponseCheck | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        target = f"{method.upper()} {url}"
        attempts = self.policy.max_attempts
        for attempt in range(attempts):
            if self.limiter is not None:
                await self.limiter.acquire()
            if self.stop_event is not None and self.stop_event.is_set():
                raise StopRequested(f"shutdown requested; {target} not sent")

            started = time.monotonic()
            try:
                response = await self._send(method, url, target, **kwargs)
                if check is not None:
                    check(response)
            except TransientRemoteError as exc:
                exc.attempts = attempt + 1
                exc.target = exc.target or target
                if attempt >= attempts - 1:
                    logger.error(
                        "%s %s failed after %s/%s attempts: %s",
                        self.name,
                        target,
                        attempt + 1,
                        attempts,
                        exc,
                    )
                    raise
                delay = self.policy.backoff(attempt, self._rng)
                logger.warning(
                    "%s %s attempt %s/%s failed (status=%s): %s; retrying in %.1fs",
                    self.name,
                    target,
                    attempt + 1,
                    attempts,
                    exc.status_code or "n/a",
                    exc,
                    delay,
                )
                if delay > 0:
                    await self._sleep(delay)
                continue
            except RemoteError as exc:
                exc.attempts = attempt + 1
                exc.target = exc.target or target
                logger.error(
                    "%s %s failed permanently on attempt %s/%s (status=%s): %s",
                    self.name,
                    target,
                    attempt + 1,
                    attempts,
                    exc.status_code or "n/a",
                    exc,
                )
                raise

            logger.debug(
                "%s %s -> %s in %.2fs (attempt %s/%s)",
                self.name,
                target,
                response.status_code,
                time.monotonic() - started,
                attempt + 1,
                attempts,
            )
            return response
        raise RuntimeError(f"Unreachable retry state for {target}")

    async def get_json(self, url: str, **kwargs: Any) -> Any:
        response = await self.request("GET", url, **kwargs)
        return decode_json(response, f"GET {url}")

    async def post_json(self, url: str, payload: Any, *, check: ResponseCheck | None = None, **kwargs: Any) -> Any:
        response = await self.request("POST", url, json=payload, check=check, **kwargs)
        return decode_json(response, f"POST {url}")

    async def _send(self, method: str, url: str, target: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.http.request(method, url, **kwargs)
        except TRANSIENT_TRANSPORT_ERRORS as exc:
            raise TransientRemoteError(f"{type(exc).__name__}: {exc}", target=target) from exc
        except httpx.HTTPError as exc:
            raise TerminalRemoteError(f"{type(exc).__name__}: {exc}", target=target) from exc

        status = response.status_code
        if is_retryable_status(status):
            raise TransientRemoteError(
                f"retryable status {status}: {_body_excerpt(response)}",
                status_code=status,
                target=target,
            )
        if status >= 400:
            raise TerminalRemoteError(
                f"status {status}: {_body_excerpt(response)}",
                status_code=status,
                target=target,
            )
        return response


def decode_json(response: httpx.Response, target: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise TerminalRemoteError(
            f"response is not JSON: {_body_excerpt(response, 200)}",
            status_code=response.status_code,
            target=target,
        ) from exc
