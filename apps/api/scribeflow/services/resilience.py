"""Resilience policies wrapping every outbound call to the transcription provider.

Policies compose as ``retry(circuit_breaker(timeout(call)))``. Retry sits outermost so a
call that meets an open breaker waits out the remaining cooldown and is retried only once
the breaker admits a probe.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from enum import Enum
import logging
from pathlib import Path
import random
import time
from typing import Any, TypeVar

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt
from tenacity.wait import wait_base

from scribeflow.core.config import Settings
from scribeflow.core.logging_safety import CORRELATION_HEADER, ensure_correlation_id, safe_log_identifier
from scribeflow.errors import CircuitOpenError, ProviderRejection, TransientRemoteError

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RANGE = (0.8, 1.2)
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header given either as delta-seconds or an HTTP date."""
    if not value:
        return None
    text = value.strip()
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    current = now or datetime.now(UTC)
    return max(0.0, (when - current).total_seconds())


class BackoffPolicy:
    """Exponential backoff with jitter, capped, honouring provider retry-after hints."""

    def __init__(
        self,
        *,
        base_delay: float,
        exponent: float,
        max_delay: float,
        rng: random.Random | None = None,
    ) -> None:
        self.base_delay = base_delay
        self.exponent = exponent
        self.max_delay = max_delay
        self._rng = rng or random.Random()

    def delay_for(self, attempt: int, *, previous: float = 0.0, retry_after: float | None = None) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        raw = min(self.base_delay * self.exponent ** (attempt - 1), self.max_delay)
        jittered = min(raw * self._rng.uniform(*JITTER_RANGE), self.max_delay)
        delay = max(jittered, previous)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay


class _CallBackoff(wait_base):
    """Per-call tenacity wait keeping the delay sequence non-decreasing."""

    def __init__(self, policy: BackoffPolicy) -> None:
        self._policy = policy
        self._previous = 0.0

    def __call__(self, retry_state: RetryCallState) -> float:
        retry_after = None
        if retry_state.outcome is not None and retry_state.outcome.failed:
            exc = retry_state.outcome.exception()
            retry_after = getattr(exc, "retry_after", None)
        delay = self._policy.delay_for(
            retry_state.attempt_number,
            previous=self._previous,
            retry_after=retry_after,
        )
        self._previous = delay
        return delay


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Opens after N consecutive handled failures inside a sampling window."""

    def __init__(
        self,
        *,
        failure_threshold: int,
        sampling_seconds: float,
        break_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.sampling_seconds = sampling_seconds
        self.break_seconds = break_seconds
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._first_failure_at: float | None = None
        self._opened_at: float | None = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._cooldown_remaining() <= 0:
            return CircuitState.HALF_OPEN
        return self._state

    def _cooldown_remaining(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self.break_seconds - self._clock())

    def before_call(self) -> None:
        """Admit the call or fail fast with ``CircuitOpenError``."""
        if self._state is CircuitState.CLOSED:
            return
        if self._state is CircuitState.OPEN:
            remaining = self._cooldown_remaining()
            if remaining > 0:
                raise CircuitOpenError("Provider circuit is open", retry_after=remaining)
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = False
            logger.info("circuit.half_open")
        if self._probe_in_flight:
            raise CircuitOpenError("Provider circuit is probing recovery", retry_after=min(1.0, self.break_seconds))
        self._probe_in_flight = True

    def record_success(self) -> None:
        if self._state is not CircuitState.CLOSED:
            logger.info("circuit.closed")
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._first_failure_at = None
        self._opened_at = None
        self._probe_in_flight = False

    def record_failure(self) -> None:
        now = self._clock()
        if self._state is CircuitState.HALF_OPEN:
            self._trip(now)
            return
        if self._first_failure_at is None or now - self._first_failure_at > self.sampling_seconds:
            self._first_failure_at = now
            self._consecutive_failures = 0
        self._consecutive_failures += 1
        if self._consecutive_failures >= self.failure_threshold:
            self._trip(now)

    def release_probe(self) -> None:
        """Free the half-open slot when a probe ends without a verdict (e.g. a 4xx)."""
        self._probe_in_flight = False

    def _trip(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._probe_in_flight = False
        logger.warning(
            "circuit.opened consecutive_failures=%s break_seconds=%s",
            self._consecutive_failures,
            self.break_seconds,
        )


class ResilientRemoteClient:
    """HTTP client for the provider with timeout, circuit breaker and retry policies."""

    def __init__(
        self,
        *,
        base_url: str,
        headers: dict[str, str] | None = None,
        max_retry_attempts: int = 3,
        backoff: BackoffPolicy,
        breaker: CircuitBreaker,
        attempt_timeout: float = 30.0,
        retry_on_request_timeout: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            transport=transport,
            timeout=httpx.Timeout(attempt_timeout),
        )
        self.max_retry_attempts = max_retry_attempts
        self.backoff = backoff
        self.breaker = breaker
        self.attempt_timeout = attempt_timeout
        self.retry_on_request_timeout = retry_on_request_timeout
        self._sleep = sleep
        self.network_attempts = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> ResilientRemoteClient:
        return cls(
            base_url=settings.provider_base_url,
            headers=headers,
            max_retry_attempts=settings.max_retry_attempts,
            backoff=BackoffPolicy(
                base_delay=settings.initial_retry_delay_ms / 1000.0,
                exponent=settings.retry_backoff_exponent,
                max_delay=settings.max_retry_delay_ms / 1000.0,
            ),
            breaker=CircuitBreaker(
                failure_threshold=settings.circuit_breaker_failure_threshold,
                sampling_seconds=settings.circuit_breaker_sampling_seconds,
                break_seconds=settings.circuit_breaker_break_seconds,
            ),
            attempt_timeout=settings.request_timeout_seconds,
            retry_on_request_timeout=settings.retry_on_request_timeout,
            transport=transport,
            sleep=sleep,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def execute(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run ``call`` under retry -> circuit breaker -> timeout."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retry_attempts + 1),
            wait=_CallBackoff(self.backoff),
            retry=retry_if_exception_type(TransientRemoteError),
            sleep=self._sleep,
            reraise=True,
            before_sleep=self._log_retry(operation),
        )
        async for attempt in retrying:
            with attempt:
                return await self._guarded(operation, call)
        raise AssertionError("unreachable: tenacity re-raises the final failure")

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        content_factory: Callable[[], Any] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one logical request; the correlation id is shared by all its attempts."""
        request_headers = dict(headers or {})
        correlation_id = ensure_correlation_id(request_headers)
        safe_correlation_id = safe_log_identifier(correlation_id, prefix="cid")

        async def attempt() -> httpx.Response:
            send_kwargs = dict(kwargs)
            if content_factory is not None:
                send_kwargs["content"] = content_factory()
            self.network_attempts += 1
            started = time.perf_counter()
            logger.info(
                "provider.request correlation_id=%s method=%s path=%s",
                safe_correlation_id,
                method,
                url,
            )
            try:
                response = await self._http.request(method, url, headers=request_headers, **send_kwargs)
            except httpx.TransportError as exc:
                logger.warning(
                    "provider.transport_error correlation_id=%s method=%s path=%s elapsed_ms=%d reason=%s",
                    safe_correlation_id,
                    method,
                    url,
                    (time.perf_counter() - started) * 1000,
                    type(exc).__name__,
                )
                raise TransientRemoteError(f"Transport error calling provider: {type(exc).__name__}") from exc
            logger.info(
                "provider.response correlation_id=%s method=%s path=%s status=%s elapsed_ms=%d",
                safe_correlation_id,
                method,
                url,
                response.status_code,
                (time.perf_counter() - started) * 1000,
            )
            self._raise_for_status(response)
            return response

        return await self.execute(f"{method} {url}", attempt)

    async def download(
        self,
        url: str,
        destination: Path,
        *,
        progress: Callable[[float], None],
        headers: dict[str, str] | None = None,
    ) -> int:
        """Stream a GET response body into ``destination``; returns the byte count.

        Each attempt writes to a sibling temp file that replaces ``destination`` only once
        the whole body has arrived.
        """
        request_headers = dict(headers or {})
        correlation_id = ensure_correlation_id(request_headers)
        safe_correlation_id = safe_log_identifier(correlation_id, prefix="cid")
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(f".{destination.name}.part")

        async def attempt() -> int:
            self.network_attempts += 1
            started = time.perf_counter()
            logger.info("provider.request correlation_id=%s method=GET path=%s", safe_correlation_id, url)
            received = 0
            try:
                async with self._http.stream("GET", url, headers=request_headers) as response:
                    if response.status_code >= 400:
                        await response.aread()
                    self._raise_for_status(response)
                    total = int(response.headers.get("Content-Length") or 0)
                    progress(0.0)
                    handle = await asyncio.to_thread(partial.open, "wb")
                    try:
                        async for chunk in response.aiter_bytes():
                            await asyncio.to_thread(handle.write, chunk)
                            received += len(chunk)
                            if total:
                                progress(min(100.0, received * 100.0 / total))
                    finally:
                        await asyncio.to_thread(handle.close)
            except httpx.TransportError as exc:
                partial.unlink(missing_ok=True)
                raise TransientRemoteError(f"Transport error downloading from provider: {type(exc).__name__}") from exc
            except BaseException:
                partial.unlink(missing_ok=True)
                raise
            partial.replace(destination)
            progress(100.0)
            logger.info(
                "provider.response correlation_id=%s method=GET path=%s status=%s bytes=%s elapsed_ms=%d",
                safe_correlation_id,
                url,
                response.status_code,
                received,
                (time.perf_counter() - started) * 1000,
            )
            return received

        return await self.execute(f"GET {url}", attempt)

    async def _guarded(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        self.breaker.before_call()
        try:
            result = await asyncio.wait_for(call(), timeout=self.attempt_timeout)
        except TimeoutError as exc:
            self.breaker.record_failure()
            raise TransientRemoteError(
                f"{operation} exceeded {self.attempt_timeout:g}s attempt timeout"
            ) from exc
        except TransientRemoteError:
            self.breaker.record_failure()
            raise
        except BaseException:
            self.breaker.release_probe()
            raise
        self.breaker.record_success()
        return result

    def _raise_for_status(self, response: httpx.Response) -> None:
        status_code = response.status_code
        if status_code < 400:
            return
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        if status_code in _RETRYABLE_STATUS_CODES or (status_code == 408 and self.retry_on_request_timeout):
            raise TransientRemoteError(
                f"Provider returned HTTP {status_code}",
                status_code=status_code,
                retry_after=retry_after,
            )
        raise ProviderRejection(
            f"Provider rejected request with HTTP {status_code}: {_error_summary(response)}",
            status_code=status_code,
        )

    @staticmethod
    def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
            delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
            logger.warning(
                "provider.retry operation=%s attempt=%s delay_ms=%d reason=%s",
                operation,
                retry_state.attempt_number,
                delay * 1000,
                exc,
            )

        return before_sleep


def _error_summary(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])[:200]
    return str(body)[:200]


__all__ = [
    "BackoffPolicy",
    "CORRELATION_HEADER",
    "CircuitBreaker",
    "CircuitState",
    "ResilientRemoteClient",
    "parse_retry_after",
]
