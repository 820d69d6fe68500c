"""Failover execution of one logical call across a credential pool."""

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar
from uuid import uuid4

import httpx

from .credentials import Credential, CredentialPool, OAuthCredential
from .exceptions import (
    AuthError,
    Cancelled,
    InvalidRequest,
    LLMError,
    MalformedResponse,
    NetworkError,
    NoCredentialAvailableError,
    RateLimitExceeded,
    RefreshFailed,
)
from .logging import get_logger
from .models import Usage

if TYPE_CHECKING:
    from .oauth import OAuthRefresher
    from .stats import StatsCollector

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3

Operation = Callable[[Credential, float | None], Awaitable[tuple[T, Usage | None]]]


@dataclass
class AttemptRecord:
    """Outcome of one credential attempt."""

    request_id: str
    provider: str
    credential: str
    attempt: int
    outcome: str
    latency_ms: float
    total_tokens: int | None = None
    error_type: str | None = None
    error: str | None = None


class FailoverExecutor:
    """
    Run an operation against successive credentials until one succeeds.

    Rules:
    - At most ``min(pool size, max_attempts)`` attempts, strictly sequential.
    - Network, 5xx and OAuth refresh failures mark the credential failed
      and move on to the next one.
    - 401/403 force an OAuth refresh, or mark an API key failed.
    - 400/404/413/422 and undecodable 2xx bodies end the call without
      touching the credential's health.
    - A 429 is retried once on another credential, then surfaced.
    - Cancellation never reports success or failure.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        stats_collector: "StatsCollector | None" = None,
        on_attempt: Callable[[AttemptRecord], Any] | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.stats_collector = stats_collector
        self.on_attempt = on_attempt
        self.logger = get_logger()

    async def execute(
        self,
        pool: CredentialPool,
        operation: Operation,
        *,
        provider: str,
        refresher: "OAuthRefresher | None" = None,
        deadline: float | None = None,
        cancel_event: asyncio.Event | None = None,
        request_id: str | None = None,
    ) -> tuple[Any, Usage | None]:
        """
        Execute ``operation`` with failover.

        Args:
            pool: Credentials to draw from
            operation: ``async operation(credential, timeout) -> (result, usage)``
            provider: Provider name for errors and logs
            refresher: Refresher for OAuth credentials in the pool
            deadline: Budget in seconds for the whole call
            cancel_event: Setting it aborts the in-flight attempt
            request_id: Correlation id for logs

        Returns:
            The operation's ``(result, usage)``

        Raises:
            LLMError: The last attempt's error, with ``attempts_made`` set
        """
        request_id = request_id or str(uuid4())
        expires = time.monotonic() + deadline if deadline is not None else None
        max_attempts = min(pool.size, self.max_attempts)

        attempts = 0
        last_error: LLMError | None = None
        rate_limited = False

        while attempts < max_attempts:
            if cancel_event is not None and cancel_event.is_set():
                raise Cancelled("Request cancelled", provider, attempts_made=attempts)
            timeout = self._remaining(expires, provider, attempts)

            try:
                credential = pool.next()
            except NoCredentialAvailableError as e:
                if last_error is None:
                    raise AuthError(
                        f"No usable credential for {provider}", provider, attempts_made=0
                    ) from e
                break

            attempts += 1
            start = time.monotonic()

            if isinstance(credential, OAuthCredential) and refresher is not None:
                try:
                    credential = await refresher.ensure_valid(credential)
                except RefreshFailed as e:
                    pool.report_failure(credential, e)
                    self._record(request_id, provider, credential, attempts, max_attempts,
                                 "retry", start, error=e)
                    last_error = e
                    continue

            try:
                result, usage = await self._run(
                    operation(credential, timeout), timeout, cancel_event, provider
                )
            except Cancelled as e:
                e.attempts_made = attempts
                raise
            except (httpx.TimeoutException, httpx.TransportError) as e:
                error = NetworkError(f"{type(e).__name__}: {e}", provider)
                error.__cause__ = e
                pool.report_failure(credential, error)
                self._record(request_id, provider, credential, attempts, max_attempts,
                             "retry", start, error=error)
                last_error = error
                continue
            except LLMError as e:
                last_error = e
                retry = await self._handle_failure(e, pool, credential, refresher, rate_limited)
                if isinstance(e, RateLimitExceeded):
                    rate_limited = True
                outcome = "retry" if retry else "terminal"
                self._record(request_id, provider, credential, attempts, max_attempts,
                             outcome, start, error=e)
                if not retry:
                    break
                continue

            pool.report_success(credential)
            self._record(request_id, provider, credential, attempts, max_attempts,
                         "success", start, usage=usage)
            return result, usage

        if last_error is None:
            raise AuthError(f"No usable credential for {provider}", provider, attempts_made=0)
        last_error.attempts_made = attempts
        if last_error.provider is None:
            last_error.provider = provider
        raise last_error

    async def _handle_failure(
        self,
        error: LLMError,
        pool: CredentialPool,
        credential: Credential,
        refresher: "OAuthRefresher | None",
        rate_limited: bool,
    ) -> bool:
        """Update credential health for a failed attempt; return whether to retry."""
        if isinstance(error, InvalidRequest):
            return False

        if isinstance(error, MalformedResponse):
            if error.status_code is not None and error.status_code >= 500:
                pool.report_failure(credential, error)
                return True
            return False

        if isinstance(error, RateLimitExceeded):
            pool.report_failure(credential, error)
            return not rate_limited

        if isinstance(error, AuthError):
            if isinstance(credential, OAuthCredential) and refresher is not None:
                try:
                    await refresher.refresh(credential, stale_token=credential.access_token)
                except RefreshFailed as refresh_error:
                    pool.report_failure(credential, refresh_error)
            else:
                pool.report_failure(credential, error)
            return True

        # NetworkError, UpstreamError, RefreshFailed and anything unclassified
        pool.report_failure(credential, error)
        return True

    @staticmethod
    def _remaining(expires: float | None, provider: str, attempts: int) -> float | None:
        if expires is None:
            return None
        remaining = expires - time.monotonic()
        if remaining <= 0:
            raise NetworkError("deadline exceeded", provider, attempts_made=attempts)
        return remaining

    @staticmethod
    async def _run(
        coro: Awaitable[T],
        timeout: float | None,
        cancel_event: asyncio.Event | None,
        provider: str,
    ) -> T:
        """Await ``coro``, racing it against the deadline and the cancel event."""
        if timeout is None and cancel_event is None:
            return await coro

        task = asyncio.ensure_future(coro)
        waiters: set[asyncio.Future] = {task}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            raise

        if cancel_waiter is not None and not cancel_waiter.done():
            cancel_waiter.cancel()
        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if cancel_waiter is not None and cancel_waiter in done:
            raise Cancelled("Request cancelled", provider)
        raise NetworkError("deadline exceeded", provider)

    def _record(
        self,
        request_id: str,
        provider: str,
        credential: Credential,
        attempt: int,
        max_attempts: int,
        outcome: str,
        start: float,
        usage: Usage | None = None,
        error: LLMError | None = None,
    ) -> None:
        record = AttemptRecord(
            request_id=request_id,
            provider=provider,
            credential=credential.display_id,
            attempt=attempt,
            outcome=outcome,
            latency_ms=(time.monotonic() - start) * 1000,
            total_tokens=usage.total_tokens if usage is not None else None,
            error_type=error.kind if error is not None else None,
            error=error.message if error is not None else None,
        )
        self.logger.log_attempt(
            request_id,
            provider,
            record.credential,
            attempt,
            max_attempts,
            outcome,
            record.latency_ms,
            total_tokens=record.total_tokens,
            error_type=record.error_type,
            error_message=record.error,
        )
        if self.stats_collector:
            self.stats_collector.record_attempt(
                provider,
                record.credential,
                outcome,
                record.latency_ms,
                total_tokens=record.total_tokens,
                error_message=record.error,
            )
        if self.on_attempt is not None:
            self.on_attempt(record)
