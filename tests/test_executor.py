"""Tests for the failover executor."""

import asyncio
import time

import httpx
import pytest

from llm_provider_kit.credentials import APIKeyCredential, CredentialPool, OAuthCredential
from llm_provider_kit.exceptions import (
    AuthError,
    Cancelled,
    InvalidRequest,
    MalformedResponse,
    NetworkError,
    RateLimitExceeded,
    UpstreamError,
)
from llm_provider_kit.executor import FailoverExecutor
from llm_provider_kit.models import Usage
from llm_provider_kit.oauth import OAuthRefresher, generic_refresh
from llm_provider_kit.stats import StatsCollector


def key_pool(count: int) -> CredentialPool:
    return CredentialPool(
        [APIKeyCredential(f"sk-test-key-000{i}") for i in range(1, count + 1)], provider="test"
    )


def scripted(outcomes: list):
    """Operation that raises or returns the next scripted outcome and logs the token used."""
    used = []

    async def operation(credential, timeout):
        used.append(credential.token)
        outcome = outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome, Usage.of(1, 2)

    return operation, used


@pytest.mark.asyncio
async def test_success_on_first_attempt():
    """A healthy credential answers in one attempt."""
    records = []
    pool = key_pool(2)
    executor = FailoverExecutor(on_attempt=records.append)
    operation, used = scripted(["ok"])

    result, usage = await executor.execute(pool, operation, provider="test")

    assert result == "ok"
    assert usage.total_tokens == 3
    assert used == ["sk-test-key-0001"]
    assert [record.outcome for record in records] == ["success"]
    assert records[0].total_tokens == 3


@pytest.mark.asyncio
async def test_failover_to_next_credential():
    """An upstream error moves on to the next credential."""
    records = []
    stats = StatsCollector()
    pool = key_pool(2)
    executor = FailoverExecutor(stats_collector=stats, on_attempt=records.append)
    operation, used = scripted([UpstreamError("boom", "test", 503), "ok"])

    result, _ = await executor.execute(pool, operation, provider="test")

    assert result == "ok"
    assert used == ["sk-test-key-0001", "sk-test-key-0002"]
    assert pool.health("sk-test-key-0001").consecutive_failures == 1
    assert pool.health("sk-test-key-0002").consecutive_failures == 0
    assert [record.outcome for record in records] == ["retry", "success"]
    assert records[0].error_type == "upstream_error"
    assert records[0].credential == "sk-t...0001"
    provider_stats = stats.get_provider_stats("test")
    assert provider_stats.total_attempts == 2
    assert provider_stats.credentials["sk-t...0001"].failures == 1


@pytest.mark.asyncio
async def test_attempts_bounded_by_pool_size():
    """Each credential is tried at most once per call."""
    pool = key_pool(2)
    operation, used = scripted([UpstreamError("a", "test", 500), UpstreamError("b", "test", 502)])

    with pytest.raises(UpstreamError) as exc_info:
        await FailoverExecutor(max_attempts=5).execute(pool, operation, provider="test")

    assert exc_info.value.message == "b"
    assert exc_info.value.attempts_made == 2
    assert len(used) == 2


@pytest.mark.asyncio
async def test_attempts_bounded_by_max_attempts():
    """A large pool is capped by max_attempts."""
    pool = key_pool(5)
    operation, used = scripted([UpstreamError("x", "test", 500)] * 5)

    with pytest.raises(UpstreamError) as exc_info:
        await FailoverExecutor(max_attempts=3).execute(pool, operation, provider="test")

    assert exc_info.value.attempts_made == 3
    assert len(used) == 3


@pytest.mark.asyncio
async def test_invalid_request_is_terminal():
    """A 400 ends the call and leaves the credential healthy."""
    records = []
    pool = key_pool(3)
    operation, used = scripted([InvalidRequest("bad field", "test", 400)])

    with pytest.raises(InvalidRequest) as exc_info:
        await FailoverExecutor(on_attempt=records.append).execute(pool, operation, provider="test")

    assert exc_info.value.attempts_made == 1
    assert len(used) == 1
    assert pool.health("sk-test-key-0001").consecutive_failures == 0
    assert records[0].outcome == "terminal"


@pytest.mark.asyncio
async def test_malformed_success_is_terminal():
    """An undecodable 2xx body is not retried."""
    pool = key_pool(2)
    operation, used = scripted([MalformedResponse("bad json", "test", 200)])

    with pytest.raises(MalformedResponse):
        await FailoverExecutor().execute(pool, operation, provider="test")

    assert len(used) == 1


@pytest.mark.asyncio
async def test_malformed_error_body_is_retried():
    """An undecodable 5xx body counts as an upstream failure."""
    pool = key_pool(2)
    operation, used = scripted([MalformedResponse("bad gateway", "test", 502), "ok"])

    result, _ = await FailoverExecutor().execute(pool, operation, provider="test")

    assert result == "ok"
    assert len(used) == 2


@pytest.mark.asyncio
async def test_rate_limit_retried_once():
    """A second 429 in the same call is surfaced."""
    pool = key_pool(3)
    operation, used = scripted(
        [
            RateLimitExceeded("slow down", "test", retry_after=5),
            RateLimitExceeded("slow down again", "test", retry_after=7),
            "ok",
        ]
    )

    with pytest.raises(RateLimitExceeded) as exc_info:
        await FailoverExecutor().execute(pool, operation, provider="test")

    assert exc_info.value.attempts_made == 2
    assert exc_info.value.retry_after == 7
    assert used == ["sk-test-key-0001", "sk-test-key-0002"]
    assert pool.health("sk-test-key-0001").consecutive_failures == 1


@pytest.mark.asyncio
async def test_transport_error_becomes_network_error():
    """httpx transport failures are wrapped and failed over."""
    pool = key_pool(2)
    request = httpx.Request("POST", "https://api.example.com")
    operation, used = scripted(
        [httpx.ConnectError("refused", request=request), httpx.ReadTimeout("slow", request=request)]
    )

    with pytest.raises(NetworkError) as exc_info:
        await FailoverExecutor().execute(pool, operation, provider="test")

    assert exc_info.value.provider == "test"
    assert exc_info.value.attempts_made == 2
    assert isinstance(exc_info.value.__cause__, httpx.ReadTimeout)
    assert pool.health("sk-test-key-0001").consecutive_failures == 1


@pytest.mark.asyncio
async def test_api_key_auth_error_fails_over():
    """A rejected API key is marked failed and the next one is used."""
    pool = key_pool(2)
    operation, used = scripted([AuthError("invalid key", "test", 401), "ok"])

    result, _ = await FailoverExecutor().execute(pool, operation, provider="test")

    assert result == "ok"
    assert pool.health("sk-test-key-0001").consecutive_failures == 1


@pytest.mark.asyncio
async def test_oauth_unauthorized_forces_refresh():
    """A 401 on an OAuth credential refreshes it; the next call uses the new token."""
    token_calls = []

    def token_handler(request: httpx.Request) -> httpx.Response:
        token_calls.append(request)
        return httpx.Response(200, json={"access_token": "fresh-token", "expires_in": 3600})

    credential = OAuthCredential(
        id="o1", access_token="stale-token", refresh_token="r1", expires_at=time.time() + 3600
    )
    pool = CredentialPool([credential], provider="test")
    refresher = OAuthRefresher(
        pool,
        generic_refresh("https://auth.example.com/token"),
        httpx.AsyncClient(transport=httpx.MockTransport(token_handler)),
    )

    async def operation(credential, timeout):
        if credential.token == "stale-token":
            raise AuthError("token expired", "test", 401)
        return credential.token, None

    with pytest.raises(AuthError) as exc_info:
        await FailoverExecutor().execute(pool, operation, provider="test", refresher=refresher)

    assert exc_info.value.attempts_made == 1
    assert len(token_calls) == 1
    assert pool.get("o1").access_token == "fresh-token"

    result, usage = await FailoverExecutor().execute(
        pool, operation, provider="test", refresher=refresher
    )

    assert result == "fresh-token"
    assert usage is None
    assert len(token_calls) == 1


@pytest.mark.asyncio
async def test_no_credential_available():
    """A pool entirely in backoff fails without an attempt."""
    pool = key_pool(2)
    for credential in pool.credentials():
        pool.report_failure(credential)
    operation, used = scripted(["ok"])

    with pytest.raises(AuthError) as exc_info:
        await FailoverExecutor().execute(pool, operation, provider="test")

    assert exc_info.value.attempts_made == 0
    assert used == []


@pytest.mark.asyncio
async def test_backoff_exhaustion_surfaces_last_error():
    """Running out of credentials mid-call raises the last attempt's error."""
    pool = key_pool(2)
    pool.report_failure(pool.get("sk-test-key-0002"))
    operation, used = scripted([UpstreamError("boom", "test", 500)])

    with pytest.raises(UpstreamError) as exc_info:
        await FailoverExecutor().execute(pool, operation, provider="test")

    assert exc_info.value.attempts_made == 1
    assert used == ["sk-test-key-0001"]


@pytest.mark.asyncio
async def test_deadline_exceeded():
    """A call that outlives its deadline fails with a network error."""
    pool = key_pool(2)

    async def operation(credential, timeout):
        await asyncio.sleep(5)
        return "late", None

    with pytest.raises(NetworkError, match="deadline exceeded") as exc_info:
        await FailoverExecutor().execute(pool, operation, provider="test", deadline=0.05)

    assert exc_info.value.attempts_made == 1


@pytest.mark.asyncio
async def test_operation_receives_remaining_timeout():
    """Each attempt is told how much of the deadline is left."""
    timeouts = []

    async def operation(credential, timeout):
        timeouts.append(timeout)
        return "ok", None

    await FailoverExecutor().execute(key_pool(1), operation, provider="test", deadline=10)
    await FailoverExecutor().execute(key_pool(1), operation, provider="test")

    assert 9 < timeouts[0] <= 10
    assert timeouts[1] is None


@pytest.mark.asyncio
async def test_cancel_event_aborts_attempt():
    """Setting the cancel event aborts the in-flight attempt."""
    pool = key_pool(2)
    cancel_event = asyncio.Event()
    started = asyncio.Event()

    async def operation(credential, timeout):
        started.set()
        await asyncio.sleep(5)
        return "late", None

    async def cancel_soon():
        await started.wait()
        cancel_event.set()

    canceller = asyncio.create_task(cancel_soon())
    with pytest.raises(Cancelled) as exc_info:
        await FailoverExecutor().execute(
            pool, operation, provider="test", cancel_event=cancel_event
        )
    await canceller

    assert exc_info.value.attempts_made == 1
    assert pool.health("sk-test-key-0001").consecutive_failures == 0


@pytest.mark.asyncio
async def test_cancel_before_first_attempt():
    """An already-set cancel event makes no attempt."""
    cancel_event = asyncio.Event()
    cancel_event.set()
    operation, used = scripted(["ok"])

    with pytest.raises(Cancelled) as exc_info:
        await FailoverExecutor().execute(
            key_pool(1), operation, provider="test", cancel_event=cancel_event
        )

    assert exc_info.value.attempts_made == 0
    assert used == []


def test_max_attempts_must_be_positive():
    """The executor needs at least one attempt."""
    with pytest.raises(ValueError):
        FailoverExecutor(max_attempts=0)
