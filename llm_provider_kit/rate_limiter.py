"""Rate limit tracking from provider response headers."""

import asyncio
import re
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any, Callable, Mapping

import httpx

from .logging import get_logger

if TYPE_CHECKING:
    from .stats import StatsCollector


@dataclass
class RateLimitInfo:
    """Rate limit state advertised by a provider for one model.

    Reset fields are unix timestamps; ``None`` means not advertised.
    """

    provider: str = ""
    model: str = ""

    requests_limit: int | None = None
    requests_remaining: int | None = None
    requests_reset: float | None = None

    tokens_limit: int | None = None
    tokens_remaining: int | None = None
    tokens_reset: float | None = None

    input_tokens_limit: int | None = None
    input_tokens_remaining: int | None = None
    input_tokens_reset: float | None = None

    output_tokens_limit: int | None = None
    output_tokens_remaining: int | None = None
    output_tokens_reset: float | None = None

    daily_requests_limit: int | None = None
    daily_requests_remaining: int | None = None
    daily_requests_reset: float | None = None

    credits_limit: float | None = None
    credits_remaining: float | None = None
    is_free_tier: bool = False

    retry_after: float | None = None
    request_id: str | None = None
    custom_data: dict[str, Any] = field(default_factory=dict)
    observed_at: float = field(default_factory=time.time)

    def resets(self) -> list[float]:
        return [
            reset
            for reset in (
                self.requests_reset,
                self.tokens_reset,
                self.input_tokens_reset,
                self.output_tokens_reset,
                self.daily_requests_reset,
            )
            if reset is not None
        ]

    @property
    def reset_at(self) -> float | None:
        """Earliest reset still in the future."""
        now = time.time()
        future = [reset for reset in self.resets() if reset > now]
        return min(future) if future else None

    @property
    def retry_at(self) -> float | None:
        if self.retry_after is None:
            return None
        return self.observed_at + self.retry_after

    def has_limits(self) -> bool:
        """Whether any usable quota information was parsed."""
        return any(
            value is not None
            for value in (
                self.requests_limit,
                self.requests_remaining,
                self.tokens_limit,
                self.tokens_remaining,
                self.input_tokens_remaining,
                self.output_tokens_remaining,
                self.daily_requests_remaining,
                self.credits_remaining,
                self.retry_after,
            )
        ) or bool(self.resets())

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["reset_at"] = self.reset_at
        return data


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(h|ms|us|µs|ns|m|s)")
_DURATION_UNITS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 1e-3,
    "us": 1e-6,
    "µs": 1e-6,
    "ns": 1e-9,
}


def parse_duration(value: str) -> float | None:
    """Parse a duration such as ``6m0s``, ``1h30m``, ``20ms`` or ``1.5s`` into seconds."""
    value = value.strip()
    if not value:
        return None
    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(value):
        if match.start() != position:
            return None
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(value) or position == 0:
        return None
    return total


def parse_timestamp(value: str) -> float | None:
    """Parse an RFC 3339 timestamp into a unix timestamp."""
    value = value.strip()
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value).timestamp()
    except ValueError:
        return None


def parse_retry_after(value: str | None) -> float | None:
    """Parse ``retry-after`` given in seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, retry_at.timestamp() - time.time())


def _int(headers: httpx.Headers, name: str) -> int | None:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def _float(headers: httpx.Headers, name: str) -> float | None:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return float(value.strip())
    except ValueError:
        return None


def _reset_from_duration(headers: httpx.Headers, name: str, now: float) -> float | None:
    value = headers.get(name)
    if value is None:
        return None
    seconds = parse_duration(value)
    return now + seconds if seconds is not None else None


def _reset_from_seconds(headers: httpx.Headers, name: str, now: float) -> float | None:
    seconds = _float(headers, name)
    return now + seconds if seconds is not None else None


def _reset_flexible(value: str | None, now: float) -> float | None:
    """Reset given as a duration, integer seconds, unix timestamp or RFC 3339."""
    if not value:
        return None
    value = value.strip()
    duration = parse_duration(value)
    if duration is not None:
        return now + duration
    try:
        seconds = int(value)
    except ValueError:
        return parse_timestamp(value)
    # Small values are relative, large ones are unix timestamps
    if seconds < 1_000_000_000:
        return now + seconds
    return float(seconds)


def parse_openai_headers(headers: httpx.Headers, model: str) -> RateLimitInfo:
    """``x-ratelimit-*-requests`` / ``-tokens`` with duration resets."""
    now = time.time()
    return RateLimitInfo(
        provider="openai",
        model=model,
        requests_limit=_int(headers, "x-ratelimit-limit-requests"),
        requests_remaining=_int(headers, "x-ratelimit-remaining-requests"),
        requests_reset=_reset_from_duration(headers, "x-ratelimit-reset-requests", now),
        tokens_limit=_int(headers, "x-ratelimit-limit-tokens"),
        tokens_remaining=_int(headers, "x-ratelimit-remaining-tokens"),
        tokens_reset=_reset_from_duration(headers, "x-ratelimit-reset-tokens", now),
        request_id=headers.get("x-request-id"),
        retry_after=parse_retry_after(headers.get("retry-after")),
        observed_at=now,
    )


def parse_anthropic_headers(headers: httpx.Headers, model: str) -> RateLimitInfo:
    """``anthropic-ratelimit-*`` with RFC 3339 resets."""
    now = time.time()
    info = RateLimitInfo(
        provider="anthropic",
        model=model,
        request_id=headers.get("request-id"),
        retry_after=parse_retry_after(headers.get("retry-after")),
        observed_at=now,
    )
    for kind, prefix in (
        ("requests", "requests"),
        ("tokens", "tokens"),
        ("input_tokens", "input-tokens"),
        ("output_tokens", "output-tokens"),
    ):
        setattr(info, f"{kind}_limit", _int(headers, f"anthropic-ratelimit-{prefix}-limit"))
        setattr(info, f"{kind}_remaining", _int(headers, f"anthropic-ratelimit-{prefix}-remaining"))
        reset = headers.get(f"anthropic-ratelimit-{prefix}-reset")
        setattr(info, f"{kind}_reset", parse_timestamp(reset) if reset else None)
    return info


def parse_cerebras_headers(headers: httpx.Headers, model: str) -> RateLimitInfo:
    """Per-minute and per-day windows with float-second resets."""
    now = time.time()
    info = RateLimitInfo(
        provider="cerebras",
        model=model,
        requests_limit=_int(headers, "x-ratelimit-limit-requests-minute"),
        requests_remaining=_int(headers, "x-ratelimit-remaining-requests-minute"),
        requests_reset=_reset_from_seconds(headers, "x-ratelimit-reset-requests-minute", now),
        tokens_limit=_int(headers, "x-ratelimit-limit-tokens-minute"),
        tokens_remaining=_int(headers, "x-ratelimit-remaining-tokens-minute"),
        tokens_reset=_reset_from_seconds(headers, "x-ratelimit-reset-tokens-minute", now),
        daily_requests_limit=_int(headers, "x-ratelimit-limit-requests-day"),
        daily_requests_remaining=_int(headers, "x-ratelimit-remaining-requests-day"),
        daily_requests_reset=_reset_from_seconds(headers, "x-ratelimit-reset-requests-day", now),
        retry_after=parse_retry_after(headers.get("retry-after")),
        observed_at=now,
    )
    for header, key in (
        ("cerebras-request-id", "request_id"),
        ("cerebras-processing-time", "processing_time"),
        ("cerebras-region", "region"),
    ):
        if header in headers:
            info.custom_data[key] = headers[header]
    info.request_id = headers.get("cerebras-request-id")
    return info


def parse_qwen_headers(headers: httpx.Headers, model: str) -> RateLimitInfo:
    """Standard headers first, ``qwen-ratelimit-*`` as fallbacks, DashScope kept as custom data."""
    now = time.time()
    info = RateLimitInfo(provider="qwen", model=model, observed_at=now)

    for kind in ("requests", "tokens"):
        limit = _int(headers, f"x-ratelimit-limit-{kind}")
        if limit is None:
            limit = _int(headers, f"qwen-ratelimit-limit-{kind}")
        remaining = _int(headers, f"x-ratelimit-remaining-{kind}")
        if remaining is None:
            remaining = _int(headers, f"qwen-ratelimit-remaining-{kind}")
        reset = _reset_flexible(headers.get(f"x-ratelimit-reset-{kind}"), now)
        if reset is None:
            reset = _reset_flexible(headers.get(f"qwen-ratelimit-reset-{kind}"), now)
        setattr(info, f"{kind}_limit", limit)
        setattr(info, f"{kind}_remaining", remaining)
        setattr(info, f"{kind}_reset", reset)

    for name, value in headers.items():
        lowered = name.lower()
        if lowered.startswith(("dashscope-ratelimit-", "x-dashscope-ratelimit-")):
            info.custom_data[lowered] = value

    info.request_id = headers.get("x-request-id") or headers.get("qwen-request-id")
    info.retry_after = parse_retry_after(headers.get("retry-after"))
    return info


def parse_openrouter_headers(headers: httpx.Headers, model: str) -> RateLimitInfo:
    """Credit-based limits with millisecond reset timestamps."""
    now = time.time()
    info = RateLimitInfo(provider="openrouter", model=model, observed_at=now)

    limit = _float(headers, "x-ratelimit-limit")
    if limit is not None:
        info.credits_limit = limit
        if limit.is_integer():
            info.requests_limit = int(limit)
    remaining = _float(headers, "x-ratelimit-remaining")
    if remaining is not None:
        info.credits_remaining = remaining
        if remaining.is_integer():
            info.requests_remaining = int(remaining)

    reset_ms = _int(headers, "x-ratelimit-reset")
    if reset_ms is not None:
        info.requests_reset = reset_ms / 1000.0
        info.tokens_reset = info.requests_reset

    requests = _int(headers, "x-ratelimit-requests")
    if requests is not None:
        info.requests_limit = requests
    tokens = _int(headers, "x-ratelimit-tokens")
    if tokens is not None:
        info.tokens_limit = tokens

    if info.credits_limit is not None and 0 < info.credits_limit <= 10.0:
        info.is_free_tier = True
    free_tier = headers.get("x-ratelimit-free-tier")
    if free_tier is not None and free_tier.strip().lower() in ("true", "false", "1", "0"):
        info.is_free_tier = free_tier.strip().lower() in ("true", "1")

    info.request_id = headers.get("x-request-id")
    info.retry_after = parse_retry_after(headers.get("retry-after"))
    return info


def parse_generic_headers(headers: httpx.Headers, model: str) -> RateLimitInfo:
    """Providers without quota headers: ``retry-after`` and request id only."""
    return RateLimitInfo(
        provider="generic",
        model=model,
        request_id=headers.get("x-request-id"),
        retry_after=parse_retry_after(headers.get("retry-after")),
    )


HeaderParser = Callable[[httpx.Headers, str], RateLimitInfo]

PARSERS: dict[str, HeaderParser] = {
    "openai": parse_openai_headers,
    "anthropic": parse_anthropic_headers,
    "cerebras": parse_cerebras_headers,
    "qwen": parse_qwen_headers,
    "openrouter": parse_openrouter_headers,
}


def get_parser(provider_type: str) -> HeaderParser:
    return PARSERS.get(provider_type, parse_generic_headers)


class TokenBucket:
    """Client-side request pacing for providers without usable headers."""

    def __init__(self, requests_per_minute: int) -> None:
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.capacity = float(requests_per_minute)
        self.rate = requests_per_minute / 60.0
        self._tokens = self.capacity
        self._updated = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self) -> float:
        """Wait for one request slot; returns the seconds waited."""
        waited = 0.0
        async with self._lock:
            self._refill()
            if self._tokens < 1:
                wait = (1 - self._tokens) / self.rate
                await asyncio.sleep(wait)
                waited = wait
                self._refill()
            self._tokens = max(0.0, self._tokens - 1)
        return waited


class RateLimitTracker:
    """
    Track advertised rate limits per model for one provider instance.

    Rules:
    - Every response's headers replace the model's record.
    - ``gate`` sleeps once until the blocking windows reset when the record
      says the next request would be rejected, then lets the request through.
    - A window whose reset has passed no longer blocks; the others still do.
    - Without a usable record, an optional token bucket paces requests.
    """

    def __init__(
        self,
        provider_name: str,
        provider_type: str = "generic",
        parser: HeaderParser | None = None,
        requests_per_minute: int | None = None,
        stats_collector: "StatsCollector | None" = None,
    ) -> None:
        """
        Initialize the tracker.

        Args:
            provider_name: Name of the provider instance
            provider_type: Selects the header parser when ``parser`` is not given
            parser: Custom header parser
            requests_per_minute: Seeds the fallback token bucket
            stats_collector: Optional stats collector to record gate waits
        """
        self.provider_name = provider_name
        self.parser = parser or get_parser(provider_type)
        self.bucket = TokenBucket(requests_per_minute) if requests_per_minute else None
        self.stats_collector = stats_collector
        self.logger = get_logger()
        self._records: dict[str, RateLimitInfo] = {}
        self._lock = threading.Lock()

    def observe(self, headers: Mapping[str, str] | httpx.Headers, model: str) -> RateLimitInfo | None:
        """Parse response headers and store the record for ``model``."""
        info = self.parser(httpx.Headers(headers), model)
        if not info.has_limits():
            return None
        with self._lock:
            self._records[model] = info
        self.logger.logger.debug(
            f"Provider {self.provider_name}: rate limits for {model}: "
            f"requests_remaining={info.requests_remaining}, "
            f"tokens_remaining={info.tokens_remaining}, reset_at={info.reset_at}"
        )
        return info

    def update(self, info: RateLimitInfo) -> None:
        with self._lock:
            self._records[info.model] = info

    def get(self, model: str) -> RateLimitInfo | None:
        with self._lock:
            return self._records.get(model)

    def clear(self, model: str | None = None) -> None:
        with self._lock:
            if model is None:
                self._records.clear()
            else:
                self._records.pop(model, None)

    def _blocking_resets(
        self, info: RateLimitInfo, now: float, estimated_tokens: int
    ) -> list[float | None]:
        """Reset times of the windows that forbid a request right now.

        An entry is ``None`` when the blocking window advertises no reset.
        Windows whose reset has passed never block.
        """

        def live(reset: float | None) -> bool:
            return reset is None or now < reset

        blocking: list[float | None] = []
        retry_at = info.retry_at
        if retry_at is not None and retry_at > now:
            blocking.append(retry_at)

        if (
            info.requests_remaining is not None
            and info.requests_remaining <= 0
            and live(info.requests_reset)
        ):
            blocking.append(info.requests_reset)

        if estimated_tokens > 0:
            for remaining, reset in (
                (info.tokens_remaining, info.tokens_reset),
                (info.input_tokens_remaining, info.input_tokens_reset),
            ):
                if remaining is not None and remaining < estimated_tokens and live(reset):
                    blocking.append(reset)

        if (
            info.daily_requests_remaining is not None
            and info.daily_requests_remaining <= 0
            and live(info.daily_requests_reset)
        ):
            blocking.append(info.daily_requests_reset)

        if info.credits_limit and info.credits_remaining is not None and info.credits_remaining <= 0:
            reset = info.requests_reset
            blocking.append(reset if reset is not None and reset > now else None)

        return blocking

    def can_make_request(self, model: str, estimated_tokens: int = 0) -> bool:
        """Whether the advertised quotas allow a request right now."""
        info = self.get(model)
        if info is None:
            return True
        return not self._blocking_resets(info, time.time(), estimated_tokens)

    def get_wait_time(self, model: str, estimated_tokens: int = 0) -> float:
        """Seconds until the model's quotas are expected to allow a request.

        While windows block, this is the latest of their resets. Otherwise it
        is the retry-after, else the earliest future reset, else 0.
        """
        info = self.get(model)
        if info is None:
            return 0.0

        now = time.time()
        known = [
            reset
            for reset in self._blocking_resets(info, now, estimated_tokens)
            if reset is not None
        ]
        if known:
            return max(known) - now

        retry_at = info.retry_at
        if retry_at is not None and retry_at > now:
            return retry_at - now

        future = [reset for reset in info.resets() if reset > now]
        if not future:
            return 0.0
        return min(future) - now

    def should_throttle(self, model: str, threshold: float = 0.8) -> bool:
        """Whether any live window has used at least ``threshold`` of its quota."""
        if threshold < 0 or threshold > 1:
            threshold = 0.8

        info = self.get(model)
        if info is None:
            return False

        now = time.time()
        windows = (
            (info.requests_limit, info.requests_remaining, info.requests_reset),
            (info.tokens_limit, info.tokens_remaining, info.tokens_reset),
            (info.input_tokens_limit, info.input_tokens_remaining, info.input_tokens_reset),
            (info.output_tokens_limit, info.output_tokens_remaining, info.output_tokens_reset),
            (info.daily_requests_limit, info.daily_requests_remaining, info.daily_requests_reset),
        )
        for limit, remaining, reset in windows:
            if not limit or remaining is None or reset is None or now >= reset:
                continue
            if 1.0 - remaining / limit >= threshold:
                return True

        if info.credits_limit and info.credits_remaining is not None:
            if 1.0 - info.credits_remaining / info.credits_limit >= threshold:
                return True

        return False

    async def gate(self, model: str, estimated_tokens: int = 0) -> float:
        """Block until a request for ``model`` may be issued.

        Returns:
            Seconds spent waiting
        """
        if self.can_make_request(model, estimated_tokens):
            if self.bucket is not None and self.get(model) is None:
                return await self.bucket.acquire()
            return 0.0

        wait = self.get_wait_time(model, estimated_tokens)
        if wait > 0:
            self.logger.logger.info(
                f"Provider {self.provider_name}: rate limited on {model}, "
                f"waiting {wait:.2f}s before the next request"
            )
            if self.stats_collector:
                self.stats_collector.record_rate_limit_wait(self.provider_name, wait)
            await asyncio.sleep(wait)
        return wait

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {model: info.to_dict() for model, info in self._records.items()}
