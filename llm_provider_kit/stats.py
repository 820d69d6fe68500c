"""Request, attempt and refresh statistics for provider adapters."""

import threading
import time
from collections import defaultdict

from pydantic import BaseModel, Field


def _rate(part: int, whole: int) -> float:
    return part / whole * 100 if whole else 0.0


class CredentialStats(BaseModel):
    """Attempt statistics for a single credential."""

    attempts: int = 0
    successes: int = 0
    failures: int = 0
    total_tokens: int = Field(default=0, description="Tokens consumed by successful attempts")
    total_latency_ms: float = 0.0
    refreshes: int = Field(default=0, description="Successful OAuth refreshes")
    refresh_failures: int = 0
    last_outcome: str | None = Field(default=None, description="success, retry or terminal")
    last_error: str | None = None

    @property
    def average_latency_ms(self) -> float:
        return self.total_latency_ms / self.attempts if self.attempts else 0.0


class ProviderStats(BaseModel):
    """Counters for one provider adapter.

    A request is one logical call; it may span several credential attempts.
    """

    total_requests: int = 0
    in_progress_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_attempts: int = Field(default=0, description="Credential attempts across requests")

    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0

    total_latency_ms: float = Field(default=0.0, description="Summed latency of successful requests")
    average_latency_ms: float = 0.0
    rate_limit_waits: int = Field(default=0, description="Times the rate-limit gate blocked")
    rate_limit_wait_seconds: float = 0.0

    last_request_time: float | None = None
    last_success_time: float | None = None
    last_error: str | None = None

    # keyed by masked credential id
    credentials: dict[str, CredentialStats] = Field(default_factory=dict)

    @property
    def completed_requests(self) -> int:
        return self.successful_requests + self.failed_requests

    @property
    def success_rate(self) -> float:
        """Percentage of completed requests that succeeded."""
        return _rate(self.successful_requests, self.completed_requests)

    @property
    def failure_rate(self) -> float:
        return _rate(self.failed_requests, self.completed_requests)


class ProviderKitStats(BaseModel):
    """Point-in-time snapshot across all provider adapters."""

    start_time: float
    uptime_seconds: float = 0.0
    providers: dict[str, ProviderStats] = Field(default_factory=dict)
    total_requests: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0

    @property
    def most_used_provider(self) -> str | None:
        """Provider with the most requests."""
        if not self.providers:
            return None
        return max(self.providers, key=lambda name: self.providers[name].total_requests)

    @property
    def fastest_provider(self) -> str | None:
        """Provider with the lowest average latency among those with successes."""
        measured = [name for name, stats in self.providers.items() if stats.average_latency_ms > 0]
        if not measured:
            return None
        return min(measured, key=lambda name: self.providers[name].average_latency_ms)


class StatsCollector:
    """Thread-safe statistics collector shared by adapters, executors and refreshers."""

    def __init__(self) -> None:
        self._start_time = time.time()
        self._providers: dict[str, ProviderStats] = defaultdict(ProviderStats)
        self._lock = threading.Lock()

    def get_stats(self) -> ProviderKitStats:
        with self._lock:
            providers = {name: stats.model_copy(deep=True) for name, stats in self._providers.items()}
        return ProviderKitStats(
            start_time=self._start_time,
            uptime_seconds=time.time() - self._start_time,
            providers=providers,
            total_requests=sum(p.total_requests for p in providers.values()),
            total_input_tokens=sum(p.total_input_tokens for p in providers.values()),
            total_output_tokens=sum(p.total_output_tokens for p in providers.values()),
        )

    def get_provider_stats(self, provider_name: str) -> ProviderStats:
        """Return a copy of the counters for ``provider_name``."""
        with self._lock:
            return self._providers[provider_name].model_copy(deep=True)

    def _credential(self, provider_name: str, credential: str) -> CredentialStats:
        return self._providers[provider_name].credentials.setdefault(credential, CredentialStats())

    def record_request_start(self, provider_name: str) -> float:
        """Count a new logical request and return its start time."""
        now = time.time()
        with self._lock:
            stats = self._providers[provider_name]
            stats.total_requests += 1
            stats.in_progress_requests += 1
            stats.last_request_time = now
        return now

    def record_request_success(
        self,
        provider_name: str,
        start_time: float,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> None:
        now = time.time()
        with self._lock:
            stats = self._providers[provider_name]
            stats.in_progress_requests -= 1
            stats.successful_requests += 1
            stats.total_input_tokens += input_tokens
            stats.total_output_tokens += output_tokens
            stats.total_tokens += input_tokens + output_tokens
            stats.total_latency_ms += (now - start_time) * 1000
            stats.average_latency_ms = stats.total_latency_ms / stats.successful_requests
            stats.last_success_time = now
            stats.last_error = None

    def record_request_failure(self, provider_name: str, error_message: str) -> None:
        with self._lock:
            stats = self._providers[provider_name]
            stats.in_progress_requests -= 1
            stats.failed_requests += 1
            stats.last_error = error_message

    def record_attempt(
        self,
        provider_name: str,
        credential: str,
        outcome: str,
        latency_ms: float,
        total_tokens: int | None = None,
        error_message: str | None = None,
    ) -> None:
        """Record one credential attempt.

        Args:
            credential: Masked credential identifier
            outcome: ``success``, ``retry`` or ``terminal``
        """
        with self._lock:
            self._providers[provider_name].total_attempts += 1
            stats = self._credential(provider_name, credential)
            stats.attempts += 1
            stats.total_latency_ms += latency_ms
            stats.last_outcome = outcome
            if outcome == "success":
                stats.successes += 1
                stats.total_tokens += total_tokens or 0
                stats.last_error = None
            else:
                stats.failures += 1
                stats.last_error = error_message

    def record_refresh(self, provider_name: str, credential: str, success: bool) -> None:
        with self._lock:
            stats = self._credential(provider_name, credential)
            if success:
                stats.refreshes += 1
            else:
                stats.refresh_failures += 1

    def record_rate_limit_wait(self, provider_name: str, seconds: float) -> None:
        """Record time spent blocked by the rate-limit gate."""
        with self._lock:
            stats = self._providers[provider_name]
            stats.rate_limit_waits += 1
            stats.rate_limit_wait_seconds += seconds
