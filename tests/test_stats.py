"""Tests for statistics collection, errors and logging."""

import json
import logging

import pytest

from llm_provider_kit.exceptions import (
    AuthError,
    ConfigurationError,
    InvalidRequest,
    LLMError,
    NoCredentialAvailableError,
    RateLimitExceeded,
    RefreshFailed,
    UpstreamError,
)
from llm_provider_kit.logging import ProviderLogger
from llm_provider_kit.stats import StatsCollector


def test_request_lifecycle():
    """Start, success and failure update the provider counters."""
    stats = StatsCollector()

    start = stats.record_request_start("openai")
    stats.record_request_success("openai", start, input_tokens=10, output_tokens=5)
    stats.record_request_start("openai")
    stats.record_request_failure("openai", "boom")

    provider = stats.get_provider_stats("openai")
    assert provider.total_requests == 2
    assert provider.in_progress_requests == 0
    assert provider.successful_requests == 1
    assert provider.failed_requests == 1
    assert provider.total_tokens == 15
    assert provider.success_rate == 50.0
    assert provider.failure_rate == 50.0
    assert provider.last_error == "boom"


def test_attempts_per_credential():
    """Attempts are tracked per masked credential."""
    stats = StatsCollector()

    stats.record_attempt("openai", "sk-a...0001", "retry", 10.0, error_message="upstream")
    stats.record_attempt("openai", "sk-b...0002", "success", 30.0, total_tokens=7)
    stats.record_refresh("openai", "sk-b...0002", True)
    stats.record_refresh("openai", "sk-b...0002", False)

    provider = stats.get_provider_stats("openai")
    assert provider.total_attempts == 2
    failed = provider.credentials["sk-a...0001"]
    assert failed.failures == 1
    assert failed.last_error == "upstream"
    succeeded = provider.credentials["sk-b...0002"]
    assert succeeded.successes == 1
    assert succeeded.total_tokens == 7
    assert succeeded.average_latency_ms == 30.0
    assert succeeded.refreshes == 1
    assert succeeded.refresh_failures == 1


def test_overall_stats():
    """The snapshot aggregates providers and picks the busiest and fastest."""
    stats = StatsCollector()
    stats.record_request_start("openai")
    stats.record_request_start("openai")
    start = stats.record_request_start("anthropic")
    stats.record_request_success("anthropic", start - 0.5, input_tokens=3)
    stats.record_rate_limit_wait("openai", 2.0)

    snapshot = stats.get_stats()

    assert snapshot.total_requests == 3
    assert snapshot.total_input_tokens == 3
    assert snapshot.most_used_provider == "openai"
    assert snapshot.fastest_provider == "anthropic"
    assert snapshot.providers["openai"].rate_limit_wait_seconds == 2.0


def test_snapshot_is_a_copy():
    """Mutating a snapshot does not touch the collector."""
    stats = StatsCollector()
    stats.record_request_start("openai")

    stats.get_provider_stats("openai").total_requests = 99

    assert stats.get_provider_stats("openai").total_requests == 1


def test_error_kinds():
    """Every error carries a machine-readable kind."""
    assert LLMError("x").kind == "llm_error"
    assert AuthError("x").kind == "authentication_error"
    assert NoCredentialAvailableError("x").kind == "no_credential_available"
    assert RateLimitExceeded("x").kind == "rate_limit_exceeded"
    assert UpstreamError("x").kind == "upstream_error"
    assert InvalidRequest("x").kind == "invalid_request"
    assert RefreshFailed("x").kind == "refresh_failed"
    assert ConfigurationError("x").kind == "configuration_error"


def test_error_string_includes_context():
    """The string form lists provider, status and attempts when known."""
    assert str(LLMError("plain")) == "plain"
    assert str(UpstreamError("boom", "openai", 503, attempts_made=2)) == (
        "boom (provider=openai, status=503, attempts=2)"
    )
    assert RateLimitExceeded("slow").status_code == 429
    assert ConfigurationError("missing key").message == "Configuration error: missing key"


def test_logger_writes_jsonl(tmp_path):
    """Structured entries are written as JSON lines when a log directory is set."""
    logger = ProviderLogger(log_dir=str(tmp_path), log_level="DEBUG")
    try:
        logger.log_request("req-1", "openai", {"model": "gpt-4o", "messages": [{}]}, 2)
        logger.log_error("req-1", "openai", "upstream_error", "boom", status_code=502, attempts=2)
    finally:
        logger.close()

    log_files = sorted(tmp_path.glob("provider_kit_*.jsonl"))
    assert len(log_files) == 2
    main_log = next(path for path in log_files if not path.name.endswith("_errors.jsonl"))
    entries = [json.loads(line) for line in main_log.read_text().splitlines()]
    assert [entry["type"] for entry in entries] == ["request", "error"]
    assert entries[0]["model"] == "gpt-4o"
    assert entries[0]["pool_size"] == 2
    error_log = next(path for path in log_files if path.name.endswith("_errors.jsonl"))
    assert json.loads(error_log.read_text())["error_type"] == "upstream_error"


@pytest.mark.parametrize("level", ["debug", "INFO", "Warning"])
def test_logger_levels(level):
    """Level names are case-insensitive."""
    logger = ProviderLogger(log_level=level)
    assert logger.logger.level == getattr(logging, level.upper())
