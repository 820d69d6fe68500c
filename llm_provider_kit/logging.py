"""Console and structured JSONL logging for provider calls."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _jsonl_handler(path: Path, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


class ProviderLogger:
    """Logger for provider requests, credential attempts and token refreshes.

    Human-readable lines go to the ``llm_provider_kit`` logger. Every event is
    also emitted as a JSON object on a per-run structured logger, which writes
    ``provider_kit_<stamp>_<run>.jsonl`` (all events) and a matching
    ``_errors.jsonl`` (warnings and above) when ``log_dir`` is set.
    """

    def __init__(self, log_dir: str | None = None, log_level: str = "INFO"):
        """Initialize the logger.

        Args:
            log_dir: Directory for structured JSONL logs. ``None`` keeps logging
                on the console only.
            log_level: Logging level name, case-insensitive
        """
        level = getattr(logging, log_level.upper())
        self.run_id = uuid4().hex[:8]
        self.log_dir = Path(log_dir) if log_dir else None

        self.logger = logging.getLogger("llm_provider_kit")
        self.logger.setLevel(level)
        self.logger.handlers.clear()
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        self.logger.addHandler(console)

        self.json_logger = logging.getLogger(f"llm_provider_kit.events.{self.run_id}")
        self.json_logger.setLevel(logging.DEBUG)
        self.json_logger.handlers.clear()
        self.json_logger.propagate = False

        if self.log_dir is None:
            self.json_logger.addHandler(logging.NullHandler())
        else:
            self._open_files()

    def _open_files(self) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        stem = f"provider_kit_{datetime.now(timezone.utc):%Y%m%d_%H%M%S}_{self.run_id}"
        events = self.log_dir / f"{stem}.jsonl"
        errors = self.log_dir / f"{stem}_errors.jsonl"
        self.json_logger.addHandler(_jsonl_handler(events, logging.DEBUG))
        self.json_logger.addHandler(_jsonl_handler(errors, logging.WARNING))
        self.logger.info(f"Structured logs for run {self.run_id}: {events}, {errors}")

    def _emit(self, level: int, event: str, **fields: Any) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "type": event,
            "run_id": self.run_id,
            **fields,
        }
        self.json_logger.log(level, json.dumps(entry, default=str))

    def close(self) -> None:
        """Close the JSONL file handlers."""
        for handler in list(self.json_logger.handlers):
            handler.close()
            self.json_logger.removeHandler(handler)

    def log_request(
        self,
        request_id: str,
        provider_name: str,
        request: dict[str, Any],
        pool_size: int,
    ) -> None:
        """Log an outgoing chat request before the first attempt."""
        model = request.get("model", "")
        messages = len(request.get("messages", []))
        stream = bool(request.get("stream", False))
        self._emit(
            logging.DEBUG,
            "request",
            request_id=request_id,
            provider=provider_name,
            model=model,
            message_count=messages,
            temperature=request.get("temperature"),
            max_tokens=request.get("max_tokens"),
            stream=stream,
            pool_size=pool_size,
        )
        self.logger.info(
            f"Request {request_id[:8]} -> {provider_name}: {model} "
            f"({messages} messages, stream={stream}, {pool_size} credential(s))"
        )

    def log_attempt(
        self,
        request_id: str,
        provider_name: str,
        credential: str,
        attempt: int,
        max_attempts: int,
        outcome: str,
        latency_ms: float,
        total_tokens: int | None = None,
        error_type: str | None = None,
        error_message: str | None = None,
    ) -> None:
        """Log one credential attempt.

        Args:
            credential: Masked credential identifier
            outcome: ``success``, ``retry`` or ``terminal``
        """
        succeeded = outcome == "success"
        self._emit(
            logging.DEBUG if succeeded else logging.WARNING,
            "attempt",
            request_id=request_id,
            provider=provider_name,
            credential=credential,
            attempt=attempt,
            max_attempts=max_attempts,
            outcome=outcome,
            latency_ms=latency_ms,
            total_tokens=total_tokens,
            error_type=error_type,
            error_message=error_message,
        )
        label = f"{request_id[:8]} attempt {attempt}/{max_attempts} with {credential}"
        if succeeded:
            self.logger.debug(f"Provider {provider_name}: {label} ok after {latency_ms:.0f}ms")
        else:
            self.logger.warning(
                f"Provider {provider_name}: {label} gave {outcome}, {error_type}: {error_message}"
            )

    def log_response(
        self,
        request_id: str,
        provider_name: str,
        credential: str,
        duration_ms: float,
        total_tokens: int | None,
        attempts: int,
    ) -> None:
        self._emit(
            logging.DEBUG,
            "response",
            request_id=request_id,
            provider=provider_name,
            credential=credential,
            duration_ms=duration_ms,
            total_tokens=total_tokens,
            attempts=attempts,
        )
        tokens = "unknown" if total_tokens is None else total_tokens
        self.logger.info(
            f"Response {request_id[:8]} <- {provider_name} via {credential} "
            f"in {duration_ms:.0f}ms, {tokens} tokens, {attempts} attempt(s)"
        )

    def log_error(
        self,
        request_id: str,
        provider_name: str,
        error_type: str,
        error_message: str,
        status_code: int | None = None,
        attempts: int | None = None,
    ) -> None:
        """Log the error surfaced to the caller."""
        self._emit(
            logging.ERROR,
            "error",
            request_id=request_id,
            provider=provider_name,
            error_type=error_type,
            error_message=error_message,
            status_code=status_code,
            attempts=attempts,
        )
        status = f" [HTTP {status_code}]" if status_code else ""
        self.logger.error(
            f"Request {request_id[:8]} on {provider_name} failed{status}: "
            f"{error_type}: {error_message}"
        )

    def log_refresh(
        self,
        provider_name: str,
        credential_id: str,
        success: bool,
        expires_at: str | None = None,
        refresh_count: int | None = None,
        error_message: str | None = None,
    ) -> None:
        """Log an OAuth token refresh."""
        self._emit(
            logging.INFO if success else logging.WARNING,
            "refresh",
            provider=provider_name,
            credential_id=credential_id,
            success=success,
            expires_at=expires_at,
            refresh_count=refresh_count,
            error_message=error_message,
        )
        if success:
            self.logger.info(
                f"Provider {provider_name}: token {credential_id} refreshed "
                f"(#{refresh_count}, valid until {expires_at})"
            )
        else:
            self.logger.warning(
                f"Provider {provider_name}: refresh of {credential_id} failed: {error_message}"
            )

    def log_configuration(self, config_type: str, details: dict[str, Any]) -> None:
        self._emit(logging.INFO, "configuration", config_type=config_type, details=details)
        if config_type == "provider_start":
            self.logger.info(
                f"Provider {details.get('provider')}: "
                f"{details.get('credential_count', 0)} credential(s) via {details.get('auth_method')}"
            )


_logger: ProviderLogger | None = None


def get_logger(
    log_dir: str | None = None,
    log_level: str = "INFO",
    force_new: bool = False,
) -> ProviderLogger:
    """Return the process-wide logger, creating it on first use."""
    global _logger

    if _logger is None or force_new:
        if _logger is not None:
            _logger.close()
        _logger = ProviderLogger(log_dir, log_level)
    return _logger


def setup_logging(log_dir: str | None = None, log_level: str = "INFO") -> ProviderLogger:
    """Replace the process-wide logger with a freshly configured one."""
    return get_logger(log_dir, log_level, force_new=True)
