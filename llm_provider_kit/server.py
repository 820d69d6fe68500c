"""FastAPI gateway for LLM Provider Kit."""

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse

from . import __version__
from .config import ProvidersConfig, load_default_config
from .exceptions import (
    AuthError,
    Cancelled,
    ConfigurationError,
    InvalidRequest,
    LLMError,
    MalformedResponse,
    NetworkError,
    RateLimitExceeded,
    RefreshFailed,
    UpstreamError,
)
from .logging import get_logger
from .providers import BaseProvider
from .stats import StatsCollector
from .streaming import ChatCompletionStream

# error type, status code
ERROR_STATUS: list[tuple[type[LLMError], int]] = [
    (RateLimitExceeded, 429),
    (AuthError, 401),
    (RefreshFailed, 401),
    (InvalidRequest, 400),
    (UpstreamError, 502),
    (MalformedResponse, 502),
    (NetworkError, 504),
    (Cancelled, 499),
    (ConfigurationError, 500),
]


def _format_timestamp(timestamp: float | None) -> str | None:
    """Convert a Unix timestamp to an ISO datetime string in UTC."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def error_status(exc: LLMError) -> int:
    for error_class, status_code in ERROR_STATUS:
        if isinstance(exc, error_class):
            return status_code
    return 500


def error_body(exc: LLMError) -> dict[str, Any]:
    return {
        "error": {
            "message": exc.message,
            "type": exc.kind,
            "provider": exc.provider,
            "attempts_made": exc.attempts_made,
        }
    }


async def sse_events(stream: ChatCompletionStream, provider_name: str) -> AsyncIterator[str]:
    """Re-emit normalized chunks as SSE frames."""
    logger = get_logger()
    try:
        async for chunk in stream:
            yield f"data: {chunk.model_dump_json()}\n\n"
    except LLMError as e:
        logger.logger.warning(f"Provider {provider_name}: stream aborted: {e}")
        yield f"data: {json.dumps(error_body(e))}\n\n"
    finally:
        await stream.aclose()
    yield "data: [DONE]\n\n"


class ProviderKitServer:
    """HTTP gateway exposing configured provider adapters."""

    def __init__(
        self,
        config: ProvidersConfig | None = None,
        providers: dict[str, BaseProvider] | None = None,
        stats_collector: StatsCollector | None = None,
    ):
        """
        Initialize the gateway.

        Args:
            config: Provider configuration; the default config file is used when omitted
            providers: Pre-built adapters, used instead of building them from ``config``
            stats_collector: Stats collector shared with the adapters
        """
        self.logger = get_logger()
        self.stats = stats_collector or StatsCollector()

        if providers is None:
            loaded_config = config or load_default_config()
            if loaded_config is None:
                raise ConfigurationError(
                    "No configuration provided and no default config file found. "
                    "Create llm_provider_kit.yaml or pass a ProvidersConfig instance."
                )
            errors = loaded_config.validate()
            if errors:
                raise ConfigurationError(f"Configuration errors: {', '.join(errors)}")
            self.config: ProvidersConfig | None = loaded_config
            providers = loaded_config.create_providers(stats_collector=self.stats)
        else:
            self.config = config
        self.providers = providers

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            yield
            for provider in self.providers.values():
                await provider.close()

        self.app = FastAPI(
            title="LLM Provider Kit",
            description="Unified gateway over heterogeneous LLM provider APIs",
            version=__version__,
            lifespan=lifespan,
        )

        self._setup_routes()
        self._setup_middleware()

    def _get_provider(self, name: str | None) -> BaseProvider:
        if name is None:
            if not self.providers:
                raise HTTPException(status_code=503, detail="No providers configured")
            return next(iter(self.providers.values()))
        provider = self.providers.get(name)
        if provider is None:
            raise HTTPException(status_code=404, detail=f"Unknown provider: {name}")
        return provider

    def _setup_routes(self) -> None:
        """Setup API routes."""

        @self.app.get("/")
        async def root() -> dict[str, Any]:
            return {
                "name": "LLM Provider Kit",
                "version": __version__,
                "endpoints": {
                    "health": "/health",
                    "status": "/status",
                    "version": "/version",
                    "providers": "/api/providers",
                    "provider_health": "/api/providers/{name}/health",
                    "provider_models": "/api/providers/{name}/models",
                    "generate": "/api/generate",
                },
            }

        @self.app.get("/health")
        async def health() -> dict[str, Any]:
            """Health check endpoint."""
            return {
                "status": "healthy",
                "version": __version__,
                "providers": list(self.providers),
            }

        @self.app.get("/version")
        async def version() -> dict[str, Any]:
            return {"version": __version__}

        @self.app.get("/status")
        async def status() -> dict[str, Any]:
            """Provider configuration, credential health and statistics."""
            stats = self.stats.get_stats()
            providers = {}
            for name, provider in self.providers.items():
                provider_stats = stats.providers.get(name)
                providers[name] = {
                    "type": provider.provider_type,
                    "base_url": provider.base_url,
                    "auth_method": provider.auth_method,
                    "credential_count": provider.pool.size,
                    "credentials": provider.credential_health(),
                    "rate_limits": provider.rate_limits(),
                    "statistics": None
                    if provider_stats is None
                    else {
                        "total_requests": provider_stats.total_requests,
                        "in_progress_requests": provider_stats.in_progress_requests,
                        "successful_requests": provider_stats.successful_requests,
                        "failed_requests": provider_stats.failed_requests,
                        "success_rate": round(provider_stats.success_rate, 2),
                        "total_attempts": provider_stats.total_attempts,
                        "total_tokens": provider_stats.total_tokens,
                        "average_latency_ms": round(provider_stats.average_latency_ms, 2),
                        "last_request_time": _format_timestamp(provider_stats.last_request_time),
                        "last_success_time": _format_timestamp(provider_stats.last_success_time),
                        "last_error": provider_stats.last_error,
                    },
                }
            return {
                "status": "healthy",
                "uptime_seconds": round(stats.uptime_seconds, 2),
                "total_requests": stats.total_requests,
                "most_used_provider": stats.most_used_provider,
                "fastest_provider": stats.fastest_provider,
                "preferred_order": self.config.preferred_order if self.config else [],
                "providers": providers,
            }

        @self.app.get("/api/providers")
        async def list_providers() -> dict[str, Any]:
            return {
                "providers": [
                    provider.describe_capabilities().model_dump()
                    for provider in self.providers.values()
                ]
            }

        @self.app.get("/api/providers/{name}/health")
        async def provider_health(name: str) -> JSONResponse:
            status = await self._get_provider(name).health_check()
            return JSONResponse(
                status_code=200 if status.healthy else 503, content=status.model_dump()
            )

        @self.app.get("/api/providers/{name}/models")
        async def provider_models(name: str) -> dict[str, Any]:
            models = await self._get_provider(name).get_models()
            return {"provider": name, "models": [model.model_dump() for model in models]}

        @self.app.post("/api/generate", response_model=None)
        async def generate(
            request: dict[str, Any], format: str = "normalized"
        ) -> dict[str, Any] | StreamingResponse:
            """Send a chat request to ``request["provider"]`` (first provider by default)."""
            body = dict(request)
            provider = self._get_provider(body.pop("provider", None))

            if body.get("stream"):
                stream = await provider.generate_chat_completion(body)
                return StreamingResponse(
                    sse_events(stream, provider.provider_name),
                    media_type="text/event-stream",
                    headers={
                        "X-Provider": provider.provider_name,
                        "Cache-Control": "no-cache",
                        "Connection": "keep-alive",
                    },
                )

            response = await provider.complete(body)
            if format == "native":
                return provider.codec.encode_response(response)
            return response.model_dump()

    def _setup_middleware(self) -> None:
        """Setup exception handlers."""

        @self.app.exception_handler(LLMError)
        async def llm_error_handler(request: Any, exc: LLMError) -> JSONResponse:
            headers = {}
            if isinstance(exc, RateLimitExceeded) and exc.retry_after:
                headers["Retry-After"] = str(int(exc.retry_after + 0.999))
            return JSONResponse(
                status_code=error_status(exc), headers=headers, content=error_body(exc)
            )


def create_app(
    config: ProvidersConfig | None = None,
    providers: dict[str, BaseProvider] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    server = ProviderKitServer(config, providers)
    return server.app
