"""Base provider adapter."""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Callable
from uuid import uuid4

import httpx
from httpx import AsyncClient, Timeout
from pydantic import ValidationError

from ..codecs import ProviderCodec, RequestDefaults, get_codec
from ..credentials import APIKeyCredential, Credential, CredentialPool, OAuthCredential
from ..exceptions import (
    AuthError,
    InvalidRequest,
    LLMError,
    MalformedResponse,
    NetworkError,
    RateLimitExceeded,
    UpstreamError,
)
from ..executor import FailoverExecutor
from ..logging import get_logger
from ..models import (
    ChatRequest,
    ChatResponse,
    HealthStatus,
    ModelInfo,
    ProviderCapabilities,
    ProviderConfig,
)
from ..oauth import OAuthRefresher, RefreshFunc, TokenRefreshCallback, get_refresh_func
from ..rate_limiter import RateLimitTracker, parse_retry_after
from ..stats import StatsCollector
from ..streaming import ChatCompletionStream, SingleChunkStream, SSEStreamReader
from ..tools import ToolValidator


def error_message(error_data: Any, default: str = "Unknown error") -> str:
    """Pull a human readable message out of an error body."""
    if isinstance(error_data, dict):
        error = error_data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if error_data.get("message"):
            return str(error_data["message"])
    return default


class BaseProvider(ABC):
    """Base class for provider adapters.

    An adapter owns its credential pool, codec, rate-limit tracker, failover
    executor and HTTP client.
    """

    provider_type: str = ""
    codec_name: str = ""
    chat_endpoint: str = "/chat/completions"
    models_endpoint: str = "/models"

    def __init__(
        self,
        config: ProviderConfig,
        *,
        http_client: AsyncClient | None = None,
        codec: ProviderCodec | None = None,
        tracker: RateLimitTracker | None = None,
        executor: FailoverExecutor | None = None,
        refresh_func: RefreshFunc | None = None,
        on_token_refresh: TokenRefreshCallback | None = None,
        stats_collector: StatsCollector | None = None,
    ):
        """
        Initialize the adapter.

        Args:
            config: Provider configuration
            http_client: Shared client; one is created (and owned) when omitted
            codec: Codec override; resolved from the registry by default
            tracker: Rate-limit tracker override
            executor: Failover executor override
            refresh_func: OAuth refresh round-trip override
            on_token_refresh: Persistence callback for refreshed OAuth tokens
            stats_collector: Optional stats collector

        Raises:
            AuthError: If the configuration carries no credential
        """
        self.config = config
        self.provider_name = config.display_name
        self.logger = get_logger()
        self.stats_collector = stats_collector
        self.base_url = (config.base_url or self._get_default_base_url()).rstrip("/")

        self.pool = self._build_pool()

        self._owns_client = http_client is None
        self.client = http_client or AsyncClient(timeout=Timeout(timeout=config.timeout))

        self.codec = codec or get_codec(self.codec_name or self.provider_type)
        self.tool_validator = ToolValidator()
        self.tracker = tracker or RateLimitTracker(
            self.provider_name,
            self.provider_type,
            requests_per_minute=config.requests_per_minute,
            stats_collector=stats_collector,
        )
        self.executor = executor or FailoverExecutor(
            max_attempts=config.max_attempts, stats_collector=stats_collector
        )

        self.refresher: OAuthRefresher | None = None
        if any(isinstance(c, OAuthCredential) for c in self.pool.credentials()):
            self.refresher = OAuthRefresher(
                self.pool,
                refresh_func or self._default_refresh_func(),
                self.client,
                on_token_refresh=on_token_refresh,
                stats_collector=stats_collector,
            )

        self.logger.log_configuration(
            "provider_start",
            {
                "provider": self.provider_name,
                "type": self.provider_type,
                "base_url": self.base_url,
                "credential_count": self.pool.size,
                "auth_method": self.pool.auth_method,
                "codec": self.codec.name,
            },
        )

    def _build_pool(self) -> CredentialPool:
        credentials: list[Credential] = []
        if self.config.api_key:
            credentials.append(APIKeyCredential(self.config.api_key))
        credentials.extend(APIKeyCredential(key) for key in self.config.api_keys if key)
        credentials.extend(
            OAuthCredential.from_config(oauth) for oauth in self.config.oauth_credentials
        )
        if not credentials:
            raise AuthError(
                f"No credentials configured for {self.provider_name}",
                self.provider_name,
                attempts_made=0,
            )
        return CredentialPool(credentials, provider=self.provider_name)

    def _default_refresh_func(self) -> RefreshFunc:
        return get_refresh_func(self.provider_type, self.config.token_url)

    @abstractmethod
    def _get_default_base_url(self) -> str:
        """Get the default base URL for the provider."""
        pass

    def _get_headers(self, credential: Credential) -> dict[str, str]:
        """Get HTTP headers for a request made with ``credential``."""
        return {"Authorization": f"Bearer {credential.token}"}

    def _build_headers(self, credential: Credential, stream: bool = False) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if stream:
            headers["Accept"] = "text/event-stream"
        headers.update(self._get_headers(credential))
        headers.update(self.config.headers)
        return headers

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}{endpoint}"

    @property
    def auth_method(self) -> str:
        return self.pool.auth_method

    def _handle_error(self, response: httpx.Response) -> LLMError:
        """Map an HTTP error response to the error taxonomy."""
        status_code = response.status_code
        try:
            error_data = response.json()
        except ValueError:
            error_data = {"error": {"message": response.text or response.reason_phrase}}
        message = error_message(error_data, f"HTTP {status_code}")

        if status_code in (401, 403):
            return AuthError(message, self.provider_name, status_code)
        if status_code == 429:
            return RateLimitExceeded(
                message,
                self.provider_name,
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )
        if status_code >= 500:
            return UpstreamError(message, self.provider_name, status_code, error_data)
        if status_code == 408:
            return NetworkError(message, self.provider_name, status_code)
        return InvalidRequest(message, self.provider_name, status_code, error_data)

    def _decode_json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponse(
                f"Response is not valid JSON: {response.text[:100]}",
                self.provider_name,
                response.status_code,
            ) from e

    async def _send(
        self,
        method: str,
        endpoint: str,
        credential: Credential,
        timeout: float | None,
        payload: dict[str, Any] | None = None,
        stream: bool = False,
    ) -> httpx.Response:
        request = self.client.build_request(
            method,
            self._url(endpoint),
            json=payload,
            headers=self._build_headers(credential, stream=stream),
            timeout=Timeout(timeout) if timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )
        try:
            return await self.client.send(request, stream=stream)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request timed out: {e}", self.provider_name) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Connection failed: {e}", self.provider_name) from e

    def prepare_request(self, request: ChatRequest | dict[str, Any]) -> ChatRequest:
        """Validate a request and fill in provider defaults.

        Raises:
            InvalidRequest: If the request is invalid (no attempt is made)
        """
        try:
            if isinstance(request, dict):
                data = dict(request)
                if not data.get("model") and self.config.default_model:
                    data["model"] = self.config.default_model
                chat_request = ChatRequest.model_validate(data)
            else:
                chat_request = request
                if not chat_request.model and self.config.default_model:
                    chat_request = chat_request.model_copy(
                        update={"model": self.config.default_model}
                    )
        except ValidationError as e:
            raise InvalidRequest(
                f"Invalid request: {e.errors()[0]['msg']}", self.provider_name, attempts_made=0
            ) from e

        if chat_request.tools:
            try:
                self.tool_validator.validate_definitions(chat_request.tools, chat_request.tool_choice)
            except ValueError as e:
                raise InvalidRequest(
                    f"Invalid tools: {e}", self.provider_name, attempts_made=0
                ) from e

        options = self.codec.validate_options(
            chat_request.options,
            strict=self.config.strict_options,
            provider=self.provider_name,
        )
        if options != chat_request.options:
            chat_request = chat_request.model_copy(update={"options": options})
        return chat_request

    def _defaults(self) -> RequestDefaults:
        return RequestDefaults(
            max_tokens=self.config.max_tokens, temperature=self.config.temperature
        )

    def encode_request(self, request: ChatRequest, oauth: bool = False) -> dict[str, Any]:
        return self.codec.encode_request(request, defaults=self._defaults(), oauth=oauth)

    async def generate_chat_completion(
        self,
        request: ChatRequest | dict[str, Any],
        *,
        deadline: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatCompletionStream:
        """Send a chat request.

        Returns:
            An ``SSEStreamReader`` for streaming requests, otherwise a
            ``SingleChunkStream`` around the complete response
        """
        chat_request = self.prepare_request(request)
        result = await self._execute_chat(chat_request, deadline, cancel_event)
        if isinstance(result, ChatResponse):
            return SingleChunkStream(result)
        return result

    async def complete(
        self,
        request: ChatRequest | dict[str, Any],
        *,
        deadline: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResponse:
        """Send a non-streaming chat request and return the full response."""
        chat_request = self.prepare_request(request)
        if chat_request.stream:
            chat_request = chat_request.model_copy(update={"stream": False})
        result = await self._execute_chat(chat_request, deadline, cancel_event)
        if not isinstance(result, ChatResponse):
            raise MalformedResponse("Expected a complete response, got a stream", self.provider_name)
        return result

    async def _execute_chat(
        self,
        chat_request: ChatRequest,
        deadline: float | None,
        cancel_event: asyncio.Event | None,
    ) -> ChatResponse | ChatCompletionStream:
        request_id = str(uuid4())
        payloads = {False: self.encode_request(chat_request, oauth=False)}
        used: list[Credential] = []

        def payload_for(credential: Credential) -> dict[str, Any]:
            used.append(credential)
            is_oauth = isinstance(credential, OAuthCredential)
            if is_oauth not in payloads:
                payloads[is_oauth] = self.encode_request(chat_request, oauth=is_oauth)
            return payloads[is_oauth]

        model = chat_request.model
        self.logger.log_request(request_id, self.provider_name, payloads[False], self.pool.size)

        self.logger.logger.debug(
            f"Provider {self.provider_name}: "
            f"Sending request for model {model}, "
            f"messages: {len(chat_request.messages)}, "
            f"stream: {chat_request.stream}"
        )

        if chat_request.stream:
            operation = self._stream_operation(model, payload_for)
        else:
            operation = self._chat_operation(model, payload_for)

        await self.tracker.gate(model, chat_request.estimated_tokens)

        start_time = time.time()
        if self.stats_collector:
            self.stats_collector.record_request_start(self.provider_name)
        try:
            result, usage = await self.executor.execute(
                self.pool,
                operation,
                provider=self.provider_name,
                refresher=self.refresher,
                deadline=deadline,
                cancel_event=cancel_event,
                request_id=request_id,
            )
        except LLMError as e:
            if self.stats_collector:
                self.stats_collector.record_request_failure(self.provider_name, str(e))
            self.logger.log_error(
                request_id,
                self.provider_name,
                e.kind,
                e.message,
                status_code=e.status_code,
                attempts=e.attempts_made,
            )
            raise
        except asyncio.CancelledError:
            if self.stats_collector:
                self.stats_collector.record_request_failure(self.provider_name, "cancelled")
            raise

        if self.stats_collector:
            self.stats_collector.record_request_success(
                self.provider_name,
                start_time,
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
            )
        self.logger.log_response(
            request_id,
            self.provider_name,
            used[-1].display_id if used else "",
            (time.time() - start_time) * 1000,
            usage.total_tokens if usage else None,
            attempts=len(used),
        )
        return result

    def _chat_operation(self, model: str, payload_for: Callable[[Credential], dict[str, Any]]):
        async def operation(credential: Credential, timeout: float | None):
            response = await self._send(
                "POST", self.chat_endpoint, credential, timeout, payload=payload_for(credential)
            )
            self.tracker.observe(response.headers, model)
            if response.status_code >= 400:
                raise self._handle_error(response)
            body = self._decode_json(response)
            try:
                chat_response = self.codec.decode_response(body)
            except MalformedResponse as e:
                e.provider = self.provider_name
                e.status_code = response.status_code
                raise
            return chat_response, chat_response.usage

        return operation

    def _stream_operation(self, model: str, payload_for: Callable[[Credential], dict[str, Any]]):
        async def operation(credential: Credential, timeout: float | None):
            response = await self._send(
                "POST",
                self.chat_endpoint,
                credential,
                timeout,
                payload=payload_for(credential),
                stream=True,
            )
            self.tracker.observe(response.headers, model)
            if response.status_code >= 400:
                try:
                    await response.aread()
                finally:
                    await response.aclose()
                raise self._handle_error(response)

            content_type = response.headers.get("content-type", "")
            if "application/json" in content_type:
                # Server ignored the stream flag and answered in one piece
                try:
                    await response.aread()
                finally:
                    await response.aclose()
                chat_response = self.codec.decode_response(self._decode_json(response))
                return SingleChunkStream(chat_response), chat_response.usage

            reader = SSEStreamReader(
                response, self.codec.stream_decoder(self.provider_name), self.provider_name
            )
            return reader, None

        return operation

    def _parse_models(self, body: Any) -> list[ModelInfo]:
        """Parse a models listing in the OpenAI ``{"data": [...]}`` shape."""
        if not isinstance(body, dict) or not isinstance(body.get("data"), list):
            raise MalformedResponse("Unexpected models response", self.provider_name)
        models = []
        for item in body["data"]:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            models.append(
                ModelInfo(
                    id=item["id"],
                    name=item.get("name") or item.get("display_name") or item["id"],
                    provider=self.provider_name,
                    owned_by=item.get("owned_by"),
                    created=item.get("created") if isinstance(item.get("created"), int) else None,
                    context_window=item.get("context_length") or item.get("context_window"),
                )
            )
        return models

    async def get_models(self) -> list[ModelInfo]:
        """List the models the provider advertises."""

        async def operation(credential: Credential, timeout: float | None):
            response = await self._send("GET", self.models_endpoint, credential, timeout)
            if response.status_code >= 400:
                raise self._handle_error(response)
            return self._parse_models(self._decode_json(response)), None

        models, _ = await self.executor.execute(
            self.pool,
            operation,
            provider=self.provider_name,
            refresher=self.refresher,
        )
        self.logger.logger.debug(
            f"Provider {self.provider_name}: {len(models)} models available"
        )
        return models

    async def health_check(self) -> HealthStatus:
        """Call the models endpoint with the current credential. Never raises."""
        credential = self.pool.current()
        start = time.time()
        status_code = None
        try:
            if self.refresher is not None:
                credential = await self.refresher.ensure_valid(credential)
            response = await self._send("GET", self.models_endpoint, credential, None)
            status_code = response.status_code
            healthy = status_code < 400
            message = "OK" if healthy else str(self._handle_error(response))
        except LLMError as e:
            healthy = False
            message = str(e)

        response_time_ms = (time.time() - start) * 1000
        self.logger.logger.debug(
            f"Provider {self.provider_name}: health check "
            f"{'passed' if healthy else 'failed'} in {response_time_ms:.0f}ms"
        )
        return HealthStatus(
            provider=self.provider_name,
            healthy=healthy,
            status_code=status_code,
            response_time_ms=response_time_ms,
            message=message,
            credentials=[snapshot.model_dump() for snapshot in self.pool.snapshot()],
        )

    def describe_capabilities(self) -> ProviderCapabilities:
        description = self.codec.describe()
        return ProviderCapabilities(
            provider=self.provider_name,
            type=self.provider_type,
            supports_streaming="streaming" in self.codec.capabilities,
            supports_tool_calling="tool_calling" in self.codec.capabilities,
            auth_methods=sorted({c.kind for c in self.pool.credentials()}),
            default_model=self.config.default_model,
            base_url=self.base_url,
            **description,
        )

    def credential_health(self) -> list[dict[str, Any]]:
        return [snapshot.model_dump() for snapshot in self.pool.snapshot()]

    def rate_limits(self) -> dict[str, dict[str, Any]]:
        return self.tracker.snapshot()

    async def close(self):
        """Close the HTTP client if this adapter created it."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
