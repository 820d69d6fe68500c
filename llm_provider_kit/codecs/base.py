"""Base codec interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping

from pydantic import ValidationError

from ..exceptions import InvalidRequest, MalformedResponse
from ..logging import get_logger
from ..models import ChatRequest, ChatResponse, StreamChunk


@dataclass(frozen=True)
class RequestDefaults:
    """Provider-level values used when the request leaves them unset."""

    max_tokens: int | None = None
    temperature: float | None = None


def token_count(value: Any) -> int:
    """A usage counter as an int; counters that are not numbers count as 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return 0
    try:
        return max(int(float(value)), 0)
    except (ValueError, OverflowError):
        return 0


class StreamDecoder(ABC):
    """Stateful decoder for the JSON payloads of one SSE stream."""

    def __init__(self, provider: str | None = None):
        self.provider = provider

    @abstractmethod
    def decode(self, payload: Any) -> StreamChunk | None:
        """Map one payload to a chunk; ``None`` when it carries nothing."""
        pass


class ProviderCodec(ABC):
    """Translate between the normalized model and one provider's wire format."""

    name: str = ""
    version: str = "1.0.0"
    description: str = ""
    capabilities: tuple[str, ...] = ()
    recognized_options: frozenset[str] = frozenset()

    default_max_tokens: int | None = None
    default_temperature: float | None = None

    def __init__(self) -> None:
        self.logger = get_logger()

    @abstractmethod
    def encode_request(
        self,
        request: ChatRequest,
        *,
        defaults: RequestDefaults | None = None,
        oauth: bool = False,
    ) -> dict[str, Any]:
        """Build the provider request body."""
        pass

    @abstractmethod
    def decode_response(self, body: Any) -> ChatResponse:
        """Parse a non-streaming response body.

        Raises:
            MalformedResponse: If the body does not have the expected shape
        """
        pass

    @abstractmethod
    def stream_decoder(self, provider: str | None = None) -> StreamDecoder:
        """Create a decoder for one stream."""
        pass

    @abstractmethod
    def encode_response(self, response: ChatResponse) -> dict[str, Any]:
        """Render a normalized response in the provider's wire format."""
        pass

    def resolve_max_tokens(self, request: ChatRequest, defaults: RequestDefaults | None) -> int | None:
        if request.max_tokens is not None:
            return request.max_tokens
        if defaults and defaults.max_tokens is not None:
            return defaults.max_tokens
        return self.default_max_tokens

    def resolve_temperature(self, request: ChatRequest, defaults: RequestDefaults | None) -> float | None:
        if request.temperature is not None:
            return request.temperature
        if defaults and defaults.temperature is not None:
            return defaults.temperature
        return self.default_temperature

    def check_option(self, key: str, value: Any) -> None:
        """Validate the value of a recognized option; raise ``ValueError`` if invalid."""

    def validate_options(
        self,
        options: Mapping[str, Any],
        *,
        strict: bool = False,
        provider: str | None = None,
    ) -> dict[str, Any]:
        """Return the recognized subset of ``options``.

        Raises:
            InvalidRequest: On an invalid value, or an unknown key when ``strict``
        """
        accepted: dict[str, Any] = {}
        for key, value in options.items():
            if key not in self.recognized_options:
                if strict:
                    raise InvalidRequest(
                        f"Unknown option '{key}' for {self.name}", provider, attempts_made=0
                    )
                self.logger.logger.warning(
                    f"Provider {provider or self.name}: ignoring unknown option '{key}'"
                )
                continue
            try:
                self.check_option(key, value)
            except ValueError as e:
                raise InvalidRequest(
                    f"Invalid option '{key}': {e}", provider, attempts_made=0
                ) from e
            accepted[key] = value
        return accepted

    def describe(self) -> dict[str, Any]:
        return {
            "codec": self.name,
            "codec_version": self.version,
            "description": self.description,
            "capabilities": list(self.capabilities),
            "recognized_options": sorted(self.recognized_options),
        }


def malformed(message: str, error: Exception | None = None, provider: str | None = None) -> MalformedResponse:
    """Build a ``MalformedResponse``, folding in pydantic validation details."""
    if isinstance(error, ValidationError):
        message = f"{message}: {error.error_count()} validation error(s)"
    elif error is not None:
        message = f"{message}: {error}"
    return MalformedResponse(message, provider)
