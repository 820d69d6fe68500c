"""LLM Provider Kit - A unified client core for heterogeneous LLM provider APIs."""

__version__ = "0.1.0"

from .codecs import ProviderCodec, get_codec, register_codec
from .config import ProvidersConfig, load_default_config
from .credentials import APIKeyCredential, CredentialPool, OAuthCredential
from .exceptions import (
    AuthError,
    Cancelled,
    ConfigurationError,
    InvalidRequest,
    LLMError,
    MalformedResponse,
    NetworkError,
    NoCredentialAvailableError,
    RateLimitExceeded,
    RefreshFailed,
    UpstreamError,
)
from .executor import FailoverExecutor
from .models import ChatMessage, ChatRequest, ChatResponse, ProviderConfig, StreamChunk
from .oauth import OAuthRefresher, PKCEHelper
from .providers import BaseProvider, create_provider
from .rate_limiter import RateLimitInfo, RateLimitTracker
from .stats import StatsCollector
from .streaming import ChatCompletionStream
from .tools import ToolValidator

__all__ = [
    "ProvidersConfig",
    "load_default_config",
    "ProviderConfig",
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "StreamChunk",
    "ChatCompletionStream",
    "ToolValidator",
    "BaseProvider",
    "create_provider",
    "ProviderCodec",
    "get_codec",
    "register_codec",
    "APIKeyCredential",
    "OAuthCredential",
    "CredentialPool",
    "OAuthRefresher",
    "PKCEHelper",
    "FailoverExecutor",
    "RateLimitInfo",
    "RateLimitTracker",
    "StatsCollector",
    "LLMError",
    "AuthError",
    "NoCredentialAvailableError",
    "RateLimitExceeded",
    "NetworkError",
    "UpstreamError",
    "InvalidRequest",
    "MalformedResponse",
    "Cancelled",
    "RefreshFailed",
    "ConfigurationError",
]
