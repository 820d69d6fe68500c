"""Anthropic provider implementation."""

from typing import Any

from ..credentials import Credential, OAuthCredential
from ..exceptions import MalformedResponse
from ..models import ModelInfo
from ..rate_limiter import parse_timestamp
from .base import BaseProvider

ANTHROPIC_VERSION = "2023-06-01"
OAUTH_BETA_FLAGS = (
    "oauth-2025-04-20,"
    "claude-code-20250219,"
    "interleaved-thinking-2025-05-14,"
    "fine-grained-tool-streaming-2025-05-14"
)


class AnthropicProvider(BaseProvider):
    """Anthropic API provider."""

    provider_type = "anthropic"
    codec_name = "anthropic"
    chat_endpoint = "/v1/messages"
    models_endpoint = "/v1/models?limit=1000"

    def _get_default_base_url(self) -> str:
        return "https://api.anthropic.com"

    def _get_headers(self, credential: Credential) -> dict[str, str]:
        headers = {"anthropic-version": ANTHROPIC_VERSION}
        if isinstance(credential, OAuthCredential):
            headers["Authorization"] = f"Bearer {credential.token}"
            headers["anthropic-beta"] = OAUTH_BETA_FLAGS
        else:
            headers["x-api-key"] = credential.token
        return headers

    def _parse_models(self, body: Any) -> list[ModelInfo]:
        if not isinstance(body, dict) or not isinstance(body.get("data"), list):
            raise MalformedResponse("Unexpected models response", self.provider_name)
        models = []
        for item in body["data"]:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            created_at = parse_timestamp(item.get("created_at") or "")
            models.append(
                ModelInfo(
                    id=item["id"],
                    name=item.get("display_name") or item["id"],
                    provider=self.provider_name,
                    owned_by="anthropic",
                    created=int(created_at) if created_at is not None else None,
                )
            )
        return models
