"""OpenRouter provider implementation."""

from ..credentials import Credential
from .base import BaseProvider


class OpenRouterProvider(BaseProvider):
    """OpenRouter gateway provider."""

    provider_type = "openrouter"
    codec_name = "openrouter"

    def _get_default_base_url(self) -> str:
        return "https://openrouter.ai/api/v1"

    def _get_headers(self, credential: Credential) -> dict[str, str]:
        headers = super()._get_headers(credential)
        if self.config.site_url:
            headers["HTTP-Referer"] = self.config.site_url
        if self.config.site_name:
            headers["X-Title"] = self.config.site_name
        return headers
