"""OpenAI provider implementation."""

from ..credentials import Credential
from .base import BaseProvider


class OpenAIProvider(BaseProvider):
    """OpenAI API provider, also used for OpenAI-compatible gateways."""

    provider_type = "openai"
    codec_name = "openai"

    def _get_default_base_url(self) -> str:
        return "https://api.openai.com/v1"

    def _get_headers(self, credential: Credential) -> dict[str, str]:
        headers = super()._get_headers(credential)
        if self.config.organization_id:
            headers["openai-organization"] = self.config.organization_id
        return headers
