"""Qwen provider implementation."""

from .base import BaseProvider


class QwenProvider(BaseProvider):
    """Qwen portal provider, authenticated by OAuth or API key."""

    provider_type = "qwen"
    codec_name = "qwen"

    def _get_default_base_url(self) -> str:
        return "https://portal.qwen.ai/v1"
