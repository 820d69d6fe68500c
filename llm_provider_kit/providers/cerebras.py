"""Cerebras provider implementation."""

from .base import BaseProvider


class CerebrasProvider(BaseProvider):
    """Cerebras inference API provider."""

    provider_type = "cerebras"
    codec_name = "cerebras"

    def _get_default_base_url(self) -> str:
        return "https://api.cerebras.ai/v1"
