"""YAML and JSON configuration for LLM Provider Kit."""

import json
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import ValidationError

from .exceptions import AuthError, ConfigurationError
from .models import ProviderConfig, ProviderType

if TYPE_CHECKING:
    from .providers import BaseProvider

RESERVED_KEYS = {"enabled", "preferred_order", "custom"}
PROVIDER_TYPES = {provider_type.value for provider_type in ProviderType}


def env_key_name(name: str) -> str:
    """Environment variable holding the API key of provider ``name``."""
    return f"{name.upper().replace('-', '_')}_API_KEY"


class ProvidersConfig:
    """Configuration of the provider instances an application uses."""

    def __init__(
        self,
        providers: dict[str, ProviderConfig] | None = None,
        enabled: list[str] | None = None,
        preferred_order: list[str] | None = None,
        unknown_types: dict[str, str] | None = None,
    ):
        self.providers = providers or {}
        self.enabled = enabled or []
        # Advisory only; provider selection is left to the caller
        self.preferred_order = preferred_order or []
        self.unknown_types = unknown_types or {}

    @staticmethod
    def _parse_provider(name: str, entry: dict[str, Any]) -> ProviderConfig:
        data = dict(entry)
        data["name"] = name
        data.setdefault("type", name)
        if isinstance(data.get("api_keys"), str):
            data["api_keys"] = [data["api_keys"]]
        if not data.get("api_key"):
            env_value = os.environ.get(env_key_name(name))
            if env_value:
                data["api_key"] = env_value
        return ProviderConfig.model_validate(data)

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> "ProvidersConfig":
        """Create configuration from dictionary.

        Accepts either ``{"providers": {...}}`` or the inner mapping itself.
        """
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Expected a mapping at the top level")
        section = config_dict.get("providers", config_dict)
        if not isinstance(section, dict):
            raise ConfigurationError("'providers' must be a mapping")

        entries: dict[str, Any] = {
            name: entry for name, entry in section.items() if name not in RESERVED_KEYS
        }
        custom = section.get("custom") or {}
        if not isinstance(custom, dict):
            raise ConfigurationError("'custom' must be a mapping")
        entries.update(custom)

        providers: dict[str, ProviderConfig] = {}
        unknown_types: dict[str, str] = {}
        for name, entry in entries.items():
            if entry is None:
                entry = {}
            if not isinstance(entry, dict):
                raise ConfigurationError(f"Provider '{name}' must be a mapping")
            provider_type = entry.get("type", name)
            if provider_type not in PROVIDER_TYPES:
                unknown_types[name] = str(provider_type)
                continue
            try:
                providers[name] = cls._parse_provider(name, entry)
            except ValidationError as e:
                error = e.errors()[0]
                location = ".".join(str(part) for part in error["loc"])
                raise ConfigurationError(
                    f"Invalid value for provider '{name}' field '{location}': {error['msg']}"
                ) from e

        return cls(
            providers,
            enabled=list(section.get("enabled") or []),
            preferred_order=list(section.get("preferred_order") or []),
            unknown_types=unknown_types,
        )

    @classmethod
    def from_yaml_string(cls, yaml_str: str) -> "ProvidersConfig":
        """Load configuration from YAML string."""
        try:
            config_dict = yaml.safe_load(yaml_str) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML: {e}") from e
        return cls.from_dict(config_dict)

    @classmethod
    def from_yaml_file(cls, filepath: str | Path) -> "ProvidersConfig":
        """Load configuration from YAML file."""
        try:
            with open(filepath, encoding="utf-8") as f:
                config_dict = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(
                f"Configuration file not found: {filepath}"
            ) from None
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration file: {e}") from e
        return cls.from_dict(config_dict)

    @classmethod
    def from_json_file(cls, filepath: str | Path) -> "ProvidersConfig":
        """Load configuration from JSON file."""
        try:
            with open(filepath, encoding="utf-8") as f:
                config_dict = json.load(f)
        except FileNotFoundError:
            raise ConfigurationError(
                f"Configuration file not found: {filepath}"
            ) from None
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in configuration file: {e}") from e
        return cls.from_dict(config_dict)

    @classmethod
    def from_file(cls, filepath: str | Path) -> "ProvidersConfig":
        """Load a YAML or JSON file, chosen by extension."""
        if str(filepath).endswith(".json"):
            return cls.from_json_file(filepath)
        return cls.from_yaml_file(filepath)

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        section: dict[str, Any] = {
            name: provider.model_dump(mode="json", exclude_none=True, exclude={"name"})
            for name, provider in self.providers.items()
        }
        if self.enabled:
            section["enabled"] = list(self.enabled)
        if self.preferred_order:
            section["preferred_order"] = list(self.preferred_order)
        return {"providers": section}

    def get(self, name: str) -> ProviderConfig | None:
        return self.providers.get(name)

    def enabled_providers(self) -> list[str]:
        """Names of the providers to build, preferred ones first."""
        names = [name for name in (self.enabled or self.providers) if name in self.providers]
        preferred = [name for name in self.preferred_order if name in names]
        return preferred + [name for name in names if name not in preferred]

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []
        for name, provider_type in self.unknown_types.items():
            errors.append(f"Provider '{name}' has unknown type '{provider_type}'")
        for name in self.enabled:
            if name not in self.providers and name not in self.unknown_types:
                errors.append(f"Provider '{name}' is enabled but not configured")
        for name, provider in self.providers.items():
            if not (provider.api_key or provider.api_keys or provider.oauth_credentials):
                errors.append(
                    f"Provider '{name}' has no credentials "
                    f"(set api_key, api_keys, oauth_credentials or {env_key_name(name)})"
                )
        return errors

    def is_valid(self) -> bool:
        """Check if configuration is valid."""
        return len(self.validate()) == 0

    def create_providers(self, **kwargs: Any) -> dict[str, "BaseProvider"]:
        """Build adapters for the enabled providers.

        Keyword arguments are passed to every adapter constructor.
        """
        from .providers import create_provider

        adapters = {}
        for name in self.enabled_providers():
            try:
                adapters[name] = create_provider(self.providers[name], **kwargs)
            except AuthError as e:
                raise ConfigurationError(e.message) from e
        return adapters


DEFAULT_CONFIG_PATHS = [
    "llm_provider_kit.yaml",
    "config/llm_provider_kit.yaml",
    "~/.llm_provider_kit.yaml",
]


def load_default_config() -> ProvidersConfig | None:
    """Load configuration from default locations."""
    for path in DEFAULT_CONFIG_PATHS:
        expanded_path = os.path.expanduser(path)
        if os.path.exists(expanded_path):
            try:
                return ProvidersConfig.from_yaml_file(expanded_path)
            except ConfigurationError:
                continue

    return None


def create_example_config() -> ProvidersConfig:
    """Create example configuration."""
    return ProvidersConfig.from_dict(
        {
            "providers": {
                "enabled": ["openai", "anthropic"],
                "preferred_order": ["anthropic", "openai"],
                "openai": {
                    "type": "openai",
                    "api_keys": ["sk-your-openai-api-key-here", "sk-your-backup-key-here"],
                    "default_model": "gpt-4o-mini",
                    "timeout": 30,
                },
                "anthropic": {
                    "type": "anthropic",
                    "api_key": "sk-ant-REDACTED",
                    "default_model": "claude-3-5-sonnet-20241022",
                    "max_tokens": 4096,
                },
            }
        }
    )
