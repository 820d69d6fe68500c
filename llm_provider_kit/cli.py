"""CLI for LLM Provider Kit."""

import asyncio
import json
import sys
from pathlib import Path

import click
import uvicorn
import yaml

from .config import ProvidersConfig, create_example_config, load_default_config
from .exceptions import AuthError, ConfigurationError, LLMError
from .logging import setup_logging
from .providers import BaseProvider, create_provider


def _load_config(config: Path | None) -> ProvidersConfig:
    """Load ``config`` or the default configuration, exiting when none is found."""
    if config:
        return ProvidersConfig.from_file(config)
    providers_config = load_default_config()
    if providers_config is None:
        click.echo("❌ No configuration file found.", err=True)
        click.echo("   Run: llm-provider-kit init", err=True)
        sys.exit(1)
    return providers_config


def _load_valid_config(config: Path | None) -> ProvidersConfig:
    providers_config = _load_config(config)
    errors = providers_config.validate()
    if errors:
        click.echo("❌ Configuration errors:", err=True)
        for error in errors:
            click.echo(f"   - {error}", err=True)
        sys.exit(1)
    return providers_config


def _get_provider(providers_config: ProvidersConfig, name: str) -> BaseProvider:
    enabled = providers_config.enabled_providers()
    if name not in enabled:
        click.echo(f"❌ Unknown or disabled provider: {name}", err=True)
        click.echo(f"   Available: {', '.join(enabled) or 'none'}", err=True)
        sys.exit(1)
    try:
        return create_provider(providers_config.providers[name])
    except AuthError as e:
        raise ConfigurationError(e.message) from e


config_option = click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file (YAML or JSON)",
)


@click.group()
@click.option("--log-level", default="WARNING", show_default=True, help="Console log level")
@click.option(
    "--log-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Directory for structured JSONL logs",
)
def cli(log_level: str, log_dir: str | None) -> None:
    """LLM Provider Kit - One client interface over OpenAI, Anthropic, Cerebras, Qwen and OpenRouter."""
    setup_logging(log_dir, log_level)


@cli.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default="llm_provider_kit.yaml",
    show_default=True,
    help="Output path for configuration file",
)
def init(output: Path) -> None:
    """Create a new configuration file with examples."""
    if output.exists():
        if not click.confirm(f"File {output} already exists. Overwrite?"):
            click.echo("Cancelled.")
            return

    try:
        with open(output, "w", encoding="utf-8") as f:
            yaml.safe_dump(create_example_config().to_dict(), f, sort_keys=False)
    except OSError as e:
        click.echo(f"❌ Error creating config file: {e}", err=True)
        sys.exit(1)

    click.echo(f"✅ Created configuration file: {output}")
    click.echo()
    click.echo("Next steps:")
    click.echo(f"  1. Edit {output} and add your API keys")
    click.echo(f"  2. Check it: llm-provider-kit check --config {output}")


@cli.command()
@config_option
def check(config: Path | None) -> None:
    """Check configuration."""
    click.echo("🔍 Checking configuration...")
    try:
        providers_config = _load_valid_config(config)
    except LLMError as e:
        click.echo(f"❌ Error: {e}", err=True)
        sys.exit(1)

    click.echo("✅ Configuration is valid")
    click.echo()
    click.echo("📋 Provider configuration:")
    enabled = providers_config.enabled_providers()
    for name, provider in providers_config.providers.items():
        state = "enabled" if name in enabled else "disabled"
        keys = ([provider.api_key] if provider.api_key else []) + provider.api_keys
        click.echo(f"  {name} ({provider.type}, {state})")
        for key in keys:
            click.echo(f"       API Key: {'*' * 8}{key[-4:] if len(key) > 4 else '****'}")
        for oauth in provider.oauth_credentials:
            click.echo(f"       OAuth: {oauth.id}")
        click.echo(f"       Base URL: {provider.base_url or 'default'}")
        click.echo(f"       Default model: {provider.default_model or '-'}")
        click.echo(f"       Timeout: {provider.timeout}s")
        click.echo(f"       Max Attempts: {provider.max_attempts}")
    if providers_config.preferred_order:
        click.echo(f"  Preferred order: {', '.join(providers_config.preferred_order)}")

    click.echo()
    click.echo("✅ Configuration check passed!")


@cli.command()
@config_option
def providers(config: Path | None) -> None:
    """List enabled providers and their capabilities."""

    async def run() -> None:
        adapters = _load_valid_config(config).create_providers()
        try:
            for adapter in adapters.values():
                capabilities = adapter.describe_capabilities()
                click.echo(f"🤖 {capabilities.provider} ({capabilities.type})")
                click.echo(f"   Codec: {capabilities.codec} v{capabilities.codec_version}")
                click.echo(f"   Base URL: {capabilities.base_url}")
                click.echo(f"   Auth: {', '.join(capabilities.auth_methods)}")
                click.echo(f"   Capabilities: {', '.join(capabilities.capabilities)}")
                if capabilities.recognized_options:
                    click.echo(f"   Options: {', '.join(capabilities.recognized_options)}")
        finally:
            for adapter in adapters.values():
                await adapter.close()

    try:
        asyncio.run(run())
    except LLMError as e:
        click.echo(f"❌ Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@config_option
@click.argument("provider")
def models(config: Path | None, provider: str) -> None:
    """List the models PROVIDER advertises."""

    async def run() -> None:
        async with _get_provider(_load_valid_config(config), provider) as adapter:
            for model in await adapter.get_models():
                click.echo(f"{model.id}\t{model.name}")

    try:
        asyncio.run(run())
    except LLMError as e:
        click.echo(f"❌ Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@config_option
@click.argument("provider", required=False)
def health(config: Path | None, provider: str | None) -> None:
    """Check provider connectivity (all enabled providers by default)."""

    async def run() -> bool:
        providers_config = _load_valid_config(config)
        if provider:
            adapters = {provider: _get_provider(providers_config, provider)}
        else:
            adapters = providers_config.create_providers()
        all_healthy = True
        for name, adapter in adapters.items():
            async with adapter:
                status = await adapter.health_check()
            icon = "✅" if status.healthy else "❌"
            click.echo(f"{icon} {name}: {status.message} ({status.response_time_ms:.0f}ms)")
            all_healthy = all_healthy and status.healthy
        return all_healthy

    try:
        healthy = asyncio.run(run())
    except LLMError as e:
        click.echo(f"❌ Error: {e}", err=True)
        sys.exit(1)
    if not healthy:
        sys.exit(1)


@cli.command()
@config_option
@click.argument("provider")
@click.argument("prompt")
@click.option("--model", "-m", default=None, help="Model name (provider default if omitted)")
@click.option("--system", "-s", default=None, help="System prompt")
@click.option("--max-tokens", type=int, default=None, help="Maximum tokens to generate")
@click.option("--temperature", type=float, default=None, help="Sampling temperature")
@click.option("--stream/--no-stream", default=True, show_default=True, help="Stream the answer")
@click.option("--json", "as_json", is_flag=True, help="Print the normalized response as JSON")
def chat(
    config: Path | None,
    provider: str,
    prompt: str,
    model: str | None,
    system: str | None,
    max_tokens: int | None,
    temperature: float | None,
    stream: bool,
    as_json: bool,
) -> None:
    """Send PROMPT to PROVIDER and print the answer."""
    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})
    request = {
        "model": model or "",
        "messages": messages,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "stream": stream and not as_json,
    }

    async def run() -> None:
        async with _get_provider(_load_valid_config(config), provider) as adapter:
            if as_json:
                response = await adapter.complete(request)
                click.echo(json.dumps(response.model_dump(), indent=2))
                return
            async with await adapter.generate_chat_completion(request) as completion:
                async for chunk in completion:
                    for choice in chunk.choices:
                        text = choice.delta.content
                        if text is None and choice.message is not None:
                            text = choice.message.text()
                        if text:
                            click.echo(text, nl=False)
            click.echo()

    try:
        asyncio.run(run())
    except LLMError as e:
        click.echo(f"❌ Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@config_option
@click.option(
    "--host",
    "-h",
    default="127.0.0.1",
    show_default=True,
    help="Host to bind the server to",
)
@click.option(
    "--port",
    "-p",
    default=8000,
    show_default=True,
    type=int,
    help="Port to bind the server to",
)
def serve(config: Path | None, host: str, port: int) -> None:
    """Start the LLM Provider Kit gateway."""
    from .server import create_app

    try:
        providers_config = _load_valid_config(config)
        app = create_app(providers_config)
    except LLMError as e:
        click.echo(f"❌ Error: {e}", err=True)
        sys.exit(1)

    click.echo("=" * 60)
    click.echo("🚀 LLM Provider Kit Gateway")
    click.echo("=" * 60)
    click.echo(f"📁 Config: {config or 'default'}")
    click.echo(f"🌐 Host: {host}")
    click.echo(f"🔌 Port: {port}")
    click.echo()
    click.echo("🤖 Providers:")
    for name in providers_config.enabled_providers():
        click.echo(f"  • {name}: {providers_config.providers[name].type}")
    click.echo()
    click.echo("🔗 Endpoints:")
    click.echo(f"  • Generate: http://{host}:{port}/api/generate")
    click.echo(f"  • Providers: http://{host}:{port}/api/providers")
    click.echo(f"  • Health: http://{host}:{port}/health")
    click.echo(f"  • Status: http://{host}:{port}/status")
    click.echo(f"  • Docs: http://{host}:{port}/docs")
    click.echo("=" * 60)

    uvicorn.run(app, host=host, port=port)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
