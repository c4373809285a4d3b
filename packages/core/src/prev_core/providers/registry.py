"""Provider lookup table.

The table is built once at startup and handed to whoever needs a provider, so
the set of available providers is explicit and easy to substitute in tests.
"""

from __future__ import annotations

from typing import Callable

from prev_core.providers.base import BaseProvider, RetryPolicy

ProviderFactory = Callable[[dict], BaseProvider]

DEFAULT_PROVIDER = "openai"


def _retry_policy(config: dict) -> RetryPolicy:
    return RetryPolicy(max_retries=int(config.get("max_retries") or 0))


def _require(config: dict, key: str, env_name: str, provider: str) -> str:
    value = config.get(key)
    if not value:
        raise ValueError(f"{env_name} is not set (required by the '{provider}' provider).")
    return value


def _openai(config: dict) -> BaseProvider:
    from prev_core.providers.openai import OpenAIProvider

    return OpenAIProvider(
        api_key=_require(config, "openai_api_key", "OPENAI_API_KEY", "openai"),
        model=config.get("model") or config.get("openai_model") or "",
        base_url=config.get("openai_base_url") or "",
        retry=_retry_policy(config),
        timeout=float(config.get("timeout") or 0),
    )


def _anthropic(config: dict) -> BaseProvider:
    from prev_core.providers.anthropic import AnthropicProvider

    return AnthropicProvider(
        api_key=_require(config, "anthropic_api_key", "ANTHROPIC_API_KEY", "anthropic"),
        model=config.get("model") or config.get("anthropic_model") or "",
        base_url=config.get("anthropic_base_url") or "",
        retry=_retry_policy(config),
        timeout=float(config.get("timeout") or 0),
    )


def _azure(config: dict) -> BaseProvider:
    from prev_core.providers.azure import DEFAULT_API_VERSION, AzureOpenAIProvider

    return AzureOpenAIProvider(
        api_key=_require(config, "azure_api_key", "AZURE_OPENAI_API_KEY", "azure"),
        endpoint=_require(config, "azure_endpoint", "AZURE_OPENAI_ENDPOINT", "azure"),
        deployment=config.get("model") or config.get("azure_deployment") or "",
        api_version=config.get("azure_api_version") or DEFAULT_API_VERSION,
        retry=_retry_policy(config),
        timeout=float(config.get("timeout") or 0),
    )


def _compat(config: dict) -> BaseProvider:
    from prev_core.providers.compat import OpenAICompatProvider

    return OpenAICompatProvider(
        base_url=_require(config, "compat_base_url", "OPENAI_COMPAT_BASE_URL", "openai-compat"),
        model=config.get("model") or config.get("compat_model") or "",
        api_key=config.get("compat_api_key") or "",
        retry=_retry_policy(config),
        timeout=float(config.get("timeout") or 0),
    )


def build_provider_table() -> dict[str, ProviderFactory]:
    return {
        "openai": _openai,
        "anthropic": _anthropic,
        "azure": _azure,
        "openai-compat": _compat,
    }


def resolve_provider(table: dict[str, ProviderFactory], config: dict) -> BaseProvider:
    """Instantiate the configured provider. Raises ValueError for unknown names or missing credentials."""
    name = str(config.get("provider") or DEFAULT_PROVIDER).strip().lower()
    factory = table.get(name)
    if factory is None:
        raise ValueError(f"Unknown provider '{name}'. Choose one of: {', '.join(sorted(table))}.")
    return factory(config)
