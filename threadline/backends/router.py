"""
Model Router: prefix-based dispatch from model id to provider.

The single source of truth for which provider owns which model prefix.
Resolution is pure: no network, no credentials needed, so an unknown
model is rejected before anything is sent anywhere.
"""

from __future__ import annotations

import logging

from threadline.backends.anthropic import AnthropicProvider
from threadline.backends.base import BaseProvider
from threadline.backends.google import GoogleProvider
from threadline.backends.openai import OpenAIProvider
from threadline.errors import UnsupportedModelError

logger = logging.getLogger(__name__)

# Provider name → backend class
PROVIDERS: dict[str, type[BaseProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "google": GoogleProvider,
}

# Model prefix → provider name
DEFAULT_PREFIXES: dict[str, str] = {
    "gpt-": "openai",
    "claude-": "anthropic",
    "gemini-": "google",
}


class ModelRouter:
    """
    Maps model ids to providers by prefix.
    Prefixes may not overlap, so every accepted model matches exactly one.
    """

    def __init__(self, routes: dict[str, BaseProvider]):
        prefixes = sorted(routes)
        for i, a in enumerate(prefixes):
            if not a:
                raise ValueError("empty model prefix")
            for b in prefixes[i + 1:]:
                if b.startswith(a) or a.startswith(b):
                    raise ValueError(f"overlapping model prefixes: {a!r} and {b!r}")
        self.routes: dict[str, BaseProvider] = dict(routes)

        summary = [f"{p}*→{b.name}" for p, b in self.routes.items()]
        logger.info("Model router initialized: %s", ", ".join(summary))

    @classmethod
    def from_config(cls, cfg: dict) -> "ModelRouter":
        """Build all known providers from the `providers` config block."""
        providers_cfg = cfg.get("providers", {}) or {}
        timeout = (cfg.get("ai", {}) or {}).get("timeout", 120)

        built: dict[str, BaseProvider] = {}
        for name, provider_cls in PROVIDERS.items():
            pcfg = providers_cfg.get(name, {}) or {}
            built[name] = provider_cls(
                api_key=pcfg.get("api_key", ""),
                url=pcfg.get("url", ""),
                timeout=pcfg.get("timeout", timeout),
                models=pcfg.get("models"),
            )
            if not built[name].configured:
                logger.info("Provider '%s' has no API key; its models are unavailable", name)

        return cls({prefix: built[name] for prefix, name in DEFAULT_PREFIXES.items()})

    def resolve(self, model: str) -> BaseProvider:
        """Return the provider that owns `model`, or raise UnsupportedModelError."""
        if model:
            for prefix, provider in self.routes.items():
                if model.startswith(prefix):
                    return provider
        raise UnsupportedModelError(model)

    def providers(self) -> list[BaseProvider]:
        """Distinct providers in registration order."""
        seen: list[BaseProvider] = []
        for provider in self.routes.values():
            if provider not in seen:
                seen.append(provider)
        return seen

    def get_provider(self, name: str) -> BaseProvider | None:
        for provider in self.providers():
            if provider.name == name:
                return provider
        return None

    def available_models(self) -> list[str]:
        """Models of every configured provider. No network calls."""
        models: list[str] = []
        for provider in self.providers():
            models.extend(provider.list_models())
        return models
