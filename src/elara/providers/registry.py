"""Provider registry: name lookup and model to provider inference."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from elara.providers.base import ClientFactory, Provider, default_client_factory

if TYPE_CHECKING:
    from elara.config import ElaraConfig
    from elara.pow.solver import PowSolver
    from elara.stores import CredentialStore

logger = structlog.get_logger()


class ProviderRegistry:
    """Holds every adapter, keyed by lower-cased name.

    Built once at startup; request handling only reads from it.
    """

    def __init__(self) -> None:
        self.providers: dict[str, Provider] = {}

    def register(self, provider: Provider) -> None:
        key = provider.name.lower()
        if key in self.providers:
            logger.warning("provider.duplicate", name=provider.name, action="replacing")
        self.providers[key] = provider
        logger.info("provider.registered", name=provider.name, capabilities=provider.capabilities.enabled())

    def get(self, name: str | None) -> Provider | None:
        if not name:
            return None
        return self.providers.get(name.lower())

    def resolve_by_model(self, model_id: str | None) -> Provider | None:
        """First registered adapter whose model predicate accepts ``model_id``."""
        if not model_id:
            return None
        for provider in self.providers.values():
            if provider.is_model_supported(model_id):
                return provider
        return None

    def names(self) -> list[str]:
        return [p.name for p in self.providers.values()]

    def all(self) -> list[Provider]:
        return list(self.providers.values())

    def __contains__(self, name: str) -> bool:
        return name.lower() in self.providers

    def __len__(self) -> int:
        return len(self.providers)

    def describe(self) -> list[dict[str, object]]:
        return [
            {
                "name": p.name,
                "default_model": p.default_model,
                "capabilities": p.capabilities.enabled(),
            }
            for p in self.providers.values()
        ]


def build_default_registry(
    config: ElaraConfig,
    *,
    credentials: CredentialStore | None = None,
    solver: PowSolver | None = None,
    client_factory: ClientFactory | None = None,
) -> ProviderRegistry:
    """Register every built-in adapter that is not disabled in config."""
    from elara.pow.solver import PowSolver
    from elara.providers.antigravity import AntigravityProvider
    from elara.providers.claude_web import ClaudeWebProvider
    from elara.providers.cohere import CohereProvider
    from elara.providers.deepseek import DeepSeekProvider
    from elara.providers.gemini_web import GeminiWebProvider
    from elara.providers.huggingchat import HuggingChatProvider
    from elara.providers.kimi import KimiProvider
    from elara.providers.mistral import MistralProvider
    from elara.providers.oauth import AccessTokenCache
    from elara.providers.openai_compat import CEREBRAS, GROQ, QWQ, OpenAICompatProvider
    from elara.providers.qwen import QwenProvider

    factory = client_factory or default_client_factory(config.request_timeout_s)
    ag = config.antigravity
    candidates: list[Provider] = [
        DeepSeekProvider(solver=solver or PowSolver(config.pow.workers), client_factory=factory),
        ClaudeWebProvider(client_factory=factory),
        # Narrow web ids ("0".."2", gemini-web*) must match before Antigravity's "gemini" marker.
        GeminiWebProvider(client_factory=factory),
        AntigravityProvider(
            client_id=ag.client_id,
            client_secret=ag.client_secret,
            token_url=ag.token_url,
            backend_urls=ag.backend_urls,
            credentials=credentials,
            token_cache=AccessTokenCache(safety_margin_s=ag.token_safety_margin_s),
            min_interval_s=ag.min_interval_ms / 1000,
            client_factory=factory,
        ),
        QwenProvider(client_factory=factory),
        KimiProvider(client_factory=factory),
        MistralProvider(client_factory=factory),
        HuggingChatProvider(client_factory=factory),
        CohereProvider(client_factory=factory),
        OpenAICompatProvider(GROQ, client_factory=factory),
        OpenAICompatProvider(CEREBRAS, client_factory=factory),
        OpenAICompatProvider(QWQ, client_factory=factory),
    ]
    registry = ProviderRegistry()
    for provider in candidates:
        if config.is_provider_disabled(provider.name):
            logger.info("provider.disabled", name=provider.name)
            continue
        registry.register(provider)
    return registry
