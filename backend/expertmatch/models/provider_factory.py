"""Select the reasoning model used for reranking and fuzzy name matching."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from backend.expertmatch.core.config import Settings

from .provider import ReasoningModel
from .provider_groq import GroqHostedProvider
from .provider_llamacpp import LlamaCppProvider
from .provider_ollama import OllamaProvider
from .provider_stub import StubProvider

logger = logging.getLogger(__name__)


@dataclass
class ProviderContext:
    """Configured reasoning model (None when reranking is disabled) plus operator context."""

    provider: Optional[ReasoningModel]
    provider_type: str
    model_name: Optional[str] = None
    reason: Optional[str] = None

    @property
    def configured(self) -> bool:
        return self.provider is not None


def build_provider_context(settings: Settings, provider_key: Optional[str] = None) -> ProviderContext:
    """Resolve the reasoning model for the given key, defaulting to settings.rerank_provider."""

    key = (provider_key or settings.rerank_provider or "none").lower()

    if key == "none":
        return ProviderContext(provider=None, provider_type="none", reason="Reasoning model disabled (RERANK_PROVIDER=none).")

    if key == "stub":
        return ProviderContext(provider=StubProvider(), provider_type="stub", model_name="stub", reason="Stub reasoning model active.")

    if key == "ollama":
        return ProviderContext(
            provider=OllamaProvider(
                model_name=settings.model_name,
                host=settings.ollama_host,
                timeout_sec=settings.model_timeout_sec,
            ),
            provider_type="local",
            model_name=settings.model_name,
            reason=f"Ollama model {settings.model_name} pinned for reranking.",
        )

    if key == "llamacpp":
        return ProviderContext(
            provider=LlamaCppProvider(
                host=settings.llamacpp_host,
                model=settings.model_name or None,
                timeout_sec=settings.model_timeout_sec,
            ),
            provider_type="local",
            model_name=settings.model_name or "llama.cpp-default",
            reason="llama.cpp endpoint configured via settings.",
        )

    if key == "groq":
        try:
            provider = GroqHostedProvider(
                api_key=settings.groq_api_key,
                model_name=settings.hosted_model_name,
                timeout_sec=settings.model_timeout_sec,
                api_url=settings.groq_api_url,
            )
        except ValueError as exc:
            logger.warning("Hosted reasoning model unavailable; reranking disabled (%s)", exc)
            return ProviderContext(provider=None, provider_type="none", reason=str(exc))
        return ProviderContext(
            provider=provider,
            provider_type="hosted",
            model_name=settings.hosted_model_name,
            reason="Hosted Groq model ready for reranking.",
        )

    logger.warning("Unknown reasoning provider '%s'; reranking disabled.", key)
    return ProviderContext(provider=None, provider_type="none", reason=f"Unknown provider '{key}'.")
