"""Registry of AI answer providers reached through the OpenRouter gateway.

Every provider is queried through the same OpenAI-compatible endpoint; only
the model id and the request budget differ between them.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from ..config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderConfig:
    id: str
    name: str
    default_model: str
    max_requests_per_minute: int
    priority: int

    def concurrency_limit(self, hard_cap: Optional[int] = None) -> int:
        """Per-provider sub-pool size derived from the request budget.

        A provider allowing 500 rpm gets 10 slots, one allowing 20 rpm gets 1,
        so a slow or tightly limited provider cannot hog the global pool.
        """

        limit = max(1, min(10, math.ceil(self.max_requests_per_minute / 50)))
        if hard_cap is not None:
            limit = max(1, min(limit, hard_cap))
        return limit


PROVIDER_CONFIGS: Dict[str, ProviderConfig] = {
    "openai": ProviderConfig(
        id="openai",
        name="OpenAI",
        default_model="openai/gpt-4o-mini:online",
        max_requests_per_minute=500,
        priority=2,
    ),
    "anthropic": ProviderConfig(
        id="anthropic",
        name="Anthropic",
        default_model="anthropic/claude-haiku-4.5:online",
        max_requests_per_minute=50,
        priority=3,
    ),
    "google": ProviderConfig(
        id="google",
        name="Google",
        default_model="google/gemini-2.5-flash:online",
        max_requests_per_minute=200,
        priority=1,
    ),
    "perplexity": ProviderConfig(
        id="perplexity",
        name="Perplexity",
        default_model="perplexity/sonar",
        max_requests_per_minute=20,
        priority=4,
    ),
    "deepseek": ProviderConfig(
        id="deepseek",
        name="DeepSeek",
        default_model="deepseek/deepseek-v3.2:online",
        max_requests_per_minute=100,
        priority=6,
    ),
    "grok": ProviderConfig(
        id="grok",
        name="Grok",
        default_model="x-ai/grok-4.1-fast:online",
        max_requests_per_minute=100,
        priority=5,
    ),
}

PROVIDER_NAME_MAP: Dict[str, str] = {
    "OpenAI": "openai",
    "Anthropic": "anthropic",
    "Google": "google",
    "Perplexity": "perplexity",
    "DeepSeek": "deepseek",
    "Grok": "grok",
    "xAI": "grok",
}


def normalize_provider_name(name: str) -> str:
    return PROVIDER_NAME_MAP.get(name.strip(), name.strip().lower())


def get_provider_config(provider_id: str) -> Optional[ProviderConfig]:
    return PROVIDER_CONFIGS.get(normalize_provider_name(provider_id))


def resolve_providers(
    provider_ids: Optional[Iterable[str]] = None,
    settings: Optional[Settings] = None,
) -> List[ProviderConfig]:
    """Return the requested (or configured) providers in priority order.

    Unknown ids are skipped with a warning.
    """

    settings = settings or get_settings()
    requested = list(provider_ids) if provider_ids is not None else settings.enabled_provider_ids

    resolved: Dict[str, ProviderConfig] = {}
    for provider_id in requested:
        config = get_provider_config(provider_id)
        if config is None:
            logger.warning("Ignoring unknown provider '%s'", provider_id)
            continue
        resolved[config.id] = config

    return sorted(resolved.values(), key=lambda config: config.priority)


__all__ = [
    "PROVIDER_CONFIGS",
    "ProviderConfig",
    "get_provider_config",
    "normalize_provider_name",
    "resolve_providers",
]
