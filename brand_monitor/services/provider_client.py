from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
import openai
from openai import AsyncOpenAI

from ..config import Settings, get_settings
from ..models import EntityMention, FailureKind, Prompt, ProviderResult, ResultStatus, Sentiment
from .provider_config import ProviderConfig

logger = logging.getLogger(__name__)


class ProviderFailure(RuntimeError):
    """Raised when a provider call fails. Carries a typed failure kind."""

    def __init__(self, kind: FailureKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class ProviderTimeout(ProviderFailure):
    """Raised when a provider call exceeds its timeout."""

    def __init__(self, message: str = "Provider call timed out") -> None:
        super().__init__(FailureKind.TIMEOUT, message)


class ProviderClientProtocol(Protocol):
    provider: ProviderConfig

    async def query(self, prompt: Prompt, entities: Sequence[str]) -> ProviderResult:
        ...


VISIBILITY_SYSTEM_PROMPT = (
    "You are a helpful assistant answering a customer's question. Answer naturally, "
    "then report which brands your answer mentioned. Always output only valid JSON."
)

VISIBILITY_USER_PROMPT = """Question:
{prompt}

Answer the question as you normally would. Then list every company or brand your answer
mentions, in the order they appear, paying special attention to these brands:
{entities}

Return a single JSON object with:
{{
  "answer": "your full answer",
  "rankings": [
    {{"name": "Brand name as written in your answer", "position": 1, "sentiment": "positive" | "neutral" | "negative"}}
  ]
}}
Positions start at 1. Omit brands you did not mention. No markdown."""


def _match_entity(label: str, entities: Sequence[str]) -> Optional[str]:
    norm = label.strip().lower()
    for entity in entities:
        if entity.strip().lower() == norm:
            return entity
    return None


def _safe_position(value: Any) -> Optional[int]:
    try:
        position = int(value)
    except (TypeError, ValueError):
        return None
    return position if position > 0 else None


def detect_mentions_in_text(answer: str, entities: Sequence[str]) -> List[EntityMention]:
    """Fallback extraction: scan the answer text for each expected entity."""

    found = []
    lowered = answer.lower()
    for entity in entities:
        name = entity.strip()
        if not name:
            continue
        match = re.search(r"(?<!\w)" + re.escape(name.lower()) + r"(?!\w)", lowered)
        if match:
            found.append((match.start(), entity))

    found.sort()
    mentions = [
        EntityMention(entity_name=entity, mentioned=True, position=index + 1)
        for index, (_, entity) in enumerate(found)
    ]
    seen = {entity for _, entity in found}
    mentions.extend(
        EntityMention(entity_name=entity, mentioned=False)
        for entity in entities
        if entity not in seen
    )
    return mentions


def parse_mentions(payload: Any, entities: Sequence[str]) -> tuple[str, List[EntityMention]]:
    """Turn a provider JSON payload into (answer text, mentions).

    Labels are kept as the provider wrote them unless they match an expected
    entity exactly (case-insensitive); identity reconciliation happens later.
    Expected entities the provider did not list are reported as not mentioned.
    """

    if not isinstance(payload, dict):
        raise ProviderFailure(FailureKind.INVALID_RESPONSE, "Provider response is not a JSON object")

    answer = str(payload.get("answer") or "").strip()
    rankings = payload.get("rankings")
    if rankings is None:
        rankings = payload.get("mentions")

    if not isinstance(rankings, list):
        if not answer:
            raise ProviderFailure(FailureKind.INVALID_RESPONSE, "Provider response has no answer or rankings")
        return answer, detect_mentions_in_text(answer, entities)

    mentions: List[EntityMention] = []
    seen: set[str] = set()
    for entry in rankings:
        if isinstance(entry, str):
            entry = {"name": entry}
        if not isinstance(entry, dict):
            continue
        label = str(entry.get("name") or "").strip()
        if not label:
            continue
        label = _match_entity(label, entities) or label
        key = label.lower()
        if key in seen:
            continue
        seen.add(key)
        mentions.append(
            EntityMention(
                entity_name=label,
                mentioned=True,
                position=_safe_position(entry.get("position")) or len(mentions) + 1,
                sentiment=Sentiment.parse(entry.get("sentiment")),
            )
        )

    mentions.extend(
        EntityMention(entity_name=entity, mentioned=False)
        for entity in entities
        if entity.strip().lower() not in seen
    )
    return answer, mentions


def classify_exception(exc: Exception) -> ProviderFailure:
    """Map an upstream SDK exception onto the provider failure taxonomy."""

    if isinstance(exc, ProviderFailure):
        return exc
    if isinstance(exc, openai.APITimeoutError):
        return ProviderTimeout(str(exc) or "Provider request timed out")
    if isinstance(exc, openai.RateLimitError):
        return ProviderFailure(FailureKind.RATE_LIMITED, str(exc))
    if isinstance(exc, (openai.APIConnectionError, openai.InternalServerError)):
        return ProviderFailure(FailureKind.UNAVAILABLE, str(exc))
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code == 429:
            return ProviderFailure(FailureKind.RATE_LIMITED, str(exc))
        if exc.status_code >= 500:
            return ProviderFailure(FailureKind.UNAVAILABLE, str(exc))
        return ProviderFailure(FailureKind.INVALID_RESPONSE, str(exc))
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return ProviderFailure(FailureKind.INVALID_RESPONSE, str(exc))
    return ProviderFailure(FailureKind.UNAVAILABLE, str(exc))


class ProviderClient:
    """Queries one provider through the OpenRouter chat completions API."""

    def __init__(
        self,
        provider: ProviderConfig,
        settings: Optional[Settings] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.provider = provider
        self.settings = settings or get_settings()
        if client is None:
            api_key = self.settings.openrouter_api_key
            if api_key is None:
                raise RuntimeError("Missing OPENROUTER_API_KEY environment variable.")
            client = AsyncOpenAI(
                api_key=api_key.get_secret_value(),
                base_url=str(self.settings.openrouter_base_url),
                default_headers={
                    "HTTP-Referer": self.settings.app_url,
                    "X-Title": self.settings.app_title,
                },
                timeout=httpx.Timeout(self.settings.provider_timeout_seconds),
                max_retries=0,
            )
        self.client = client

    def _messages(self, prompt: Prompt, entities: Sequence[str]) -> List[Dict[str, str]]:
        entity_list = "\n".join(f"- {entity}" for entity in entities) or "- (none)"
        return [
            {"role": "system", "content": VISIBILITY_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": VISIBILITY_USER_PROMPT.format(prompt=prompt.text, entities=entity_list),
            },
        ]

    async def query(self, prompt: Prompt, entities: Sequence[str]) -> ProviderResult:
        try:
            response = await self.client.chat.completions.create(
                model=self.provider.default_model,
                messages=self._messages(prompt, entities),
                temperature=0.2,
                response_format={"type": "json_object"},
            )
            content = response.choices[0].message.content  # type: ignore[index]
            if not content:
                raise ProviderFailure(FailureKind.INVALID_RESPONSE, "Empty response from provider")
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            logger.warning("%s returned malformed JSON: %s", self.provider.name, exc)
            raise ProviderFailure(FailureKind.INVALID_RESPONSE, "Failed to parse provider response") from exc
        except ProviderFailure:
            raise
        except Exception as exc:  # noqa: BLE001 - upstream exceptions are varied
            failure = classify_exception(exc)
            logger.warning("%s request failed (%s): %s", self.provider.name, failure.kind.value, exc)
            raise failure from exc

        answer, mentions = parse_mentions(payload, entities)
        return ProviderResult(
            prompt_id=prompt.id,
            provider=self.provider.name,
            status=ResultStatus.COMPLETED,
            answer_text=answer,
            mentions=tuple(mentions),
        )


__all__ = [
    "ProviderClient",
    "ProviderClientProtocol",
    "ProviderFailure",
    "ProviderTimeout",
    "classify_exception",
    "detect_mentions_in_text",
    "parse_mentions",
]
