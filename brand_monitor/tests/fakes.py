"""Hand-written collaborators and provider clients for driving the engine in tests."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Sequence, Tuple, Union

from brand_monitor.models import (
    Company,
    Competitor,
    EntityMention,
    Persona,
    Prompt,
    ProviderResult,
    ResultStatus,
    Sentiment,
)
from brand_monitor.services.provider_config import ProviderConfig


Outcome = Union[List[str], Exception, "Hang"]


class Hang:
    """Outcome that blocks until the event is set, then returns the mentions."""

    def __init__(self, event: asyncio.Event, mentions: Sequence[str] = ()) -> None:
        self.event = event
        self.mentions = list(mentions)


class FakeProviderClient:
    """Answers from a table keyed by (prompt id, provider id).

    A list of names means those brands were mentioned in that order, an
    exception is raised as-is, and a missing key sleeps until timeout.
    """

    def __init__(self, provider: ProviderConfig, outcomes: Dict[Tuple[str, str], Outcome]) -> None:
        self.provider = provider
        self.outcomes = outcomes
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def query(self, prompt: Prompt, entities: Sequence[str]) -> ProviderResult:
        self.calls.append(prompt.id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            outcome = self.outcomes.get((prompt.id, self.provider.id))
            if outcome is None:
                await asyncio.sleep(3600)
            if isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, Hang):
                await outcome.event.wait()
                outcome = outcome.mentions
            return ProviderResult(
                prompt_id=prompt.id,
                provider=self.provider.name,
                status=ResultStatus.COMPLETED,
                answer_text=", ".join(outcome),
                mentions=tuple(
                    EntityMention(entity_name=name, mentioned=True, position=index + 1, sentiment=Sentiment.POSITIVE)
                    for index, name in enumerate(outcome)
                ),
            )
        finally:
            self.in_flight -= 1


class FakeScraper:
    def __init__(self, company: Company, failures: int = 0) -> None:
        self.company = company
        self.failures = failures
        self.calls = 0

    async def scrape(self, url: str) -> Company:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("site unreachable")
        return self.company


class FakeCompetitorIdentifier:
    def __init__(self, competitors: Sequence[Competitor]) -> None:
        self.competitors = list(competitors)

    async def identify(self, company: Company) -> List[Competitor]:
        return list(self.competitors)


class FakePersonaGenerator:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls = 0

    async def generate_personas(self, company, competitors) -> List[Persona]:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("persona model unavailable")
        return [Persona(role="The Startup CTO", description="Needs reliable crawling")]


class FakePromptGenerator:
    def __init__(self, prompts: Sequence[Prompt], failures: int = 0) -> None:
        self.prompts = list(prompts)
        self.failures = failures
        self.calls = 0

    async def generate_prompts(self, company, competitors, personas) -> List[Prompt]:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("prompt model unavailable")
        return list(self.prompts)
