"""Interfaces for the services the stage controller calls out to.

Scraping, competitor identification, persona generation and prompt
generation live outside the engine; the controller only depends on these
protocols.
"""

from __future__ import annotations

from typing import List, Protocol, Sequence

from ..models import Company, Competitor, Persona, Prompt


class CollaboratorError(RuntimeError):
    """Raised when an external collaborator call fails."""


class CompanyScraper(Protocol):
    async def scrape(self, url: str) -> Company:
        ...


class CompetitorIdentifier(Protocol):
    async def identify(self, company: Company) -> List[Competitor]:
        ...


class PersonaGenerator(Protocol):
    async def generate_personas(
        self, company: Company, competitors: Sequence[Competitor]
    ) -> List[Persona]:
        ...


class PromptGenerator(Protocol):
    async def generate_prompts(
        self,
        company: Company,
        competitors: Sequence[Competitor],
        personas: Sequence[Persona],
    ) -> List[Prompt]:
        ...


__all__ = [
    "CollaboratorError",
    "CompanyScraper",
    "CompetitorIdentifier",
    "PersonaGenerator",
    "PromptGenerator",
]
