from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .analysis import Company, Competitor, Prompt, PromptCategory, PromptSource


class CompanyPayload(BaseModel):
    name: str
    url: str
    industry: str = ""
    description: str = ""
    location: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    competitors: List[str] = Field(default_factory=list)
    scraped_data: Dict[str, Any] = Field(default_factory=dict, alias="scrapedData")

    model_config = {"populate_by_name": True}

    def to_domain(self) -> Company:
        return Company(
            name=self.name.strip(),
            url=self.url.strip(),
            industry=self.industry,
            description=self.description,
            location=self.location,
            keywords=tuple(self.keywords),
            competitor_candidates=tuple(self.competitors),
            scraped_data=dict(self.scraped_data),
        )


class CompetitorPayload(BaseModel):
    name: str
    url: Optional[str] = None
    favicon: Optional[str] = None
    description: Optional[str] = None
    is_own: bool = Field(default=False, alias="isOwn")

    model_config = {"populate_by_name": True}

    def to_domain(self) -> Competitor:
        return Competitor(
            name=self.name.strip(),
            url=self.url,
            favicon=self.favicon,
            description=self.description,
            is_own=self.is_own,
        )


class PromptPayload(BaseModel):
    id: Optional[str] = None
    prompt: str
    category: PromptCategory = PromptCategory.RANKING
    source: PromptSource = PromptSource.SYSTEM
    persona: Optional[str] = None

    def to_domain(self, index: int) -> Prompt:
        return Prompt(
            id=self.id or f"prompt-{index}",
            text=self.prompt.strip(),
            category=self.category,
            source=self.source,
            persona=self.persona,
        )


class AnalyzeRequest(BaseModel):
    company: CompanyPayload
    competitors: List[CompetitorPayload] = Field(default_factory=list)
    prompts: List[PromptPayload] = Field(default_factory=list)
    providers: Optional[List[str]] = None


__all__ = ["AnalyzeRequest", "CompanyPayload", "CompetitorPayload", "PromptPayload"]
