from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"

    @property
    def score(self) -> float:
        return _SENTIMENT_SCORES[self]

    @classmethod
    def parse(cls, value: Any) -> "Sentiment":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.NEUTRAL


_SENTIMENT_SCORES = {
    Sentiment.POSITIVE: 100.0,
    Sentiment.NEUTRAL: 50.0,
    Sentiment.NEGATIVE: 0.0,
}


class PromptCategory(str, Enum):
    RANKING = "ranking"
    COMPARISON = "comparison"
    ALTERNATIVES = "alternatives"
    RECOMMENDATIONS = "recommendations"
    CUSTOM = "custom"


class PromptSource(str, Enum):
    SYSTEM = "system"
    USER = "user"


class CellStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CellStatus.COMPLETED, CellStatus.FAILED)


class ResultStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class FailureKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    INVALID_RESPONSE = "invalid_response"
    UNAVAILABLE = "unavailable"
    CANCELLED = "cancelled"


class AnalysisStage(str, Enum):
    IDLE = "idle"
    SCRAPING = "scraping"
    IDENTIFYING_COMPETITORS = "identifying_competitors"
    SELECTING_COMPETITORS = "selecting_competitors"
    SELECTING_PERSONAS = "selecting_personas"
    GENERATING_PROMPTS = "generating_prompts"
    ANALYZING = "analyzing"
    RESULTS = "results"
    FAILED = "failed"


@dataclass(frozen=True)
class Company:
    """The brand under analysis. Fixed once analysis starts."""

    name: str
    url: str
    industry: str = ""
    description: str = ""
    location: Optional[str] = None
    keywords: Tuple[str, ...] = ()
    competitor_candidates: Tuple[str, ...] = ()
    scraped_data: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class Competitor:
    name: str
    url: Optional[str] = None
    favicon: Optional[str] = None
    description: Optional[str] = None
    is_own: bool = False


@dataclass(frozen=True)
class Persona:
    role: str
    description: str = ""
    pain_points: Tuple[str, ...] = ()
    goals: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Prompt:
    id: str
    text: str
    category: PromptCategory = PromptCategory.RANKING
    source: PromptSource = PromptSource.SYSTEM
    persona: Optional[str] = None


@dataclass(frozen=True)
class EntityMention:
    entity_name: str
    mentioned: bool
    position: Optional[int] = None
    sentiment: Sentiment = Sentiment.NEUTRAL


@dataclass(frozen=True)
class ProviderResult:
    """Outcome of a single (prompt, provider) cell."""

    prompt_id: str
    provider: str
    status: ResultStatus
    answer_text: str = ""
    mentions: Tuple[EntityMention, ...] = ()
    failure: Optional[FailureKind] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is ResultStatus.COMPLETED


@dataclass(frozen=True)
class TaskCompletion:
    """Cell transition event emitted by the dispatcher."""

    generation: int
    prompt_index: int
    provider_index: int
    status: CellStatus
    result: Optional[ProviderResult] = None


@dataclass(frozen=True)
class CompetitorRanking:
    name: str
    is_own: bool = False
    mentions: int = 0
    average_position: float = 0.0
    sentiment_score: float = 0.0
    visibility_score: float = 0.0
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "isOwn": self.is_own,
            "mentions": self.mentions,
            "averagePosition": self.average_position,
            "sentimentScore": self.sentiment_score,
            "visibilityScore": self.visibility_score,
            "url": self.url,
        }


@dataclass(frozen=True)
class ProviderStats:
    visibility_score: float = 0.0
    mentions: int = 0
    average_position: float = 0.0
    sentiment_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "visibilityScore": self.visibility_score,
            "mentions": self.mentions,
            "averagePosition": self.average_position,
            "sentimentScore": self.sentiment_score,
        }


@dataclass(frozen=True)
class ProviderComparisonRow:
    competitor: str
    is_own: bool = False
    providers: Dict[str, ProviderStats] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "competitor": self.competitor,
            "isOwn": self.is_own,
            "providers": {name: stats.to_dict() for name, stats in self.providers.items()},
        }


@dataclass(frozen=True)
class AnalysisProgress:
    """Point-in-time progress snapshot. A newer snapshot replaces it."""

    stage: AnalysisStage
    progress: int
    message: str
    generation: int = 0
    completed_cells: int = 0
    failed_cells: int = 0
    total_cells: int = 0
    competitors: Tuple[str, ...] = ()
    prompts: Tuple[str, ...] = ()
    partial_results: Tuple[CompetitorRanking, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "progress": self.progress,
            "message": self.message,
            "generation": self.generation,
            "completedCells": self.completed_cells,
            "failedCells": self.failed_cells,
            "totalCells": self.total_cells,
            "competitors": list(self.competitors),
            "prompts": list(self.prompts),
            "partialResults": [row.to_dict() for row in self.partial_results],
        }


@dataclass(frozen=True)
class AnalysisResult:
    company: Company
    competitors: Tuple[CompetitorRanking, ...]
    provider_comparison: Tuple[ProviderComparisonRow, ...]
    prompts: Tuple[Prompt, ...]
    responses: Tuple[ProviderResult, ...]
    total_mentions: int

    @property
    def own_ranking(self) -> Optional[CompetitorRanking]:
        return next((row for row in self.competitors if row.is_own), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "company": {
                "name": self.company.name,
                "url": self.company.url,
                "industry": self.company.industry,
                "description": self.company.description,
            },
            "competitors": [row.to_dict() for row in self.competitors],
            "providerComparison": [row.to_dict() for row in self.provider_comparison],
            "prompts": [
                {
                    "id": prompt.id,
                    "prompt": prompt.text,
                    "category": prompt.category.value,
                    "source": prompt.source.value,
                    "persona": prompt.persona,
                }
                for prompt in self.prompts
            ],
            "responses": [_response_dict(response) for response in self.responses],
            "totalMentions": self.total_mentions,
        }


def _response_dict(response: ProviderResult) -> Dict[str, Any]:
    return {
        "promptId": response.prompt_id,
        "provider": response.provider,
        "status": response.status.value,
        "answerText": response.answer_text,
        "mentions": [
            {
                "entityName": mention.entity_name,
                "mentioned": mention.mentioned,
                "position": mention.position,
                "sentiment": mention.sentiment.value,
            }
            for mention in response.mentions
        ],
        "failure": response.failure.value if response.failure else None,
        "error": response.error,
    }


__all__ = [
    "AnalysisProgress",
    "AnalysisResult",
    "AnalysisStage",
    "CellStatus",
    "Company",
    "Competitor",
    "CompetitorRanking",
    "EntityMention",
    "FailureKind",
    "Persona",
    "Prompt",
    "PromptCategory",
    "PromptSource",
    "ProviderComparisonRow",
    "ProviderResult",
    "ProviderStats",
    "ResultStatus",
    "Sentiment",
    "TaskCompletion",
]
