"""Data models for the brand visibility analysis engine."""

from .analysis import (
    AnalysisProgress,
    AnalysisResult,
    AnalysisStage,
    CellStatus,
    Company,
    Competitor,
    CompetitorRanking,
    EntityMention,
    FailureKind,
    Persona,
    Prompt,
    PromptCategory,
    PromptSource,
    ProviderComparisonRow,
    ProviderResult,
    ProviderStats,
    ResultStatus,
    Sentiment,
    TaskCompletion,
)
from .api import AnalyzeRequest

__all__ = [
    "AnalysisProgress",
    "AnalysisResult",
    "AnalysisStage",
    "AnalyzeRequest",
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
