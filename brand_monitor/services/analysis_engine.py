from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..models import (
    AnalysisProgress,
    AnalysisResult,
    CellStatus,
    Company,
    Competitor,
    Prompt,
    ProviderResult,
    TaskCompletion,
)
from .competitor_scoring import CompetitorScorer
from .dispatcher import CancellationToken, PromptDispatcher
from .progress import LatestValueChannel, ProgressAggregator
from .provider_config import ProviderConfig
from .reconciliation import ReconciledScores, ScoreReconciler

logger = logging.getLogger(__name__)


class ValidationError(ValueError):
    """Raised when an analysis cannot start because its inputs are incomplete."""


def validate_analysis_input(
    company: Optional[Company],
    competitors: Sequence[Competitor],
    prompts: Sequence[Prompt],
    providers: Sequence[ProviderConfig],
) -> None:
    if company is None or not company.name.strip():
        raise ValidationError("A company is required to start an analysis.")
    if not any(prompt.text.strip() for prompt in prompts):
        raise ValidationError("At least one prompt is required to start an analysis.")
    if not any(competitor.is_own for competitor in competitors):
        raise ValidationError(f"{company.name} must be present in the competitor list.")
    if not providers:
        raise ValidationError("No AI providers are enabled.")


class AnalysisRun:
    """One dispatch of prompts x providers, tagged with a generation id.

    Events are only folded while `is_current(generation)` holds; once the
    owning controller moves on, late completions are counted and dropped.
    """

    def __init__(
        self,
        company: Company,
        competitors: Sequence[Competitor],
        prompts: Sequence[Prompt],
        providers: Sequence[ProviderConfig],
        *,
        generation: int = 0,
        is_current: Optional[Callable[[int], bool]] = None,
        channel: Optional[LatestValueChannel[AnalysisProgress]] = None,
    ) -> None:
        self.company = company
        self.competitors = tuple(competitors)
        self.prompts = tuple(prompts)
        self.providers = tuple(providers)
        self.generation = generation
        self.is_current = is_current or (lambda generation: True)
        self.cancellation = CancellationToken()
        self.scorer = CompetitorScorer()
        for provider in self.providers:
            self.scorer.register_provider(provider.name)
        self.aggregator = ProgressAggregator(
            self.prompts,
            self.providers,
            generation=generation,
            competitors=[competitor.name for competitor in self.competitors],
            channel=channel,
        )
        self.responses: Dict[Tuple[int, int], ProviderResult] = {}
        self.discarded_events = 0

    @property
    def channel(self) -> LatestValueChannel[AnalysisProgress]:
        return self.aggregator.channel

    @property
    def stale(self) -> bool:
        return not self.is_current(self.generation)

    def cancel(self) -> None:
        self.cancellation.cancel()

    def reconcile(self, competitors: Optional[Sequence[Competitor]] = None) -> ReconciledScores:
        reconciler = ScoreReconciler(competitors if competitors is not None else self.competitors)
        return reconciler.reconcile(
            self.scorer.raw_rankings(),
            self.scorer.raw_provider_stats(),
            providers=[provider.name for provider in self.providers],
        )

    async def handle(self, event: TaskCompletion) -> Optional[AnalysisProgress]:
        """Apply one dispatcher event. Returns the published snapshot, if any."""

        if event.generation != self.generation or self.stale:
            self.discarded_events += 1
            logger.debug(
                "Discarding stale %s event for cell (%d, %d) of generation %d",
                event.status.value,
                event.prompt_index,
                event.provider_index,
                event.generation,
            )
            return None

        if event.status.is_terminal and event.result is not None:
            self.responses[(event.prompt_index, event.provider_index)] = event.result
            await self.scorer.fold(event.result)

        partial = ()
        if event.status is not CellStatus.RUNNING:
            partial = self.reconcile().rankings
        return self.aggregator.apply(event, partial)

    def build_result(self, competitors: Optional[Sequence[Competitor]] = None) -> AnalysisResult:
        scores = self.reconcile(competitors)
        return AnalysisResult(
            company=self.company,
            competitors=scores.rankings,
            provider_comparison=scores.provider_comparison,
            prompts=self.prompts,
            responses=tuple(self.responses[key] for key in sorted(self.responses)),
            total_mentions=scores.total_mentions,
        )


class BrandVisibilityEngine:
    """Runs an analysis: dispatch, progress aggregation, scoring, reconciliation."""

    def __init__(self, dispatcher: Optional[PromptDispatcher] = None) -> None:
        self.dispatcher = dispatcher or PromptDispatcher()

    def create_run(
        self,
        company: Company,
        competitors: Sequence[Competitor],
        prompts: Sequence[Prompt],
        providers: Sequence[ProviderConfig],
        *,
        generation: int = 0,
        is_current: Optional[Callable[[int], bool]] = None,
        channel: Optional[LatestValueChannel[AnalysisProgress]] = None,
    ) -> AnalysisRun:
        validate_analysis_input(company, competitors, prompts, providers)
        prompts = [prompt for prompt in prompts if prompt.text.strip()]
        return AnalysisRun(
            company,
            competitors,
            prompts,
            providers,
            generation=generation,
            is_current=is_current,
            channel=channel,
        )

    async def execute(self, run: AnalysisRun) -> Optional[AnalysisResult]:
        """Drive a run to completion.

        Returns None when the run went stale (e.g. the session was reset)
        before it finished; otherwise the reconciled result, even if every
        cell failed.
        """

        run.aggregator.start()
        events = self.dispatcher.dispatch(
            run.company,
            run.competitors,
            run.prompts,
            run.providers,
            generation=run.generation,
            cancellation=run.cancellation,
        )
        async for event in events:
            await run.handle(event)

        if run.stale:
            logger.info(
                "Analysis generation %d finished after reset; %d late events discarded",
                run.generation,
                run.discarded_events,
            )
            run.channel.close()
            return None

        result = run.build_result()
        failed = run.aggregator.matrix.failed
        if result.total_mentions == 0:
            message = "Analysis complete: no brand mentions were found"
        elif failed:
            message = f"Analysis complete ({failed} of {run.aggregator.matrix.total} provider calls failed)"
        else:
            message = "Analysis complete"
        run.aggregator.finish(result.competitors, message)
        logger.info(
            "Analysis generation %d complete: %d mentions, %d failed cells",
            run.generation,
            result.total_mentions,
            failed,
        )
        return result

    async def analyze(
        self,
        company: Company,
        competitors: Sequence[Competitor],
        prompts: Sequence[Prompt],
        providers: Sequence[ProviderConfig],
        channel: Optional[LatestValueChannel[AnalysisProgress]] = None,
    ) -> AnalysisResult:
        run = self.create_run(company, competitors, prompts, providers, channel=channel)
        result = await self.execute(run)
        if result is None:
            raise RuntimeError("Analysis was discarded before it completed.")
        return result


__all__ = [
    "AnalysisRun",
    "BrandVisibilityEngine",
    "ValidationError",
    "validate_analysis_input",
]
