"""Stage machine for a brand monitor session.

idle -> scraping -> identifying_competitors -> selecting_competitors ->
selecting_personas -> generating_prompts -> analyzing -> results

Any stage can fall into `failed`; retry() re-enters the stage that failed.
reset() returns to idle from anywhere and invalidates the running analysis.
Each transition replaces the session snapshot with a new immutable one and
notifies subscribers; nothing outside the controller mutates session state.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from ..models import (
    AnalysisProgress,
    AnalysisResult,
    AnalysisStage,
    Company,
    Competitor,
    Persona,
    Prompt,
    PromptCategory,
    PromptSource,
)
from .analysis_engine import AnalysisRun, BrandVisibilityEngine, ValidationError
from .collaborators import (
    CollaboratorError,
    CompanyScraper,
    CompetitorIdentifier,
    PersonaGenerator,
    PromptGenerator,
)
from .progress import LatestValueChannel
from .provider_config import ProviderConfig, resolve_providers
from .reconciliation import canonical_name_key
from .url_utils import is_valid_url_format, normalize_domain, validate_competitor_url

logger = logging.getLogger(__name__)

Listener = Callable[["StageSnapshot"], None]


class StageTransitionError(RuntimeError):
    """Raised when a transition is not allowed from the current stage."""


@dataclass(frozen=True)
class StageSnapshot:
    stage: AnalysisStage = AnalysisStage.IDLE
    generation: int = 0
    url: Optional[str] = None
    company: Optional[Company] = None
    competitors: Tuple[Competitor, ...] = ()
    personas: Tuple[Persona, ...] = ()
    prompts: Tuple[Prompt, ...] = ()
    progress: Optional[AnalysisProgress] = None
    result: Optional[AnalysisResult] = None
    error: Optional[str] = None
    failed_stage: Optional[AnalysisStage] = None


def ensure_own_competitor(company: Company, competitors: Iterable[Competitor]) -> List[Competitor]:
    """Put the analyzed company first and drop duplicates of it or of each other."""

    own_url = validate_competitor_url(company.url)
    merged = [Competitor(name=company.name.strip(), url=own_url, is_own=True)]
    seen_names = {canonical_name_key(company.name)}
    seen_domains = {normalize_domain(own_url)} if own_url else set()

    for competitor in competitors:
        name = competitor.name.strip()
        key = canonical_name_key(name)
        url = validate_competitor_url(competitor.url)
        domain = normalize_domain(url)
        if not key or key in seen_names or (domain and domain in seen_domains):
            continue
        seen_names.add(key)
        if domain:
            seen_domains.add(domain)
        merged.append(replace(competitor, name=name, url=url, is_own=False))
    return merged


def merge_prompts(prompts: Sequence[Prompt], custom_texts: Iterable[str] = ()) -> List[Prompt]:
    """Append user prompts, skipping blanks and texts already present."""

    merged = list(prompts)
    seen = {prompt.text.strip() for prompt in prompts}
    for text in custom_texts:
        cleaned = (text or "").strip()
        if not cleaned or cleaned in seen:
            continue
        seen.add(cleaned)
        merged.append(
            Prompt(
                id=f"custom-{uuid.uuid4().hex[:8]}",
                text=cleaned,
                category=PromptCategory.CUSTOM,
                source=PromptSource.USER,
            )
        )
    return merged


class AnalysisStageController:
    def __init__(
        self,
        *,
        scraper: CompanyScraper,
        competitor_identifier: CompetitorIdentifier,
        persona_generator: PersonaGenerator,
        prompt_generator: PromptGenerator,
        engine: Optional[BrandVisibilityEngine] = None,
        providers: Optional[Sequence[ProviderConfig]] = None,
    ) -> None:
        self._scraper = scraper
        self._competitor_identifier = competitor_identifier
        self._persona_generator = persona_generator
        self._prompt_generator = prompt_generator
        self._engine = engine or BrandVisibilityEngine()
        self._providers = list(providers) if providers is not None else resolve_providers()
        self._snapshot = StageSnapshot()
        self._listeners: List[Listener] = []
        self._active_run: Optional[AnalysisRun] = None
        self._last_run: Optional[AnalysisRun] = None

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> StageSnapshot:
        return self._snapshot

    @property
    def stage(self) -> AnalysisStage:
        return self._snapshot.stage

    @property
    def active_run(self) -> Optional[AnalysisRun]:
        return self._active_run

    @property
    def progress(self) -> Optional[AnalysisProgress]:
        if self._active_run is not None:
            return self._active_run.aggregator.latest
        return self._snapshot.progress

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _set(self, snapshot: StageSnapshot) -> StageSnapshot:
        previous = self._snapshot
        self._snapshot = snapshot
        if snapshot.stage is not previous.stage:
            logger.info("Stage %s -> %s", previous.stage.value, snapshot.stage.value)
        for listener in list(self._listeners):
            listener(snapshot)
        return snapshot

    def _transition(self, **changes) -> StageSnapshot:
        return self._set(replace(self._snapshot, **changes))

    def _enter(self, stage: AnalysisStage, **changes) -> StageSnapshot:
        return self._transition(stage=stage, error=None, failed_stage=None, **changes)

    def _require(self, *stages: AnalysisStage) -> None:
        if self._snapshot.stage not in stages:
            allowed = ", ".join(stage.value for stage in stages)
            raise StageTransitionError(
                f"Cannot do that while {self._snapshot.stage.value}; expected one of: {allowed}"
            )

    def _is_current(self, generation: int) -> bool:
        return generation == self._snapshot.generation

    def _fail(self, stage: AnalysisStage, exc: Exception) -> StageSnapshot:
        logger.warning("Stage %s failed: %s", stage.value, exc)
        return self._transition(stage=AnalysisStage.FAILED, error=str(exc), failed_stage=stage)

    # ------------------------------------------------------------------
    # Scrape and identify competitors
    # ------------------------------------------------------------------

    async def start(self, url: str) -> StageSnapshot:
        self._require(AnalysisStage.IDLE)
        if not is_valid_url_format(url):
            raise ValidationError(
                "Please enter a valid URL format (e.g., example.com or https://example.com)"
            )
        self._transition(url=url.strip())
        return await self._scrape()

    async def _scrape(self) -> StageSnapshot:
        generation = self._snapshot.generation
        self._enter(AnalysisStage.SCRAPING, company=None)
        try:
            company = await self._scraper.scrape(self._snapshot.url or "")
        except Exception as exc:  # noqa: BLE001 - collaborator failures are varied
            if not self._is_current(generation):
                return self._snapshot
            return self._fail(AnalysisStage.SCRAPING, CollaboratorError(f"Failed to load website data: {exc}"))

        if not self._is_current(generation):
            return self._snapshot
        self._transition(company=company)
        return await self._identify_competitors()

    async def _identify_competitors(self) -> StageSnapshot:
        generation = self._snapshot.generation
        company = self._snapshot.company
        if company is None:
            raise StageTransitionError("Competitor identification requires a scraped company.")

        self._enter(AnalysisStage.IDENTIFYING_COMPETITORS)
        try:
            found = await self._competitor_identifier.identify(company)
        except Exception as exc:  # noqa: BLE001
            if not self._is_current(generation):
                return self._snapshot
            return self._fail(
                AnalysisStage.IDENTIFYING_COMPETITORS,
                CollaboratorError(f"Failed to identify competitors: {exc}"),
            )

        if not self._is_current(generation):
            return self._snapshot
        competitors = ensure_own_competitor(company, found)
        logger.info("Identified %d competitors for %s", len(competitors) - 1, company.name)
        return self._enter(AnalysisStage.SELECTING_COMPETITORS, competitors=tuple(competitors))

    # ------------------------------------------------------------------
    # Competitor selection
    # ------------------------------------------------------------------

    def add_competitor(self, name: str, url: Optional[str] = None) -> StageSnapshot:
        self._require(AnalysisStage.SELECTING_COMPETITORS)
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValidationError("Competitor name is required.")
        key = canonical_name_key(cleaned)
        if any(canonical_name_key(c.name) == key for c in self._snapshot.competitors):
            raise ValidationError(f"{cleaned} is already in the competitor list.")

        competitor = Competitor(name=cleaned, url=validate_competitor_url(url))
        return self._transition(competitors=self._snapshot.competitors + (competitor,))

    def remove_competitor(self, index: int) -> StageSnapshot:
        self._require(AnalysisStage.SELECTING_COMPETITORS)
        competitors = list(self._snapshot.competitors)
        if not 0 <= index < len(competitors):
            raise ValidationError(f"No competitor at position {index}.")
        if competitors[index].is_own:
            raise ValidationError("The analyzed company cannot be removed.")
        del competitors[index]
        return self._transition(competitors=tuple(competitors))

    async def confirm_competitors(self) -> StageSnapshot:
        self._require(AnalysisStage.SELECTING_COMPETITORS)
        if not any(competitor.is_own for competitor in self._snapshot.competitors):
            raise StageTransitionError("The analyzed company must be in the competitor list.")
        return await self._generate_personas()

    # ------------------------------------------------------------------
    # Personas
    # ------------------------------------------------------------------

    async def _generate_personas(self) -> StageSnapshot:
        generation = self._snapshot.generation
        self._enter(AnalysisStage.SELECTING_PERSONAS, personas=())
        try:
            personas = await self._persona_generator.generate_personas(
                self._snapshot.company, self._snapshot.competitors
            )
        except Exception as exc:  # noqa: BLE001
            if not self._is_current(generation):
                return self._snapshot
            return self._fail(
                AnalysisStage.SELECTING_PERSONAS,
                CollaboratorError(f"Failed to generate personas: {exc}"),
            )

        if not self._is_current(generation):
            return self._snapshot
        return self._transition(personas=tuple(personas))

    def add_persona(self, persona: Persona) -> StageSnapshot:
        self._require(AnalysisStage.SELECTING_PERSONAS)
        if not persona.role.strip():
            raise ValidationError("Persona role is required.")
        return self._transition(personas=self._snapshot.personas + (persona,))

    def remove_persona(self, role: str) -> StageSnapshot:
        self._require(AnalysisStage.SELECTING_PERSONAS)
        personas = tuple(p for p in self._snapshot.personas if p.role != role)
        return self._transition(personas=personas)

    async def confirm_personas(self) -> StageSnapshot:
        self._require(AnalysisStage.SELECTING_PERSONAS)
        return await self._generate_prompts()

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    async def _generate_prompts(self) -> StageSnapshot:
        generation = self._snapshot.generation
        self._enter(AnalysisStage.GENERATING_PROMPTS, prompts=())
        try:
            prompts = await self._prompt_generator.generate_prompts(
                self._snapshot.company,
                self._snapshot.competitors,
                self._snapshot.personas,
            )
        except Exception as exc:  # noqa: BLE001
            if not self._is_current(generation):
                return self._snapshot
            return self._fail(
                AnalysisStage.GENERATING_PROMPTS,
                CollaboratorError(f"Failed to generate prompts: {exc}"),
            )

        if not self._is_current(generation):
            return self._snapshot
        unique: List[Prompt] = []
        seen = set()
        for prompt in prompts:
            text = prompt.text.strip()
            if text and text not in seen:
                seen.add(text)
                unique.append(prompt)
        return self._transition(prompts=tuple(unique))

    def add_custom_prompt(self, text: str) -> StageSnapshot:
        self._require(AnalysisStage.GENERATING_PROMPTS)
        if not (text or "").strip():
            raise ValidationError("Prompt text is required.")
        return self._transition(prompts=tuple(merge_prompts(self._snapshot.prompts, [text])))

    def remove_prompt(self, prompt_id: str) -> StageSnapshot:
        self._require(AnalysisStage.GENERATING_PROMPTS)
        return self._transition(prompts=tuple(p for p in self._snapshot.prompts if p.id != prompt_id))

    def back(self) -> StageSnapshot:
        stage = self._snapshot.stage
        if stage is AnalysisStage.SELECTING_PERSONAS:
            return self._enter(AnalysisStage.SELECTING_COMPETITORS)
        if stage is AnalysisStage.GENERATING_PROMPTS:
            return self._enter(AnalysisStage.SELECTING_PERSONAS)
        raise StageTransitionError(f"Cannot go back from {stage.value}")

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def analyze(
        self, channel: Optional[LatestValueChannel[AnalysisProgress]] = None
    ) -> StageSnapshot:
        if self._active_run is not None or self._snapshot.stage is AnalysisStage.ANALYZING:
            raise StageTransitionError("An analysis is already running for this session.")
        self._require(AnalysisStage.GENERATING_PROMPTS)

        snapshot = self._snapshot
        run = self._engine.create_run(
            snapshot.company,
            snapshot.competitors,
            snapshot.prompts,
            self._providers,
            generation=snapshot.generation,
            is_current=self._is_current,
            channel=channel,
        )
        self._active_run = run
        self._enter(AnalysisStage.ANALYZING, progress=None, result=None)

        try:
            result = await self._engine.execute(run)
        except Exception as exc:  # noqa: BLE001
            if not self._is_current(run.generation):
                return self._snapshot
            return self._fail(AnalysisStage.ANALYZING, exc)
        finally:
            if self._active_run is run:
                self._active_run = None

        if result is None or not self._is_current(run.generation):
            return self._snapshot

        self._last_run = run
        if result.own_ranking is None:
            return self._fail(
                AnalysisStage.ANALYZING,
                StageTransitionError(f"{snapshot.company.name} is missing from the ranking."),
            )
        return self._enter(AnalysisStage.RESULTS, result=result, progress=run.aggregator.latest)

    def reconcile_competitors(self, competitors: Sequence[Competitor]) -> StageSnapshot:
        """Re-run reconciliation after the user edits competitor identities."""

        self._require(AnalysisStage.RESULTS)
        if self._last_run is None:
            raise StageTransitionError("No finished analysis to reconcile.")
        if not any(competitor.is_own for competitor in competitors):
            raise ValidationError("The analyzed company must be in the competitor list.")

        result = self._last_run.build_result(competitors)
        return self._transition(competitors=tuple(competitors), result=result)

    # ------------------------------------------------------------------
    # Retry and reset
    # ------------------------------------------------------------------

    async def retry(
        self, channel: Optional[LatestValueChannel[AnalysisProgress]] = None
    ) -> StageSnapshot:
        self._require(AnalysisStage.FAILED)
        failed_stage = self._snapshot.failed_stage
        logger.info("Retrying stage %s", failed_stage.value if failed_stage else "unknown")

        if failed_stage is AnalysisStage.SCRAPING:
            return await self._scrape()
        if failed_stage is AnalysisStage.IDENTIFYING_COMPETITORS:
            return await self._identify_competitors()
        if failed_stage is AnalysisStage.SELECTING_PERSONAS:
            return await self._generate_personas()
        if failed_stage is AnalysisStage.GENERATING_PROMPTS:
            return await self._generate_prompts()
        if failed_stage is AnalysisStage.ANALYZING:
            self._enter(AnalysisStage.GENERATING_PROMPTS)
            return await self.analyze(channel)
        raise StageTransitionError("Nothing to retry; reset the session instead.")

    def reset(self) -> StageSnapshot:
        """Cancel any running analysis and return to idle with a new generation."""

        run = self._active_run
        if run is not None:
            run.cancel()
            logger.info("Cancelled analysis generation %d on reset", run.generation)
        self._active_run = None
        self._last_run = None
        return self._set(StageSnapshot(generation=self._snapshot.generation + 1))


__all__ = [
    "AnalysisStageController",
    "StageSnapshot",
    "StageTransitionError",
    "ensure_own_competitor",
    "merge_prompts",
]
