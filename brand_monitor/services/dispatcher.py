from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, List, Optional, Sequence

from ..config import Settings, get_settings
from ..models import (
    CellStatus,
    Company,
    Competitor,
    FailureKind,
    Prompt,
    ProviderResult,
    ResultStatus,
    TaskCompletion,
)
from .provider_client import (
    ProviderClient,
    ProviderClientProtocol,
    ProviderFailure,
    classify_exception,
)
from .provider_config import ProviderConfig

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ProviderConfig], ProviderClientProtocol]


class CancellationToken:
    """Dispatch-scoped cooperative cancellation signal."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


def expected_entities(company: Company, competitors: Sequence[Competitor]) -> List[str]:
    """Names every provider is asked to look out for, own brand first."""

    names: List[str] = []
    seen = set()
    for name in [company.name, *(c.name for c in competitors)]:
        key = name.strip().casefold()
        if key and key not in seen:
            seen.add(key)
            names.append(name.strip())
    return names


class PromptDispatcher:
    """Fan prompts out to every provider, one task per (prompt, provider) cell.

    Each provider gets its own semaphore sized from its request budget and all
    tasks also share a global semaphore. Events are yielded as cells move
    pending -> running -> completed/failed; cross-cell ordering is arbitrary.
    """

    def __init__(
        self,
        client_factory: Optional[ClientFactory] = None,
        settings: Optional[Settings] = None,
        timeout_seconds: Optional[float] = None,
        max_concurrency: Optional[int] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.client_factory: ClientFactory = client_factory or (
            lambda provider: ProviderClient(provider, settings=self.settings)
        )
        self.timeout_seconds = timeout_seconds or self.settings.provider_timeout_seconds
        self.max_concurrency = max(1, max_concurrency or self.settings.max_concurrency)

    async def dispatch(
        self,
        company: Company,
        competitors: Sequence[Competitor],
        prompts: Sequence[Prompt],
        providers: Sequence[ProviderConfig],
        *,
        generation: int = 0,
        cancellation: Optional[CancellationToken] = None,
    ) -> AsyncIterator[TaskCompletion]:
        cancellation = cancellation or CancellationToken()
        entities = expected_entities(company, competitors)
        clients = [self.client_factory(provider) for provider in providers]
        queue: "asyncio.Queue[TaskCompletion]" = asyncio.Queue()

        global_slots = asyncio.Semaphore(self.max_concurrency)
        provider_slots = [
            asyncio.Semaphore(provider.concurrency_limit(self.settings.provider_max_concurrency))
            for provider in providers
        ]

        def emit(prompt_index: int, provider_index: int, status: CellStatus,
                 result: Optional[ProviderResult] = None) -> None:
            queue.put_nowait(
                TaskCompletion(
                    generation=generation,
                    prompt_index=prompt_index,
                    provider_index=provider_index,
                    status=status,
                    result=result,
                )
            )

        def skip(prompt_index: int, provider_index: int) -> None:
            # Never-started cells still pass through running so every cell
            # follows the same pending -> running -> terminal sequence.
            emit(prompt_index, provider_index, CellStatus.RUNNING)
            emit(
                prompt_index,
                provider_index,
                CellStatus.FAILED,
                ProviderResult(
                    prompt_id=prompts[prompt_index].id,
                    provider=providers[provider_index].name,
                    status=ResultStatus.FAILED,
                    failure=FailureKind.CANCELLED,
                    error="Dispatch cancelled before the task started",
                ),
            )

        async def run_cell(prompt_index: int, provider_index: int) -> None:
            if cancellation.cancelled:
                skip(prompt_index, provider_index)
                return

            async with provider_slots[provider_index], global_slots:
                if cancellation.cancelled:
                    skip(prompt_index, provider_index)
                    return

                emit(prompt_index, provider_index, CellStatus.RUNNING)
                result = await self._execute(
                    clients[provider_index],
                    providers[provider_index],
                    prompts[prompt_index],
                    entities,
                )
                status = CellStatus.COMPLETED if result.succeeded else CellStatus.FAILED
                emit(prompt_index, provider_index, status, result)

        total = len(prompts) * len(providers)
        logger.info(
            "Dispatching %d prompts x %d providers (%d cells, generation %d)",
            len(prompts),
            len(providers),
            total,
            generation,
        )
        tasks = [
            asyncio.create_task(run_cell(prompt_index, provider_index))
            for prompt_index in range(len(prompts))
            for provider_index in range(len(providers))
        ]

        terminal = 0
        try:
            while terminal < total:
                event = await queue.get()
                if event.status.is_terminal:
                    terminal += 1
                yield event
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def _execute(
        self,
        client: ProviderClientProtocol,
        provider: ProviderConfig,
        prompt: Prompt,
        entities: Sequence[str],
    ) -> ProviderResult:
        try:
            return await asyncio.wait_for(client.query(prompt, entities), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %.1fs on prompt %s", provider.name, self.timeout_seconds, prompt.id)
            return ProviderResult(
                prompt_id=prompt.id,
                provider=provider.name,
                status=ResultStatus.TIMED_OUT,
                failure=FailureKind.TIMEOUT,
                error=f"Timed out after {self.timeout_seconds:.1f}s",
            )
        except Exception as exc:  # noqa: BLE001 - every failure becomes a failed cell
            failure = exc if isinstance(exc, ProviderFailure) else classify_exception(exc)
            logger.warning("%s failed on prompt %s (%s): %s", provider.name, prompt.id, failure.kind.value, exc)
            status = ResultStatus.TIMED_OUT if failure.kind is FailureKind.TIMEOUT else ResultStatus.FAILED
            return ProviderResult(
                prompt_id=prompt.id,
                provider=provider.name,
                status=status,
                failure=failure.kind,
                error=str(failure),
            )


__all__ = ["CancellationToken", "PromptDispatcher", "expected_entities"]
