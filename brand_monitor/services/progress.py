from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Dict, Generic, List, Optional, Sequence, TypeVar

from ..models import (
    AnalysisProgress,
    AnalysisStage,
    CellStatus,
    CompetitorRanking,
    Prompt,
    TaskCompletion,
)
from .provider_config import ProviderConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


_ALLOWED_TRANSITIONS = {
    CellStatus.PENDING: (CellStatus.RUNNING,),
    CellStatus.RUNNING: (CellStatus.COMPLETED, CellStatus.FAILED),
    CellStatus.COMPLETED: (),
    CellStatus.FAILED: (),
}


class InvalidCellTransition(RuntimeError):
    """Raised when a cell is moved out of its pending -> running -> terminal order."""


class CompletionMatrix:
    """Prompt x provider status table addressed by integer indices."""

    def __init__(self, prompt_count: int, provider_count: int) -> None:
        self.prompt_count = prompt_count
        self.provider_count = provider_count
        self._cells: List[CellStatus] = [CellStatus.PENDING] * (prompt_count * provider_count)
        self._completed = 0
        self._failed = 0

    def _offset(self, prompt_index: int, provider_index: int) -> int:
        if not (0 <= prompt_index < self.prompt_count and 0 <= provider_index < self.provider_count):
            raise IndexError(f"Cell ({prompt_index}, {provider_index}) is outside the matrix")
        return prompt_index * self.provider_count + provider_index

    def get(self, prompt_index: int, provider_index: int) -> CellStatus:
        return self._cells[self._offset(prompt_index, provider_index)]

    def transition(self, prompt_index: int, provider_index: int, status: CellStatus) -> None:
        offset = self._offset(prompt_index, provider_index)
        current = self._cells[offset]
        if status not in _ALLOWED_TRANSITIONS[current]:
            raise InvalidCellTransition(
                f"Cell ({prompt_index}, {provider_index}) cannot move from {current.value} to {status.value}"
            )
        self._cells[offset] = status
        if status is CellStatus.COMPLETED:
            self._completed += 1
        elif status is CellStatus.FAILED:
            self._failed += 1

    @property
    def total(self) -> int:
        return len(self._cells)

    @property
    def completed(self) -> int:
        return self._completed

    @property
    def failed(self) -> int:
        return self._failed

    @property
    def terminal(self) -> int:
        return self._completed + self._failed

    @property
    def is_complete(self) -> bool:
        return self.terminal == self.total

    @property
    def progress(self) -> int:
        if not self.total:
            return 100
        return int(self.terminal * 100 / self.total)


class LatestValueChannel(Generic[T]):
    """Single-consumer channel that holds at most one unread value.

    Publishing never blocks: an unread value is replaced by the newer one.
    The last value published before close() is always delivered.
    """

    def __init__(self) -> None:
        self._value: Optional[T] = None
        self._has_value = False
        self._closed = False
        self._ready = asyncio.Event()
        self.published = 0
        self.dropped = 0

    def publish(self, value: T) -> None:
        if self._closed:
            raise RuntimeError("Cannot publish to a closed channel")
        if self._has_value:
            self.dropped += 1
            logger.debug("Progress snapshot superseded before it was read (%d dropped)", self.dropped)
        self._value = value
        self._has_value = True
        self.published += 1
        self._ready.set()

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    @property
    def closed(self) -> bool:
        return self._closed

    async def get(self) -> Optional[T]:
        """Return the latest unread value, or None once closed and drained."""

        while not self._has_value and not self._closed:
            self._ready.clear()
            await self._ready.wait()

        if not self._has_value:
            return None

        value = self._value
        self._value = None
        self._has_value = False
        return value

    async def __aiter__(self) -> AsyncIterator[T]:
        while True:
            value = await self.get()
            if value is None:
                return
            yield value


class ProgressAggregator:
    """Apply cell events to the completion matrix and publish progress snapshots."""

    def __init__(
        self,
        prompts: Sequence[Prompt],
        providers: Sequence[ProviderConfig],
        *,
        generation: int = 0,
        competitors: Sequence[str] = (),
        channel: Optional[LatestValueChannel[AnalysisProgress]] = None,
    ) -> None:
        self.prompts = list(prompts)
        self.providers = list(providers)
        self.generation = generation
        self.competitors = tuple(competitors)
        self.channel: LatestValueChannel[AnalysisProgress] = channel or LatestValueChannel()
        self.matrix = CompletionMatrix(len(self.prompts), len(self.providers))
        self._prompts_seen: Dict[int, str] = {}
        self._latest: Optional[AnalysisProgress] = None

    @property
    def latest(self) -> Optional[AnalysisProgress]:
        return self._latest

    def start(self) -> AnalysisProgress:
        return self._publish(
            AnalysisStage.ANALYZING,
            f"Analyzing {len(self.prompts)} prompts across {len(self.providers)} providers",
            (),
        )

    def apply(
        self,
        event: TaskCompletion,
        partial_results: Sequence[CompetitorRanking] = (),
    ) -> Optional[AnalysisProgress]:
        """Record one cell transition. Events from another generation are ignored."""

        if event.generation != self.generation:
            logger.debug(
                "Discarding event for generation %d (current %d)", event.generation, self.generation
            )
            return None

        self.matrix.transition(event.prompt_index, event.provider_index, event.status)
        if event.status is CellStatus.RUNNING:
            self._prompts_seen.setdefault(event.prompt_index, self.prompts[event.prompt_index].text)

        provider = self.providers[event.provider_index].name
        if self.matrix.is_complete:
            message = "All providers finished, calculating visibility scores"
        elif event.status is CellStatus.RUNNING:
            message = f"Querying {provider}"
        elif event.status is CellStatus.COMPLETED:
            message = f"{provider} answered prompt {event.prompt_index + 1} of {len(self.prompts)}"
        else:
            message = f"{provider} failed on prompt {event.prompt_index + 1} of {len(self.prompts)}"

        return self._publish(AnalysisStage.ANALYZING, message, partial_results)

    def finish(
        self,
        results: Sequence[CompetitorRanking],
        message: str = "Analysis complete",
    ) -> AnalysisProgress:
        """Publish the final 100% snapshot and close the channel.

        Only valid once every cell is terminal.
        """

        if not self.matrix.is_complete:
            raise RuntimeError(
                f"Cannot finish with {self.matrix.total - self.matrix.terminal} cells still open"
            )
        snapshot = self._publish(AnalysisStage.RESULTS, message, results)
        self.channel.close()
        return snapshot

    def _publish(
        self,
        stage: AnalysisStage,
        message: str,
        partial_results: Sequence[CompetitorRanking],
    ) -> AnalysisProgress:
        snapshot = AnalysisProgress(
            stage=stage,
            progress=self.matrix.progress,
            message=message,
            generation=self.generation,
            completed_cells=self.matrix.completed,
            failed_cells=self.matrix.failed,
            total_cells=self.matrix.total,
            competitors=self.competitors,
            prompts=tuple(self._prompts_seen[index] for index in sorted(self._prompts_seen)),
            partial_results=tuple(partial_results),
        )
        self._latest = snapshot
        self.channel.publish(snapshot)
        return snapshot


__all__ = [
    "CompletionMatrix",
    "InvalidCellTransition",
    "LatestValueChannel",
    "ProgressAggregator",
]
