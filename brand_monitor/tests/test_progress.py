import asyncio

import pytest

from brand_monitor.models import AnalysisStage, CellStatus, Prompt, TaskCompletion
from brand_monitor.services.progress import (
    CompletionMatrix,
    InvalidCellTransition,
    LatestValueChannel,
    ProgressAggregator,
)
from brand_monitor.services.provider_config import PROVIDER_CONFIGS


def test_matrix_counts_terminal_cells():
    matrix = CompletionMatrix(2, 2)

    matrix.transition(0, 0, CellStatus.RUNNING)
    matrix.transition(0, 0, CellStatus.COMPLETED)
    matrix.transition(1, 1, CellStatus.RUNNING)
    matrix.transition(1, 1, CellStatus.FAILED)

    assert matrix.completed == 1
    assert matrix.failed == 1
    assert matrix.progress == 50
    assert matrix.get(1, 1) is CellStatus.FAILED


@pytest.mark.parametrize(
    "steps",
    [
        [CellStatus.COMPLETED],
        [CellStatus.RUNNING, CellStatus.RUNNING],
        [CellStatus.RUNNING, CellStatus.COMPLETED, CellStatus.FAILED],
        [CellStatus.RUNNING, CellStatus.FAILED, CellStatus.RUNNING],
        [CellStatus.PENDING],
    ],
)
def test_matrix_rejects_out_of_order_transitions(steps):
    matrix = CompletionMatrix(1, 1)

    with pytest.raises(InvalidCellTransition):
        for status in steps:
            matrix.transition(0, 0, status)


def test_matrix_rejects_cells_outside_bounds():
    matrix = CompletionMatrix(1, 2)

    with pytest.raises(IndexError):
        matrix.transition(1, 0, CellStatus.RUNNING)


def test_empty_matrix_is_complete():
    matrix = CompletionMatrix(0, 3)

    assert matrix.is_complete
    assert matrix.progress == 100


def test_channel_keeps_only_latest_unread_value():
    async def scenario():
        channel = LatestValueChannel()
        channel.publish(1)
        channel.publish(2)
        channel.publish(3)
        first = await channel.get()
        channel.publish(4)
        channel.close()
        second = await channel.get()
        third = await channel.get()
        return channel, [first, second, third]

    channel, values = asyncio.run(scenario())

    assert values == [3, 4, None]
    assert channel.published == 4
    assert channel.dropped == 2


def test_channel_delivers_final_value_to_a_waiting_reader():
    async def scenario():
        channel = LatestValueChannel()
        received = []

        async def reader():
            async for value in channel:
                received.append(value)

        task = asyncio.create_task(reader())
        await asyncio.sleep(0)
        channel.publish("running")
        await asyncio.sleep(0)
        channel.publish("done")
        channel.close()
        await asyncio.wait_for(task, timeout=1)
        return received

    received = asyncio.run(scenario())

    assert received[-1] == "done"


def test_publish_after_close_is_rejected():
    channel = LatestValueChannel()
    channel.close()

    with pytest.raises(RuntimeError):
        channel.publish("late")


def _aggregator(generation=0):
    prompts = [Prompt(id="p1", text="best scraper"), Prompt(id="p2", text="scraper alternatives")]
    providers = [PROVIDER_CONFIGS["openai"], PROVIDER_CONFIGS["google"]]
    return ProgressAggregator(prompts, providers, generation=generation, competitors=["Firecrawl", "Acme"])


def _event(prompt_index, provider_index, status, generation=0):
    return TaskCompletion(
        generation=generation,
        prompt_index=prompt_index,
        provider_index=provider_index,
        status=status,
    )


def test_aggregator_progress_is_monotonic_and_reaches_one_hundred():
    aggregator = _aggregator()
    seen = [aggregator.start().progress]

    for prompt_index in range(2):
        for provider_index in range(2):
            for status in (CellStatus.RUNNING, CellStatus.COMPLETED):
                seen.append(aggregator.apply(_event(prompt_index, provider_index, status)).progress)

    assert seen == sorted(seen)
    assert seen[-1] == 100
    assert aggregator.latest.prompts == ("best scraper", "scraper alternatives")
    assert aggregator.latest.competitors == ("Firecrawl", "Acme")


def test_aggregator_ignores_other_generations():
    aggregator = _aggregator(generation=2)

    assert aggregator.apply(_event(0, 0, CellStatus.RUNNING, generation=1)) is None
    assert aggregator.matrix.get(0, 0) is CellStatus.PENDING


def test_finish_requires_every_cell_to_be_terminal():
    aggregator = _aggregator()
    aggregator.apply(_event(0, 0, CellStatus.RUNNING))

    with pytest.raises(RuntimeError):
        aggregator.finish([])


def test_finish_publishes_results_and_closes_the_channel():
    aggregator = _aggregator()
    for prompt_index in range(2):
        for provider_index in range(2):
            aggregator.apply(_event(prompt_index, provider_index, CellStatus.RUNNING))
            aggregator.apply(_event(prompt_index, provider_index, CellStatus.FAILED))

    snapshot = aggregator.finish([], "done")

    assert snapshot.stage is AnalysisStage.RESULTS
    assert snapshot.progress == 100
    assert snapshot.failed_cells == 4
    assert aggregator.channel.closed
