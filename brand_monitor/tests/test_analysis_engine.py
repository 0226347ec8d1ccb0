import asyncio

import pytest

from brand_monitor.models import AnalysisStage, Competitor, Prompt, ResultStatus
from brand_monitor.services.analysis_engine import BrandVisibilityEngine, ValidationError
from brand_monitor.services.progress import LatestValueChannel
from brand_monitor.services.provider_client import ProviderTimeout


def test_three_of_four_mentions_scores_seventy_five(make_dispatcher, company, competitors, prompts, providers):
    outcomes = {
        ("p1", "openai"): ["Firecrawl"],
        ("p1", "google"): ["Firecrawl", "Acme"],
        ("p2", "openai"): ["Firecrawl"],
        ("p2", "google"): [],
    }
    engine = BrandVisibilityEngine(make_dispatcher(outcomes))

    result = asyncio.run(engine.analyze(company, competitors, prompts, providers))

    assert [(r.name, r.mentions, r.visibility_score) for r in result.competitors] == [
        ("Firecrawl", 3, 75.0),
        ("Acme", 1, 25.0),
    ]
    assert result.own_ranking.name == "Firecrawl"
    assert result.total_mentions == 4
    assert len(result.responses) == 4
    assert [row.competitor for row in result.provider_comparison] == ["Firecrawl", "Acme"]
    assert result.provider_comparison[0].providers["OpenAI"].visibility_score == 100.0
    assert result.provider_comparison[0].providers["Google"].visibility_score == 50.0


def test_every_provider_timing_out_still_produces_results(make_dispatcher, company, competitors, prompts, providers):
    outcomes = {
        ("p1", "openai"): ProviderTimeout(),
        ("p1", "google"): ProviderTimeout(),
        ("p2", "openai"): ProviderTimeout(),
        ("p2", "google"): ProviderTimeout(),
    }
    engine = BrandVisibilityEngine(make_dispatcher(outcomes))
    channel = LatestValueChannel()

    result = asyncio.run(engine.analyze(company, competitors, prompts, providers, channel=channel))

    assert result.total_mentions == 0
    assert all(row.visibility_score == 0.0 for row in result.competitors)
    assert all(response.status is ResultStatus.TIMED_OUT for response in result.responses)
    final = asyncio.run(channel.get())
    assert final.stage is AnalysisStage.RESULTS
    assert final.progress == 100
    assert final.failed_cells == 4
    assert "no brand mentions" in final.message


def test_progress_snapshots_carry_partial_rankings(make_dispatcher, company, competitors, prompts, providers):
    outcomes = {
        ("p1", "openai"): ["Firecrawl"],
        ("p1", "google"): ["Acme"],
        ("p2", "openai"): ["Firecrawl"],
        ("p2", "google"): ["Firecrawl"],
    }
    engine = BrandVisibilityEngine(make_dispatcher(outcomes))

    async def scenario():
        run = engine.create_run(company, competitors, prompts, providers)
        snapshots = []

        async def reader():
            async for snapshot in run.channel:
                snapshots.append(snapshot)

        reader_task = asyncio.create_task(reader())
        result = await engine.execute(run)
        await reader_task
        return run, result, snapshots

    run, result, snapshots = asyncio.run(scenario())

    progress = [snapshot.progress for snapshot in snapshots]
    assert progress == sorted(progress)
    assert snapshots[-1].stage is AnalysisStage.RESULTS
    assert snapshots[-1].partial_results == result.competitors
    assert run.scorer.total_mentions == 4
    assert run.channel.published == run.channel.dropped + len(snapshots)


def test_blank_prompts_are_dropped_before_dispatch(make_dispatcher, company, competitors, providers):
    engine = BrandVisibilityEngine(make_dispatcher({}))

    run = engine.create_run(
        company,
        competitors,
        [Prompt(id="p1", text="best scraper"), Prompt(id="p2", text="   ")],
        providers,
    )

    assert [prompt.id for prompt in run.prompts] == ["p1"]
    assert run.aggregator.matrix.total == 2


@pytest.mark.parametrize(
    "competitor_list, prompt_list, provider_count, message",
    [
        ([Competitor(name="Firecrawl", is_own=True)], [], 2, "prompt"),
        ([Competitor(name="Firecrawl", is_own=True)], [Prompt(id="p", text=" ")], 2, "prompt"),
        ([Competitor(name="Acme")], [Prompt(id="p", text="q")], 2, "Firecrawl"),
        ([Competitor(name="Firecrawl", is_own=True)], [Prompt(id="p", text="q")], 0, "providers"),
    ],
)
def test_create_run_validates_inputs(
    make_dispatcher, company, providers, competitor_list, prompt_list, provider_count, message
):
    engine = BrandVisibilityEngine(make_dispatcher({}))

    with pytest.raises(ValidationError) as excinfo:
        engine.create_run(company, competitor_list, prompt_list, providers[:provider_count])

    assert message in str(excinfo.value)


def test_reconciling_again_with_edited_competitors(make_dispatcher, company, prompts, providers):
    outcomes = {
        ("p1", "openai"): ["Firecrawl", "acme.com"],
        ("p1", "google"): ["Acme Corp"],
        ("p2", "openai"): [],
        ("p2", "google"): ["Firecrawl"],
    }
    competitors = [Competitor(name="Firecrawl", url="firecrawl.dev", is_own=True)]
    engine = BrandVisibilityEngine(make_dispatcher(outcomes))

    async def scenario():
        run = engine.create_run(company, competitors, prompts, providers)
        await engine.execute(run)
        return run

    run = asyncio.run(scenario())
    before = run.build_result()
    after = run.build_result(competitors + [Competitor(name="Acme Corp", url="acme.com")])

    assert {row.name for row in before.competitors} == {"Firecrawl", "acme.com", "Acme Corp"}
    assert [(row.name, row.mentions) for row in after.competitors] == [("Firecrawl", 2), ("Acme Corp", 2)]
