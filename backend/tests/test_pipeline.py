import pytest

from agents.pipeline import ChapterPipeline
from core.errors import GenerationError, QualityRejection
from fakes import FakeCritic, make_context, prose, story_llm
from models import EngineConfig, PipelineState, RetryExhaustedPolicy


class RecordingReporter:
    def __init__(self):
        self.steps = []

    async def checkpoint(self, step, progress):
        self.steps.append((step, progress))


@pytest.mark.asyncio
async def test_first_passing_attempt_is_accepted():
    llm = story_llm()
    critic = FakeCritic([82])
    result = await ChapterPipeline(llm, EngineConfig(), critic=critic).run(make_context())

    assert result.accepted_attempt == 1
    assert len(result.attempts) == 1
    assert result.below_threshold is False
    assert result.states == [PipelineState.PLANNING, PipelineState.WRITING, PipelineState.CRITIQUING, PipelineState.ACCEPTED]
    assert llm.count("plan_chapter") == 1


@pytest.mark.asyncio
async def test_below_below_above_runs_three_attempts():
    llm = story_llm()
    critic = FakeCritic([40, 55, 81])
    recorded = []

    async def on_attempt(attempt):
        recorded.append(attempt.attempt)

    result = await ChapterPipeline(llm, EngineConfig(), critic=critic, on_attempt=on_attempt).run(make_context())

    assert recorded == [1, 2, 3]
    assert result.accepted_attempt == 3
    assert result.report.score == 81
    assert [a.report.score for a in result.attempts] == [40, 55, 81]
    assert result.states.count(PipelineState.RETRYING) == 2
    # the planner runs once; rewrites reuse the outline
    assert llm.count("plan_chapter") == 1
    rewrites = [r["rewrite_instructions"] for r in llm.requests if r.get("task") == "write_scene"]
    assert rewrites[0] == []
    assert rewrites[-1] == ["[major] Draft scored 55. Fix: Sharpen the confrontation"]


@pytest.mark.asyncio
async def test_retry_revises_previous_draft_scene_by_scene():
    counter = {"n": 0}

    def numbered_scene(request):
        counter["n"] += 1
        return f"Draft text number {counter['n']} ends here. " + prose(150)

    llm = story_llm(write_scene=numbered_scene)
    result = await ChapterPipeline(llm, EngineConfig(), critic=FakeCritic([40, 81])).run(make_context())

    scene_requests = [r for r in llm.requests if r.get("task") == "write_scene"]
    first_pass, second_pass = scene_requests[:4], scene_requests[4:]
    assert result.accepted_attempt == 2
    assert len(second_pass) == 4
    assert all("draft_to_revise" not in r for r in first_pass)
    assert second_pass[0]["draft_to_revise"].startswith("Draft text number 1 ends here.")
    assert second_pass[3]["draft_to_revise"].startswith("Draft text number 4 ends here.")


@pytest.mark.asyncio
async def test_exhausted_budget_accepts_best_attempt():
    critic = FakeCritic([61, 64, 50])
    result = await ChapterPipeline(story_llm(), EngineConfig(), critic=critic).run(make_context())

    assert len(result.attempts) == 3
    assert result.accepted_attempt == 2
    assert result.report.score == 64
    assert result.below_threshold is True
    assert result.states[-1] == PipelineState.ACCEPTED


@pytest.mark.asyncio
async def test_equal_scores_prefer_latest_attempt():
    critic = FakeCritic([60, 60])
    result = await ChapterPipeline(story_llm(), EngineConfig(max_attempts=2), critic=critic).run(make_context())
    assert result.accepted_attempt == 2


@pytest.mark.asyncio
async def test_reject_policy_raises_generation_error():
    config = EngineConfig(retry_exhausted_policy=RetryExhaustedPolicy.REJECT)
    critic = FakeCritic([30, 40, 50])

    with pytest.raises(GenerationError) as excinfo:
        await ChapterPipeline(story_llm(), config, critic=critic).run(make_context())

    assert "best score 50" in excinfo.value.message
    assert isinstance(excinfo.value.__cause__, QualityRejection)
    assert excinfo.value.__cause__.attempts == 3


@pytest.mark.asyncio
async def test_progress_checkpoints_are_monotonic():
    reporter = RecordingReporter()
    await ChapterPipeline(story_llm(), EngineConfig(), critic=FakeCritic([10, 20, 90])).run(make_context(), reporter)

    progress = [p for _, p in reporter.steps]
    assert progress == sorted(progress)
    assert reporter.steps[0] == ("Planning chapter", 15)
    assert max(progress) < 95


@pytest.mark.asyncio
async def test_real_critic_accepts_clean_chapter():
    llm = story_llm()
    result = await ChapterPipeline(llm, EngineConfig()).run(make_context())

    assert result.accepted_attempt == 1
    assert result.report.llm_score == 9.0
    assert result.report.passed
    assert llm.count("review_chapter") == 1
