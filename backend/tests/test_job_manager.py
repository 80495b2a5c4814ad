import asyncio
import threading
from datetime import timedelta
from uuid import uuid4

import pytest

from core.errors import ConflictError, NotFoundError, ValidationError
from memory import StoryStore
from models import EngineConfig, JobStatus, Project, ProjectStatus, utcnow
from services.job_manager import JobManager
from services.scheduler import start_eligible_jobs
from fakes import FakeCritic, pipeline_factory, prose, story_llm


def _make_store(tmp_path) -> StoryStore:
    return StoryStore(str(tmp_path / "chapterforge.db"))


def _make_project(store: StoryStore, **overrides) -> Project:
    data = {
        "id": str(uuid4()),
        "title": "Ashes of the Sect",
        "genre": "xianxia",
        "protagonist_name": "Kaelan Voss",
        "target_chapter_length": 600,
    }
    data.update(overrides)
    return store.create_project(Project(**data))


def _manager(store, llm, **kwargs) -> JobManager:
    config = kwargs.pop("config", None) or EngineConfig(target_word_count=600)
    return JobManager(store, llm, config, **kwargs)


@pytest.mark.asyncio
async def test_job_completes_and_persists_one_chapter(tmp_path):
    store = _make_store(tmp_path)
    project = _make_project(store)
    manager = _manager(store, story_llm())

    job_id = await manager.create(project.id)
    await manager.runner.wait(job_id)

    job = await manager.get(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100
    assert job.step_message == "Completed"
    assert job.chapter_id is not None
    assert store.count_chapters(project.id) == 1
    assert store.get_project(project.id).current_chapter == 1
    chapter = store.get_chapter(project.id, 1)
    assert chapter.title == "Storm over Greywater"
    # quality modules run after persistence
    assert len(store.list_chapter_summaries(project.id, 2, 5)) == 1


@pytest.mark.asyncio
async def test_project_model_and_temperature_drive_generation(tmp_path):
    store = _make_store(tmp_path)
    project = _make_project(store, ai_model="deepseek-chat", temperature=0.4)
    llm = story_llm()
    manager = _manager(store, llm)

    job_id = await manager.create(project.id)
    await manager.runner.wait(job_id)

    assert (await manager.get(job_id)).status == JobStatus.COMPLETED
    agent_calls = [opts for opts in llm.options if opts["task"] in ("plan_chapter", "write_scene", "review_chapter")]
    assert {opts["task"] for opts in agent_calls} == {"plan_chapter", "write_scene", "review_chapter"}
    assert {opts["model"] for opts in agent_calls} == {"deepseek-chat"}
    scene_calls = [opts for opts in agent_calls if opts["task"] == "write_scene"]
    assert {opts["temperature"] for opts in scene_calls} == {0.4}


@pytest.mark.asyncio
async def test_retries_are_recorded_and_one_chapter_written(tmp_path):
    store = _make_store(tmp_path)
    project = _make_project(store)
    llm = story_llm()
    config = EngineConfig(target_word_count=600)
    manager = _manager(
        store,
        llm,
        config=config,
        pipeline_factory=pipeline_factory(llm, config, critic=FakeCritic([40, 55, 81])),
    )

    job_id = await manager.create(project.id)
    await manager.runner.wait(job_id)

    job = await manager.get(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 3
    attempts = store.list_attempts(job_id)
    assert [row["score"] for row in attempts] == [40, 55, 81]
    assert [row["accepted"] for row in attempts] == [False, False, True]
    assert store.count_chapters(project.id) == 1


@pytest.mark.asyncio
async def test_stale_job_fails_on_read(tmp_path):
    store = _make_store(tmp_path)
    project = _make_project(store)
    started = utcnow() - timedelta(minutes=16)
    store.insert_pending_job("job-1", project.id, started)
    manager = _manager(store, story_llm())

    job = await manager.get("job-1")

    assert job.status == JobStatus.FAILED
    assert job.error_message == "JobTimeoutError: Timeout after 15 minutes"
    assert store.get_active_job(project.id) is None


@pytest.mark.asyncio
async def test_recent_job_survives_watchdog(tmp_path):
    store = _make_store(tmp_path)
    project = _make_project(store)
    store.insert_pending_job("job-1", project.id, utcnow() - timedelta(minutes=14))
    manager = _manager(store, story_llm())

    assert (await manager.get("job-1")).status == JobStatus.PENDING
    assert await manager.sweep_stale() == []


@pytest.mark.asyncio
async def test_stale_job_no_longer_blocks_create(tmp_path):
    store = _make_store(tmp_path)
    project = _make_project(store)
    store.insert_pending_job("job-1", project.id, utcnow() - timedelta(minutes=30))
    manager = _manager(store, story_llm())

    job_id = await manager.create(project.id)
    await manager.runner.wait(job_id)

    assert store.get_job("job-1").status == JobStatus.FAILED
    assert (await manager.get(job_id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_unknown_job_is_not_found(tmp_path):
    manager = _manager(_make_store(tmp_path), story_llm())
    with pytest.raises(NotFoundError):
        await manager.get("nope")
    with pytest.raises(NotFoundError):
        await manager.stop("nope")


@pytest.mark.asyncio
async def test_stop_on_terminal_job_is_noop(tmp_path):
    store = _make_store(tmp_path)
    project = _make_project(store)
    manager = _manager(store, story_llm())
    job_id = await manager.create(project.id)
    await manager.runner.wait(job_id)

    job = await manager.stop(job_id)

    assert job.status == JobStatus.COMPLETED
    assert store.count_chapters(project.id) == 1


@pytest.mark.asyncio
async def test_stop_mid_generation_persists_nothing(tmp_path):
    store = _make_store(tmp_path)
    project = _make_project(store)
    entered = threading.Event()
    release = threading.Event()
    text = prose(160)

    def slow_scene(request):
        entered.set()
        release.wait(5)
        return text

    llm = story_llm(write_scene=slow_scene)
    manager = _manager(store, llm)

    job_id = await manager.create(project.id)
    assert await asyncio.to_thread(entered.wait, 5)
    stopped = await manager.stop(job_id)
    release.set()
    await manager.runner.wait(job_id)

    assert stopped.status == JobStatus.STOPPED
    job = await manager.get(job_id)
    assert job.status == JobStatus.STOPPED
    assert job.error_message is None
    assert store.count_chapters(project.id) == 0
    assert store.get_project(project.id).current_chapter == 0
    assert llm.count("review_chapter") == 0


@pytest.mark.asyncio
async def test_provider_error_fails_job(tmp_path):
    store = _make_store(tmp_path)
    project = _make_project(store)
    manager = _manager(store, story_llm(write_scene=RuntimeError("upstream 503")))

    job_id = await manager.create(project.id)
    await manager.runner.wait(job_id)

    job = await manager.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_message.startswith("GenerationError:")
    assert "upstream 503" in job.error_message
    assert store.count_chapters(project.id) == 0
    assert store.get_active_job(project.id) is None


@pytest.mark.asyncio
async def test_quality_module_crash_does_not_fail_job(tmp_path):
    store = _make_store(tmp_path)
    project = _make_project(store)

    async def broken_quality(*_args, **_kwargs):
        raise RuntimeError("summary store offline")

    manager = _manager(store, story_llm(), quality_runner=broken_quality)
    job_id = await manager.create(project.id)
    await manager.runner.wait(job_id)

    assert (await manager.get(job_id)).status == JobStatus.COMPLETED
    assert store.count_chapters(project.id) == 1


@pytest.mark.asyncio
async def test_concurrent_creates_yield_one_job(tmp_path):
    store = _make_store(tmp_path)
    project = _make_project(store)
    manager = _manager(store, story_llm())

    results = await asyncio.gather(
        manager.create(project.id),
        manager.create(project.id),
        return_exceptions=True,
    )
    await manager.runner.wait_idle()

    job_ids = [r for r in results if isinstance(r, str)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(job_ids) == 1
    assert len(conflicts) == 1
    assert [job.id for job in store.list_jobs(project.id)] == job_ids


@pytest.mark.asyncio
async def test_create_requires_active_project(tmp_path):
    store = _make_store(tmp_path)
    paused = _make_project(store, status=ProjectStatus.PAUSED)
    manager = _manager(store, story_llm())

    with pytest.raises(ValidationError):
        await manager.create(paused.id)
    with pytest.raises(ValidationError):
        await manager.create("missing")
    assert store.list_jobs(paused.id) == []


@pytest.mark.asyncio
async def test_orphaned_jobs_recovered_on_startup(tmp_path):
    store = _make_store(tmp_path)
    project = _make_project(store)
    store.insert_pending_job("job-1", project.id, utcnow() - timedelta(minutes=20))
    manager = _manager(store, story_llm())

    assert await manager.recover_orphans() == ["job-1"]

    job = store.get_job("job-1")
    assert job.status == JobStatus.FAILED
    assert job.error_message == "Interrupted by restart"


@pytest.mark.asyncio
async def test_recovery_leaves_other_process_jobs_running(tmp_path):
    store = _make_store(tmp_path)
    project = _make_project(store)
    entered = threading.Event()
    release = threading.Event()

    def blocked_scene(request):
        entered.set()
        release.wait(5)
        return prose(160)

    server = _manager(store, story_llm(write_scene=blocked_scene))
    job_id = await server.create(project.id)
    assert await asyncio.to_thread(entered.wait, 5)

    worker = _manager(_make_store(tmp_path), story_llm())
    try:
        assert await worker.recover_orphans() == []
        assert store.get_job(job_id).status == JobStatus.RUNNING
    finally:
        release.set()
    await server.runner.wait(job_id)

    assert store.get_job(job_id).status == JobStatus.COMPLETED
    assert store.count_chapters(project.id) == 1


@pytest.mark.asyncio
async def test_queued_job_is_not_timed_out_while_waiting_for_a_slot(tmp_path):
    store = _make_store(tmp_path)
    first = _make_project(store)
    second = _make_project(store)
    now = [utcnow()]
    entered = threading.Event()
    release = threading.Event()

    def blocked_scene(request):
        entered.set()
        release.wait(5)
        return prose(160)

    manager = _manager(
        store,
        story_llm(write_scene=blocked_scene),
        config=EngineConfig(target_word_count=600, max_concurrent_jobs=1),
        clock=lambda: now[0],
    )
    first_job = await manager.create(first.id)
    assert await asyncio.to_thread(entered.wait, 5)
    second_job = await manager.create(second.id)

    now[0] = now[0] + timedelta(minutes=16)
    try:
        assert manager.runner.is_queued(second_job)
        assert (await manager.get(second_job)).status == JobStatus.PENDING
    finally:
        release.set()
    await manager.runner.wait_idle()

    assert store.get_job(first_job).status == JobStatus.COMPLETED
    assert (await manager.get(second_job)).status == JobStatus.COMPLETED
    assert store.count_chapters(second.id) == 1


@pytest.mark.asyncio
async def test_scheduler_starts_eligible_projects(tmp_path):
    store = _make_store(tmp_path)
    ready = _make_project(store)
    busy = _make_project(store)
    finished = _make_project(store, current_chapter=3, total_planned_chapters=3)
    _make_project(store, status=ProjectStatus.PAUSED)
    store.insert_pending_job("busy-job", busy.id, utcnow())
    manager = _manager(store, story_llm())

    started, skipped = await start_eligible_jobs(manager, store)
    await manager.runner.wait_idle()

    assert [item["project_id"] for item in started] == [ready.id]
    assert {item["project_id"] for item in skipped} == {busy.id, finished.id}
    assert store.get_project(ready.id).current_chapter == 1


@pytest.mark.asyncio
async def test_shutdown_fails_in_flight_jobs(tmp_path):
    store = _make_store(tmp_path)
    project = _make_project(store)
    entered = threading.Event()
    release = threading.Event()

    def blocked_scene(request):
        entered.set()
        release.wait(5)
        return prose(160)

    manager = _manager(store, story_llm(write_scene=blocked_scene))
    job_id = await manager.create(project.id)
    assert await asyncio.to_thread(entered.wait, 5)

    try:
        assert await manager.shutdown() == [job_id]
    finally:
        release.set()

    job = store.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "Interrupted by shutdown"
    assert store.count_chapters(project.id) == 0
