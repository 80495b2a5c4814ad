from uuid import uuid4

import pytest

from core.errors import ValidationError
from memory import StoryStore
from models import (
    ArcPlan,
    ArcPlanThreads,
    Chapter,
    ChapterSummary,
    CharacterState,
    JobStatus,
    Project,
    VoiceFingerprint,
    utcnow,
)
from services.context_assembler import ContextAssembler, summarize_payload


def _make_store(tmp_path) -> StoryStore:
    return StoryStore(str(tmp_path / "chapterforge.db"))


def _write_chapters(store: StoryStore, project_id: str, count: int):
    for number in range(1, count + 1):
        job_id = str(uuid4())
        store.insert_pending_job(job_id, project_id, utcnow())
        store.transition_job(job_id, [JobStatus.PENDING], JobStatus.RUNNING, utcnow())
        chapter = Chapter(
            id=str(uuid4()),
            project_id=project_id,
            chapter_number=number,
            title=f"Chapter title {number}",
            content=f"Body of chapter {number}. Kaelan walked on.",
            word_count=7,
        )
        assert store.complete_job_with_chapter(job_id, chapter, 1, utcnow())
        store.upsert_chapter_summary(
            ChapterSummary(
                project_id=project_id,
                chapter_number=number,
                title=chapter.title,
                summary=f"summary {number}",
                opening_sentence=f"opening {number}",
                cliffhanger=f"cliffhanger {number}",
            )
        )


@pytest.mark.asyncio
async def test_context_never_contains_future_chapters(tmp_path):
    store = _make_store(tmp_path)
    project = store.create_project(Project(id="p1", title="Ashes", protagonist_name="Kaelan Voss"))
    _write_chapters(store, project.id, 5)
    store.add_character_states(
        [
            CharacterState(project_id="p1", character_name="Sella", chapter_number=2, status="alive"),
            CharacterState(project_id="p1", character_name="Sella", chapter_number=4, status="dead"),
            CharacterState(project_id="p1", character_name="Brannoc", chapter_number=1, status="dead"),
        ]
    )
    store.add_voice_fingerprint(VoiceFingerprint(project_id="p1", chapter_number=4, avg_sentence_length=12.0))

    payload = await ContextAssembler(store).assemble("p1", 3)

    assert [c.chapter_number for c in payload.recent_chapters] == [1, 2]
    assert payload.previous_titles == ["Chapter title 1", "Chapter title 2"]
    assert payload.recent_openings == ["opening 1", "opening 2"]
    assert payload.recent_cliffhangers == ["cliffhanger 1", "cliffhanger 2"]
    assert payload.dead_character_names == ["Brannoc"]
    assert sorted(payload.known_character_names) == ["Brannoc", "Sella"]
    assert "voice" in payload.absent_layers
    assert "chapter 3" not in " ".join(c.content for c in payload.recent_chapters)


@pytest.mark.asyncio
async def test_recent_chapters_capped_at_three(tmp_path):
    store = _make_store(tmp_path)
    store.create_project(Project(id="p1", title="Ashes"))
    _write_chapters(store, "p1", 5)

    payload = await ContextAssembler(store).assemble("p1", 6)

    assert [c.chapter_number for c in payload.recent_chapters] == [3, 4, 5]
    assert len(payload.previous_titles) == 5
    assert payload.style_guidelines.startswith("## Writing style guidelines")


@pytest.mark.asyncio
async def test_fresh_project_reports_absent_layers(tmp_path):
    store = _make_store(tmp_path)
    store.create_project(Project(id="p1", title="Ashes", genre="xianxia"))

    payload = await ContextAssembler(store).assemble("p1", 1)

    assert payload.recent_chapters == []
    assert payload.has_story_bible is False
    for name in ("story_bible", "recent_chapters", "titles", "characters", "synopsis", "arc_plan", "voice", "finale"):
        assert payload.is_absent(name)
    assert payload.style_guidelines.startswith("## Writing style guidelines")
    assert summarize_payload(payload)["absent_layers"] == payload.absent_layers


@pytest.mark.asyncio
async def test_failing_layer_degrades_instead_of_aborting(tmp_path, monkeypatch):
    store = _make_store(tmp_path)
    store.create_project(Project(id="p1", title="Ashes", story_bible="Sects rule the valley."))

    def broken(*_args, **_kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(store, "get_synopsis", broken)
    payload = await ContextAssembler(store).assemble("p1", 1)

    assert payload.is_absent("synopsis")
    assert payload.has_story_bible is True
    assert payload.story_bible == "Sects rule the valley."


@pytest.mark.asyncio
async def test_arc_plan_brief_and_finale_guidance(tmp_path):
    store = _make_store(tmp_path)
    store.create_project(Project(id="p1", title="Ashes", total_planned_chapters=30))
    store.upsert_arc_plan(
        ArcPlan(
            project_id="p1",
            arc_number=1,
            chapter_briefs={15: "Kaelan confronts the elder."},
            threads=ArcPlanThreads(threads_to_advance=["the sealed archive"]),
            is_finale_arc=True,
        )
    )

    payload = await ContextAssembler(store).assemble("p1", 15)

    assert payload.chapter_brief == "Kaelan confronts the elder."
    assert payload.arc_plan_threads.threads_to_advance == ["the sealed archive"]
    assert "Final stretch" in payload.finale_guidance
    assert "finale arc" in payload.finale_guidance


@pytest.mark.asyncio
async def test_missing_project_is_validation_error(tmp_path):
    store = _make_store(tmp_path)
    with pytest.raises(ValidationError):
        await ContextAssembler(store).assemble("missing", 1)
