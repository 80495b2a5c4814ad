import json
from uuid import uuid4

import pytest

from core.llm_client import create_llm_client
from memory import StoryStore
from models import (
    Chapter,
    ChapterOutline,
    CharacterState,
    ForeshadowingHint,
    ForeshadowingStatus,
    Project,
    SceneOutline,
)
from services.quality_modules import QUALITY_MODULES, QualityModuleRunner, run_quality_modules, voice_metrics
from fakes import ScriptedLLM, prose


def _setup(tmp_path, **project_overrides):
    store = StoryStore(str(tmp_path / "chapterforge.db"))
    data = {"id": "p1", "title": "Ashes of the Sect", "genre": "xianxia", "protagonist_name": "Kaelan Voss"}
    data.update(project_overrides)
    project = store.create_project(Project(**data))
    return store, project


def _chapter(number: int, content: str = None) -> Chapter:
    text = content or prose(300)
    return Chapter(
        id=str(uuid4()),
        project_id="p1",
        chapter_number=number,
        title=f"Chapter title {number}",
        content=text,
        word_count=len(text.split()),
    )


@pytest.mark.asyncio
async def test_offline_backend_still_writes_summary(tmp_path):
    store, _ = _setup(tmp_path)
    offline = create_llm_client("openai", api_key="")

    outcomes = await run_quality_modules(store, offline, "p1", _chapter(1))

    assert list(outcomes) == list(QUALITY_MODULES)
    assert outcomes["summary"] == "ok"
    assert outcomes["synopsis"] == "skipped"
    assert outcomes["arc_plan"] == "skipped"
    summaries = store.list_chapter_summaries("p1", 2, 5)
    assert summaries[0].opening_sentence == "Kaelan Voss pressed his palm to the cold iron gate"
    assert summaries[0].summary


@pytest.mark.asyncio
async def test_summary_records_character_states(tmp_path):
    store, _ = _setup(tmp_path)
    llm = ScriptedLLM(
        {
            "summary": json.dumps(
                {
                    "summary": "Kaelan breaks into the archive.",
                    "opening_sentence": "The gate was cold.",
                    "cliffhanger": "The vault opened.",
                    "characters": [
                        {"name": "Sella", "status": "dead"},
                        {"name": "Mira", "status": "vanished"},
                        {"status": "alive"},
                    ],
                }
            )
        },
        default="{}",
    )

    outcomes = await QualityModuleRunner(store, llm).run("p1", _chapter(1))

    assert outcomes["summary"] == "ok"
    states = {s.character_name: s.status for s in store.list_latest_character_states("p1", 2, 200)}
    assert states == {"Sella": "dead", "Mira": "unknown"}
    assert store.list_chapter_summaries("p1", 2, 5)[0].cliffhanger == "The vault opened."


@pytest.mark.asyncio
async def test_synopsis_refreshed_every_fifth_chapter(tmp_path):
    store, _ = _setup(tmp_path)
    llm = ScriptedLLM(
        {
            "synopsis": json.dumps(
                {
                    "synopsis": "Kaelan has infiltrated the sect.",
                    "mc_current_state": "Wounded, hiding in the archive",
                    "active_allies": ["Mira"],
                    "active_enemies": ["Elder Hsu"],
                    "open_threads": ["the sealed archive"],
                }
            )
        },
        default="{}",
    )

    outcomes = await QualityModuleRunner(store, llm).run("p1", _chapter(5))

    assert outcomes["synopsis"] == "ok"
    synopsis = store.get_synopsis("p1")
    assert synopsis.last_updated_chapter == 5
    assert synopsis.structured.open_threads == ["the sealed archive"]
    assert llm.count("synopsis") == 1


@pytest.mark.asyncio
async def test_arc_boundary_plans_next_arc(tmp_path):
    store, _ = _setup(tmp_path)
    store.upsert_foreshadowing(
        ForeshadowingHint(
            id="h1",
            project_id="p1",
            description="cracked seal",
            plant_chapter=12,
            payoff_chapter=18,
            status=ForeshadowingStatus.PLANTED,
        )
    )
    llm = ScriptedLLM(
        {
            "arc_plan": json.dumps(
                {
                    "theme": "Betrayal",
                    "chapter_briefs": {"21": "Kaelan flees the sect.", "45": "out of range"},
                    "threads_to_advance": ["the sealed archive"],
                    "new_threads": ["a second heir"],
                }
            ),
            "foreshadowing": json.dumps(
                {"hints": [{"description": "a missing ledger page", "plant_chapter": 3, "payoff_chapter": 30}]}
            ),
        },
        default="{}",
    )

    outcomes = await QualityModuleRunner(store, llm).run("p1", _chapter(20))

    assert outcomes["arc_plan"] == "ok"
    plan = store.get_arc_plan("p1", 2)
    assert plan.chapter_briefs == {21: "Kaelan flees the sect."}
    assert plan.is_finale_arc is False
    assert plan.threads.new_threads == ["a second heir"]

    assert store.list_foreshadowing("p1", [ForeshadowingStatus.PAID_OFF])[0].id == "h1"
    planned = store.list_foreshadowing("p1", [ForeshadowingStatus.PLANNED])
    assert [(h.plant_chapter, h.payoff_chapter) for h in planned] == [(21, 30)]

    # no usable beats from the backend: default blueprint for chapters 21-40
    blueprint = store.get_pacing_blueprint("p1", 2)
    assert [beat.chapter for beat in blueprint.beats] == list(range(21, 41))
    assert blueprint.beats[-2].intensity == 10


@pytest.mark.asyncio
async def test_finale_arc_opens_no_new_threads(tmp_path):
    store, _ = _setup(tmp_path, total_planned_chapters=30)
    llm = ScriptedLLM(
        {"arc_plan": json.dumps({"chapter_briefs": ["Last stand"], "new_threads": ["a second heir"]})},
        default="{}",
    )

    await QualityModuleRunner(store, llm).run("p1", _chapter(20))

    plan = store.get_arc_plan("p1", 2)
    assert plan.is_finale_arc is True
    assert plan.threads.new_threads == []
    assert plan.chapter_briefs == {21: "Last stand"}


@pytest.mark.asyncio
async def test_failing_module_does_not_stop_the_rest(tmp_path):
    store, _ = _setup(tmp_path)
    llm = ScriptedLLM(
        {
            "summary": RuntimeError("rate limited"),
            "synopsis": json.dumps({"synopsis": "Still moving."}),
        },
        default="{}",
    )

    outcomes = await QualityModuleRunner(store, llm).run("p1", _chapter(5))

    assert outcomes["summary"] == "failed"
    assert outcomes["synopsis"] == "ok"
    assert set(outcomes) == set(QUALITY_MODULES)


@pytest.mark.asyncio
async def test_voice_fingerprint_needs_two_chapters(tmp_path):
    store, _ = _setup(tmp_path)
    llm = ScriptedLLM({"voice": "Clipped, tense, present-leaning."}, default="{}")

    outcomes = await QualityModuleRunner(store, llm).run("p1", _chapter(5))

    assert outcomes["voice_fingerprint"] == "skipped"
    assert store.get_latest_voice_fingerprint("p1") is None


def test_voice_metrics():
    texts = ['"Run," Mira said. The gate held fast.', 'The gate held fast. "Again," he said.']
    metrics = voice_metrics(texts)

    assert metrics["avg_sentence_length"] > 0
    assert 0 < metrics["dialogue_ratio"] < 1
    assert "the gate held" in metrics["signature_phrases"]
    assert voice_metrics([]) == {"avg_sentence_length": 0.0, "dialogue_ratio": 0.0, "signature_phrases": []}


def _states(*names, chapter=1):
    return [CharacterState(project_id="p1", character_name=name, chapter_number=chapter) for name in names]


@pytest.mark.asyncio
async def test_character_arcs_wait_for_grace_period(tmp_path):
    store, project = _setup(tmp_path)
    store.add_character_states(_states("Mira"))
    runner = QualityModuleRunner(store, ScriptedLLM({"character_arc": "Mira grows bolder."}))

    assert await runner._module_character_arcs(project, _chapter(2), None) is False
    assert store.list_character_arcs("p1") == []


@pytest.mark.asyncio
async def test_character_arcs_count_appearances_and_summarize_one_per_chapter(tmp_path):
    store, project = _setup(tmp_path)
    store.add_character_states(_states("Mira", "Orin", "Sella"))
    llm = ScriptedLLM({"character_arc": lambda request: f"{request['character']} has changed."})
    runner = QualityModuleRunner(store, llm)
    text = prose(300) + "\n\nSella watched from the wall."

    for number in (3, 4, 5):
        assert await runner._module_character_arcs(project, _chapter(number, text), None) is True
    # a rerun of the same chapter does not count twice
    await runner._module_character_arcs(project, _chapter(5, text), None)

    arcs = {arc.character_name: arc for arc in store.list_character_arcs("p1")}
    assert set(arcs) == {"Mira", "Sella"}
    assert arcs["Mira"].appearances == 3
    assert arcs["Sella"].first_seen_chapter == 3
    assert arcs["Sella"].last_seen_chapter == 5
    assert arcs["Sella"].arc_summary == "Sella has changed."
    assert arcs["Mira"].arc_summary == ""
    assert llm.count("character_arc") == 1

    await runner._module_character_arcs(project, _chapter(6, text), None)

    arcs = {arc.character_name: arc for arc in store.list_character_arcs("p1")}
    assert arcs["Mira"].arc_summary == "Mira has changed."
    assert llm.count("character_arc") == 2


@pytest.mark.asyncio
async def test_power_state_follows_interval_and_breakthroughs(tmp_path):
    store, project = _setup(tmp_path)
    llm = ScriptedLLM(
        {"power_state": json.dumps({"realm": "Foundation", "level": "early", "abilities": ["Iron Palm"]})}
    )
    runner = QualityModuleRunner(store, llm)

    assert await runner._module_power_state(project, _chapter(3), None) is True
    latest = store.get_latest_power_state("p1")
    assert (latest.chapter_number, latest.realm, latest.abilities, latest.breakthrough) == (
        3,
        "Foundation",
        ["Iron Palm"],
        False,
    )

    assert await runner._module_power_state(project, _chapter(4), None) is False
    assert store.get_latest_power_state("p1").chapter_number == 3

    breakthrough = prose(200) + "\n\nKaelan broke through to the Core realm at dawn."
    assert await runner._module_power_state(project, _chapter(4, breakthrough), None) is True
    latest = store.get_latest_power_state("p1")
    assert latest.chapter_number == 4
    assert latest.breakthrough is True
    assert llm.count("power_state") == 2


def _outline_at(number: int, setting: str) -> ChapterOutline:
    return ChapterOutline(
        chapter_number=number,
        title=f"Chapter title {number}",
        scenes=[SceneOutline(order=1, setting=setting)],
        target_word_count=600,
    )


@pytest.mark.asyncio
async def test_location_bible_adds_new_settings_and_closes_old_arcs(tmp_path):
    store, project = _setup(tmp_path)
    llm = ScriptedLLM(
        {"location_bible": json.dumps({"location_name": "Sunken Spire", "bible": "A drowned library of the old sect."})}
    )
    runner = QualityModuleRunner(store, llm)

    assert await runner._module_location_bible(project, _chapter(5), _outline_at(5, "Greywater archive")) is True
    bibles = store.list_location_bibles("p1")
    assert [(b.location_name, b.arc_start, b.explored) for b in bibles] == [("Greywater archive", 1, False)]
    assert bibles[0].bible == "A drowned library of the old sect."

    # a known setting mid-arc changes nothing
    assert await runner._module_location_bible(project, _chapter(6), _outline_at(6, "greywater archive")) is False
    assert llm.count("location_bible") == 1

    assert await runner._module_location_bible(project, _chapter(40), _outline_at(40, "Greywater archive")) is True
    bibles = store.list_location_bibles("p1")
    assert [(b.location_name, b.arc_start, b.explored) for b in bibles] == [
        ("Greywater archive", 1, True),
        ("Sunken Spire", 3, False),
    ]
