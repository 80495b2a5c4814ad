"""
Post-chapter enrichment of the narrative memory.

Modules run after a chapter is persisted, one at a time, in QUALITY_MODULES
order. Each is gated by a pure cadence predicate and performs one
read-modify-write against the store. A module that raises is logged and
recorded as ``failed``; the run always reaches the next module.
"""

import asyncio
import json
import logging
import re
from collections import Counter
from typing import Any, Dict, List, Optional
from uuid import uuid4

from core import cadence
from core.chapter_craft import first_sentence, last_paragraph, smart_truncate
from core.errors import GenerationError
from core.json_repair import parse_json_payload
from memory import StoryStore
from models import (
    ArcPlan,
    ArcPlanThreads,
    Chapter,
    ChapterOutline,
    ChapterSummary,
    CharacterArc,
    CharacterState,
    ForeshadowingHint,
    ForeshadowingStatus,
    LocationBible,
    PacingBeat,
    PacingBlueprint,
    PowerState,
    Project,
    StorySynopsis,
    SynopsisStructured,
    VoiceFingerprint,
)
from utils.text_cleaner import KEYWORD_STOPWORDS, split_sentences, split_words

logger = logging.getLogger("chapterforge.quality")

QUALITY_MODULES = (
    "summary",
    "synopsis",
    "arc_plan",
    "story_bible",
    "character_arcs",
    "power_state",
    "voice_fingerprint",
    "foreshadowing",
    "pacing",
    "location_bible",
)

OK = "ok"
SKIPPED = "skipped"
FAILED = "failed"

CHARACTER_STATUSES = {"alive", "dead", "unknown"}
VOICE_SAMPLE_CHAPTERS = 3
VOICE_MIN_CHAPTERS = 2
SIGNATURE_PHRASE_LIMIT = 8
_DIALOGUE_RE = re.compile(r"\"[^\"]+\"|“[^”]+”")

MODULE_PROMPTS = {
    "summary": """You summarize one chapter of a web novel for the writers' room.
Return JSON only:
{"summary": "3-5 sentences", "opening_sentence": "...", "cliffhanger": "...",
 "mc_state": "protagonist's condition, location and goal at chapter end",
 "characters": [{"name": "...", "status": "alive|dead|unknown", "power_level": "...",
                 "location": "...", "notes": "..."}]}""",
    "synopsis": """You maintain the running synopsis of a long web novel.
Merge the previous synopsis with the new chapter summaries. Return JSON only:
{"synopsis": "...", "mc_current_state": "...", "active_allies": ["..."],
 "active_enemies": ["..."], "open_threads": ["..."]}""",
    "arc_plan": """You plan the next 20-chapter arc of a web novel.
Return JSON only:
{"theme": "...", "plan_text": "...", "chapter_briefs": {"<chapter number>": "one-line brief"},
 "threads_to_advance": ["..."], "threads_to_resolve": ["..."], "new_threads": ["..."]}
If the arc is the finale arc, resolve threads instead of opening new ones.""",
    "story_bible": """You keep the story bible of a web novel: world rules, factions,
power system, key characters and their relationships, unresolved mysteries.
Rewrite the bible from the material given. Plain text, no Markdown headings.""",
    "character_arc": """Summarize one character's arc so far in 3-4 sentences:
who they were, how they changed, where they stand now. Plain text.""",
    "power_state": """Extract the protagonist's power progression after this chapter.
Return JSON only: {"realm": "...", "level": "...", "abilities": ["..."], "breakthrough": true}""",
    "voice": """Describe the narrative voice of these chapters in 3 short lines:
register, rhythm, recurring devices. Plain text.""",
    "foreshadowing": """Plan foreshadowing for the next arc of a web novel.
Return JSON only: {"hints": [{"description": "...", "plant_chapter": 0, "payoff_chapter": 0}]}
Plant chapters and payoff chapters must fall inside the given arc range.""",
    "pacing": """Design the pacing of the next arc as one beat per chapter.
Return JSON only: {"beats": [{"chapter": 0, "intensity": 1, "note": "..."}]}
Intensity runs 1-10; alternate pressure and release and peak near the arc's end.""",
    "location_bible": """Write a location bible entry: look, history, who controls it,
dangers and what it offers the protagonist. Return JSON only:
{"location_name": "...", "bible": "..."}""",
}


def default_pacing_beats(arc_number: int) -> List[PacingBeat]:
    """Rising wave toward the arc climax with a release after each local peak."""
    start, end = cadence.arc_chapter_range(arc_number)
    beats = []
    length = end - start + 1
    for offset in range(length):
        chapter = start + offset
        progress = offset / max(1, length - 1)
        intensity = 3 + int(round(progress * 6))
        if offset % 5 == 4:
            intensity = min(10, intensity + 1)
        elif offset % 5 == 0 and offset:
            intensity = max(1, intensity - 2)
        if chapter == end - 1:
            intensity = 10
        beats.append(PacingBeat(chapter=chapter, intensity=intensity, note=""))
    return beats


def voice_metrics(texts: List[str]) -> Dict[str, Any]:
    """Deterministic voice measurements across a sample of chapters."""
    sentences: List[str] = []
    total_chars = 0
    dialogue_chars = 0
    trigrams: Counter = Counter()
    for text in texts:
        sentences.extend(split_sentences(text))
        total_chars += len(text)
        dialogue_chars += sum(len(match) for match in _DIALOGUE_RE.findall(text))
        words = [w.lower() for w in split_words(text)]
        for index in range(len(words) - 2):
            gram = words[index : index + 3]
            if all(word in KEYWORD_STOPWORDS for word in gram):
                continue
            trigrams[" ".join(gram)] += 1
    avg_sentence_length = 0.0
    if sentences:
        avg_sentence_length = sum(len(s.split()) for s in sentences) / len(sentences)
    dialogue_ratio = dialogue_chars / total_chars if total_chars else 0.0
    phrases = [phrase for phrase, count in trigrams.most_common(SIGNATURE_PHRASE_LIMIT * 3) if count >= 2]
    return {
        "avg_sentence_length": round(avg_sentence_length, 2),
        "dialogue_ratio": round(dialogue_ratio, 4),
        "signature_phrases": phrases[:SIGNATURE_PHRASE_LIMIT],
    }


def _str(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [_str(item) for item in value if _str(item)]


def _int(value: Any, fallback: int) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return fallback


class QualityModuleRunner:
    def __init__(self, store: StoryStore, llm_client: Any, temperature: float = 0.4):
        self.store = store
        self.llm_client = llm_client
        self.temperature = temperature

    async def _db(self, func, *args, **kwargs):
        return await asyncio.to_thread(func, *args, **kwargs)

    @property
    def _offline(self) -> bool:
        return bool(getattr(self.llm_client, "is_offline", False))

    async def _ask(self, prompt_key: str, payload: Dict[str, Any], json_mode: bool) -> Optional[Any]:
        if self._offline:
            return None
        messages = [
            {"role": "system", "content": MODULE_PROMPTS[prompt_key]},
            {"role": "user", "content": json.dumps(payload, ensure_ascii=False, indent=2, default=str)},
        ]
        raw = await asyncio.to_thread(
            self.llm_client.chat,
            messages,
            json_mode=json_mode,
            temperature=self.temperature,
        )
        if not json_mode:
            return _str(raw)
        parsed = parse_json_payload(raw)
        if not isinstance(parsed, dict):
            raise GenerationError(f"{prompt_key} module returned no JSON object")
        return parsed

    async def run(
        self,
        project_id: str,
        chapter: Chapter,
        outline: Optional[ChapterOutline] = None,
    ) -> Dict[str, str]:
        outcomes: Dict[str, str] = {}
        for name in QUALITY_MODULES:
            handler = getattr(self, f"_module_{name}")
            try:
                project = await self._db(self.store.get_project, project_id)
                if project is None:
                    raise GenerationError("Project not found")
                wrote = await handler(project, chapter, outline)
                outcomes[name] = OK if wrote else SKIPPED
            except Exception as exc:
                outcomes[name] = FAILED
                logger.warning(
                    "quality module failed module=%s project_id=%s chapter=%s error=%s",
                    name,
                    project_id,
                    chapter.chapter_number,
                    exc,
                )
        logger.info(
            "quality modules done project_id=%s chapter=%s outcomes=%s",
            project_id,
            chapter.chapter_number,
            ",".join(f"{k}:{v}" for k, v in outcomes.items()),
        )
        return outcomes

    async def _module_summary(self, project: Project, chapter: Chapter, outline: Optional[ChapterOutline]) -> bool:
        n = chapter.chapter_number
        if not cadence.should_update_summary(n):
            return False
        payload = await self._ask(
            "summary",
            {"chapter_number": n, "title": chapter.title, "content": chapter.content},
            json_mode=True,
        ) or {}
        summary = ChapterSummary(
            project_id=project.id,
            chapter_number=n,
            title=chapter.title,
            summary=_str(payload.get("summary")) or smart_truncate(chapter.content, 400),
            opening_sentence=_str(payload.get("opening_sentence")) or first_sentence(chapter.content),
            cliffhanger=_str(payload.get("cliffhanger")) or last_paragraph(chapter.content, 300),
            mc_state=_str(payload.get("mc_state")),
        )
        await self._db(self.store.upsert_chapter_summary, summary)

        states = []
        for item in payload.get("characters") or []:
            if not isinstance(item, dict) or not _str(item.get("name")):
                continue
            status = _str(item.get("status")).lower()
            states.append(
                CharacterState(
                    project_id=project.id,
                    character_name=_str(item.get("name")),
                    chapter_number=n,
                    status=status if status in CHARACTER_STATUSES else "unknown",
                    power_level=_str(item.get("power_level")),
                    location=_str(item.get("location")),
                    notes=_str(item.get("notes")),
                )
            )
        await self._db(self.store.add_character_states, states)
        return True

    async def _module_synopsis(self, project: Project, chapter: Chapter, outline: Optional[ChapterOutline]) -> bool:
        n = chapter.chapter_number
        if not cadence.should_update_synopsis(n):
            return False
        previous = await self._db(self.store.get_synopsis, project.id)
        summaries = await self._db(self.store.list_chapter_summaries, project.id, n + 1, cadence.SYNOPSIS_INTERVAL)
        payload = await self._ask(
            "synopsis",
            {
                "previous_synopsis": previous.synopsis if previous else "",
                "previous_structured": previous.structured.model_dump() if previous else {},
                "new_chapters": [
                    {"chapter_number": s.chapter_number, "title": s.title, "summary": s.summary, "mc_state": s.mc_state}
                    for s in summaries
                ],
            },
            json_mode=True,
        )
        if not payload or not _str(payload.get("synopsis")):
            return False
        await self._db(
            self.store.upsert_synopsis,
            StorySynopsis(
                project_id=project.id,
                synopsis=_str(payload.get("synopsis")),
                structured=SynopsisStructured(
                    mc_current_state=_str(payload.get("mc_current_state")),
                    active_allies=_str_list(payload.get("active_allies")),
                    active_enemies=_str_list(payload.get("active_enemies")),
                    open_threads=_str_list(payload.get("open_threads")),
                ),
                last_updated_chapter=n,
            ),
        )
        return True

    async def _module_arc_plan(self, project: Project, chapter: Chapter, outline: Optional[ChapterOutline]) -> bool:
        n = chapter.chapter_number
        next_arc = cadence.arc_number_for(n + 1)
        existing = await self._db(self.store.get_arc_plan, project.id, next_arc)
        if not cadence.should_generate_arc_plan(n, has_current_arc_plan=existing is not None):
            return False
        if existing is not None:
            return False

        synopsis = await self._db(self.store.get_synopsis, project.id)
        open_threads = synopsis.structured.open_threads if synopsis else None
        is_finale = cadence.should_be_finale_arc(n, project.total_planned_chapters, open_threads)
        start, end = cadence.arc_chapter_range(next_arc)
        end = min(end, max(start, project.total_planned_chapters))
        payload = await self._ask(
            "arc_plan",
            {
                "arc_number": next_arc,
                "chapters": [start, end],
                "is_finale_arc": is_finale,
                "genre": project.genre,
                "protagonist": project.protagonist_name,
                "master_outline": project.master_outline or "",
                "synopsis": synopsis.synopsis if synopsis else "",
                "open_threads": open_threads or [],
                "latest_chapter": {"chapter_number": n, "title": chapter.title},
            },
            json_mode=True,
        )
        if not payload:
            return False

        briefs: Dict[int, str] = {}
        raw_briefs = payload.get("chapter_briefs")
        if isinstance(raw_briefs, dict):
            for key, value in raw_briefs.items():
                number = _int(key, 0)
                if start <= number <= end and _str(value):
                    briefs[number] = _str(value)
        elif isinstance(raw_briefs, list):
            for offset, value in enumerate(raw_briefs):
                if _str(value) and start + offset <= end:
                    briefs[start + offset] = _str(value)

        new_threads = [] if is_finale else _str_list(payload.get("new_threads"))
        plan = ArcPlan(
            project_id=project.id,
            arc_number=next_arc,
            theme=_str(payload.get("theme")),
            plan_text=_str(payload.get("plan_text")),
            chapter_briefs=briefs,
            threads=ArcPlanThreads(
                threads_to_advance=_str_list(payload.get("threads_to_advance")),
                threads_to_resolve=_str_list(payload.get("threads_to_resolve")),
                new_threads=new_threads,
            ),
            is_finale_arc=is_finale,
        )
        await self._db(self.store.upsert_arc_plan, plan)
        logger.info(
            "arc plan generated project_id=%s arc=%s finale=%s briefs=%d",
            project.id,
            next_arc,
            is_finale,
            len(briefs),
        )
        return True

    async def _module_story_bible(self, project: Project, chapter: Chapter, outline: Optional[ChapterOutline]) -> bool:
        n = chapter.chapter_number
        if not cadence.should_update_story_bible(n):
            return False
        synopsis = await self._db(self.store.get_synopsis, project.id)
        summaries = await self._db(self.store.list_chapter_summaries, project.id, n + 1, 20)
        text = await self._ask(
            "story_bible",
            {
                "title": project.title,
                "genre": project.genre,
                "world": project.world_description,
                "previous_bible": project.story_bible or "",
                "synopsis": synopsis.synopsis if synopsis else "",
                "recent_summaries": [s.summary for s in summaries],
            },
            json_mode=False,
        )
        if not text:
            return False
        return await self._db(self.store.update_story_bible, project.id, text)

    async def _module_character_arcs(
        self, project: Project, chapter: Chapter, outline: Optional[ChapterOutline]
    ) -> bool:
        n = chapter.chapter_number
        if not cadence.should_update_character_arcs(n):
            return False
        states = await self._db(self.store.list_latest_character_states, project.id, n + 1, 200)
        arcs = {arc.character_name: arc for arc in await self._db(self.store.list_character_arcs, project.id)}
        lowered = chapter.content.lower()

        touched: List[CharacterArc] = []
        for state in states:
            name = state.character_name
            if name.lower() not in lowered and state.chapter_number != n:
                continue
            arc = arcs.get(name) or CharacterArc(project_id=project.id, character_name=name, first_seen_chapter=n)
            if arc.last_seen_chapter == n:
                continue
            arc.appearances += 1
            arc.last_seen_chapter = n
            await self._db(self.store.upsert_character_arc, arc)
            touched.append(arc)

        candidates = [
            arc
            for arc in touched
            if arc.appearances >= cadence.CHARACTER_ARC_MIN_APPEARANCES and not arc.arc_summary
        ]
        if candidates:
            arc = max(candidates, key=lambda item: (item.appearances, item.character_name))
            summaries = await self._db(self.store.list_chapter_summaries, project.id, n + 1, 30)
            text = await self._ask(
                "character_arc",
                {
                    "character": arc.character_name,
                    "appearances": arc.appearances,
                    "mentions": [
                        s.summary for s in summaries if arc.character_name.lower() in (s.summary or "").lower()
                    ],
                },
                json_mode=False,
            )
            if text:
                arc.arc_summary = text
                await self._db(self.store.upsert_character_arc, arc)
        return bool(touched)

    async def _module_power_state(self, project: Project, chapter: Chapter, outline: Optional[ChapterOutline]) -> bool:
        n = chapter.chapter_number
        if not cadence.should_update_power_state(n, chapter.content):
            return False
        previous = await self._db(self.store.get_latest_power_state, project.id)
        payload = await self._ask(
            "power_state",
            {
                "protagonist": project.protagonist_name,
                "previous": previous.model_dump() if previous else None,
                "chapter": chapter.content,
            },
            json_mode=True,
        )
        if not payload:
            return False
        breakthrough = payload.get("breakthrough")
        await self._db(
            self.store.add_power_state,
            PowerState(
                project_id=project.id,
                chapter_number=n,
                realm=_str(payload.get("realm")),
                level=_str(payload.get("level")),
                abilities=_str_list(payload.get("abilities")),
                breakthrough=bool(breakthrough) if breakthrough is not None else cadence.has_breakthrough(chapter.content),
            ),
        )
        return True

    async def _module_voice_fingerprint(
        self, project: Project, chapter: Chapter, outline: Optional[ChapterOutline]
    ) -> bool:
        n = chapter.chapter_number
        if not cadence.should_update_voice_fingerprint(n):
            return False
        sample = await self._db(self.store.list_chapters_before, project.id, n + 1, VOICE_SAMPLE_CHAPTERS)
        if len(sample) < VOICE_MIN_CHAPTERS:
            return False
        texts = [c.content for c in sample]
        metrics = voice_metrics(texts)
        notes = await self._ask("voice", {"excerpts": [smart_truncate(t, 2000) for t in texts]}, json_mode=False)
        await self._db(
            self.store.add_voice_fingerprint,
            VoiceFingerprint(project_id=project.id, chapter_number=n, style_notes=notes or "", **metrics),
        )
        return True

    async def _module_foreshadowing(
        self, project: Project, chapter: Chapter, outline: Optional[ChapterOutline]
    ) -> bool:
        n = chapter.chapter_number
        hints = await self._db(
            self.store.list_foreshadowing,
            project.id,
            [ForeshadowingStatus.PLANNED, ForeshadowingStatus.PLANTED],
        )
        changed = 0
        for hint in hints:
            status = cadence.next_foreshadowing_status(hint.status, hint.plant_chapter, hint.payoff_chapter, n)
            if status != hint.status:
                if await self._db(self.store.update_foreshadowing_status, hint.id, hint.status, status):
                    changed += 1

        if cadence.should_regenerate_foreshadowing(n):
            next_arc = cadence.arc_number_for(n + 1)
            start, end = cadence.arc_chapter_range(next_arc)
            synopsis = await self._db(self.store.get_synopsis, project.id)
            payload = await self._ask(
                "foreshadowing",
                {
                    "arc_number": next_arc,
                    "chapters": [start, end],
                    "open_threads": synopsis.structured.open_threads if synopsis else [],
                    "pending_hints": [h.description for h in hints],
                },
                json_mode=True,
            ) or {}
            for item in payload.get("hints") or []:
                if not isinstance(item, dict) or not _str(item.get("description")):
                    continue
                plant = max(start, min(end, _int(item.get("plant_chapter"), start)))
                payoff = max(plant, _int(item.get("payoff_chapter"), end))
                await self._db(
                    self.store.upsert_foreshadowing,
                    ForeshadowingHint(
                        id=str(uuid4()),
                        project_id=project.id,
                        description=_str(item.get("description")),
                        plant_chapter=plant,
                        payoff_chapter=payoff,
                        arc_number=next_arc,
                    ),
                )
                changed += 1
        return bool(hints) or changed > 0

    async def _module_pacing(self, project: Project, chapter: Chapter, outline: Optional[ChapterOutline]) -> bool:
        n = chapter.chapter_number
        if not cadence.should_regenerate_pacing(n):
            return False
        next_arc = cadence.arc_number_for(n + 1)
        start, end = cadence.arc_chapter_range(next_arc)
        payload = await self._ask(
            "pacing",
            {"arc_number": next_arc, "chapters": [start, end], "genre": project.genre},
            json_mode=True,
        ) or {}
        beats = []
        for item in payload.get("beats") or []:
            if not isinstance(item, dict):
                continue
            number = _int(item.get("chapter"), 0)
            if start <= number <= end:
                beats.append(
                    PacingBeat(
                        chapter=number,
                        intensity=max(1, min(10, _int(item.get("intensity"), 5))),
                        note=_str(item.get("note")),
                    )
                )
        if not beats:
            beats = default_pacing_beats(next_arc)
        await self._db(
            self.store.upsert_pacing_blueprint,
            PacingBlueprint(project_id=project.id, arc_number=next_arc, beats=sorted(beats, key=lambda b: b.chapter)),
        )
        return True

    async def _module_location_bible(
        self, project: Project, chapter: Chapter, outline: Optional[ChapterOutline]
    ) -> bool:
        n = chapter.chapter_number
        current_arc = cadence.arc_number_for(n)
        bibles = await self._db(self.store.list_location_bibles, project.id)
        known = {b.location_name.lower() for b in bibles}
        settings = []
        if outline is not None:
            for scene in outline.scenes:
                name = scene.setting.strip()
                if name and name.lower() not in known and name not in settings:
                    settings.append(name)
        if not cadence.should_update_location_bible(n, new_setting=bool(settings)):
            return False

        for bible in bibles:
            if not bible.explored and bible.arc_end < current_arc:
                bible.explored = True
                await self._db(self.store.upsert_location_bible, bible)

        if settings:
            arc_start = arc_end = current_arc
            name_hint = settings[0]
        elif cadence.is_arc_boundary(n):
            arc_start = arc_end = current_arc + 1
            name_hint = ""
        else:
            return True

        payload = await self._ask(
            "location_bible",
            {
                "location_name": name_hint,
                "arc_number": arc_start,
                "world": project.world_description,
                "story_bible": smart_truncate(project.story_bible or "", 3000),
            },
            json_mode=True,
        ) or {}
        location_name = name_hint or _str(payload.get("location_name"))
        if not location_name:
            return True
        await self._db(
            self.store.upsert_location_bible,
            LocationBible(
                project_id=project.id,
                location_name=location_name,
                arc_start=arc_start,
                arc_end=arc_end,
                explored=False,
                bible=_str(payload.get("bible")) or f"First appears in chapter {n}.",
            ),
        )
        return True


async def run_quality_modules(
    store: StoryStore,
    llm_client: Any,
    project_id: str,
    chapter: Chapter,
    outline: Optional[ChapterOutline] = None,
) -> Dict[str, str]:
    """Run every module for a freshly persisted chapter; never raises."""
    try:
        return await QualityModuleRunner(store, llm_client).run(project_id, chapter, outline)
    except Exception as exc:
        logger.error(
            "quality modules aborted project_id=%s chapter=%s error=%s",
            project_id,
            chapter.chapter_number,
            exc,
        )
        return {name: FAILED for name in QUALITY_MODULES}
