"""
Context assembly for one chapter job.

Each narrative layer is read by its own reader. A layer that has no data yet,
or whose read raises, degrades to its empty default and is named in
``absent_layers``; it never aborts the job. Every chapter read is bounded
above by the target chapter number, so the payload cannot leak the future.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.cadence import arc_number_for, finale_phase
from core.chapter_craft import smart_truncate
from core.errors import ValidationError
from core.style_analyzer import analyze_style, build_style_guidelines
from memory import StoryStore
from models import (
    ArcPlan,
    ContextPayload,
    Project,
    RecentChapter,
    SynopsisStructured,
)

logger = logging.getLogger("chapterforge.context")

RECENT_CHAPTER_COUNT = 3
RECENT_CHAPTER_MAX_CHARS = 3000
TITLE_WINDOW = 50
OPENING_WINDOW = 10
CLIFFHANGER_WINDOW = 10
CHARACTER_STATE_SCAN = 200


class _Absent(Exception):
    """A layer reader found nothing to contribute."""


class ContextAssembler:
    def __init__(self, store: StoryStore):
        self.store = store

    async def assemble(self, project_id: str, chapter_number: int) -> ContextPayload:
        project = await asyncio.to_thread(self.store.get_project, project_id)
        if project is None:
            raise ValidationError("Project not found")

        payload = ContextPayload(
            project_id=project.id,
            chapter_number=chapter_number,
            genre=project.genre,
            protagonist_name=project.protagonist_name,
            target_word_count=project.target_chapter_length,
            ai_model=project.ai_model or "",
            temperature=project.temperature,
            world_description=project.world_description,
            master_outline=project.master_outline or "",
        )
        absent: List[str] = []

        async def layer(name: str, reader: Callable[[], Any]) -> Optional[Any]:
            try:
                return await asyncio.to_thread(reader)
            except _Absent:
                absent.append(name)
            except Exception as exc:
                absent.append(name)
                logger.warning(
                    "context layer failed project_id=%s chapter=%s layer=%s error=%s",
                    project_id,
                    chapter_number,
                    name,
                    exc,
                )
            return None

        story_bible = await layer("story_bible", lambda: self._read_story_bible(project))
        if story_bible:
            payload.story_bible = story_bible
            payload.has_story_bible = True

        recent = await layer("recent_chapters", lambda: self._read_recent_chapters(project_id, chapter_number))
        if recent:
            payload.recent_chapters = recent

        titles = await layer("titles", lambda: self._read_titles(project_id, chapter_number))
        if titles:
            payload.previous_titles = titles

        openings = await layer("openings", lambda: self._read_openings(project_id, chapter_number))
        if openings:
            payload.recent_openings = openings

        cliffhangers = await layer("cliffhangers", lambda: self._read_cliffhangers(project_id, chapter_number))
        if cliffhangers:
            payload.recent_cliffhangers = cliffhangers

        characters = await layer("characters", lambda: self._read_characters(project_id, chapter_number))
        if characters:
            payload.known_character_names, payload.dead_character_names = characters

        synopsis = await layer("synopsis", lambda: self._read_synopsis(project_id))
        if synopsis is not None:
            payload.synopsis_structured = synopsis

        arc_plan = await layer("arc_plan", lambda: self._read_arc_plan(project_id, chapter_number))
        if arc_plan is not None:
            payload.arc_plan_threads = arc_plan.threads

        brief = await layer("chapter_brief", lambda: self._read_chapter_brief(arc_plan, chapter_number))
        if brief:
            payload.chapter_brief = brief

        voice = await layer("voice", lambda: self._read_voice(project_id, chapter_number))
        if voice:
            payload.voice_anchor = voice

        finale = await layer("finale", lambda: self._finale_guidance(project, chapter_number, arc_plan))
        if finale:
            payload.finale_guidance = finale

        payload.style_guidelines = await self._style_guidelines(project_id, chapter_number)
        payload.absent_layers = absent

        logger.info(
            "context assembled project_id=%s chapter=%s recent=%d titles=%d absent=%s",
            project_id,
            chapter_number,
            len(payload.recent_chapters),
            len(payload.previous_titles),
            ",".join(absent) or "-",
        )
        return payload

    def _read_story_bible(self, project: Project) -> str:
        text = (project.story_bible or "").strip()
        if not text:
            raise _Absent()
        return text

    def _read_recent_chapters(self, project_id: str, chapter_number: int) -> List[RecentChapter]:
        chapters = self.store.list_chapters_before(project_id, chapter_number, RECENT_CHAPTER_COUNT)
        items = [
            RecentChapter(
                chapter_number=chapter.chapter_number,
                title=chapter.title,
                content=smart_truncate(chapter.content, RECENT_CHAPTER_MAX_CHARS),
            )
            for chapter in chapters
            if chapter.chapter_number < chapter_number
        ]
        if not items:
            raise _Absent()
        return items

    def _read_titles(self, project_id: str, chapter_number: int) -> List[str]:
        rows = self.store.list_chapter_titles(project_id, chapter_number, TITLE_WINDOW)
        titles = [row["title"] for row in rows if row["chapter_number"] < chapter_number and row["title"]]
        if not titles:
            raise _Absent()
        return titles

    def _read_summaries(self, project_id: str, chapter_number: int, limit: int):
        summaries = self.store.list_chapter_summaries(project_id, chapter_number, limit)
        return [s for s in summaries if s.chapter_number < chapter_number]

    def _read_openings(self, project_id: str, chapter_number: int) -> List[str]:
        openings = [
            s.opening_sentence
            for s in self._read_summaries(project_id, chapter_number, OPENING_WINDOW)
            if s.opening_sentence
        ]
        if not openings:
            raise _Absent()
        return openings

    def _read_cliffhangers(self, project_id: str, chapter_number: int) -> List[str]:
        cliffhangers = [
            s.cliffhanger
            for s in self._read_summaries(project_id, chapter_number, CLIFFHANGER_WINDOW)
            if s.cliffhanger
        ]
        if not cliffhangers:
            raise _Absent()
        return cliffhangers

    def _read_characters(self, project_id: str, chapter_number: int) -> Tuple[List[str], List[str]]:
        states = [
            s
            for s in self.store.list_latest_character_states(project_id, chapter_number, CHARACTER_STATE_SCAN)
            if s.chapter_number < chapter_number
        ]
        if not states:
            raise _Absent()
        known = [s.character_name for s in states]
        dead = [s.character_name for s in states if s.status.strip().lower() == "dead"]
        return known, dead

    def _read_synopsis(self, project_id: str) -> SynopsisStructured:
        synopsis = self.store.get_synopsis(project_id)
        if synopsis is None:
            raise _Absent()
        return synopsis.structured

    def _read_arc_plan(self, project_id: str, chapter_number: int) -> ArcPlan:
        plan = self.store.get_arc_plan(project_id, arc_number_for(chapter_number))
        if plan is None:
            raise _Absent()
        return plan

    def _read_chapter_brief(self, arc_plan: Optional[ArcPlan], chapter_number: int) -> str:
        if arc_plan is None:
            raise _Absent()
        brief = (arc_plan.chapter_briefs.get(chapter_number) or "").strip()
        if not brief:
            raise _Absent()
        return brief

    def _read_voice(self, project_id: str, chapter_number: int) -> str:
        fingerprint = self.store.get_latest_voice_fingerprint(project_id, before=chapter_number)
        if fingerprint is None:
            raise _Absent()
        lines = [
            f"Average sentence length: {fingerprint.avg_sentence_length:.1f} words",
            f"Dialogue ratio: {fingerprint.dialogue_ratio:.0%}",
        ]
        if fingerprint.signature_phrases:
            lines.append("Signature phrases: " + ", ".join(fingerprint.signature_phrases[:8]))
        if fingerprint.style_notes:
            lines.append(fingerprint.style_notes.strip())
        return "\n".join(lines)

    def _finale_guidance(self, project: Project, chapter_number: int, arc_plan: Optional[ArcPlan]) -> str:
        total = project.total_planned_chapters
        remaining = total - chapter_number
        lines: List[str] = []
        phase = finale_phase(chapter_number, total)
        if phase == "past_target":
            lines.append(
                f"The story is past its planned {total} chapters. Resolve the open threads and land the ending."
            )
        elif phase == "final_stretch":
            lines.append(
                f"Final stretch: {remaining} chapters remain. Close subplots and build toward the climax."
            )
        elif phase == "closing":
            lines.append("The story is above 90% complete. Start converging threads; open nothing new.")
        elif phase == "converging":
            lines.append("The story is above 80% complete. Begin steering subplots toward resolution.")
        if arc_plan is not None and arc_plan.is_finale_arc:
            lines.append("This is the finale arc: every chapter should pay off earlier setups.")
        if not lines:
            raise _Absent()
        return "\n".join(lines)

    async def _style_guidelines(self, project_id: str, chapter_number: int) -> str:
        previous = None
        if chapter_number > 1:
            try:
                chapter = await asyncio.to_thread(self.store.get_chapter, project_id, chapter_number - 1)
                if chapter is not None:
                    previous = analyze_style(chapter.content)
            except Exception as exc:
                logger.warning(
                    "context style baseline failed project_id=%s chapter=%s error=%s",
                    project_id,
                    chapter_number,
                    exc,
                )
        return build_style_guidelines(previous)


def summarize_payload(payload: ContextPayload) -> Dict[str, Any]:
    """Compact description of a payload for logs and CLI output."""
    return {
        "chapter_number": payload.chapter_number,
        "recent_chapters": [c.chapter_number for c in payload.recent_chapters],
        "previous_titles": len(payload.previous_titles),
        "known_characters": len(payload.known_character_names),
        "dead_characters": len(payload.dead_character_names),
        "has_story_bible": payload.has_story_bible,
        "absent_layers": list(payload.absent_layers),
    }
