import asyncio
import json
import logging
import math
import re
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.chapter_craft import (
    build_length_instruction,
    collapse_blank_lines,
    count_words,
    extract_title_line,
    minimum_scene_count,
    sanitize_prose,
    tail_text,
    word_count_band,
)
from core.errors import ChapterforgeError, GenerationError
from core.genre_rules import format_genre_rules, get_genre_rules
from core.json_repair import parse_json_object, parse_json_payload
from core.style_analyzer import analyze_style
from core.title_checker import find_most_similar, pick_unique_title
from models import (
    AgentRole,
    ChapterOutline,
    ContextPayload,
    CriticReport,
    DopaminePoint,
    Draft,
    EmotionalArc,
    EngineConfig,
    SceneOutline,
    Severity,
    Violation,
    ViolationCategory,
)
from services.consistency import ConsistencyEngine

logger = logging.getLogger("chapterforge.pipeline")

SEVERITY_PENALTIES = {
    Severity.MINOR: 2,
    Severity.MODERATE: 5,
    Severity.MAJOR: 10,
    Severity.CRITICAL: 25,
}
NEUTRAL_LLM_SCORE = 5.0
SHORT_CHAPTER_RATIO = 0.6
CONTINUATION_RATIO = 0.7
CONTINUATION_MIN_WORDS = 300
MIN_TAIL_FRAGMENT_CHARS = 80

SceneCallback = Callable[[int, int], Awaitable[None]]


class AgentState(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    DONE = "done"


class Agent:
    def __init__(
        self,
        role: AgentRole,
        name: str,
        description: str,
        system_prompt: str,
        llm_client: Any = None,
    ):
        self.role = role
        self.name = name
        self.description = description
        self.system_prompt = system_prompt
        self.llm_client = llm_client
        self.state = AgentState.IDLE

    async def think(
        self,
        context: Dict[str, Any],
        json_mode: bool = False,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> str:
        self.state = AgentState.THINKING

        messages = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": json.dumps(context, ensure_ascii=False, indent=2, default=str)},
        ]

        try:
            result = await asyncio.to_thread(
                self.llm_client.chat,
                messages,
                model=model,
                json_mode=json_mode,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except ChapterforgeError:
            self.state = AgentState.IDLE
            raise
        except Exception as exc:
            self.state = AgentState.IDLE
            raise GenerationError(f"{self.name} backend call failed: {exc}") from exc
        if not isinstance(result, str):
            result = str(result)

        self.state = AgentState.DONE
        return result


AGENT_PROMPTS = {
    AgentRole.PLANNER: {
        "name": "Planner",
        "description": "Turns the assembled context into a scene-by-scene chapter outline",
        "system_prompt": """You are the planning editor of a long-running web novel.
Plan exactly one chapter from the context you are given.

Return a single JSON object, no prose and no Markdown:
{
  "title": "...",
  "summary": "...",
  "scenes": [
    {"order": 1, "setting": "...", "characters": ["..."], "goal": "...",
     "conflict": "...", "resolution": "...", "estimated_words": 700, "pov_character": "..."}
  ],
  "emotional_arc": {"opening": "...", "midpoint": "...", "climax": "...", "closing": "..."},
  "tension_level": 6,
  "dopamine_points": [{"type": "...", "scene": 2, "description": "..."}],
  "cliffhanger": "...",
  "threads_advanced": ["..."]
}

Rules:
- Follow the chapter brief and advance the listed threads; never resolve every thread at once
- Each scene is a concrete event with a character acting and the situation changing
- The title must not repeat or paraphrase any previous title
- Dead characters stay dead; keep established names spelled exactly
- Do not open the chapter the way recent chapters opened
""",
    },
    AgentRole.WRITER: {
        "name": "Writer",
        "description": "Expands one outline scene at a time into finished prose",
        "system_prompt": """You are the lead writer of a long-running web novel.
Write only the scene you are given, as finished prose.

Rules:
- Output prose only: no headings, no scene labels, no commentary, no Markdown
- Stay in the given point-of-view character's perspective
- Hit the scene's word target; do not summarize
- Continue seamlessly from the previous scene's closing lines
- Apply every rewrite instruction you are given
- When given a draft to revise, keep what works and fix only what the instructions name
- When asked for a new title, put it on the first line as "Title: ..." before the prose
""",
    },
    AgentRole.CRITIC: {
        "name": "Critic",
        "description": "Scores a draft chapter against its outline",
        "system_prompt": """You are a demanding fiction editor reviewing one chapter of a web novel.
Judge the draft against its outline: scene coverage, pacing, character consistency,
prose quality and whether the ending hook lands.

Return a single JSON object, no prose and no Markdown:
{
  "overallScore": 7,
  "issues": [{"severity": "minor|moderate|major", "description": "...", "suggestion": "..."}]
}
overallScore is an integer from 1 (unusable) to 10 (publishable as is).
""",
    },
}


class AgentStudio:
    def __init__(self, llm_client: Any):
        self.llm_client = llm_client
        self.agents: Dict[AgentRole, Agent] = {}
        self._init_agents()

    def _init_agents(self):
        for role, config in AGENT_PROMPTS.items():
            self.agents[role] = Agent(
                role=role,
                name=config["name"],
                description=config["description"],
                system_prompt=config["system_prompt"],
                llm_client=self.llm_client,
            )

    def get_agent(self, role: AgentRole) -> Agent:
        return self.agents[role]


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_str_list(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [part for part in re.split(r"[,;\n]", value)]
    if not isinstance(value, (list, tuple)):
        return []
    return [_as_str(item) for item in value if _as_str(item)]


def _as_int(value: Any, fallback: int) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return fallback


def _first(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] not in (None, ""):
            return payload[key]
    return None


def call_options(context: ContextPayload, config: EngineConfig, temperature: Optional[float] = None) -> Dict[str, Any]:
    """Backend call options, with the project's model and temperature over the engine defaults."""
    if temperature is None:
        temperature = config.temperature if context.temperature is None else context.temperature
    return {
        "model": context.ai_model or None,
        "temperature": temperature,
        "max_tokens": config.max_tokens,
    }


def format_rewrite_instructions(violations: List[Violation], limit: int = 10) -> List[str]:
    order = {Severity.CRITICAL: 0, Severity.MAJOR: 1, Severity.MODERATE: 2, Severity.MINOR: 3}
    ranked = sorted(violations, key=lambda v: order[v.severity])
    lines = []
    for violation in ranked[:limit]:
        line = f"[{violation.severity.value}] {violation.message}"
        if violation.suggestion:
            line += f". Fix: {violation.suggestion}"
        lines.append(line)
    return lines


class PlannerAgent:
    def __init__(self, agent: Agent, config: EngineConfig):
        self.agent = agent
        self.config = config

    def _build_request(self, context: ContextPayload, target_words: int, rewrite: List[str]) -> Dict[str, Any]:
        rules = get_genre_rules(context.genre)
        return {
            "task": "plan_chapter",
            "chapter_number": context.chapter_number,
            "target_word_count": target_words,
            "minimum_scenes": minimum_scene_count(target_words),
            "length": build_length_instruction(target_words),
            "genre_rules": format_genre_rules(context.genre),
            "dopamine_types": rules.get("dopamine_types", []),
            "protagonist": context.protagonist_name,
            "world": context.world_description,
            "story_bible": context.story_bible,
            "master_outline": context.master_outline,
            "synopsis": context.synopsis_structured.model_dump(),
            "chapter_brief": context.chapter_brief,
            "threads_to_advance": context.arc_plan_threads.threads_to_advance,
            "threads_to_resolve": context.arc_plan_threads.threads_to_resolve,
            "finale_guidance": context.finale_guidance,
            "recent_chapters": [
                {"chapter_number": c.chapter_number, "title": c.title, "ending": tail_text(c.content, 800)}
                for c in context.recent_chapters
            ],
            "previous_titles": context.previous_titles[-20:],
            "recent_openings": context.recent_openings,
            "recent_cliffhangers": context.recent_cliffhangers,
            "known_characters": context.known_character_names,
            "dead_characters": context.dead_character_names,
            "rewrite_instructions": rewrite,
        }

    async def plan(self, context: ContextPayload, rewrite: Optional[List[str]] = None) -> ChapterOutline:
        target_words = context.target_word_count or self.config.target_word_count
        options = call_options(context, self.config)
        options["temperature"] = min(options["temperature"], 0.7)
        raw = await self.agent.think(
            self._build_request(context, target_words, rewrite or []),
            json_mode=True,
            **options,
        )
        payload = parse_json_object(raw, "chapter outline")
        outline = self._normalize(payload, context, target_words)
        outline.title = await self._ensure_unique_title(outline, context)
        logger.info(
            "planner outline chapter=%s scenes=%d title=%s",
            outline.chapter_number,
            len(outline.scenes),
            outline.title,
        )
        return outline

    def _normalize(self, payload: Dict[str, Any], context: ContextPayload, target_words: int) -> ChapterOutline:
        protagonist = context.protagonist_name
        min_scenes = minimum_scene_count(target_words)

        scenes: List[SceneOutline] = []
        raw_scenes = payload.get("scenes")
        if isinstance(raw_scenes, list):
            for item in raw_scenes:
                if not isinstance(item, dict):
                    continue
                scenes.append(
                    SceneOutline(
                        order=len(scenes) + 1,
                        setting=_as_str(item.get("setting")),
                        characters=_as_str_list(item.get("characters")),
                        goal=_as_str(item.get("goal")),
                        conflict=_as_str(item.get("conflict")),
                        resolution=_as_str(item.get("resolution")),
                        estimated_words=max(0, _as_int(_first(item, "estimated_words", "estimatedWords"), 0)),
                        pov_character=_as_str(_first(item, "pov_character", "pov")) or protagonist,
                    )
                )

        summary = _as_str(payload.get("summary"))
        last_setting = scenes[-1].setting if scenes else ""
        while len(scenes) < min_scenes:
            order = len(scenes) + 1
            focus = context.chapter_brief or summary or "the current conflict"
            scenes.append(
                SceneOutline(
                    order=order,
                    setting=last_setting,
                    characters=[protagonist] if protagonist else [],
                    goal=f"Push forward: {focus}",
                    conflict="Resistance sharpens and the cost of acting rises",
                    resolution="A partial gain that opens a new problem",
                    estimated_words=0,
                    pov_character=protagonist,
                )
            )

        total_estimate = sum(scene.estimated_words for scene in scenes)
        if total_estimate < target_words * 0.8:
            per_scene = int(round(target_words / len(scenes)))
            for scene in scenes:
                scene.estimated_words = per_scene

        arc_raw = _first(payload, "emotional_arc", "emotionalArc")
        emotional_arc = EmotionalArc()
        if isinstance(arc_raw, dict):
            emotional_arc = EmotionalArc(
                **{k: _as_str(v) for k, v in arc_raw.items() if k in EmotionalArc.model_fields}
            )

        dopamine_points = []
        raw_points = _first(payload, "dopamine_points", "dopaminePoints")
        for item in raw_points if isinstance(raw_points, list) else []:
            if isinstance(item, dict):
                dopamine_points.append(
                    DopaminePoint(
                        type=_as_str(item.get("type")),
                        scene=_as_int(item.get("scene"), 0),
                        description=_as_str(_first(item, "description", "payoff", "setup")),
                    )
                )

        known_threads = (
            context.arc_plan_threads.threads_to_advance
            + context.arc_plan_threads.threads_to_resolve
            + context.synopsis_structured.open_threads
        )
        advanced = [
            thread
            for thread in _as_str_list(_first(payload, "threads_advanced", "threadsAdvanced"))
            if thread in known_threads
        ]
        if not advanced and context.arc_plan_threads.threads_to_advance:
            advanced = [context.arc_plan_threads.threads_to_advance[0]]

        tension = max(1, min(10, _as_int(_first(payload, "tension_level", "tensionLevel"), 5)))

        return ChapterOutline(
            chapter_number=context.chapter_number,
            title=_as_str(payload.get("title")),
            summary=summary,
            scenes=scenes,
            emotional_arc=emotional_arc,
            tension_level=tension,
            dopamine_points=dopamine_points,
            cliffhanger=_as_str(payload.get("cliffhanger")),
            target_word_count=target_words,
            threads_advanced=advanced,
        )

    def _title_ok(self, title: str, previous_titles: List[str]) -> bool:
        if not title.strip():
            return False
        similarity, _ = find_most_similar(title, previous_titles)
        return similarity <= self.config.title_similarity_threshold

    async def _ensure_unique_title(self, outline: ChapterOutline, context: ContextPayload) -> str:
        previous = context.previous_titles
        if self._title_ok(outline.title, previous):
            return outline.title

        logger.info(
            "planner title rejected chapter=%s title=%s",
            outline.chapter_number,
            outline.title,
        )
        raw = await self.agent.think(
            {
                "task": "retitle_chapter",
                "rejected_title": outline.title,
                "previous_titles": previous[-50:],
                "summary": outline.summary,
                "cliffhanger": outline.cliffhanger,
                "instruction": 'Return {"title": "..."} with a fresh title of 2-8 words unlike every previous title.',
            },
            json_mode=True,
            **call_options(context, self.config),
        )
        payload = parse_json_payload(raw)
        retitled = _as_str(payload.get("title")) if isinstance(payload, dict) else ""
        if retitled and self._title_ok(retitled, previous):
            return retitled

        candidates = [outline.cliffhanger]
        candidates.extend(scene.goal for scene in outline.scenes)
        candidates.extend(scene.setting for scene in outline.scenes)
        return pick_unique_title(
            candidates,
            previous,
            self.config.title_similarity_threshold,
            chapter_number=outline.chapter_number,
        )


_MARKDOWN_HEADING_RE = re.compile(r"^#{1,6}\s+", re.MULTILINE)
_BOLD_RE = re.compile(r"\*\*([^*]+)\*\*")
_ITALIC_RE = re.compile(r"\*([^*\n]+)\*")
_SCENE_LABEL_RE = re.compile(r"^(?:scene)\s*\d+\s*[:：.]\s*", re.IGNORECASE | re.MULTILINE)
_REPEATED_PHRASE_RE = re.compile(r"(\S+(?:\s+\S+){1,5}?)(?:\s+\1){2,}")
_REPEATED_WORD_RE = re.compile(r"(\S{2,})(?:\s+\1){2,}")
_TERMINAL_RE = re.compile(r"[.!?…\"'”’)\]]\s*$")


def clean_scene_text(text: str) -> str:
    content = sanitize_prose(text)
    content = _MARKDOWN_HEADING_RE.sub("", content)
    content = _BOLD_RE.sub(r"\1", content)
    content = _ITALIC_RE.sub(r"\1", content)
    content = _SCENE_LABEL_RE.sub("", content)
    content = _REPEATED_PHRASE_RE.sub(r"\1", content)
    content = _REPEATED_WORD_RE.sub(r"\1", content)
    return collapse_blank_lines(content, max_consecutive_blank=1)


def drop_trailing_fragment(text: str) -> str:
    """Drop a short unterminated last paragraph left by a truncated response."""
    paragraphs = [p for p in (text or "").split("\n\n")]
    if len(paragraphs) > 1:
        last = paragraphs[-1].strip()
        if len(last) < MIN_TAIL_FRAGMENT_CHARS and not _TERMINAL_RE.search(last):
            paragraphs = paragraphs[:-1]
    return "\n\n".join(paragraphs).strip()


class WriterAgent:
    def __init__(self, agent: Agent, config: EngineConfig):
        self.agent = agent
        self.config = config

    async def write(
        self,
        context: ContextPayload,
        outline: ChapterOutline,
        violations: Optional[List[Violation]] = None,
        on_scene: Optional[SceneCallback] = None,
        previous: Optional[Draft] = None,
    ) -> Draft:
        violations = violations or []
        rewrite = format_rewrite_instructions(violations)
        needs_new_title = any(v.category == ViolationCategory.TITLE for v in violations)
        rules = get_genre_rules(context.genre)
        options = call_options(context, self.config)
        revising = previous.scenes if previous is not None and violations else []

        parts: List[str] = []
        proposed_title = ""
        total = len(outline.scenes)
        for index, scene in enumerate(outline.scenes):
            if on_scene is not None:
                await on_scene(index, total)
            request = {
                "task": "write_scene",
                "chapter_number": outline.chapter_number,
                "chapter_title": outline.title,
                "chapter_summary": outline.summary,
                "scene_index": index + 1,
                "scene_count": total,
                "scene": scene.model_dump(),
                "word_target": scene.estimated_words,
                "pov_character": scene.pov_character or context.protagonist_name,
                "emotional_arc": outline.emotional_arc.model_dump(),
                "dopamine_points": [p.model_dump() for p in outline.dopamine_points if p.scene == scene.order],
                "previous_scene_tail": tail_text(parts[-1], 600) if parts else (
                    tail_text(context.recent_chapters[-1].content, 600) if context.recent_chapters else ""
                ),
                "genre_pacing": rules.get("pacing", ""),
                "style_guidelines": context.style_guidelines,
                "voice_anchor": context.voice_anchor,
                "dead_characters": context.dead_character_names,
                "rewrite_instructions": rewrite,
            }
            if index < len(revising):
                # rewrite the rejected scene in place instead of starting over
                request["draft_to_revise"] = revising[index]
            if index == total - 1 and outline.cliffhanger:
                request["end_on"] = outline.cliffhanger
            if index == 0 and needs_new_title:
                request["new_title_required"] = True
                request["previous_titles"] = context.previous_titles[-20:]

            raw = await self.agent.think(request, **options)
            text = raw
            if index == 0:
                proposed_title, text = extract_title_line(raw)
            text = clean_scene_text(text)
            if not text:
                raise GenerationError(f"Writer returned empty output for scene {scene.order}")
            parts.append(text)

        content = drop_trailing_fragment("\n\n".join(parts))
        content = await self._continue_if_short(content, outline, context)
        title = self._choose_title(outline, proposed_title, context, needs_new_title)
        return Draft(title=title, content=content, scenes=parts)

    async def _continue_if_short(self, content: str, outline: ChapterOutline, context: ContextPayload) -> str:
        target = outline.target_word_count
        words = count_words(content)
        remaining = target - words
        if words >= target * CONTINUATION_RATIO or remaining < CONTINUATION_MIN_WORDS:
            return content
        logger.info(
            "writer continuation chapter=%s words=%d target=%d",
            outline.chapter_number,
            words,
            target,
        )
        raw = await self.agent.think(
            {
                "task": "continue_chapter",
                "chapter_title": outline.title,
                "story_so_far_tail": tail_text(content, 1500),
                "words_needed": remaining,
                "end_on": outline.cliffhanger,
            },
            **call_options(context, self.config),
        )
        extra = clean_scene_text(raw)
        if not extra:
            return content
        return drop_trailing_fragment(f"{content}\n\n{extra}")

    def _choose_title(
        self,
        outline: ChapterOutline,
        proposed: str,
        context: ContextPayload,
        needs_new_title: bool,
    ) -> str:
        if not needs_new_title:
            return outline.title
        threshold = self.config.title_similarity_threshold
        candidates = [proposed, outline.cliffhanger]
        candidates.extend(scene.goal for scene in outline.scenes)
        return pick_unique_title(candidates, context.previous_titles, threshold, chapter_number=outline.chapter_number)


def _parse_severity(value: Any) -> Severity:
    try:
        severity = Severity(_as_str(value).lower())
    except ValueError:
        return Severity.MODERATE
    # Only deterministic checks may block a chapter outright.
    if severity == Severity.CRITICAL:
        return Severity.MAJOR
    return severity


class CriticAgent:
    def __init__(self, agent: Optional[Agent], config: EngineConfig, engine: Optional[ConsistencyEngine] = None):
        self.agent = agent
        self.config = config
        self.engine = engine or ConsistencyEngine()

    async def critique(self, context: ContextPayload, outline: ChapterOutline, draft: Draft) -> CriticReport:
        style = analyze_style(draft.content)
        violations: List[Violation] = []

        for issue in style.issues:
            if issue.severity == Severity.MAJOR:
                violations.append(
                    Violation(
                        category=ViolationCategory.STYLE,
                        severity=Severity.MAJOR,
                        message=issue.description,
                        suggestion=issue.suggestion,
                    )
                )

        violations.extend(
            self.engine.check(
                draft.content,
                {
                    "title": draft.title,
                    "previous_titles": context.previous_titles,
                    "title_similarity_threshold": self.config.title_similarity_threshold,
                    "dead_character_names": context.dead_character_names,
                    "known_character_names": context.known_character_names,
                    "protagonist_name": context.protagonist_name,
                    "outline": outline,
                },
            )
        )

        word_count = count_words(draft.content)
        violations.extend(self._word_count_violations(word_count, outline.target_word_count))

        llm_score: Optional[float] = None
        if self.config.critic_use_llm and self.agent is not None:
            llm_score, llm_violations = await self._llm_review(context, outline, draft)
            violations.extend(llm_violations)

        if llm_score is None:
            composite = float(style.overall_score)
        else:
            composite = 0.5 * style.overall_score + 0.5 * (llm_score * 10)
        composite -= sum(SEVERITY_PENALTIES[v.severity] for v in violations)
        score = int(round(max(0.0, min(100.0, composite))))
        has_critical = any(v.severity == Severity.CRITICAL for v in violations)
        passed = score >= self.config.min_quality_score and not has_critical

        return CriticReport(
            score=score,
            passed=passed,
            violations=violations,
            style=style,
            word_count=word_count,
            llm_score=llm_score,
        )

    def _word_count_violations(self, word_count: int, target: int) -> List[Violation]:
        low, high = word_count_band(target, self.config.word_count_tolerance)
        if word_count < target * SHORT_CHAPTER_RATIO:
            return [
                Violation(
                    category=ViolationCategory.WORD_COUNT,
                    severity=Severity.MAJOR,
                    message=f"Chapter is far too short: {word_count}/{target} words",
                    suggestion="Write every scene in full; do not summarize",
                )
            ]
        if word_count < low:
            return [
                Violation(
                    category=ViolationCategory.WORD_COUNT,
                    severity=Severity.MODERATE,
                    message=f"Chapter is short: {word_count} words, expected {low}-{high}",
                    suggestion="Expand the scenes with action and dialogue",
                )
            ]
        if word_count > high:
            return [
                Violation(
                    category=ViolationCategory.WORD_COUNT,
                    severity=Severity.MODERATE,
                    message=f"Chapter is long: {word_count} words, expected {low}-{high}",
                    suggestion="Tighten description and cut repetition",
                )
            ]
        return []

    async def _llm_review(self, context: ContextPayload, outline: ChapterOutline, draft: Draft):
        try:
            raw = await self.agent.think(
                {
                    "task": "review_chapter",
                    "outline": outline.model_dump(),
                    "title": draft.title,
                    "draft": draft.content,
                },
                json_mode=True,
                **call_options(context, self.config, temperature=0.2),
            )
            payload = parse_json_object(raw, "critic review")
            score_raw = _first(payload, "overallScore", "overall_score", "score")
            if score_raw is None:
                raise GenerationError("critic review has no overallScore")
            score = float(score_raw)
            if math.isnan(score):
                raise GenerationError("critic review score is not a number")
        except (GenerationError, TypeError, ValueError) as exc:
            logger.warning(
                "critic review failed closed chapter=%s error=%s",
                outline.chapter_number,
                exc,
            )
            return NEUTRAL_LLM_SCORE, []

        issues = payload.get("issues")
        if isinstance(issues, str):
            issues = [issues]
        elif not isinstance(issues, list):
            issues = []

        violations = []
        for item in issues:
            if isinstance(item, dict):
                message = _as_str(_first(item, "description", "message", "issue"))
                if not message:
                    continue
                violations.append(
                    Violation(
                        category=ViolationCategory.CRITIC,
                        severity=_parse_severity(item.get("severity")),
                        message=message,
                        suggestion=_as_str(item.get("suggestion")),
                    )
                )
            elif _as_str(item):
                violations.append(
                    Violation(category=ViolationCategory.CRITIC, severity=Severity.MINOR, message=_as_str(item))
                )
        return max(1.0, min(10.0, score)), violations
