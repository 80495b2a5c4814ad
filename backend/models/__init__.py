from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_JOB_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)
TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.STOPPED)


class RetryExhaustedPolicy(str, Enum):
    ACCEPT_BEST = "accept_best"
    REJECT = "reject"


class ViolationCategory(str, Enum):
    STYLE = "style"
    WORD_COUNT = "word_count"
    TITLE = "title"
    CONTINUITY = "continuity"
    CRITIC = "critic"


class Severity(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    CRITICAL = "critical"


class ForeshadowingStatus(str, Enum):
    PLANNED = "planned"
    PLANTED = "planted"
    PAID_OFF = "paid_off"
    ABANDONED = "abandoned"


class AgentRole(str, Enum):
    PLANNER = "planner"
    WRITER = "writer"
    CRITIC = "critic"


class PipelineState(str, Enum):
    PLANNING = "planning"
    WRITING = "writing"
    CRITIQUING = "critiquing"
    RETRYING = "retrying"
    ACCEPTED = "accepted"
    FAILED = "failed"


class Project(BaseModel):
    id: str
    title: str
    genre: str = "fantasy"
    protagonist_name: str = ""
    world_description: str = ""
    status: ProjectStatus = ProjectStatus.ACTIVE
    current_chapter: int = Field(default=0, ge=0)
    total_planned_chapters: int = Field(default=1000, ge=1)
    target_chapter_length: int = Field(default=2800, ge=200)
    temperature: Optional[float] = None
    ai_model: Optional[str] = None
    story_bible: Optional[str] = None
    master_outline: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Job(BaseModel):
    id: str
    project_id: str
    chapter_number: int = Field(ge=1)
    status: JobStatus = JobStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    step_message: str = ""
    error_message: Optional[str] = None
    chapter_id: Optional[str] = None
    attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SceneOutline(BaseModel):
    order: int
    setting: str = ""
    characters: List[str] = Field(default_factory=list)
    goal: str = ""
    conflict: str = ""
    resolution: str = ""
    estimated_words: int = 0
    pov_character: str = ""


class EmotionalArc(BaseModel):
    opening: str = ""
    midpoint: str = ""
    climax: str = ""
    closing: str = ""


class DopaminePoint(BaseModel):
    type: str = ""
    scene: int = 0
    description: str = ""


class ChapterOutline(BaseModel):
    chapter_number: int
    title: str
    summary: str = ""
    scenes: List[SceneOutline] = Field(default_factory=list)
    emotional_arc: EmotionalArc = Field(default_factory=EmotionalArc)
    tension_level: int = Field(default=5, ge=1, le=10)
    dopamine_points: List[DopaminePoint] = Field(default_factory=list)
    cliffhanger: str = ""
    target_word_count: int = 2800
    threads_advanced: List[str] = Field(default_factory=list)


class Draft(BaseModel):
    title: str
    content: str
    scenes: List[str] = Field(default_factory=list)


class SynopsisStructured(BaseModel):
    mc_current_state: str = ""
    active_allies: List[str] = Field(default_factory=list)
    active_enemies: List[str] = Field(default_factory=list)
    open_threads: List[str] = Field(default_factory=list)


class ArcPlanThreads(BaseModel):
    threads_to_advance: List[str] = Field(default_factory=list)
    threads_to_resolve: List[str] = Field(default_factory=list)
    new_threads: List[str] = Field(default_factory=list)


class RecentChapter(BaseModel):
    chapter_number: int
    title: str
    content: str


class ContextPayload(BaseModel):
    project_id: str
    chapter_number: int
    genre: str = ""
    protagonist_name: str = ""
    target_word_count: int = 2800
    ai_model: str = ""
    temperature: Optional[float] = None
    world_description: str = ""
    has_story_bible: bool = False
    story_bible: str = ""
    master_outline: str = ""
    recent_chapters: List[RecentChapter] = Field(default_factory=list)
    previous_titles: List[str] = Field(default_factory=list)
    recent_openings: List[str] = Field(default_factory=list)
    recent_cliffhangers: List[str] = Field(default_factory=list)
    known_character_names: List[str] = Field(default_factory=list)
    dead_character_names: List[str] = Field(default_factory=list)
    synopsis_structured: SynopsisStructured = Field(default_factory=SynopsisStructured)
    arc_plan_threads: ArcPlanThreads = Field(default_factory=ArcPlanThreads)
    chapter_brief: str = ""
    finale_guidance: str = ""
    voice_anchor: str = ""
    style_guidelines: str = ""
    absent_layers: List[str] = Field(default_factory=list)

    def is_absent(self, layer: str) -> bool:
        return layer in self.absent_layers


class WeakVerbUsage(BaseModel):
    verb: str
    count: int
    alternatives: List[str] = Field(default_factory=list)


class AdverbUsage(BaseModel):
    adverb: str
    count: int


class TellInstance(BaseModel):
    text: str
    suggestion: str


class PurpleProse(BaseModel):
    score: int = 100
    instances: List[str] = Field(default_factory=list)


class PassiveVoice(BaseModel):
    score: int = 100
    ratio: float = 0.0
    instances: List[str] = Field(default_factory=list)


class SentenceVariety(BaseModel):
    score: int = 50
    avg_length: float = 0.0
    length_variance: float = 0.0
    short_ratio: int = 0
    long_ratio: int = 0


class ExpositionDump(BaseModel):
    location: int
    length: int


class StyleIssue(BaseModel):
    type: str
    severity: Severity
    description: str
    suggestion: str = ""


class StyleAnalysisResult(BaseModel):
    overall_score: int = Field(ge=0, le=100)
    weak_verb_score: int = 100
    weak_verbs: List[WeakVerbUsage] = Field(default_factory=list)
    adverb_score: int = 100
    adverb_overuse: List[AdverbUsage] = Field(default_factory=list)
    show_dont_tell_score: int = 100
    tell_instances: List[TellInstance] = Field(default_factory=list)
    purple_prose: PurpleProse = Field(default_factory=PurpleProse)
    passive_voice: PassiveVoice = Field(default_factory=PassiveVoice)
    sentence_variety: SentenceVariety = Field(default_factory=SentenceVariety)
    exposition_dumps: List[ExpositionDump] = Field(default_factory=list)
    issues: List[StyleIssue] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


class Violation(BaseModel):
    category: ViolationCategory
    severity: Severity = Severity.MODERATE
    message: str
    suggestion: str = ""


class CriticReport(BaseModel):
    score: int = Field(ge=0, le=100)
    passed: bool
    violations: List[Violation] = Field(default_factory=list)
    style: Optional[StyleAnalysisResult] = None
    word_count: int = 0
    llm_score: Optional[float] = None


class DraftAttempt(BaseModel):
    attempt: int
    title: str
    content: str
    word_count: int
    report: CriticReport


class Chapter(BaseModel):
    id: str
    project_id: str
    chapter_number: int
    title: str
    content: str
    word_count: int = 0
    quality_score: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)


class ChapterSummary(BaseModel):
    project_id: str
    chapter_number: int
    title: str = ""
    summary: str = ""
    opening_sentence: str = ""
    cliffhanger: str = ""
    mc_state: str = ""


class StorySynopsis(BaseModel):
    project_id: str
    synopsis: str = ""
    structured: SynopsisStructured = Field(default_factory=SynopsisStructured)
    last_updated_chapter: int = 0


class ArcPlan(BaseModel):
    project_id: str
    arc_number: int
    theme: str = ""
    plan_text: str = ""
    chapter_briefs: Dict[int, str] = Field(default_factory=dict)
    threads: ArcPlanThreads = Field(default_factory=ArcPlanThreads)
    is_finale_arc: bool = False


class CharacterState(BaseModel):
    project_id: str
    character_name: str
    chapter_number: int
    status: str = "alive"
    power_level: str = ""
    location: str = ""
    notes: str = ""


class CharacterArc(BaseModel):
    project_id: str
    character_name: str
    arc_summary: str = ""
    first_seen_chapter: int = 0
    last_seen_chapter: int = 0
    appearances: int = 0


class PowerState(BaseModel):
    project_id: str
    chapter_number: int
    realm: str = ""
    level: str = ""
    abilities: List[str] = Field(default_factory=list)
    breakthrough: bool = False


class VoiceFingerprint(BaseModel):
    project_id: str
    chapter_number: int
    avg_sentence_length: float = 0.0
    dialogue_ratio: float = 0.0
    signature_phrases: List[str] = Field(default_factory=list)
    style_notes: str = ""


class ForeshadowingHint(BaseModel):
    id: str
    project_id: str
    description: str
    plant_chapter: int
    payoff_chapter: int
    status: ForeshadowingStatus = ForeshadowingStatus.PLANNED
    arc_number: int = 0


class PacingBeat(BaseModel):
    chapter: int
    intensity: int = Field(default=5, ge=1, le=10)
    note: str = ""


class PacingBlueprint(BaseModel):
    project_id: str
    arc_number: int
    beats: List[PacingBeat] = Field(default_factory=list)


class LocationBible(BaseModel):
    project_id: str
    location_name: str
    arc_start: int
    arc_end: int
    explored: bool = False
    bible: str = ""


class EngineConfig(BaseModel):
    target_word_count: int = 2800
    word_count_tolerance: float = Field(default=0.25, gt=0, lt=1)
    min_quality_score: int = Field(default=70, ge=0, le=100)
    max_attempts: int = Field(default=3, ge=1, le=3)
    title_similarity_threshold: float = Field(default=0.7, gt=0, le=1)
    retry_exhausted_policy: RetryExhaustedPolicy = RetryExhaustedPolicy.ACCEPT_BEST
    critic_use_llm: bool = True
    temperature: float = 0.75
    max_tokens: int = 32768
    job_timeout_minutes: int = 15
    max_concurrent_jobs: int = Field(default=4, ge=1)

    model_config = {"frozen": True}
