import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from core.errors import ConflictError, NotFoundError
from models import (
    ACTIVE_JOB_STATUSES,
    ArcPlan,
    Chapter,
    ChapterSummary,
    CharacterArc,
    CharacterState,
    DraftAttempt,
    ForeshadowingHint,
    ForeshadowingStatus,
    Job,
    JobStatus,
    LocationBible,
    PacingBlueprint,
    PowerState,
    Project,
    ProjectStatus,
    StorySynopsis,
    VoiceFingerprint,
    utcnow,
)

logger = logging.getLogger("chapterforge.store")

_ACTIVE_SQL = "('pending', 'running')"


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _loads(value: Optional[str], fallback: Any) -> Any:
    if not value:
        return fallback
    try:
        return json.loads(value)
    except ValueError:
        return fallback


def _statuses(values: Iterable[JobStatus]) -> List[str]:
    return [JobStatus(v).value for v in values]


class StoryStore:
    """sqlite-backed keyed store for projects, jobs, chapters and memory layers.

    Every method opens its own connection, so a store instance carries no
    connection state and ``reopen()`` yields a fully independent handle.
    """

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self._init_db()

    def reopen(self) -> "StoryStore":
        return StoryStore(str(self.db_path))

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(self.db_path, timeout=10.0)
        except sqlite3.OperationalError as exc:
            raise sqlite3.OperationalError(f"{exc} (db_path={self.db_path})") from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=10000")
        return conn

    @contextmanager
    def _connection(self):
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self):
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()

    def _init_db(self):
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.executescript(
                f"""
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    genre TEXT NOT NULL,
                    protagonist_name TEXT,
                    world_description TEXT,
                    status TEXT NOT NULL,
                    current_chapter INTEGER NOT NULL DEFAULT 0,
                    total_planned_chapters INTEGER NOT NULL,
                    target_chapter_length INTEGER NOT NULL,
                    temperature REAL,
                    ai_model TEXT,
                    story_bible TEXT,
                    master_outline TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    chapter_number INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    progress INTEGER NOT NULL DEFAULT 0,
                    step_message TEXT NOT NULL DEFAULT '',
                    error_message TEXT,
                    chapter_id TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_one_active
                    ON jobs(project_id) WHERE status IN {_ACTIVE_SQL};
                CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, updated_at);

                CREATE TABLE IF NOT EXISTS chapters (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    chapter_number INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    content TEXT NOT NULL,
                    word_count INTEGER NOT NULL DEFAULT 0,
                    quality_score INTEGER,
                    created_at TEXT NOT NULL,
                    UNIQUE(project_id, chapter_number)
                );

                CREATE TABLE IF NOT EXISTS chapter_attempts (
                    job_id TEXT NOT NULL,
                    attempt INTEGER NOT NULL,
                    project_id TEXT NOT NULL,
                    chapter_number INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    word_count INTEGER NOT NULL,
                    score INTEGER NOT NULL,
                    passed INTEGER NOT NULL,
                    accepted INTEGER NOT NULL DEFAULT 0,
                    violations TEXT,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (job_id, attempt)
                );

                CREATE TABLE IF NOT EXISTS chapter_summaries (
                    project_id TEXT NOT NULL,
                    chapter_number INTEGER NOT NULL,
                    title TEXT,
                    summary TEXT,
                    opening_sentence TEXT,
                    cliffhanger TEXT,
                    mc_state TEXT,
                    PRIMARY KEY (project_id, chapter_number)
                );

                CREATE TABLE IF NOT EXISTS story_synopses (
                    project_id TEXT PRIMARY KEY,
                    synopsis TEXT,
                    structured TEXT,
                    last_updated_chapter INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS arc_plans (
                    project_id TEXT NOT NULL,
                    arc_number INTEGER NOT NULL,
                    theme TEXT,
                    plan_text TEXT,
                    chapter_briefs TEXT,
                    threads TEXT,
                    is_finale_arc INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (project_id, arc_number)
                );

                CREATE TABLE IF NOT EXISTS character_states (
                    project_id TEXT NOT NULL,
                    character_name TEXT NOT NULL,
                    chapter_number INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'alive',
                    power_level TEXT,
                    location TEXT,
                    notes TEXT,
                    PRIMARY KEY (project_id, character_name, chapter_number)
                );

                CREATE TABLE IF NOT EXISTS character_arcs (
                    project_id TEXT NOT NULL,
                    character_name TEXT NOT NULL,
                    arc_summary TEXT,
                    first_seen_chapter INTEGER NOT NULL DEFAULT 0,
                    last_seen_chapter INTEGER NOT NULL DEFAULT 0,
                    appearances INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (project_id, character_name)
                );

                CREATE TABLE IF NOT EXISTS power_states (
                    project_id TEXT NOT NULL,
                    chapter_number INTEGER NOT NULL,
                    realm TEXT,
                    level TEXT,
                    abilities TEXT,
                    breakthrough INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (project_id, chapter_number)
                );

                CREATE TABLE IF NOT EXISTS voice_fingerprints (
                    project_id TEXT NOT NULL,
                    chapter_number INTEGER NOT NULL,
                    avg_sentence_length REAL,
                    dialogue_ratio REAL,
                    signature_phrases TEXT,
                    style_notes TEXT,
                    PRIMARY KEY (project_id, chapter_number)
                );

                CREATE TABLE IF NOT EXISTS foreshadowing_hints (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    description TEXT NOT NULL,
                    plant_chapter INTEGER NOT NULL,
                    payoff_chapter INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    arc_number INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS pacing_blueprints (
                    project_id TEXT NOT NULL,
                    arc_number INTEGER NOT NULL,
                    beats TEXT,
                    PRIMARY KEY (project_id, arc_number)
                );

                CREATE TABLE IF NOT EXISTS location_bibles (
                    project_id TEXT NOT NULL,
                    location_name TEXT NOT NULL,
                    arc_start INTEGER NOT NULL,
                    arc_end INTEGER NOT NULL,
                    explored INTEGER NOT NULL DEFAULT 0,
                    bible TEXT,
                    PRIMARY KEY (project_id, location_name)
                );
                """
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def _row_to_project(self, row: sqlite3.Row) -> Project:
        return Project.model_validate(dict(row))

    def create_project(self, project: Project) -> Project:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO projects
                (id, title, genre, protagonist_name, world_description, status, current_chapter,
                 total_planned_chapters, target_chapter_length, temperature, ai_model,
                 story_bible, master_outline, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project.id,
                    project.title,
                    project.genre,
                    project.protagonist_name,
                    project.world_description,
                    project.status.value,
                    project.current_chapter,
                    project.total_planned_chapters,
                    project.target_chapter_length,
                    project.temperature,
                    project.ai_model,
                    project.story_bible,
                    project.master_outline,
                    _ts(project.created_at),
                    _ts(project.updated_at),
                ),
            )
            conn.commit()
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
            return self._row_to_project(row) if row else None

    def list_projects(self, status: Optional[ProjectStatus] = None) -> List[Project]:
        with self._connection() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM projects ORDER BY created_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM projects WHERE status = ? ORDER BY created_at",
                    (ProjectStatus(status).value,),
                ).fetchall()
            return [self._row_to_project(row) for row in rows]

    def update_project_status(self, project_id: str, status: ProjectStatus, now: Optional[datetime] = None) -> Project:
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE projects SET status = ?, updated_at = ? WHERE id = ?",
                (ProjectStatus(status).value, _ts(now or utcnow()), project_id),
            )
            conn.commit()
            if cursor.rowcount != 1:
                raise NotFoundError("Project not found")
        return self.get_project(project_id)

    def update_story_bible(self, project_id: str, story_bible: str, now: Optional[datetime] = None) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE projects SET story_bible = ?, updated_at = ? WHERE id = ?",
                (story_bible, _ts(now or utcnow()), project_id),
            )
            conn.commit()
            return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        return Job.model_validate(dict(row))

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return self._row_to_job(row) if row else None

    def get_active_job(self, project_id: str) -> Optional[Job]:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT * FROM jobs WHERE project_id = ? AND status IN {_ACTIVE_SQL}",
                (project_id,),
            ).fetchone()
            return self._row_to_job(row) if row else None

    def list_jobs(self, project_id: str) -> List[Job]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE project_id = ? ORDER BY created_at",
                (project_id,),
            ).fetchall()
            return [self._row_to_job(row) for row in rows]

    def insert_pending_job(
        self,
        job_id: str,
        project_id: str,
        now: datetime,
        step_message: str = "Initializing",
        progress: int = 2,
    ) -> Job:
        """Insert a pending job numbered after the project's current chapter.

        The partial unique index on active jobs rejects a second pending or
        running job for the same project; that surfaces as ``ConflictError``.
        """
        stamp = _ts(now)
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT current_chapter FROM projects WHERE id = ?", (project_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError("Project not found")
            chapter_number = int(row["current_chapter"]) + 1
            try:
                conn.execute(
                    """
                    INSERT INTO jobs
                    (id, project_id, chapter_number, status, progress, step_message,
                     error_message, chapter_id, attempts, created_at, updated_at)
                    VALUES (?, ?, ?, 'pending', ?, ?, NULL, NULL, 0, ?, ?)
                    """,
                    (job_id, project_id, chapter_number, progress, step_message, stamp, stamp),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError("An active job already exists for this project") from exc
        return Job(
            id=job_id,
            project_id=project_id,
            chapter_number=chapter_number,
            status=JobStatus.PENDING,
            progress=progress,
            step_message=step_message,
            created_at=now,
            updated_at=now,
        )

    def transition_job(
        self,
        job_id: str,
        expected: Sequence[JobStatus],
        new_status: JobStatus,
        now: datetime,
        *,
        progress: Optional[int] = None,
        step_message: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """Compare-and-swap on (id, current status). Returns whether a row changed."""
        expected_values = _statuses(expected)
        placeholders = ", ".join("?" for _ in expected_values)
        assignments = ["status = ?", "updated_at = ?"]
        params: List[Any] = [JobStatus(new_status).value, _ts(now)]
        if progress is not None:
            assignments.append("progress = MAX(progress, ?)")
            params.append(int(progress))
        if step_message is not None:
            assignments.append("step_message = ?")
            params.append(step_message)
        if error_message is not None:
            assignments.append("error_message = ?")
            params.append(error_message)
        params.append(job_id)
        params.extend(expected_values)
        with self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {', '.join(assignments)} WHERE id = ? AND status IN ({placeholders})",
                params,
            )
            conn.commit()
            return cursor.rowcount == 1

    def update_job_progress(self, job_id: str, progress: int, step_message: str, now: datetime) -> bool:
        """Raise progress (never lower it) while the job is still running."""
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs SET progress = MAX(progress, ?), step_message = ?, updated_at = ?
                WHERE id = ? AND status = 'running'
                """,
                (max(0, min(100, int(progress))), step_message, _ts(now), job_id),
            )
            conn.commit()
            return cursor.rowcount == 1

    def fail_stale_job(self, job_id: str, cutoff: datetime, now: datetime, error_message: str, step_message: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE jobs SET status = 'failed', progress = 100, error_message = ?,
                    step_message = ?, updated_at = ?
                WHERE id = ? AND status IN {_ACTIVE_SQL} AND updated_at < ?
                """,
                (error_message, step_message, _ts(now), job_id, _ts(cutoff)),
            )
            conn.commit()
            return cursor.rowcount == 1

    def list_stale_jobs(self, cutoff: datetime) -> List[Job]:
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM jobs WHERE status IN {_ACTIVE_SQL} AND updated_at < ?",
                (_ts(cutoff),),
            ).fetchall()
            return [self._row_to_job(row) for row in rows]

    def complete_job_with_chapter(self, job_id: str, chapter: Chapter, attempts: int, now: datetime) -> bool:
        """Persist the chapter, advance the project counter and complete the job atomically.

        Returns False, writing nothing, when the job is no longer running.
        """
        stamp = _ts(now)
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs SET status = 'completed', progress = 100, step_message = ?,
                    chapter_id = ?, attempts = ?, updated_at = ?
                WHERE id = ? AND status = 'running'
                """,
                ("Completed", chapter.id, attempts, stamp, job_id),
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return False
            try:
                conn.execute(
                    """
                    INSERT INTO chapters
                    (id, project_id, chapter_number, title, content, word_count, quality_score, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chapter.id,
                        chapter.project_id,
                        chapter.chapter_number,
                        chapter.title,
                        chapter.content,
                        chapter.word_count,
                        chapter.quality_score,
                        _ts(chapter.created_at),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError(f"Chapter {chapter.chapter_number} already exists") from exc
            cursor = conn.execute(
                """
                UPDATE projects SET current_chapter = ?, updated_at = ?,
                    status = CASE WHEN ? >= total_planned_chapters THEN 'completed' ELSE status END
                WHERE id = ? AND current_chapter = ?
                """,
                (
                    chapter.chapter_number,
                    stamp,
                    chapter.chapter_number,
                    chapter.project_id,
                    chapter.chapter_number - 1,
                ),
            )
            if cursor.rowcount != 1:
                raise ConflictError("Project chapter counter moved while the job was running")
        return True

    def record_attempt(self, job_id: str, project_id: str, chapter_number: int, attempt: DraftAttempt, now: datetime):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO chapter_attempts
                (job_id, attempt, project_id, chapter_number, title, word_count, score,
                 passed, accepted, violations, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    job_id,
                    attempt.attempt,
                    project_id,
                    chapter_number,
                    attempt.title,
                    attempt.word_count,
                    attempt.report.score,
                    int(attempt.report.passed),
                    _dumps([v.model_dump(mode="json") for v in attempt.report.violations]),
                    _ts(now),
                ),
            )
            conn.commit()

    def mark_attempt_accepted(self, job_id: str, attempt: int):
        with self._connection() as conn:
            conn.execute(
                "UPDATE chapter_attempts SET accepted = (attempt = ?) WHERE job_id = ?",
                (attempt, job_id),
            )
            conn.commit()

    def list_attempts(self, job_id: str) -> List[Dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM chapter_attempts WHERE job_id = ? ORDER BY attempt",
                (job_id,),
            ).fetchall()
            items = []
            for row in rows:
                item = dict(row)
                item["passed"] = bool(item["passed"])
                item["accepted"] = bool(item["accepted"])
                item["violations"] = _loads(item.get("violations"), [])
                items.append(item)
            return items

    # ------------------------------------------------------------------
    # Chapters
    # ------------------------------------------------------------------

    def _row_to_chapter(self, row: sqlite3.Row) -> Chapter:
        return Chapter.model_validate(dict(row))

    def get_chapter(self, project_id: str, chapter_number: int) -> Optional[Chapter]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM chapters WHERE project_id = ? AND chapter_number = ?",
                (project_id, chapter_number),
            ).fetchone()
            return self._row_to_chapter(row) if row else None

    def list_chapters_before(self, project_id: str, before: int, limit: int) -> List[Chapter]:
        """Most recent chapters numbered below ``before``, oldest first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM chapters WHERE project_id = ? AND chapter_number < ?
                ORDER BY chapter_number DESC LIMIT ?
                """,
                (project_id, before, limit),
            ).fetchall()
            return [self._row_to_chapter(row) for row in reversed(rows)]

    def list_chapter_titles(self, project_id: str, before: int, limit: int) -> List[Dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT chapter_number, title, word_count FROM chapters
                WHERE project_id = ? AND chapter_number < ?
                ORDER BY chapter_number DESC LIMIT ?
                """,
                (project_id, before, limit),
            ).fetchall()
            return [dict(row) for row in reversed(rows)]

    def count_chapters(self, project_id: str) -> int:
        with self._connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM chapters WHERE project_id = ?", (project_id,)).fetchone()
            return int(row["n"]) if row else 0

    # ------------------------------------------------------------------
    # Memory layers
    # ------------------------------------------------------------------

    def upsert_chapter_summary(self, summary: ChapterSummary):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO chapter_summaries
                (project_id, chapter_number, title, summary, opening_sentence, cliffhanger, mc_state)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    summary.project_id,
                    summary.chapter_number,
                    summary.title,
                    summary.summary,
                    summary.opening_sentence,
                    summary.cliffhanger,
                    summary.mc_state,
                ),
            )
            conn.commit()

    def list_chapter_summaries(self, project_id: str, before: int, limit: int) -> List[ChapterSummary]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM chapter_summaries WHERE project_id = ? AND chapter_number < ?
                ORDER BY chapter_number DESC LIMIT ?
                """,
                (project_id, before, limit),
            ).fetchall()
            return [ChapterSummary.model_validate(dict(row)) for row in reversed(rows)]

    def get_synopsis(self, project_id: str) -> Optional[StorySynopsis]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM story_synopses WHERE project_id = ?", (project_id,)).fetchone()
            if not row:
                return None
            data = dict(row)
            data["structured"] = _loads(data.get("structured"), {})
            return StorySynopsis.model_validate(data)

    def upsert_synopsis(self, synopsis: StorySynopsis):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO story_synopses (project_id, synopsis, structured, last_updated_chapter)
                VALUES (?, ?, ?, ?)
                """,
                (
                    synopsis.project_id,
                    synopsis.synopsis,
                    _dumps(synopsis.structured.model_dump(mode="json")),
                    synopsis.last_updated_chapter,
                ),
            )
            conn.commit()

    def get_arc_plan(self, project_id: str, arc_number: int) -> Optional[ArcPlan]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM arc_plans WHERE project_id = ? AND arc_number = ?",
                (project_id, arc_number),
            ).fetchone()
            if not row:
                return None
            data = dict(row)
            data["chapter_briefs"] = _loads(data.get("chapter_briefs"), {})
            data["threads"] = _loads(data.get("threads"), {})
            data["is_finale_arc"] = bool(data.get("is_finale_arc"))
            return ArcPlan.model_validate(data)

    def upsert_arc_plan(self, plan: ArcPlan):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO arc_plans
                (project_id, arc_number, theme, plan_text, chapter_briefs, threads, is_finale_arc)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    plan.project_id,
                    plan.arc_number,
                    plan.theme,
                    plan.plan_text,
                    _dumps({str(k): v for k, v in plan.chapter_briefs.items()}),
                    _dumps(plan.threads.model_dump(mode="json")),
                    int(plan.is_finale_arc),
                ),
            )
            conn.commit()

    def add_character_states(self, states: Sequence[CharacterState]):
        if not states:
            return
        with self._connection() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO character_states
                (project_id, character_name, chapter_number, status, power_level, location, notes)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (s.project_id, s.character_name, s.chapter_number, s.status, s.power_level, s.location, s.notes)
                    for s in states
                ],
            )
            conn.commit()

    def list_latest_character_states(self, project_id: str, before: int, scan_limit: int) -> List[CharacterState]:
        """Latest state per character among the newest ``scan_limit`` rows before a chapter."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM character_states WHERE project_id = ? AND chapter_number < ?
                ORDER BY chapter_number DESC LIMIT ?
                """,
                (project_id, before, scan_limit),
            ).fetchall()
        latest: Dict[str, CharacterState] = {}
        for row in rows:
            state = CharacterState.model_validate(dict(row))
            latest.setdefault(state.character_name, state)
        return sorted(latest.values(), key=lambda s: s.character_name)

    def list_character_arcs(self, project_id: str) -> List[CharacterArc]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM character_arcs WHERE project_id = ? ORDER BY character_name",
                (project_id,),
            ).fetchall()
            return [CharacterArc.model_validate(dict(row)) for row in rows]

    def upsert_character_arc(self, arc: CharacterArc):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO character_arcs
                (project_id, character_name, arc_summary, first_seen_chapter, last_seen_chapter, appearances)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    arc.project_id,
                    arc.character_name,
                    arc.arc_summary,
                    arc.first_seen_chapter,
                    arc.last_seen_chapter,
                    arc.appearances,
                ),
            )
            conn.commit()

    def add_power_state(self, state: PowerState):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO power_states
                (project_id, chapter_number, realm, level, abilities, breakthrough)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    state.project_id,
                    state.chapter_number,
                    state.realm,
                    state.level,
                    _dumps(state.abilities),
                    int(state.breakthrough),
                ),
            )
            conn.commit()

    def get_latest_power_state(self, project_id: str) -> Optional[PowerState]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM power_states WHERE project_id = ? ORDER BY chapter_number DESC LIMIT 1",
                (project_id,),
            ).fetchone()
            if not row:
                return None
            data = dict(row)
            data["abilities"] = _loads(data.get("abilities"), [])
            data["breakthrough"] = bool(data.get("breakthrough"))
            return PowerState.model_validate(data)

    def add_voice_fingerprint(self, fingerprint: VoiceFingerprint):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO voice_fingerprints
                (project_id, chapter_number, avg_sentence_length, dialogue_ratio, signature_phrases, style_notes)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    fingerprint.project_id,
                    fingerprint.chapter_number,
                    fingerprint.avg_sentence_length,
                    fingerprint.dialogue_ratio,
                    _dumps(fingerprint.signature_phrases),
                    fingerprint.style_notes,
                ),
            )
            conn.commit()

    def get_latest_voice_fingerprint(self, project_id: str, before: Optional[int] = None) -> Optional[VoiceFingerprint]:
        with self._connection() as conn:
            if before is None:
                row = conn.execute(
                    "SELECT * FROM voice_fingerprints WHERE project_id = ? ORDER BY chapter_number DESC LIMIT 1",
                    (project_id,),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    SELECT * FROM voice_fingerprints WHERE project_id = ? AND chapter_number < ?
                    ORDER BY chapter_number DESC LIMIT 1
                    """,
                    (project_id, before),
                ).fetchone()
            if not row:
                return None
            data = dict(row)
            data["signature_phrases"] = _loads(data.get("signature_phrases"), [])
            return VoiceFingerprint.model_validate(data)

    def list_foreshadowing(
        self,
        project_id: str,
        statuses: Optional[Sequence[ForeshadowingStatus]] = None,
    ) -> List[ForeshadowingHint]:
        with self._connection() as conn:
            query = "SELECT * FROM foreshadowing_hints WHERE project_id = ?"
            params: List[Any] = [project_id]
            if statuses:
                values = [ForeshadowingStatus(s).value for s in statuses]
                query += f" AND status IN ({', '.join('?' for _ in values)})"
                params.extend(values)
            query += " ORDER BY plant_chapter, id"
            rows = conn.execute(query, params).fetchall()
            return [ForeshadowingHint.model_validate(dict(row)) for row in rows]

    def upsert_foreshadowing(self, hint: ForeshadowingHint):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO foreshadowing_hints
                (id, project_id, description, plant_chapter, payoff_chapter, status, arc_number)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    hint.id,
                    hint.project_id,
                    hint.description,
                    hint.plant_chapter,
                    hint.payoff_chapter,
                    hint.status.value,
                    hint.arc_number,
                ),
            )
            conn.commit()

    def update_foreshadowing_status(self, hint_id: str, expected: ForeshadowingStatus, status: ForeshadowingStatus) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE foreshadowing_hints SET status = ? WHERE id = ? AND status = ?",
                (ForeshadowingStatus(status).value, hint_id, ForeshadowingStatus(expected).value),
            )
            conn.commit()
            return cursor.rowcount == 1

    def get_pacing_blueprint(self, project_id: str, arc_number: int) -> Optional[PacingBlueprint]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM pacing_blueprints WHERE project_id = ? AND arc_number = ?",
                (project_id, arc_number),
            ).fetchone()
            if not row:
                return None
            data = dict(row)
            data["beats"] = _loads(data.get("beats"), [])
            return PacingBlueprint.model_validate(data)

    def upsert_pacing_blueprint(self, blueprint: PacingBlueprint):
        with self._connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO pacing_blueprints (project_id, arc_number, beats) VALUES (?, ?, ?)",
                (
                    blueprint.project_id,
                    blueprint.arc_number,
                    _dumps([beat.model_dump(mode="json") for beat in blueprint.beats]),
                ),
            )
            conn.commit()

    def list_location_bibles(self, project_id: str) -> List[LocationBible]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM location_bibles WHERE project_id = ? ORDER BY arc_start, location_name",
                (project_id,),
            ).fetchall()
            items = []
            for row in rows:
                data = dict(row)
                data["explored"] = bool(data.get("explored"))
                items.append(LocationBible.model_validate(data))
            return items

    def upsert_location_bible(self, location: LocationBible):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO location_bibles
                (project_id, location_name, arc_start, arc_end, explored, bible)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    location.project_id,
                    location.location_name,
                    location.arc_start,
                    location.arc_end,
                    int(location.explored),
                    location.bible,
                ),
            )
            conn.commit()
