"""
Planner -> Writer -> Critic state machine for a single chapter.

    planning -> writing -> critiquing -> accepted
                   ^            |
                   +- retrying <+-> failed (retry budget spent, reject policy)

The attempt counter is bounded (1..3). A failed critic report feeds its
violations back into the next Writer call as rewrite instructions.
"""

import logging
from typing import Any, Awaitable, Callable, List, Optional

from pydantic import BaseModel, Field

from agents.studio import AgentStudio, CriticAgent, PlannerAgent, WriterAgent
from core.errors import GenerationError, QualityRejection
from models import (
    AgentRole,
    ChapterOutline,
    ContextPayload,
    CriticReport,
    Draft,
    DraftAttempt,
    EngineConfig,
    PipelineState,
    RetryExhaustedPolicy,
    Violation,
)

logger = logging.getLogger("chapterforge.pipeline")

MAX_ATTEMPTS_CAP = 3
PLANNING_PROGRESS = 15
ATTEMPT_PROGRESS_START = 20
ATTEMPT_PROGRESS_SPAN = 25

AttemptCallback = Callable[[DraftAttempt], Awaitable[None]]


class NullReporter:
    """Reporter that never stops the run; used outside the job manager."""

    async def checkpoint(self, step: str, progress: int) -> None:
        return None


class PipelineResult(BaseModel):
    outline: ChapterOutline
    draft: Draft
    report: CriticReport
    attempts: List[DraftAttempt] = Field(default_factory=list)
    accepted_attempt: int
    below_threshold: bool = False
    states: List[PipelineState] = Field(default_factory=list)


class ChapterPipeline:
    def __init__(
        self,
        llm_client: Any,
        config: EngineConfig,
        critic: Optional[Any] = None,
        on_attempt: Optional[AttemptCallback] = None,
    ):
        self.config = config
        self.studio = AgentStudio(llm_client)
        self.planner = PlannerAgent(self.studio.get_agent(AgentRole.PLANNER), config)
        self.writer = WriterAgent(self.studio.get_agent(AgentRole.WRITER), config)
        self.critic = critic or CriticAgent(
            self.studio.get_agent(AgentRole.CRITIC) if config.critic_use_llm else None,
            config,
        )
        self.on_attempt = on_attempt

    @property
    def max_attempts(self) -> int:
        return max(1, min(MAX_ATTEMPTS_CAP, int(self.config.max_attempts)))

    async def run(self, context: ContextPayload, reporter: Optional[Any] = None) -> PipelineResult:
        reporter = reporter or NullReporter()
        states: List[PipelineState] = []

        def enter(state: PipelineState):
            states.append(state)
            logger.debug(
                "pipeline state chapter=%s state=%s",
                context.chapter_number,
                state.value,
            )

        enter(PipelineState.PLANNING)
        await reporter.checkpoint("Planning chapter", PLANNING_PROGRESS)
        outline = await self.planner.plan(context)

        attempts: List[DraftAttempt] = []
        drafts: List[Draft] = []
        violations: List[Violation] = []
        max_attempts = self.max_attempts

        for attempt in range(1, max_attempts + 1):
            base = ATTEMPT_PROGRESS_START + (attempt - 1) * ATTEMPT_PROGRESS_SPAN

            enter(PipelineState.WRITING)
            await reporter.checkpoint(f"Writing draft {attempt}/{max_attempts}", base)

            async def on_scene(index: int, total: int, _attempt: int = attempt, _base: int = base):
                await reporter.checkpoint(
                    f"Writing scene {index + 1}/{total} (draft {_attempt})",
                    _base + int(18 * index / max(1, total)),
                )

            previous = drafts[-1] if drafts else None
            draft = await self.writer.write(context, outline, violations, on_scene, previous)

            enter(PipelineState.CRITIQUING)
            await reporter.checkpoint(f"Reviewing draft {attempt}/{max_attempts}", base + 20)
            report = await self.critic.critique(context, outline, draft)

            record = DraftAttempt(
                attempt=attempt,
                title=draft.title,
                content=draft.content,
                word_count=report.word_count,
                report=report,
            )
            attempts.append(record)
            drafts.append(draft)
            if self.on_attempt is not None:
                await self.on_attempt(record)

            logger.info(
                "pipeline attempt chapter=%s attempt=%d score=%d passed=%s violations=%d",
                context.chapter_number,
                attempt,
                report.score,
                report.passed,
                len(report.violations),
            )

            if report.passed:
                enter(PipelineState.ACCEPTED)
                return PipelineResult(
                    outline=outline,
                    draft=draft,
                    report=report,
                    attempts=attempts,
                    accepted_attempt=attempt,
                    states=states,
                )

            if attempt < max_attempts:
                enter(PipelineState.RETRYING)
                violations = report.violations

        best = max(attempts, key=lambda item: (item.report.score, item.attempt))
        if self.config.retry_exhausted_policy == RetryExhaustedPolicy.REJECT:
            enter(PipelineState.FAILED)
            rejection = QualityRejection(
                f"best score {best.report.score} below {self.config.min_quality_score}",
                best_score=best.report.score,
                attempts=len(attempts),
            )
            raise GenerationError(
                f"Quality gate not met after {len(attempts)} attempts (best score {best.report.score})"
            ) from rejection

        logger.warning(
            "pipeline accepted below threshold chapter=%s attempt=%d score=%d threshold=%d",
            context.chapter_number,
            best.attempt,
            best.report.score,
            self.config.min_quality_score,
        )
        enter(PipelineState.ACCEPTED)
        return PipelineResult(
            outline=outline,
            draft=drafts[best.attempt - 1],
            report=best.report,
            attempts=attempts,
            accepted_attempt=best.attempt,
            below_threshold=True,
            states=states,
        )
