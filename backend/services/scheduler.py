import asyncio
import logging
from typing import Any, Dict, List, Tuple

from core.errors import ConflictError, ValidationError
from memory import StoryStore
from models import ProjectStatus

logger = logging.getLogger("chapterforge.jobs")


async def start_eligible_jobs(manager: Any, store: StoryStore) -> Tuple[List[Dict[str, str]], List[Dict[str, str]]]:
    """Start one chapter job for every active project that still has chapters to write.

    Returns ``(started, skipped)``; a project that already has an active job,
    or that stopped being eligible in the meantime, is skipped.
    """
    started: List[Dict[str, str]] = []
    skipped: List[Dict[str, str]] = []
    projects = await asyncio.to_thread(store.list_projects, ProjectStatus.ACTIVE)
    for project in projects:
        if project.current_chapter >= project.total_planned_chapters:
            skipped.append({"project_id": project.id, "reason": "all planned chapters written"})
            continue
        try:
            job_id = await manager.create(project.id)
        except (ConflictError, ValidationError) as exc:
            skipped.append({"project_id": project.id, "reason": exc.message})
            continue
        started.append({"project_id": project.id, "job_id": job_id})
    logger.info("scheduler tick started=%d skipped=%d", len(started), len(skipped))
    return started, skipped
