#!/usr/bin/env python3
"""
Write the next chapter of a project without running the HTTP server.

Run from backend/:
    python3 scripts/write_chapter.py <project_id>
    python3 scripts/write_chapter.py --all-active
"""

import argparse
import asyncio
import sys
from pathlib import Path

# ── ensure backend root is on sys.path so bare imports work ──
BACKEND_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BACKEND_ROOT))

from api.main import build_llm_client, database_path, resolve_llm_runtime, settings  # noqa: E402
from core.errors import ChapterforgeError  # noqa: E402
from memory import StoryStore  # noqa: E402
from services.job_manager import JobManager  # noqa: E402
from services.scheduler import start_eligible_jobs  # noqa: E402


def print_job(store: StoryStore, job_id: str) -> bool:
    job = store.get_job(job_id)
    if job is None:
        print(f"  job {job_id}: missing")
        return False
    line = f"  job {job.id}: {job.status.value} chapter={job.chapter_number} attempts={job.attempts}"
    if job.error_message:
        line += f" error={job.error_message}"
    print(line)
    if job.chapter_id:
        chapter = store.get_chapter(job.project_id, job.chapter_number)
        if chapter is not None:
            print(f"    \"{chapter.title}\" words={chapter.word_count} score={chapter.quality_score}")
    return job.status.value == "completed"


async def run(args) -> int:
    store = StoryStore(str(Path(args.db).resolve()) if args.db else str(database_path()))
    manager = JobManager(store, build_llm_client(resolve_llm_runtime()), settings.engine_config())

    if args.all_active:
        started, skipped = await start_eligible_jobs(manager, store)
        for item in skipped:
            print(f"  skipped {item['project_id']}: {item['reason']}")
        job_ids = [item["job_id"] for item in started]
    else:
        try:
            job_ids = [await manager.create(args.project_id)]
        except ChapterforgeError as exc:
            print(f"Cannot start job: {exc.as_error_message()}")
            return 1

    for job_id in job_ids:
        await manager.runner.wait(job_id)

    ok = [print_job(store, job_id) for job_id in job_ids]
    return 0 if all(ok) else 1


def main():
    parser = argparse.ArgumentParser(description="Generate the next chapter for a project")
    parser.add_argument("project_id", nargs="?", help="Project to advance by one chapter")
    parser.add_argument("--all-active", action="store_true", help="Advance every active project")
    parser.add_argument("--db", default=None, help="Override the SQLite database path")
    args = parser.parse_args()
    if not args.project_id and not args.all_active:
        parser.error("project_id or --all-active is required")
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
