"""
Pure cadence predicates.

Everything here is a function of chapter numbers (and occasionally the
chapter text); none of it touches storage.
"""

import math
import re
from typing import Optional, Sequence

from models import ForeshadowingStatus

ARC_SIZE = 20
CHARACTER_ARC_GRACE_CHAPTERS = 3
CHARACTER_ARC_MIN_APPEARANCES = 3
SYNOPSIS_INTERVAL = 5
STORY_BIBLE_FIRST_CHAPTER = 3
STORY_BIBLE_REFRESH_INTERVAL = 150
POWER_STATE_INTERVAL = 3
VOICE_FIRST_CHAPTER = 5
VOICE_INTERVAL = 10

FINALE_REMAINING_FLOOR = 10
FINALE_RATIO = 0.95
FINALE_MODERATE_RATIO = 0.85
FINALE_MAX_OPEN_THREADS = 2

PLANT_WINDOW = 2
PAYOFF_WINDOW = 5
ABANDON_PLANNED_AFTER = 10
ABANDON_PLANTED_AFTER = 20

_BREAKTHROUGH_RE = re.compile(
    r"\b(?:breakthrough|broke through|advanced to|ascended|awakened|reached the \w+ (?:realm|stage|level))\b",
    re.IGNORECASE,
)


def arc_number_for(chapter_number: int) -> int:
    return max(1, int(math.ceil(max(chapter_number, 1) / ARC_SIZE)))


def arc_chapter_range(arc_number: int) -> tuple[int, int]:
    start = (max(arc_number, 1) - 1) * ARC_SIZE + 1
    return start, start + ARC_SIZE - 1


def is_arc_boundary(chapter_number: int) -> bool:
    return chapter_number > 0 and chapter_number % ARC_SIZE == 0


def should_be_finale_arc(
    current_chapter: int,
    total_planned: int,
    open_threads: Optional[Sequence[str]] = None,
) -> bool:
    """Decide whether the arc starting after ``current_chapter`` should wrap the story up."""
    if total_planned <= 0:
        return False
    remaining = total_planned - current_chapter
    progress = current_chapter / total_planned
    if remaining <= FINALE_REMAINING_FLOOR:
        return True
    if progress >= FINALE_RATIO:
        return True
    if progress >= FINALE_MODERATE_RATIO:
        if open_threads is None or len(open_threads) <= FINALE_MAX_OPEN_THREADS:
            return True
    return False


def finale_phase(chapter_number: int, total_planned: int) -> Optional[str]:
    """Bucket the story's position relative to its planned ending."""
    if total_planned <= 0:
        return None
    remaining = total_planned - chapter_number
    progress = chapter_number / total_planned
    if remaining < 0:
        return "past_target"
    if remaining <= ARC_SIZE:
        return "final_stretch"
    if progress >= 0.9:
        return "closing"
    if progress >= 0.8:
        return "converging"
    return None


def should_update_summary(chapter_number: int) -> bool:
    return chapter_number >= 1


def should_update_synopsis(chapter_number: int) -> bool:
    return chapter_number > 0 and chapter_number % SYNOPSIS_INTERVAL == 0


def should_generate_arc_plan(chapter_number: int, has_current_arc_plan: bool = True) -> bool:
    return is_arc_boundary(chapter_number) or not has_current_arc_plan


def should_update_story_bible(chapter_number: int) -> bool:
    if chapter_number == STORY_BIBLE_FIRST_CHAPTER:
        return True
    return chapter_number > STORY_BIBLE_FIRST_CHAPTER and chapter_number % STORY_BIBLE_REFRESH_INTERVAL == 0


def should_update_character_arcs(chapter_number: int) -> bool:
    return chapter_number >= CHARACTER_ARC_GRACE_CHAPTERS


def has_breakthrough(text: str) -> bool:
    return bool(_BREAKTHROUGH_RE.search(text or ""))


def should_update_power_state(chapter_number: int, chapter_text: str = "") -> bool:
    if chapter_number > 0 and chapter_number % POWER_STATE_INTERVAL == 0:
        return True
    return has_breakthrough(chapter_text)


def should_update_voice_fingerprint(chapter_number: int) -> bool:
    if chapter_number == VOICE_FIRST_CHAPTER:
        return True
    return chapter_number > VOICE_FIRST_CHAPTER and chapter_number % VOICE_INTERVAL == 0


def should_regenerate_foreshadowing(chapter_number: int) -> bool:
    return is_arc_boundary(chapter_number)


def should_regenerate_pacing(chapter_number: int) -> bool:
    return is_arc_boundary(chapter_number)


def should_update_location_bible(chapter_number: int, new_setting: bool = False) -> bool:
    return is_arc_boundary(chapter_number) or new_setting


def next_foreshadowing_status(
    status: ForeshadowingStatus,
    plant_chapter: int,
    payoff_chapter: int,
    chapter_number: int,
) -> ForeshadowingStatus:
    """Advance a hint's lifecycle after ``chapter_number`` has been written."""
    if status == ForeshadowingStatus.PLANNED:
        if chapter_number - PLANT_WINDOW <= plant_chapter <= chapter_number:
            return ForeshadowingStatus.PLANTED
        if plant_chapter < chapter_number - ABANDON_PLANNED_AFTER:
            return ForeshadowingStatus.ABANDONED
    elif status == ForeshadowingStatus.PLANTED:
        if chapter_number - PAYOFF_WINDOW <= payoff_chapter <= chapter_number:
            return ForeshadowingStatus.PAID_OFF
        if payoff_chapter < chapter_number - ABANDON_PLANTED_AFTER:
            return ForeshadowingStatus.ABANDONED
    return status
