"""
Chapter title similarity.

Similarity blends Jaccard overlap with containment of the shorter title's
words in the longer one, so "The Hunter" against "The Hunter in the Dark"
scores high even though the word sets differ.
"""

import re
from typing import Iterable, List, Optional, Sequence, Tuple

STOP_WORDS = {
    "the", "a", "an", "of", "and", "or", "in", "on", "at", "to", "for",
    "with", "from", "by", "is", "was", "his", "her", "its", "their",
}

_WORD_SPLIT_RE = re.compile(r"\s+")
_PUNCT_RE = re.compile(r"[^\w\s'-]")


def extract_meaningful_words(title: str) -> List[str]:
    cleaned = _PUNCT_RE.sub(" ", (title or "").lower())
    return [word for word in _WORD_SPLIT_RE.split(cleaned) if len(word) > 1 and word not in STOP_WORDS]


def jaccard_similarity(a: Sequence[str], b: Sequence[str]) -> float:
    if not a and not b:
        return 1.0
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def containment_similarity(a: Sequence[str], b: Sequence[str]) -> float:
    if not a or not b:
        return 0.0
    shorter, longer = (a, b) if len(a) <= len(b) else (b, a)
    longer_set = set(longer)
    return sum(1 for word in shorter if word in longer_set) / len(shorter)


def fuzzy_similarity(title_a: str, title_b: str) -> float:
    if (title_a or "").strip().lower() == (title_b or "").strip().lower():
        return 1.0
    words_a = extract_meaningful_words(title_a)
    words_b = extract_meaningful_words(title_b)
    score = jaccard_similarity(words_a, words_b) * 0.4 + containment_similarity(words_a, words_b) * 0.6
    return max(0.0, min(1.0, score))


def find_most_similar(title: str, existing_titles: Iterable[str]) -> Tuple[float, str]:
    """Return ``(similarity, matched_title)`` for the closest existing title.

    The first title reaching the maximum wins. With no titles the result is
    ``(0.0, "")``.
    """
    best = 0.0
    matched = ""
    for previous in existing_titles:
        similarity = fuzzy_similarity(title, previous)
        if similarity > best:
            best = similarity
            matched = previous
    return best, matched


def is_too_similar(title: str, existing_titles: Iterable[str], threshold: float) -> bool:
    similarity, _ = find_most_similar(title, existing_titles)
    return similarity > threshold


def pick_unique_title(
    candidates: Iterable[str],
    existing_titles: Sequence[str],
    threshold: float,
    chapter_number: Optional[int] = None,
    max_words: int = 8,
) -> str:
    """First candidate (trimmed to ``max_words``) not too similar to any existing title."""
    for candidate in candidates:
        words = (candidate or "").strip().strip(".!?\"'").split()
        if len(words) < 2:
            continue
        trimmed = " ".join(words[:max_words])
        if not is_too_similar(trimmed, existing_titles, threshold):
            return trimmed.title() if trimmed.islower() else trimmed
    if chapter_number is None:
        return "Untitled"
    return f"Chapter {chapter_number}"
