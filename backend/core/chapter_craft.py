import math
import re
from typing import Dict, List, Tuple

from utils.text_cleaner import split_sentences, split_words


_CHAPTER_PREFIX_EN_RE = re.compile(r"^\s*(?:#\s*)?(?:chapter|ch\.)\s*[0-9ivxlcm]+\s*[：:\-\s]*", re.IGNORECASE)
_TITLE_LINE_RE = re.compile(r"^\s*(?:#+\s*)?title\s*[:：]\s*(.+?)\s*$", re.IGNORECASE)
_THINK_BLOCK_RE = re.compile(r"(?is)<\s*think(?:ing)?\s*>.*?<\s*/\s*think(?:ing)?\s*>")
_THINKING_FENCE_RE = re.compile(r"(?is)```(?:thinking|reasoning)\s*[\s\S]*?```")
_THINKING_LINE_RE = re.compile(r"(?im)^\s*(thinking|thoughts?|reasoning)\s*[:：].*(?:\n|$)")

SCENE_WORDS = 600
MIN_SCENES = 4


def count_words(text: str) -> int:
    return len(split_words(text))


def compute_length_bounds(target_words: int) -> Dict[str, int]:
    target = max(int(target_words or 0), 300)
    lower = max(300, int(target * 0.86))
    ideal_low = max(lower, int(target * 0.93))
    ideal_high = max(ideal_low + 80, int(target * 1.08))
    soft_upper = max(ideal_high + 200, int(target * 1.25))
    return {
        "target": target,
        "lower": lower,
        "ideal_low": ideal_low,
        "ideal_high": ideal_high,
        "soft_upper": soft_upper,
    }


def word_count_band(target_words: int, tolerance: float) -> Tuple[int, int]:
    """Inclusive word-count range accepted by the critic."""
    target = max(int(target_words or 0), 1)
    tol = min(max(float(tolerance), 0.0), 0.95)
    return int(math.floor(target * (1 - tol))), int(math.ceil(target * (1 + tol)))


def minimum_scene_count(target_words: int) -> int:
    return max(MIN_SCENES, int(math.ceil(max(int(target_words or 0), 1) / SCENE_WORDS)))


def build_length_instruction(target_words: int) -> str:
    bounds = compute_length_bounds(target_words)
    return (
        f"Aim for about {bounds['target']} words (ideal {bounds['ideal_low']}-{bounds['ideal_high']}). "
        f"Below {bounds['lower']} reads thin; above {bounds['soft_upper']} reads padded."
    )


def strip_leading_chapter_heading(text: str) -> str:
    content = (text or "").strip()
    if not content:
        return ""

    lines = content.splitlines()
    while lines and not lines[0].strip():
        lines.pop(0)
    if not lines:
        return ""

    first = lines[0].strip()
    if first.startswith("#"):
        heading = re.sub(r"^#+\s*", "", first).strip()
        if heading.lower().startswith("chapter") or _TITLE_LINE_RE.match(first):
            lines = lines[1:]
    elif _CHAPTER_PREFIX_EN_RE.match(first) or _TITLE_LINE_RE.match(first):
        lines = lines[1:]

    return "\n".join(lines).strip()


def extract_title_line(text: str) -> Tuple[str, str]:
    """Split an optional leading ``Title: ...`` line from prose."""
    content = (text or "").strip()
    if not content:
        return "", ""
    first, _, rest = content.partition("\n")
    match = _TITLE_LINE_RE.match(first)
    if not match:
        return "", content
    return match.group(1).strip().strip('"'), rest.strip()


def collapse_blank_lines(text: str, max_consecutive_blank: int = 1) -> str:
    content = (text or "").replace("\r\n", "\n").replace("\r", "\n")
    if max_consecutive_blank < 1:
        max_consecutive_blank = 1

    out: List[str] = []
    blank_count = 0
    for line in content.split("\n"):
        if line.strip() == "":
            blank_count += 1
            if blank_count <= max_consecutive_blank:
                out.append("")
        else:
            blank_count = 0
            out.append(line.rstrip())
    return "\n".join(out).strip()


def sanitize_prose(text: str) -> str:
    """Remove reasoning wrappers, fences and headings that leak into model prose."""
    content = (text or "").strip()
    content = _THINK_BLOCK_RE.sub("", content)
    content = _THINKING_FENCE_RE.sub("", content)
    content = _THINKING_LINE_RE.sub("", content)
    content = re.sub(r"^```(?:markdown|md|text)?", "", content.strip()).strip()
    content = re.sub(r"```$", "", content).strip()
    content = strip_leading_chapter_heading(content)
    return collapse_blank_lines(content, max_consecutive_blank=1)


def smart_truncate(text: str, max_chars: int) -> str:
    """Cut at the last line break when that keeps more than half the budget."""
    content = text or ""
    if max_chars <= 0:
        return ""
    if len(content) <= max_chars:
        return content
    window = content[:max_chars]
    cut = window.rfind("\n")
    if cut > max_chars * 0.5:
        return window[:cut].rstrip()
    return window


def first_sentence(text: str, max_chars: int = 240) -> str:
    sentences = split_sentences(text)
    if not sentences:
        return ""
    return sentences[0][:max_chars]


def last_paragraph(text: str, max_chars: int = 400) -> str:
    paragraphs = [p.strip() for p in (text or "").split("\n") if p.strip()]
    if not paragraphs:
        return ""
    return paragraphs[-1][-max_chars:]


def tail_text(text: str, max_chars: int = 600) -> str:
    content = (text or "").strip()
    if len(content) <= max_chars:
        return content
    return content[-max_chars:]
