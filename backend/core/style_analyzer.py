"""
Deterministic prose heuristics used by the critic and by the context
assembler's style guidelines.

Every function here is pure: same text in, same result out, no I/O.
"""

import math
import re
from typing import List, Optional, Tuple

from models import (
    AdverbUsage,
    ExpositionDump,
    PassiveVoice,
    PurpleProse,
    SentenceVariety,
    Severity,
    StyleAnalysisResult,
    StyleIssue,
    TellInstance,
    WeakVerbUsage,
)
from utils.text_cleaner import split_paragraphs, split_sentences, split_words


WEAK_VERBS = [
    "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did",
    "go", "went", "come", "came", "get", "got",
    "make", "made", "say", "said", "look", "see", "saw",
]

STRONG_VERB_ALTERNATIVES = {
    "look": ["glance", "stare", "peer", "scan", "glare"],
    "see": ["spot", "notice", "glimpse", "witness"],
    "saw": ["spotted", "noticed", "glimpsed", "witnessed"],
    "say": ["murmur", "snap", "declare", "insist"],
    "said": ["murmured", "snapped", "declared", "insisted"],
    "go": ["stride", "hurry", "slip", "march"],
    "went": ["strode", "hurried", "slipped", "marched"],
    "come": ["approach", "arrive", "emerge"],
    "came": ["approached", "arrived", "emerged"],
    "get": ["seize", "earn", "obtain"],
    "got": ["seized", "earned", "obtained"],
    "make": ["forge", "build", "craft"],
    "made": ["forged", "built", "crafted"],
}

OVERUSED_ADVERBS = [
    "suddenly", "quickly", "slowly", "really", "very", "extremely",
    "totally", "completely", "absolutely", "literally", "actually",
    "incredibly", "immediately", "finally", "simply",
]

TELL_INDICATORS = [
    "felt", "feeling", "realized", "understood", "knew", "thought",
    "seemed", "appeared", "looked like", "was angry", "was afraid", "was sad",
]

_TELL_SUGGESTIONS = {
    "felt": "Show the sensation through the body instead of naming the feeling",
    "feeling": "Show the sensation through the body instead of naming the feeling",
    "was angry": "Clenched jaw, white knuckles, a voice dropping low",
    "was afraid": "Trembling hands, a dry throat, feet refusing to move",
    "was sad": "Lowered eyes, slumped shoulders, words that trail off",
    "knew": "Let the character reach the conclusion through a visible clue",
    "realized": "Let the character reach the conclusion through a visible clue",
    "thought": "Use inner monologue or an action that reveals the thought",
}

PURPLE_PROSE_PATTERNS = [
    # adjective or noun stacks: "cold, dark, bitter and endless"
    re.compile(r"\b\w+,\s+\w+,\s+\w+,?\s+and\s+\w+\b", re.IGNORECASE),
    # hyperbole vocabulary
    re.compile(
        r"\b(?:earth-shattering|heaven-defying|world-ending|soul-crushing|mind-boggling|"
        r"unfathomabl[ey]|indescribabl[ey]|unimaginabl[ey])\b",
        re.IGNORECASE,
    ),
    # repeated emphasis inside one sentence
    re.compile(
        r"\b(very|extremely|incredibly|utterly)\b[^.!?\n]*\b\1\b",
        re.IGNORECASE,
    ),
    # similes stacked three deep
    re.compile(r"\blike\s+\w+[^.!?\n]*\blike\s+\w+[^.!?\n]*\blike\s+\w+", re.IGNORECASE),
]

_PASSIVE_RE = re.compile(
    r"\b(?:is|are|was|were|be|been|being)\s+(?:\w+ly\s+)?\w+(?:ed|en)\b",
    re.IGNORECASE,
)
_DIALOGUE_RE = re.compile(r"\"[^\"]+\"|“[^”]+”|「[^」]+」|『[^』]+』")
_ACTION_RE = re.compile(
    r"\b(?:struck|slashed|lunged|charged|dodged|punched|kicked|fought|attacked|leapt|swung|grabbed|ran)\b",
    re.IGNORECASE,
)
INFO_INDICATORS = [
    "according to legend", "it is said", "history records", "the rules",
    "the system", "realm", "divided into", "consists of", "including",
    "basically", "in general", "generally",
]

NEUTRAL_VARIETY_SCORE = 50


def _round(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _word_pattern(phrase: str) -> re.Pattern:
    return re.compile(rf"(?<![\w']){re.escape(phrase)}(?![\w'])", re.IGNORECASE)


_WEAK_VERB_RES = [(verb, _word_pattern(verb)) for verb in WEAK_VERBS]
_ADVERB_RES = [(adverb, _word_pattern(adverb)) for adverb in OVERUSED_ADVERBS]
_TELL_RES = [(indicator, _word_pattern(indicator)) for indicator in TELL_INDICATORS]


def _analyze_weak_verbs(text: str, total_words: int) -> Tuple[int, List[WeakVerbUsage]]:
    weak: List[WeakVerbUsage] = []
    total = 0
    for verb, pattern in _WEAK_VERB_RES:
        count = len(pattern.findall(text))
        if count > 3:
            total += count
            weak.append(
                WeakVerbUsage(verb=verb, count=count, alternatives=STRONG_VERB_ALTERNATIVES.get(verb, []))
            )
    weak.sort(key=lambda item: -item.count)
    score = _clamp(100 - (total / total_words) * 500)
    return _round(score), weak[:10]


def _analyze_adverbs(text: str, total_words: int) -> Tuple[int, int, List[AdverbUsage]]:
    overused: List[AdverbUsage] = []
    total = 0
    for adverb, pattern in _ADVERB_RES:
        count = len(pattern.findall(text))
        total += count
        if count > 2:
            overused.append(AdverbUsage(adverb=adverb, count=count))
    overused.sort(key=lambda item: -item.count)
    score = _clamp(100 - (total / total_words) * 300)
    return _round(score), total, overused


def _analyze_show_dont_tell(sentences: List[str]) -> Tuple[int, List[TellInstance]]:
    instances: List[TellInstance] = []
    for sentence in sentences:
        for indicator, pattern in _TELL_RES:
            if pattern.search(sentence):
                snippet = sentence[:100] + ("..." if len(sentence) > 100 else "")
                instances.append(
                    TellInstance(
                        text=snippet,
                        suggestion=_TELL_SUGGESTIONS.get(
                            indicator, "Show through action or expression instead of stating it"
                        ),
                    )
                )
                break
    ratio = len(instances) / max(1, len(sentences))
    return _round(_clamp(100 - ratio * 200)), instances[:10]


def _analyze_purple_prose(text: str) -> PurpleProse:
    instances: List[str] = []
    for pattern in PURPLE_PROSE_PATTERNS:
        matches = [match.group(0) for match in pattern.finditer(text)]
        instances.extend(matches[:3])
    score = max(0, 100 - len(instances) * 10)
    unique = list(dict.fromkeys(instances))
    return PurpleProse(score=score, instances=unique[:5])


def _analyze_passive_voice(sentences: List[str]) -> PassiveVoice:
    passive: List[str] = []
    for sentence in sentences:
        if _PASSIVE_RE.search(sentence):
            passive.append(sentence[:80] + ("..." if len(sentence) > 80 else ""))
    ratio = (len(passive) / max(1, len(sentences))) * 100
    return PassiveVoice(score=_round(_clamp(100 - ratio)), ratio=round(ratio, 1), instances=passive[:5])


def _analyze_sentence_variety(sentences: List[str]) -> SentenceVariety:
    if not sentences:
        return SentenceVariety(score=NEUTRAL_VARIETY_SCORE)

    lengths = [len(sentence.split()) for sentence in sentences]
    avg = sum(lengths) / len(lengths)
    variance = sum((length - avg) ** 2 for length in lengths) / len(lengths)
    deviation = math.sqrt(variance)
    short_ratio = sum(1 for length in lengths if length < 8) / len(lengths) * 100
    long_ratio = sum(1 for length in lengths if length > 25) / len(lengths) * 100

    score = 70
    if deviation < 3:
        score -= 20
    elif deviation > 20:
        score -= 10
    elif 5 <= deviation <= 15:
        score += 15
    if short_ratio < 10 or short_ratio > 50:
        score -= 10
    if long_ratio > 30:
        score -= 10

    return SentenceVariety(
        score=int(_clamp(score)),
        avg_length=round(avg, 1),
        length_variance=round(deviation, 1),
        short_ratio=_round(short_ratio),
        long_ratio=_round(long_ratio),
    )


def _detect_exposition_dumps(text: str) -> List[ExpositionDump]:
    dumps: List[ExpositionDump] = []
    position = 0
    for paragraph in re.split(r"\n\n+", text):
        lowered = paragraph.lower()
        if (
            len(paragraph) > 300
            and not _DIALOGUE_RE.search(paragraph)
            and not _ACTION_RE.search(paragraph)
            and any(indicator in lowered for indicator in INFO_INDICATORS)
        ):
            dumps.append(ExpositionDump(location=position, length=len(paragraph)))
        position += len(paragraph) + 2
    return dumps


def neutral_result() -> StyleAnalysisResult:
    """Fixed result for empty input: perfect sub-scores, neutral sentence variety."""
    variety = SentenceVariety(score=NEUTRAL_VARIETY_SCORE)
    scores = [100, 100, 100, 100, 100, variety.score]
    return StyleAnalysisResult(
        overall_score=_round(sum(scores) / len(scores)),
        sentence_variety=variety,
    )


def analyze_style(text: str) -> StyleAnalysisResult:
    content = text or ""
    if not content.strip():
        return neutral_result()

    total_words = max(1, len(split_words(content)))
    sentences = split_sentences(content)

    issues: List[StyleIssue] = []
    suggestions: List[str] = []

    weak_score, weak_verbs = _analyze_weak_verbs(content, total_words)
    if weak_score < 70:
        issues.append(
            StyleIssue(
                type="weak_verb",
                severity=Severity.MAJOR if weak_score < 50 else Severity.MODERATE,
                description=f"Heavy use of weak verbs ({len(weak_verbs)} kinds)",
                suggestion="Replace weak verbs with specific, physical ones",
            )
        )
        suggestions.append('Swap "looked" for "glanced/stared/peered" and "said" for "snapped/murmured"')

    adverb_score, adverb_total, adverbs = _analyze_adverbs(content, total_words)
    if adverb_score < 70:
        issues.append(
            StyleIssue(
                type="adverb",
                severity=Severity.MAJOR if adverb_score < 50 else Severity.MODERATE,
                description=f"Adverb overuse ({adverb_total} occurrences)",
                suggestion="Cut adverbs and let a stronger verb carry the meaning",
            )
        )
        suggestions.append('Replace "walked quickly" with "hurried" or "darted"')

    tell_score, tell_instances = _analyze_show_dont_tell(sentences)
    if tell_score < 70:
        issues.append(
            StyleIssue(
                type="tell_not_show",
                severity=Severity.MAJOR if tell_score < 50 else Severity.MODERATE,
                description=f"Too much telling ({len(tell_instances)} instances)",
                suggestion="Render emotion through action and expression",
            )
        )
        suggestions.append('Replace "he was angry" with "he ground his teeth and balled his fists"')

    purple = _analyze_purple_prose(content)
    if purple.score < 70:
        issues.append(
            StyleIssue(
                type="purple_prose",
                severity=Severity.MODERATE,
                description=f"Overwrought prose ({len(purple.instances)} instances)",
                suggestion="Trim stacked adjectives and repeated emphasis",
            )
        )
        suggestions.append("Keep one vivid image per sentence")

    passive = _analyze_passive_voice(sentences)
    if passive.score < 70:
        issues.append(
            StyleIssue(
                type="passive_voice",
                severity=Severity.MAJOR if passive.ratio > 40 else Severity.MODERATE,
                description=f"Passive voice in {_round(passive.ratio)}% of sentences",
                suggestion="Put the actor first and use active verbs",
            )
        )
        suggestions.append('Replace "he was struck by the blade" with "the blade struck him"')

    variety = _analyze_sentence_variety(sentences)
    if variety.score < 70:
        issues.append(
            StyleIssue(
                type="sentence_variety",
                severity=Severity.MODERATE,
                description=f"Monotonous sentence rhythm (deviation {_round(variety.length_variance)})",
                suggestion="Alternate short and long sentences",
            )
        )
        suggestions.append("Use short sentences for action and longer ones for description")

    dumps = _detect_exposition_dumps(content)
    if dumps:
        issues.append(
            StyleIssue(
                type="exposition",
                severity=Severity.MAJOR if any(d.length > 500 for d in dumps) else Severity.MODERATE,
                description=f"{len(dumps)} info-dump paragraph(s)",
                suggestion="Reveal background through dialogue and action",
            )
        )
        suggestions.append("Break exposition up with dialogue or an action beat")

    scores = [weak_score, adverb_score, tell_score, purple.score, passive.score, variety.score]
    return StyleAnalysisResult(
        overall_score=_round(sum(scores) / len(scores)),
        weak_verb_score=weak_score,
        weak_verbs=weak_verbs,
        adverb_score=adverb_score,
        adverb_overuse=adverbs,
        show_dont_tell_score=tell_score,
        tell_instances=tell_instances,
        purple_prose=purple,
        passive_voice=passive,
        sentence_variety=variety,
        exposition_dumps=dumps,
        issues=issues,
        suggestions=suggestions,
    )


_QUICK_WEAK_RE = re.compile(r"(?<![\w'])(?:is|was|were|had|went|got|made|said|looked|saw)(?![\w'])", re.IGNORECASE)
_QUICK_ADVERB_RE = re.compile(r"(?<![\w'])(?:very|really|suddenly|extremely|quickly|actually)(?![\w'])", re.IGNORECASE)
_QUICK_TELL_RE = re.compile(r"\b(?:felt|realized|knew that|thought that)\b", re.IGNORECASE)


def quick_check(text: str) -> Tuple[bool, Optional[str]]:
    """Cheap subset of ``analyze_style`` for hot paths."""
    content = text or ""
    if not content.strip():
        return True, None
    total_words = max(1, len(content.split()))
    if len(_QUICK_WEAK_RE.findall(content)) / total_words > 0.15:
        return False, "Too many weak verbs"
    if len(_QUICK_ADVERB_RE.findall(content)) / total_words > 0.08:
        return False, "Adverb overuse"
    sentence_count = max(1, len(split_sentences(content)))
    if len(_QUICK_TELL_RE.findall(content)) / sentence_count > 0.3:
        return False, "Too much telling instead of showing"
    return True, None


def build_style_guidelines(recent: Optional[StyleAnalysisResult] = None) -> str:
    lines = [
        "## Writing style guidelines",
        "- Use strong, specific verbs instead of weak verbs plus adverbs",
        "- Show emotion through action and body language",
        "- Vary sentence length for rhythm",
        "- Minimize passive voice",
        "- Break up exposition with dialogue and action",
    ]
    if recent is not None:
        if recent.weak_verbs:
            lines.append("### Avoid these weak verbs")
            for usage in recent.weak_verbs[:5]:
                alternatives = f" -> {'/'.join(usage.alternatives)}" if usage.alternatives else ""
                lines.append(f'- "{usage.verb}" ({usage.count}x){alternatives}')
        if recent.adverb_overuse:
            lines.append("### Reduce these adverbs")
            lines.append(", ".join(f'"{usage.adverb}"' for usage in recent.adverb_overuse[:5]))
        if recent.tell_instances:
            lines.append("### Show, don't tell")
            for instance in recent.tell_instances[:3]:
                lines.append(f"- {instance.suggestion}")
    return "\n".join(lines)
