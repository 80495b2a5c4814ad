import difflib
import re
from typing import Any, Dict, List, Optional

from core.title_checker import find_most_similar
from models import ChapterOutline, Severity, Violation, ViolationCategory

_SEVERITY_ORDER = {
    Severity.CRITICAL: 0,
    Severity.MAJOR: 1,
    Severity.MODERATE: 2,
    Severity.MINOR: 3,
}
_NAME_TOKEN_RE = re.compile(r"\b[A-Z][a-z]{2,}\b")
NEAR_MISS_RATIO = 0.8


def _mentions_name(draft: str, name: str) -> bool:
    name = (name or "").strip()
    if not name:
        return False
    return re.search(rf"(?<![\w]){re.escape(name)}(?![\w])", draft, re.IGNORECASE) is not None


class ConsistencyRule:
    def __init__(self, rule_id: str, name: str, description: str):
        self.rule_id = rule_id
        self.name = name
        self.description = description

    def check(self, draft: str, context: Dict[str, Any]) -> List[Violation]:
        raise NotImplementedError


class TitleUniquenessRule(ConsistencyRule):
    def __init__(self):
        super().__init__("R1", "Title uniqueness", "Chapter title must not echo an earlier one")

    def check(self, draft: str, context: Dict[str, Any]) -> List[Violation]:
        title = context.get("title") or ""
        threshold = float(context.get("title_similarity_threshold", 0.7))
        similarity, matched = find_most_similar(title, context.get("previous_titles") or [])
        if similarity > threshold:
            return [
                Violation(
                    category=ViolationCategory.TITLE,
                    severity=Severity.MAJOR,
                    message=f'Title "{title}" is too similar to earlier chapter "{matched}" ({similarity:.2f})',
                    suggestion="Choose a title built from this chapter's own turning point",
                )
            ]
        return []


class DeadCharacterRule(ConsistencyRule):
    def __init__(self):
        super().__init__("R2", "Character state", "Dead characters must not act on the page")

    def check(self, draft: str, context: Dict[str, Any]) -> List[Violation]:
        violations = []
        for name in context.get("dead_character_names") or []:
            if _mentions_name(draft, name):
                violations.append(
                    Violation(
                        category=ViolationCategory.CONTINUITY,
                        severity=Severity.CRITICAL,
                        message=f"{name} is dead but appears in the chapter",
                        suggestion=f"Remove {name} or make the mention clearly a memory",
                    )
                )
        return violations


class NameSpellingRule(ConsistencyRule):
    def __init__(self):
        super().__init__("R3", "Name spelling", "Known names must be spelled consistently")

    def check(self, draft: str, context: Dict[str, Any]) -> List[Violation]:
        known_tokens = set()
        for name in context.get("known_character_names") or []:
            known_tokens.update(part for part in name.split() if part)
        protagonist = context.get("protagonist_name") or ""
        known_tokens.update(part for part in protagonist.split() if part)
        if not known_tokens:
            return []

        violations = []
        reported = set()
        for token in _NAME_TOKEN_RE.findall(draft):
            if token in known_tokens or token in reported:
                continue
            close = difflib.get_close_matches(token, known_tokens, n=1, cutoff=NEAR_MISS_RATIO)
            if close:
                reported.add(token)
                violations.append(
                    Violation(
                        category=ViolationCategory.CONTINUITY,
                        severity=Severity.MODERATE,
                        message=f'"{token}" looks like a misspelling of "{close[0]}"',
                        suggestion=f'Use the established spelling "{close[0]}"',
                    )
                )
        return violations


class PovPresenceRule(ConsistencyRule):
    def __init__(self):
        super().__init__("R4", "POV presence", "Outlined POV characters must appear in the prose")

    def check(self, draft: str, context: Dict[str, Any]) -> List[Violation]:
        outline: Optional[ChapterOutline] = context.get("outline")
        if outline is None:
            return []
        violations = []
        seen = set()
        for scene in outline.scenes:
            pov = (scene.pov_character or "").strip()
            if not pov or pov in seen:
                continue
            seen.add(pov)
            first_name = pov.split()[0]
            if not (_mentions_name(draft, pov) or _mentions_name(draft, first_name)):
                violations.append(
                    Violation(
                        category=ViolationCategory.CONTINUITY,
                        severity=Severity.MODERATE,
                        message=f"POV character {pov} never appears in the chapter",
                        suggestion=f"Write scene {scene.order} from {pov}'s point of view",
                    )
                )
        return violations


class ConsistencyEngine:
    def __init__(self, rules: Optional[List[ConsistencyRule]] = None):
        self.rules: List[ConsistencyRule] = rules if rules is not None else [
            TitleUniquenessRule(),
            DeadCharacterRule(),
            NameSpellingRule(),
            PovPresenceRule(),
        ]

    def check(self, draft: str, context: Dict[str, Any]) -> List[Violation]:
        violations: List[Violation] = []
        for rule in self.rules:
            violations.extend(rule.check(draft or "", context))
        return sorted(violations, key=lambda v: _SEVERITY_ORDER[v.severity])
