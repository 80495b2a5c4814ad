from copy import deepcopy
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

import yaml

RULES_PATH = Path(__file__).resolve().parent / "genre_rules.yaml"

_GENRE_ALIASES = {
    "xianxia": "fantasy",
    "cultivation": "fantasy",
    "litrpg": "fantasy",
    "progression": "fantasy",
    "sci-fi": "scifi",
    "science fiction": "scifi",
    "detective": "mystery",
    "thriller": "mystery",
}


@lru_cache(maxsize=1)
def _load_rules() -> Dict[str, Dict[str, Any]]:
    with open(RULES_PATH, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return {str(key).lower(): value for key, value in data.items() if isinstance(value, dict)}


def list_genres() -> List[str]:
    return sorted(key for key in _load_rules() if key != "default")


def get_genre_rules(genre: str) -> Dict[str, Any]:
    rules = _load_rules()
    key = (genre or "").strip().lower()
    key = _GENRE_ALIASES.get(key, key)
    selected = rules.get(key) or rules["default"]
    return deepcopy(selected)


def format_genre_rules(genre: str) -> str:
    rules = get_genre_rules(genre)
    lines = [f"Genre: {rules.get('name', genre)}", f"Pacing: {rules.get('pacing', '')}"]
    lines.extend(f"- {rule}" for rule in rules.get("rules", []))
    taboos = rules.get("taboos") or []
    if taboos:
        lines.append("Avoid: " + "; ".join(taboos))
    return "\n".join(lines)
