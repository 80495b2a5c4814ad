"""
Property-based tests for the style heuristic engine.

Uses hypothesis to verify score bounds and determinism across randomized prose.
"""

import sys
from pathlib import Path

# Ensure backend root is on sys.path so bare imports work (e.g. `from core.style_analyzer import ...`)
_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

import string

from hypothesis import given, settings, strategies as st

from core.style_analyzer import analyze_style, build_style_guidelines, quick_check
from models import Severity

# ---------------------------------------------------------------------------
# Hypothesis profiles
# ---------------------------------------------------------------------------
settings.register_profile("ci", max_examples=200)
settings.register_profile("dev", max_examples=100)

# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

_word = st.one_of(
    st.text(alphabet=st.sampled_from(list(string.ascii_lowercase)), min_size=1, max_size=9),
    st.sampled_from(["was", "looked", "very", "suddenly", "felt", "realized", "said", "quickly"]),
)
_sentence = st.lists(_word, min_size=1, max_size=30).map(lambda words: " ".join(words).capitalize() + ".")
_paragraph = st.lists(_sentence, min_size=1, max_size=8).map(" ".join)
_prose = st.lists(_paragraph, min_size=1, max_size=5).map("\n\n".join)


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


@given(text=_prose)
@settings(max_examples=100)
def test_scores_stay_within_bounds(text):
    result = analyze_style(text)
    assert 0 <= result.overall_score <= 100
    for score in (
        result.weak_verb_score,
        result.adverb_score,
        result.show_dont_tell_score,
        result.purple_prose.score,
        result.passive_voice.score,
        result.sentence_variety.score,
    ):
        assert 0 <= score <= 100


@given(text=_prose)
@settings(max_examples=50)
def test_analysis_is_deterministic(text):
    assert analyze_style(text) == analyze_style(text)


@given(text=st.text(alphabet=" \n\t", max_size=20))
@settings(max_examples=30)
def test_blank_text_is_neutral(text):
    result = analyze_style(text)
    assert result.sentence_variety.score == 50
    assert result.sentence_variety.avg_length == 0
    assert result.issues == []


# ---------------------------------------------------------------------------
# Examples
# ---------------------------------------------------------------------------


def test_empty_text_has_neutral_variety():
    result = analyze_style("")
    assert result.sentence_variety.score == 50
    assert result.sentence_variety.avg_length == 0
    assert result.weak_verb_score == 100


def test_weak_verbs_are_reported_with_alternatives():
    text = " ".join(["He said nothing and was tired." for _ in range(6)])
    result = analyze_style(text)
    verbs = {usage.verb: usage for usage in result.weak_verbs}
    assert "said" in verbs
    assert verbs["said"].count == 6
    assert verbs["said"].alternatives
    assert any(issue.type == "weak_verb" for issue in result.issues)


def test_telling_prose_is_flagged_major():
    text = " ".join(["She felt sad. He felt angry. They realized it was over."] * 4)
    result = analyze_style(text)
    tell_issues = [issue for issue in result.issues if issue.type == "tell_not_show"]
    assert tell_issues
    assert tell_issues[0].severity == Severity.MAJOR
    assert result.show_dont_tell_score < 50


def test_varied_active_prose_scores_well():
    text = (
        "Rain hammered the tin roof. Kael dragged the crate across the floor, boots skidding "
        "on the wet boards while the lantern swung overhead and threw his shadow against the wall. "
        "He stopped. Somewhere below, a dog barked twice and fell silent. "
        "\"Open it,\" Mira whispered, already reaching for the crowbar that leaned against the post. "
        "The lid groaned."
    )
    result = analyze_style(text)
    assert result.overall_score >= 80
    assert result.passive_voice.ratio == 0


def test_quick_check_flags_adverb_heavy_text():
    ok, reason = quick_check("very very really suddenly quickly actually very really")
    assert ok is False
    assert reason


def test_style_guidelines_include_recent_weak_verbs():
    text = " ".join(["He said no and said it again."] * 3)
    guidelines = build_style_guidelines(analyze_style(text))
    assert "## Writing style guidelines" in guidelines
    assert '"said" (6x)' in guidelines
