"""
Text tokenization helpers shared by the style engine, the critic and the
memory modules.
"""

import re

# Stopwords skipped when counting signature phrases
KEYWORD_STOPWORDS: set[str] = {
    "the", "a", "an", "and", "or", "but", "of", "to", "in", "on", "at", "for",
    "with", "from", "by", "as", "is", "was", "were", "be", "been", "are", "it",
    "its", "his", "her", "their", "he", "she", "they", "them", "this", "that",
    "into", "onto", "over", "under", "then", "than", "not", "no", "so", "if",
}

_WORD_RE = re.compile(r"[A-Za-z0-9À-ɏ']+|[一-鿿]")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?。！？]+")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n+")


def split_words(text: str) -> list[str]:
    """Return word tokens; CJK characters count as one word each."""
    return _WORD_RE.findall(text or "")


def split_sentences(text: str) -> list[str]:
    """
    Split text into non-empty sentences on terminal punctuation.

    Args:
        text: Prose to split.

    Returns:
        Sentences with surrounding whitespace removed, in order.
    """
    return [part.strip() for part in _SENTENCE_SPLIT_RE.split(text or "") if part.strip()]


def split_paragraphs(text: str) -> list[str]:
    return [part for part in _PARAGRAPH_SPLIT_RE.split(text or "") if part.strip()]
