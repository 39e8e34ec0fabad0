"""Text helpers shared by matching, detection, and escalation (core domain)."""

from __future__ import annotations

import hashlib
import re
from typing import AbstractSet, Iterable

# Splitting on punctuation instead of matching \w keeps Devanagari vowel signs
# attached to their words, since most members write in Hinglish.
_TOKEN_SPLIT = re.compile(r"[\s,.;:!?()\[\]{}\"'#/\\|*+=<>~`@&%^$_-]+")

STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "from",
        "has", "have", "he", "her", "his", "i", "in", "is", "it", "its", "me",
        "my", "no", "not", "of", "on", "or", "our", "she", "so", "that", "the",
        "their", "them", "there", "they", "this", "to", "too", "up", "us", "was",
        "we", "were", "what", "when", "which", "who", "why", "will", "with",
        "you", "your", "can", "do", "does", "did", "been", "am", "again", "very",
        "just", "all", "any", "please", "pls", "hi", "hello", "ok", "okay",
    }
)


def collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def normalize_text(text: str) -> str:
    """Normalize text for deterministic comparison."""

    return collapse_whitespace(text).lower()


def tokenize(text: str) -> frozenset[str]:
    """Return the set of content tokens in ``text``.

    Stopwords, single characters, and bare numbers are dropped; they carry no
    signal for category matching or clustering.
    """

    tokens = set()
    for raw in _TOKEN_SPLIT.split(normalize_text(text)):
        if len(raw) < 2 or raw.isdigit() or raw in STOPWORDS:
            continue
        tokens.add(raw)
    return frozenset(tokens)


def jaccard(left: AbstractSet[str], right: AbstractSet[str]) -> float:
    if not left and not right:
        return 0.0
    return len(left & right) / len(left | right)


def overlap_coefficient(left: AbstractSet[str], right: AbstractSet[str]) -> float:
    """Share of the smaller set contained in the larger one."""

    if not left or not right:
        return 0.0
    return len(left & right) / min(len(left), len(right))


def keyword_hits(normalized_text: str, tokens: AbstractSet[str], keywords: Iterable[str]) -> list[str]:
    """Return keywords present in the message.

    Single-word keywords must match a whole token; multi-word keywords
    ("not working") are matched as phrases on word boundaries.
    """

    hits = []
    for keyword in keywords:
        needle = normalize_text(keyword)
        if not needle:
            continue
        if " " in needle:
            if _contains_phrase(normalized_text, needle):
                hits.append(keyword)
        elif needle in tokens:
            hits.append(keyword)
    return hits


def phrase_hits(normalized_text: str, phrases: Iterable[str]) -> list[str]:
    """Return the phrases that occur in the text on word boundaries.

    Unlike keyword_hits this ignores stopword filtering, so "again" matches.
    """

    hits = []
    for phrase in phrases:
        needle = normalize_text(phrase)
        if needle and _contains_phrase(normalized_text, needle):
            hits.append(phrase)
    return hits


def _contains_phrase(normalized_text: str, needle: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(needle)}(?!\w)", normalized_text) is not None


def compute_fingerprint(*parts: str) -> str:
    """Return a stable SHA-256 fingerprint of the given parts."""

    payload = "\n".join(parts)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
