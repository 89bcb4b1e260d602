"""
Small text helpers shared by the loader, assembler and dispatcher.
"""

import math
import re

_WORD_PATTERN = re.compile(r"[a-z0-9]+")

# Words too common to signal relevance between a hint and a skill
STOPWORDS: frozenset[str] = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "can", "do", "for",
    "from", "how", "i", "in", "is", "it", "me", "my", "of", "on", "or",
    "please", "should", "that", "the", "this", "to", "was", "we", "what",
    "with", "you", "your",
})


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(text) / 4)


def normalize_plugin_id(name: str) -> str:
    """
    Normalize a directory name into a plugin id.

    "Legal Tools" → "legal-tools", "my_plugin" → "my-plugin".
    """
    chars = []
    for ch in name:
        if ch.isascii() and ch.isalnum():
            chars.append(ch.lower())
        elif ch in "-_" or ch.isspace():
            chars.append("-")
    normalized = "".join(chars)
    while "--" in normalized:
        normalized = normalized.replace("--", "-")
    normalized = normalized.strip("-")
    return normalized or "plugin"


def keywords(text: str) -> set[str]:
    """Lowercased word set with stopwords and single characters removed."""
    return {
        word for word in _WORD_PATTERN.findall(text.lower())
        if len(word) > 1 and word not in STOPWORDS
    }


def first_line(text: str) -> str:
    """First non-empty line with any markdown heading marker stripped."""
    for line in text.splitlines():
        stripped = line.strip()
        if stripped:
            return stripped.lstrip("#").strip()
    return ""


def fuzzy_score(query: str, candidate: str) -> int | None:
    """
    Score how well ``query`` matches ``candidate`` (lower is better).

    0 = prefix, 1 = substring, 2 = in-order subsequence, None = no match.
    """
    query = query.lower()
    candidate = candidate.lower()
    if not query or candidate.startswith(query):
        return 0
    if query in candidate:
        return 1
    position = 0
    for ch in query:
        position = candidate.find(ch, position)
        if position < 0:
            return None
        position += 1
    return 2
