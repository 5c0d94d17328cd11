"""Heuristic relevance scoring shared by the search providers.

Scores are in [0, 100]. Each provider plugs in a :class:`ScoringStrategy`;
the string-matching helpers below are shared between them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Protocol

MAX_SCORE = 100.0

APP_EXTENSIONS = {".app", ".exe", ".msi", ".appimage", ".prefpane", ".workflow"}
DOCUMENT_EXTENSIONS = {
    ".pdf", ".txt", ".md", ".rtf", ".tex", ".epub",
    ".pages", ".key", ".numbers", ".odt", ".html", ".htm",
}
OFFICE_EXTENSIONS = {
    ".doc", ".docx", ".xls", ".xlsx", ".xlsm", ".ppt", ".pptx",
    ".csv", ".ods", ".odp",
}
MEDIA_EXTENSIONS = {
    ".jpg", ".jpeg", ".png", ".gif", ".heic", ".webp", ".svg", ".tiff", ".bmp", ".raw",
    ".mp3", ".wav", ".flac", ".aac", ".m4a", ".ogg",
    ".mp4", ".mov", ".mkv", ".avi", ".webm", ".m4v",
}
ARCHIVE_EXTENSIONS = {".zip", ".tar", ".gz", ".tgz", ".bz2", ".xz", ".rar", ".7z", ".dmg", ".iso"}

TYPE_WEIGHTS = {
    "app": 1.5,
    "document": 1.3,
    "office": 1.2,
    "media": 1.15,
    "folder": 1.1,
    "archive": 1.05,
    "other": 1.0,
}

# (max age in days, multiplier), checked in order
RECENCY_MULTIPLIERS = [(1, 1.2), (7, 1.1), (30, 1.05)]
RECENCY_BOOSTS = [(1, 10.0), (7, 5.0)]


@dataclass(frozen=True)
class ScoringCandidate:
    """What a scorer needs to know about one search hit."""

    name: str
    is_folder: bool = False
    modified: datetime | None = None
    path: str | None = None
    mime_type: str | None = None


class ScoringStrategy(Protocol):
    def score(self, query: str, candidate: ScoringCandidate) -> float: ...


# ========== Shared helpers ==========


def normalize(text: str) -> str:
    return " ".join(text.lower().split())


def split_extension(name: str) -> tuple[str, str]:
    """Split ``name`` into (stem, extension); dotfiles have no extension."""
    stem, ext = os.path.splitext(name)
    return stem, ext


def query_words(query: str) -> list[str]:
    return [w for w in normalize(query).split(" ") if w]


def subsequence_similarity(needle: str, haystack: str) -> float:
    """Similarity in [0, 1] of ``needle`` as an in-order subsequence of ``haystack``.

    Every matched character earns a point, plus a bonus when it directly
    follows the previous match and a smaller one when it starts a word.
    Returns 0 when some character cannot be matched.
    """
    if not needle or not haystack:
        return 0.0

    points = 0.0
    prev = -2
    for ch in needle:
        idx = haystack.find(ch, prev + 1)
        if idx == -1:
            return 0.0
        points += 1.0
        if idx == prev + 1:
            points += 1.0
        if idx == 0 or not haystack[idx - 1].isalnum():
            points += 0.5
        prev = idx

    return min(points / (2.5 * len(needle)), 1.0)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp as returned by Drive."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def age_in_days(modified: datetime | None, now: datetime) -> float | None:
    if modified is None:
        return None
    if modified.tzinfo is None:
        modified = modified.replace(tzinfo=timezone.utc)
    return (now - modified).total_seconds() / 86400


def file_category(name: str, is_folder: bool = False) -> str:
    """Coarse file-type bucket used for weighting."""
    _, ext = split_extension(name)
    ext = ext.lower()
    if ext in APP_EXTENSIONS:
        return "app"
    if is_folder:
        return "folder"
    if ext in DOCUMENT_EXTENSIONS:
        return "document"
    if ext in OFFICE_EXTENSIONS:
        return "office"
    if ext in MEDIA_EXTENSIONS:
        return "media"
    if ext in ARCHIVE_EXTENSIONS:
        return "archive"
    return "other"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ========== Strategies ==========


class LocalPathScorer:
    """Scores local filesystem hits.

    Base score by match kind (exact > suffix > substring > word overlap),
    times a file-type weight, times a recency multiplier, capped at 100.
    """

    EXACT = 100.0
    SUFFIX = 85.0
    SUBSTRING = 70.0
    WORD_OVERLAP_MIN = 20.0
    WORD_OVERLAP_SPAN = 40.0
    NO_MATCH = 10.0

    def __init__(self, now: Callable[[], datetime] = _utcnow):
        self._now = now

    def base_score(self, query: str, name: str) -> float:
        q = normalize(query)
        if not q:
            return 0.0
        lowered = normalize(name)
        stem, _ = split_extension(lowered)

        if lowered == q or stem == q:
            return self.EXACT
        if lowered.endswith(q) or stem.endswith(q):
            return self.SUFFIX
        if q in lowered:
            return self.SUBSTRING

        words = query_words(query)
        matched = sum(1 for w in words if w in lowered)
        if matched:
            return self.WORD_OVERLAP_MIN + self.WORD_OVERLAP_SPAN * matched / len(words)
        return self.NO_MATCH

    def score(self, query: str, candidate: ScoringCandidate) -> float:
        score = self.base_score(query, candidate.name)
        score *= TYPE_WEIGHTS[file_category(candidate.name, candidate.is_folder)]

        age = age_in_days(candidate.modified, self._now())
        if age is not None:
            for max_days, multiplier in RECENCY_MULTIPLIERS:
                if age < max_days:
                    score *= multiplier
                    break

        return min(score, MAX_SCORE)


class DriveNameScorer:
    """Scores Drive index hits.

    Exact (ignoring extension) 100, prefix 90, substring 70, otherwise a
    per-word fuzzy score in [20, 60]; plus +10 / +5 for files changed in
    the last day / week, capped at 100.
    """

    EXACT = 100.0
    PREFIX = 90.0
    SUBSTRING = 70.0
    FUZZY_MIN = 20.0
    FUZZY_MAX = 60.0

    def __init__(self, now: Callable[[], datetime] = _utcnow):
        self._now = now

    def base_score(self, query: str, name: str) -> float:
        q = normalize(query)
        if not q:
            return 0.0
        lowered = normalize(name)
        stem, _ = split_extension(lowered)

        if lowered == q or stem == q:
            return self.EXACT
        if lowered.startswith(q):
            return self.PREFIX
        if q in lowered:
            return self.SUBSTRING

        words = query_words(query)
        similarity = sum(subsequence_similarity(w, lowered) for w in words) / len(words)
        return self.FUZZY_MIN + (self.FUZZY_MAX - self.FUZZY_MIN) * similarity

    def score(self, query: str, candidate: ScoringCandidate) -> float:
        score = self.base_score(query, candidate.name)

        age = age_in_days(candidate.modified, self._now())
        if age is not None:
            for max_days, boost in RECENCY_BOOSTS:
                if age < max_days:
                    score += boost
                    break

        return min(score, MAX_SCORE)
