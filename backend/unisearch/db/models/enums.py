"""Enum types for database models."""

from __future__ import annotations

import enum


class IndexStatus(str, enum.Enum):
    """Lifecycle state of the Drive indexer."""

    IDLE = "idle"
    INDEXING = "indexing"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
