"""Value types exchanged by the sync orchestrator and its callers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


STATUS_OWNED = "owned"
STATUS_PLAYING = "playing"
STATUS_COMPLETED = "completed"
STATUS_WANT_TO_PLAY = "want_to_play"
STATUS_DROPPED = "dropped"
STATUS_BACKLOG = "backlog"

GAME_STATUSES = (
    STATUS_OWNED,
    STATUS_PLAYING,
    STATUS_COMPLETED,
    STATUS_WANT_TO_PLAY,
    STATUS_DROPPED,
    STATUS_BACKLOG,
)


class SyncState(str, Enum):
    FETCHING = "fetching"
    SEARCHING = "searching"
    RESOLVING = "resolving"
    MERGING = "merging"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class UnrecognizedTitle:
    raw_title: str
    normalized_title: str
    platform: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rawTitle": self.raw_title,
            "normalizedTitle": self.normalized_title,
            "platform": self.platform,
            "metadata": dict(self.metadata),
        }


@dataclass
class SyncRunResult:
    platform: str
    added: int = 0
    updated: int = 0
    failed: int = 0
    total: int = 0
    not_recognized: list[UnrecognizedTitle] = field(default_factory=list)

    @property
    def unchanged(self) -> int:
        return self.total - self.added - self.updated - self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "platform": self.platform,
            "added": self.added,
            "updated": self.updated,
            "failed": self.failed,
            "total": self.total,
            "notRecognized": [item.to_dict() for item in self.not_recognized],
        }


@dataclass(frozen=True)
class ProgressEvent:
    message: str
    progress_percent: int
    state: SyncState

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "progress",
            "message": self.message,
            "progressPercent": self.progress_percent,
            "state": self.state.value,
        }


__all__ = [
    "GAME_STATUSES",
    "ProgressEvent",
    "STATUS_BACKLOG",
    "STATUS_COMPLETED",
    "STATUS_DROPPED",
    "STATUS_OWNED",
    "STATUS_PLAYING",
    "STATUS_WANT_TO_PLAY",
    "SyncRunResult",
    "SyncState",
    "UnrecognizedTitle",
]
