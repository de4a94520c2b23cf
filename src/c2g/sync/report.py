"""Run outcomes and the combined report.

Outcome        one destination pass: created / updated / deleted / unchanged
               item descriptors plus per-item errors
TaskOutcome    Outcome plus the task lists created or reused
CombinedReport both outcomes plus run metadata; the only artifact a caller sees

Errors carry the failing uid (None for pass-level failures) and a message
string, never the exception object.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

__all__ = [
    "CollectionRef",
    "CombinedReport",
    "ItemError",
    "ItemRef",
    "Outcome",
    "RunMetadata",
    "TaskOutcome",
    "combine",
]


@dataclass(frozen=True)
class ItemRef:
    uid: str
    title: str
    external_id: str | None = None
    collection: str | None = None
    reason: str | None = None  # deletes: "absent" or "policy"


@dataclass(frozen=True)
class ItemError:
    message: str
    uid: str | None = None
    collection: str | None = None


@dataclass(frozen=True)
class CollectionRef:
    name: str
    external_id: str


@dataclass
class Outcome:
    created: list[ItemRef] = field(default_factory=list)
    updated: list[ItemRef] = field(default_factory=list)
    deleted: list[ItemRef] = field(default_factory=list)
    unchanged: list[ItemRef] = field(default_factory=list)
    errors: list[ItemError] = field(default_factory=list)
    fatal: bool = False

    @classmethod
    def failed(cls, message: str) -> Outcome:
        """Pass-level failure: one error, nothing else."""
        return cls(errors=[ItemError(message=message)], fatal=True)

    def extend(self, other: Outcome) -> None:
        self.created.extend(other.created)
        self.updated.extend(other.updated)
        self.deleted.extend(other.deleted)
        self.unchanged.extend(other.unchanged)
        self.errors.extend(other.errors)
        self.fatal = self.fatal or other.fatal

    def counts(self) -> dict[str, int]:
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "deleted": len(self.deleted),
            "unchanged": len(self.unchanged),
            "errors": len(self.errors),
        }

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["counts"] = self.counts()
        return data


@dataclass
class TaskOutcome(Outcome):
    collections_created: list[CollectionRef] = field(default_factory=list)
    collections_existing: list[CollectionRef] = field(default_factory=list)

    @classmethod
    def failed(cls, message: str) -> TaskOutcome:
        return cls(errors=[ItemError(message=message)], fatal=True)


@dataclass(frozen=True)
class RunMetadata:
    total_parsed: int
    to_calendar: int
    to_tasks: int
    outside_window: int
    filtered_out: int
    started_at: datetime
    completed_at: datetime
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["completed_at"] = self.completed_at.isoformat()
        return data


@dataclass(frozen=True)
class CombinedReport:
    calendar: Outcome
    tasks: TaskOutcome
    metadata: RunMetadata

    @property
    def fatal(self) -> bool:
        return self.calendar.fatal or self.tasks.fatal

    def aggregate(self) -> dict[str, int]:
        total = {"created": 0, "updated": 0, "deleted": 0, "unchanged": 0, "errors": 0}
        for outcome in (self.calendar, self.tasks):
            for k, v in outcome.counts().items():
                total[k] += v
        return total

    def to_dict(self) -> dict[str, Any]:
        return {
            "calendar": self.calendar.to_dict(),
            "tasks": self.tasks.to_dict(),
            "metadata": self.metadata.to_dict(),
        }


def combine(calendar: Outcome, tasks: TaskOutcome, metadata: RunMetadata) -> CombinedReport:
    return CombinedReport(calendar=calendar, tasks=tasks, metadata=metadata)
