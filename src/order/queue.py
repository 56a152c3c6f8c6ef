from __future__ import annotations

from collections.abc import Collection, Iterator
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class TaskDescriptor:
    id: str
    issue_ref: str | None = None


class TaskQueue:
    """Ordered, append-only list of tasks written by the planning stage.

    One task per line: ``<task-id> [<issue-ref>]``. Blank lines are ignored and
    ``#`` starts a comment. A task id listed twice keeps its first position.
    """

    def __init__(self, entries: list[TaskDescriptor] | None = None) -> None:
        self.entries: list[TaskDescriptor] = []
        seen: set[str] = set()
        for entry in entries or []:
            if entry.id in seen:
                continue
            seen.add(entry.id)
            self.entries.append(entry)

    def __iter__(self) -> Iterator[TaskDescriptor]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def ids(self) -> list[str]:
        return [entry.id for entry in self.entries]

    def get(self, task_id: str) -> TaskDescriptor | None:
        for entry in self.entries:
            if entry.id == task_id:
                return entry
        return None

    @classmethod
    def parse(cls, text: str) -> TaskQueue:
        entries: list[TaskDescriptor] = []
        for raw_line in text.splitlines():
            line = raw_line.split("#", maxsplit=1)[0].strip()
            if not line:
                continue
            parts = line.split()
            issue_ref = parts[1] if len(parts) > 1 else None
            entries.append(TaskDescriptor(id=parts[0], issue_ref=issue_ref))
        return cls(entries)

    @classmethod
    def load(cls, path: Path) -> TaskQueue:
        if not path.exists():
            return cls()
        return cls.parse(path.read_text(encoding="utf-8"))

    def remaining(
        self, completed: Collection[str], failed: Collection[str]
    ) -> list[TaskDescriptor]:
        return [
            entry
            for entry in self.entries
            if entry.id not in completed and entry.id not in failed
        ]

    def next_pending(
        self, completed: Collection[str], failed: Collection[str]
    ) -> TaskDescriptor | None:
        """First entry in queue order that is neither completed nor failed."""
        remaining = self.remaining(completed, failed)
        return remaining[0] if remaining else None
