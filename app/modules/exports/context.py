"""Explicit caller context for export operations."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional


def utcnow() -> datetime:
    """Return an aware UTC timestamp."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ExportContext:
    """Who is exporting and which clock names and timestamps the artifacts.

    Every timestamp written into a file name, a rendered header or an
    audit event comes from ``clock`` so runs can be replayed in tests.
    """

    actor_id: Optional[str] = None
    clock: Callable[[], datetime] = field(default=utcnow)

    def now(self) -> datetime:
        return self.clock()

    @classmethod
    def system(cls) -> "ExportContext":
        return cls(actor_id="system")
