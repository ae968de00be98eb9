from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol


SYSTEM_ACTOR_ID = -1


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChangeContext:
    # Passed explicitly into every write; there is no ambient "current user".
    actor_id: int = SYSTEM_ACTOR_ID
    at: datetime = field(default_factory=_utc_now)

    @property
    def actor_label(self) -> str:
        return "system" if self.actor_id == SYSTEM_ACTOR_ID else f"user:{self.actor_id}"


class ChangeTracked(Protocol):
    record_change: dict[str, Any] | None


class SoftDeletable(ChangeTracked, Protocol):
    is_deleted: bool


def record_change(row: ChangeTracked, ctx: ChangeContext) -> None:
    # Stamp actor and time on the row using the inventory application's record-change shape.
    row.record_change = {
        "last_modified_at": ctx.at.isoformat(),
        "last_modified_by": ctx.actor_id,
    }


def soft_delete(row: SoftDeletable, ctx: ChangeContext) -> None:
    row.is_deleted = True
    record_change(row, ctx)
