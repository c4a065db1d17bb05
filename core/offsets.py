"""
Offset Scheduler — turns a rule's signed offsets into concrete fire times.

All arithmetic is in UTC. A negative offset fires before the anchor
("1 day before due date"), a positive one after it.

When a rule pins `at_time_utc`, the offset only picks the calendar day:
the fire time becomes that UTC day at HH:MM:00, regardless of the
anchor's own clock time. For sub-day offsets this can land before or
after the literal anchor + offset, which is the intended behavior.
"""
from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from typing import Optional, Sequence

from models.errors import ConfigValidationError
from models.schemas import AT_TIME_PATTERN


def parse_at_time(value: str) -> time:
    """Parse a strict 24-hour "HH:MM" string."""
    match = AT_TIME_PATTERN.match(str(value or "").strip())
    if not match:
        raise ConfigValidationError("invalid_time", f"expected HH:MM (24h), got {value!r}")
    return time(int(match.group(1)), int(match.group(2)), tzinfo=timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_fire_times(
    anchor: datetime,
    offsets_seconds: Sequence[int],
    at_time_utc: Optional[str] = None,
    dedupe: bool = False,
) -> list[datetime]:
    """
    One fire time per offset, in the same order.

    Duplicate offsets produce duplicate fire times unless `dedupe` is set,
    in which case only the first occurrence of each fire time is kept.
    """
    anchor = to_utc(anchor)
    pinned = parse_at_time(at_time_utc) if at_time_utc else None

    fire_times: list[datetime] = []
    for offset in offsets_seconds:
        try:
            fire_at = anchor + timedelta(seconds=int(offset))
        except (OverflowError, ValueError) as e:
            raise ConfigValidationError(
                "invalid_offset", f"offset {offset}s from {anchor.isoformat()} is out of range",
            ) from e
        if pinned is not None:
            fire_at = datetime.combine(fire_at.date(), pinned)
        fire_times.append(fire_at)

    if dedupe:
        seen: set[datetime] = set()
        unique = []
        for fire_at in fire_times:
            if fire_at not in seen:
                seen.add(fire_at)
                unique.append(fire_at)
        return unique
    return fire_times


class OffsetScheduler:
    """Settings-aware wrapper around compute_fire_times."""

    def __init__(self, dedupe: bool = False):
        self.dedupe = dedupe

    def plan(
        self,
        anchor: datetime,
        offsets_seconds: Sequence[int],
        at_time_utc: Optional[str] = None,
    ) -> list[tuple[int, datetime]]:
        """(offset, fire_at) pairs; with dedupe on, later offsets landing on a taken time are dropped."""
        fire_times = compute_fire_times(anchor, offsets_seconds, at_time_utc)
        pairs = list(zip((int(o) for o in offsets_seconds), fire_times))
        if not self.dedupe:
            return pairs
        seen: set[datetime] = set()
        unique = []
        for offset, fire_at in pairs:
            if fire_at not in seen:
                seen.add(fire_at)
                unique.append((offset, fire_at))
        return unique
