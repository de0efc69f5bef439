"""Lap-time aggregation: best times, deltas and favourite cars.

Every function here is pure. Inputs are read in full, never mutated, and
results are new objects, so the helpers are safe to call from concurrent
request handlers without coordination.

Records compare under a single total order: ascending duration, then the
earliest ``created_at`` (records without a timestamp sort after those with
one), then the lowest ``record_id``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Hashable, Iterable, List, NamedTuple, Optional, Tuple

from .durations import MS_PER_SECOND, Number, to_millis
from .errors import InvalidInputError

MODE_FASTEST = "fastest"
MODE_FIRST_SEEN = "first_seen"


class TrackConfigKey(NamedTuple):
    """Grouping key for best-time computations."""

    track_name: str
    config_name: str


@dataclass(frozen=True)
class LapTimeRecord:
    """One timed lap, flattened from the joined database rows."""

    record_id: int
    track_name: Optional[str]
    config_name: Optional[str]
    car_name: Optional[str]
    user_id: Optional[str]
    duration_seconds: Optional[float]
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        duration = self.duration_seconds
        if duration is None:
            return
        # NaN compares false against everything and would poison the ordering
        if not math.isfinite(duration):
            raise InvalidInputError(
                f"Lap time {self.record_id} has a non-finite duration: {duration!r}"
            )
        if duration < 0:
            raise InvalidInputError(
                f"Lap time {self.record_id} has a negative duration: {duration!r}"
            )

    @property
    def key(self) -> TrackConfigKey:
        return TrackConfigKey(self.track_name, self.config_name)

    @property
    def rankable(self) -> bool:
        """True when the record carries everything needed to be ranked."""
        return (
            self.duration_seconds is not None
            and bool(self.track_name)
            and bool(self.config_name)
            and bool(self.car_name)
        )


@dataclass(frozen=True)
class RankedTime:
    record: LapTimeRecord
    rank: int
    delta_seconds: float


@dataclass(frozen=True)
class CarUsageTally:
    user_id: Hashable
    car_name: str
    use_count: int


def _order_key(record: LapTimeRecord) -> Tuple:
    created = record.created_at
    return (
        record.duration_seconds,
        created is None,
        created if created is not None else datetime.min,
        record.record_id,
    )


def fastest_per_config(records: Iterable[LapTimeRecord]) -> List[LapTimeRecord]:
    """Return the fastest rankable record for each track configuration.

    Records missing a duration, track, configuration or car name are
    ignored. The result is ordered fastest overall first.
    """
    best: Dict[TrackConfigKey, LapTimeRecord] = {}
    for record in list(records):
        if not record.rankable:
            continue
        current = best.get(record.key)
        if current is None or _order_key(record) < _order_key(current):
            best[record.key] = record
    return sorted(best.values(), key=_order_key)


def first_seen_per_config(records: Iterable[LapTimeRecord]) -> List[LapTimeRecord]:
    """Return the first rankable record encountered per track configuration.

    This is a plain dedup in input order; it does not compare durations.
    Callers that want the best lap must use :func:`fastest_per_config`.
    """
    seen: Dict[TrackConfigKey, LapTimeRecord] = {}
    for record in list(records):
        if record.rankable and record.key not in seen:
            seen[record.key] = record
    return list(seen.values())


def best_times(records: Iterable[LapTimeRecord], mode: str = MODE_FASTEST) -> List[LapTimeRecord]:
    """Dispatch to the reducer named by ``mode``."""
    if mode == MODE_FASTEST:
        return fastest_per_config(records)
    if mode == MODE_FIRST_SEEN:
        return first_seen_per_config(records)
    raise InvalidInputError(f"Unknown best-time mode: {mode!r}")


def group_by_config(records: Iterable[LapTimeRecord]) -> Dict[TrackConfigKey, List[LapTimeRecord]]:
    """Group rankable records by configuration, each group sorted fastest first.

    Groups appear in the order their first record was encountered.
    """
    groups: Dict[TrackConfigKey, List[LapTimeRecord]] = {}
    for record in list(records):
        if record.rankable:
            groups.setdefault(record.key, []).append(record)
    return {key: sorted(group, key=_order_key) for key, group in groups.items()}


def best_time_for(records: Iterable[LapTimeRecord], key: TrackConfigKey) -> LapTimeRecord:
    """Return the fastest record for ``key``.

    Raises:
        InvalidInputError: if no rankable record exists for ``key``.
    """
    candidates = [r for r in records if r.rankable and r.key == key]
    if not candidates:
        raise InvalidInputError(f"No lap times recorded for {key.track_name} / {key.config_name}")
    return min(candidates, key=_order_key)


def _check_sorted(records: List[LapTimeRecord]) -> List[Decimal]:
    """Return exact durations, validating presence and ascending order."""
    exact: List[Decimal] = []
    previous = None
    for idx, record in enumerate(records):
        duration = record.duration_seconds
        if duration is None:
            raise InvalidInputError(f"Lap time {record.record_id} has no duration")
        if previous is not None and duration < previous:
            raise InvalidInputError(
                f"Lap times are not sorted ascending at position {idx}"
            )
        previous = duration
        exact.append(Decimal(str(duration)))
    return exact


def format_delta(seconds: Number) -> str:
    """Format a non-negative gap as ``+S.mmm``."""
    whole, millis = divmod(to_millis(seconds), MS_PER_SECOND)
    return f"+{whole}.{millis:03d}"


def compute_deltas(sorted_records: Iterable[LapTimeRecord]) -> List[Optional[str]]:
    """Return the gap of each record to the first, which has none.

    The input must already be sorted ascending by duration; it is validated,
    never re-sorted. Gaps are subtracted exactly and rounded once.
    """
    exact = _check_sorted(list(sorted_records))
    if not exact:
        return []
    fastest = exact[0]
    return [None] + [format_delta(value - fastest) for value in exact[1:]]


def rank_times(sorted_records: Iterable[LapTimeRecord]) -> List[RankedTime]:
    """Attach positions and gaps to records already sorted fastest first."""
    records = list(sorted_records)
    exact = _check_sorted(records)
    if not exact:
        return []
    fastest = exact[0]
    return [
        RankedTime(record=record, rank=idx, delta_seconds=to_millis(value - fastest) / MS_PER_SECOND)
        for idx, (record, value) in enumerate(zip(records, exact), start=1)
    ]


def favorite_cars(usages: Iterable[Tuple[Hashable, Optional[str]]]) -> Dict[Hashable, CarUsageTally]:
    """Return the most used car per user.

    Equal counts are settled in favour of the car that appeared first in
    ``usages``. Users whose usages carry no car name are absent.
    """
    counts: Dict[Hashable, Dict[str, int]] = {}
    for user_id, car_name in usages:
        if not car_name:
            continue
        per_user = counts.setdefault(user_id, {})
        per_user[car_name] = per_user.get(car_name, 0) + 1

    favorites: Dict[Hashable, CarUsageTally] = {}
    for user_id, per_user in counts.items():
        best_car = None
        best_count = 0
        # dicts keep insertion order, so the first car to reach the max wins
        for car_name, count in per_user.items():
            if count > best_count:
                best_car, best_count = car_name, count
        favorites[user_id] = CarUsageTally(user_id=user_id, car_name=best_car, use_count=best_count)
    return favorites


def favorite_car(usages: Iterable[Tuple[Hashable, Optional[str]]], user_id: Hashable) -> Optional[CarUsageTally]:
    """Return the favourite car for one user or ``None`` when they have none."""
    return favorite_cars((u, car) for u, car in usages if u == user_id).get(user_id)


__all__ = [
    "MODE_FASTEST",
    "MODE_FIRST_SEEN",
    "CarUsageTally",
    "LapTimeRecord",
    "RankedTime",
    "TrackConfigKey",
    "best_time_for",
    "best_times",
    "compute_deltas",
    "favorite_car",
    "favorite_cars",
    "fastest_per_config",
    "first_seen_per_config",
    "format_delta",
    "group_by_config",
    "rank_times",
]
