from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from datetime import timezone as dt_timezone
from typing import Iterable, Iterator, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import Bucket, MetricsPeriod

HOURS_PER_DAY = 24
SEVEN_DAY_WINDOW = 7


def coerce_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def localize(dt: datetime, tz: ZoneInfo) -> datetime:
    """Naive datetimes are read as wall-clock time in ``tz``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    return dt.astimezone(tz)


def as_utc(dt: datetime) -> datetime:
    """Event timestamps: naive values are UTC, the way the store keeps them."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=dt_timezone.utc)
    return dt.astimezone(dt_timezone.utc)


def _wall_clock(day: date, hour: int, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time(hour=hour), tzinfo=tz)


def _daterange(first: date, count: int) -> Iterator[date]:
    for offset in range(count):
        yield first + timedelta(days=offset)


@dataclass(frozen=True)
class BucketPlan:
    """
    Ordered, contiguous buckets covering ``[start, end)`` for one period.

    ``start`` and ``end`` are aware datetimes in the plan's timezone.
    """

    period: MetricsPeriod
    start: datetime
    end: datetime
    buckets: Sequence[Bucket]
    timezone: str = "UTC"

    def __len__(self) -> int:
        return len(self.buckets)

    @property
    def labels(self) -> List[str]:
        return [bucket.label for bucket in self.buckets]

    def index_for(self, timestamp: datetime) -> Optional[int]:
        return bucket_index_for(
            self.period,
            self.start,
            timestamp,
            timezone=self.timezone,
            bucket_count=len(self.buckets),
        )

    def count(self, timestamps: Iterable[datetime]) -> List[int]:
        """Histogram ``timestamps`` into the plan; out-of-range values are dropped."""

        counts = [0] * len(self.buckets)
        for timestamp in timestamps:
            index = self.index_for(timestamp)
            if index is not None:
                counts[index] += 1
        return counts


def build_bucket_plan(period: MetricsPeriod, now: datetime, timezone: str = "UTC") -> BucketPlan:
    tz = coerce_timezone(timezone)
    today = localize(now, tz).date()

    if period is MetricsPeriod.TODAY:
        buckets = [
            Bucket(
                index=hour,
                label=f"{hour:02d}:00",
                start=_wall_clock(today, hour, tz),
                end=(
                    _wall_clock(today, hour + 1, tz)
                    if hour + 1 < HOURS_PER_DAY
                    else _wall_clock(today + timedelta(days=1), 0, tz)
                ),
            )
            for hour in range(HOURS_PER_DAY)
        ]
    else:
        if period is MetricsPeriod.SEVEN_DAYS:
            first_day = today - timedelta(days=SEVEN_DAY_WINDOW - 1)
            day_count = SEVEN_DAY_WINDOW
        else:
            first_day = today.replace(day=1)
            day_count = today.day
        buckets = [
            Bucket(
                index=index,
                label=day.strftime("%m-%d"),
                start=_wall_clock(day, 0, tz),
                end=_wall_clock(day + timedelta(days=1), 0, tz),
            )
            for index, day in enumerate(_daterange(first_day, day_count))
        ]

    return BucketPlan(
        period=period,
        start=buckets[0].start,
        end=buckets[-1].end,
        buckets=tuple(buckets),
        timezone=tz.key,
    )


def bucket_index_for(
    period: MetricsPeriod,
    start: datetime,
    timestamp: datetime,
    timezone: str = "UTC",
    bucket_count: Optional[int] = None,
) -> Optional[int]:
    """
    Map ``timestamp`` to the bucket it falls into, or ``None`` when it lies
    outside the period starting at ``start``.

    Indices are calendar based in the local timezone: the local hour for
    ``today`` and the number of local calendar days since ``start`` otherwise.
    Nothing is clamped.
    """

    tz = coerce_timezone(timezone)
    local_start = localize(start, tz)
    local_ts = localize(timestamp, tz)

    if period is MetricsPeriod.TODAY:
        if local_ts.date() != local_start.date():
            return None
        index = local_ts.hour
        limit = HOURS_PER_DAY if bucket_count is None else bucket_count
    else:
        index = (local_ts.date() - local_start.date()).days
        limit = bucket_count

    if index < 0 or (limit is not None and index >= limit):
        return None
    return index
