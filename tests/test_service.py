from datetime import datetime, timedelta, timezone

import pytest

from backend.admin_analytics.errors import UpstreamUnavailable
from backend.admin_analytics.models import (
    ChatLeadEvent,
    ContactLeadEvent,
    CountryCount,
    LoginEvent,
    MetricsPeriod,
    SignupEvent,
)
from backend.admin_analytics.repository import InMemoryEventStore
from backend.admin_analytics.service import LeadsService, MetricsAggregator, parse_kind, parse_limit

NOW = datetime(2024, 1, 15, 15, 30, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0, day: int = 15) -> datetime:
    return datetime(2024, 1, day, hour, minute, tzinfo=timezone.utc)


class RecordingStore(InMemoryEventStore):
    def __post_init__(self) -> None:
        super().__post_init__()
        self.chunks = []

    def logins_for_users(self, user_ids):
        self.chunks.append(list(user_ids))
        return super().logins_for_users(user_ids)


class BrokenStore(InMemoryEventStore):
    def list_logins(self, start, end):
        raise UpstreamUnavailable("database is down")


def test_single_signup_and_login_land_in_the_same_hour(resolver) -> None:
    store = InMemoryEventStore(
        signups=[SignupEvent("u1", at(9, 5))],
        logins=[LoginEvent("u1", "8.8.8.8", at(9, 10))],
    )

    result = MetricsAggregator(store, resolver).aggregate(MetricsPeriod.TODAY, now=NOW)

    assert len(result.labels) == 24
    assert result.labels[9] == "09:00"
    assert result.signups[9] == 1
    assert result.logins[9] == 1
    assert sum(result.signups) == 1
    assert sum(result.logins) == 1
    assert result.totals == {"signups": 1, "logins": 1}
    assert [(group.ip, group.count, group.country_iso3) for group in result.ip_groups] == [
        ("8.8.8.8", 1, "USA")
    ]
    assert result.signup_countries == [CountryCount(country="United States", count=1)]


def test_series_sum_to_events_in_range_for_every_period(resolver) -> None:
    signups = [SignupEvent(f"u{i}", NOW - timedelta(hours=7 * i)) for i in range(200)]
    logins = [LoginEvent(f"u{i}", "10.0.0.1", NOW - timedelta(hours=5 * i)) for i in range(200)]
    store = InMemoryEventStore(signups=signups, logins=logins)
    aggregator = MetricsAggregator(store, resolver)

    for period in MetricsPeriod:
        result = aggregator.aggregate(period, now=NOW)
        assert len(result.signups) == len(result.labels) == len(result.logins)
        assert sum(result.signups) == len(store.list_signups(result.start, result.end))
        assert sum(result.logins) == len(store.list_logins(result.start, result.end))


def test_only_top_ips_are_resolved(resolver, geo_lookup) -> None:
    logins = []
    for i in range(60):
        for _ in range(i + 1):
            logins.append(LoginEvent("u1", f"8.8.{i}.1", at(10)))
    store = InMemoryEventStore(logins=logins)

    result = MetricsAggregator(store, resolver, top_ip_limit=50).aggregate(MetricsPeriod.TODAY, now=NOW)

    assert len(result.ip_groups) == 50
    assert len(geo_lookup.calls) == 50
    assert result.ip_groups[0].ip == "8.8.59.1"
    assert result.ip_groups[0].count == 60
    assert [group.count for group in result.ip_groups] == sorted(
        (group.count for group in result.ip_groups), reverse=True
    )
    assert "8.8.0.1" not in geo_lookup.calls


def test_geo_failure_leaves_country_empty(resolver, geo_lookup) -> None:
    geo_lookup.fail.add("8.8.8.8")
    store = InMemoryEventStore(
        logins=[LoginEvent("u1", "8.8.8.8", at(10)), LoginEvent("u2", "1.1.1.1", at(11))],
    )

    result = MetricsAggregator(store, resolver).aggregate(MetricsPeriod.TODAY, now=NOW)

    groups = {group.ip: group for group in result.ip_groups}
    assert groups["8.8.8.8"].country_name is None
    assert groups["8.8.8.8"].country_iso3 is None
    assert groups["1.1.1.1"].country_iso3 == "AUS"


def test_ip_variants_are_counted_together(resolver) -> None:
    store = InMemoryEventStore(
        logins=[
            LoginEvent("u1", "1.1.1.1:5555", at(10)),
            LoginEvent("u1", "::ffff:1.1.1.1", at(11)),
            LoginEvent("u1", "1.1.1.1", at(12)),
            LoginEvent("u2", "", at(12)),
        ],
    )

    result = MetricsAggregator(store, resolver).aggregate(MetricsPeriod.TODAY, now=NOW)

    assert [(group.ip, group.count) for group in result.ip_groups] == [("1.1.1.1", 3)]
    assert sum(result.logins) == 4


def test_signup_countries_use_first_public_login(resolver) -> None:
    store = InMemoryEventStore(
        signups=[
            SignupEvent("u1", at(8)),
            SignupEvent("u2", at(9)),
            SignupEvent("u3", at(9)),
            SignupEvent("u4", at(10)),
        ],
        logins=[
            LoginEvent("u1", "192.168.1.10", at(8, 1)),
            LoginEvent("u1", "5.9.0.1", at(8, 2)),
            LoginEvent("u1", "8.8.8.8", at(8, 3)),
            LoginEvent("u2", "8.8.8.8", at(9, 1)),
            LoginEvent("u3", "4.4.4.4", at(9, 2)),
        ],
    )

    result = MetricsAggregator(store, resolver).aggregate(MetricsPeriod.TODAY, now=NOW)

    assert result.signup_countries == [
        CountryCount(country="Germany", count=1),
        CountryCount(country="United States", count=1),
        CountryCount(country="Unknown", count=1),
    ]


def test_signup_user_lookups_are_chunked(resolver) -> None:
    store = RecordingStore(signups=[SignupEvent(f"u{i}", at(9)) for i in range(5)])

    MetricsAggregator(store, resolver, user_chunk_size=2).aggregate(MetricsPeriod.TODAY, now=NOW)

    assert [len(chunk) for chunk in store.chunks] == [2, 2, 1]
    assert [user for chunk in store.chunks for user in chunk] == [f"u{i}" for i in range(5)]


def test_store_failure_aborts_aggregation(resolver) -> None:
    store = BrokenStore(signups=[SignupEvent("u1", at(9))])

    with pytest.raises(UpstreamUnavailable):
        MetricsAggregator(store, resolver).aggregate(MetricsPeriod.SEVEN_DAYS, now=NOW)


def test_default_clock_uses_configured_timezone(resolver) -> None:
    aggregator = MetricsAggregator(InMemoryEventStore(), resolver, timezone="Europe/Berlin")

    result = aggregator.aggregate(MetricsPeriod.TODAY)

    assert result.start.utcoffset() in (timedelta(hours=1), timedelta(hours=2))
    assert result.labels[0] == "00:00"


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, 200),
        ("", 200),
        ("abc", 200),
        ("nan", 200),
        ("inf", 200),
        ("0", 1),
        ("-5", 1),
        ("12.9", 12),
        ("5000", 1000),
        (50, 50),
    ],
)
def test_parse_limit(raw, expected: int) -> None:
    assert parse_limit(raw) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [(None, "all"), ("chat", "chat"), (" Contact ", "contact"), ("fax", "all"), ("all", "all")],
)
def test_parse_kind(raw, expected: str) -> None:
    assert parse_kind(raw) == expected


def _lead_store() -> InMemoryEventStore:
    return InMemoryEventStore(
        lead_events=[
            ContactLeadEvent(id="k1", timestamp=NOW - timedelta(days=10), name="Old Form"),
            ContactLeadEvent(id="k2", timestamp=NOW - timedelta(days=1), name="New Form"),
            ChatLeadEvent(id="c1", timestamp=NOW - timedelta(days=2), conversation_id="abc"),
            ChatLeadEvent(id="c2", timestamp=NOW - timedelta(days=2, minutes=-5), conversation_id="abc"),
            ChatLeadEvent(id="c3", timestamp=NOW - timedelta(days=20), conversation_id="old"),
        ]
    )


def test_list_leads_filters_by_kind_and_limits() -> None:
    service = LeadsService(_lead_store())

    assert [row.grouping_key for row in service.list_leads("all")] == [
        "contact:k2",
        "conv:abc",
        "contact:k1",
        "conv:old",
    ]
    assert [row.grouping_key for row in service.list_leads("chat")] == ["conv:abc", "conv:old"]
    assert [row.grouping_key for row in service.list_leads("contact", limit=1)] == ["contact:k2"]
    assert [row.grouping_key for row in service.list_leads("bogus", limit=2)] == ["contact:k2", "conv:abc"]


def test_raw_event_limit_bounds_the_scan() -> None:
    service = LeadsService(_lead_store(), raw_event_limit=2)

    rows = service.list_leads("all")

    assert [event.id for row in rows for event in row.events] == ["k2", "c2"]


def test_summary_counts_totals_and_recent_window() -> None:
    summary = LeadsService(_lead_store(), clock=lambda: NOW).summary()

    assert summary.as_dict() == {
        "totals": {"total": 5, "contact": 2, "chat": 3},
        "last7d": {"contact": 1, "chat": 2},
        "updatedAt": NOW.isoformat(),
    }


def test_naive_event_timestamps_are_bucketed_as_utc(resolver) -> None:
    # 20:00 UTC on the 15th is 05:00 on the 16th in Tokyo.
    store = InMemoryEventStore(
        signups=[SignupEvent("u1", datetime(2024, 1, 15, 20, 0))],
        logins=[LoginEvent("u1", "10.0.0.1", datetime(2024, 1, 15, 20, 30))],
    )
    aggregator = MetricsAggregator(store, resolver, timezone="Asia/Tokyo")

    result = aggregator.aggregate(MetricsPeriod.TODAY, now=datetime(2024, 1, 16, 12, 0, tzinfo=timezone.utc))

    assert len(store.list_signups(result.start, result.end)) == 1
    assert result.signups[5] == 1
    assert result.logins[5] == 1
    assert sum(result.signups) == 1
    assert sum(result.logins) == 1


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("today", MetricsPeriod.TODAY),
        ("7d", MetricsPeriod.SEVEN_DAYS),
        ("month", MetricsPeriod.MONTH),
        ("TODAY", MetricsPeriod.SEVEN_DAYS),
        (" month", MetricsPeriod.SEVEN_DAYS),
        (None, MetricsPeriod.SEVEN_DAYS),
    ],
)
def test_period_parsing_is_exact(raw, expected) -> None:
    assert MetricsPeriod.parse(raw) is expected
