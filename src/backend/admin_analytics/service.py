from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .bucketing import as_utc, build_bucket_plan, coerce_timezone
from .geo import GeoResolver, is_private_ip, normalize_ip
from .leads import LeadGrouper
from .models import (
    CountryCount,
    IpGroup,
    LeadRow,
    LeadSummary,
    LoginEvent,
    MetricsPeriod,
    MetricsResult,
    SignupEvent,
)
from .repository import LEAD_KINDS, EventStore

logger = logging.getLogger(__name__)

DEFAULT_LEAD_LIMIT = 200
MAX_LEAD_LIMIT = 1000
UNKNOWN_COUNTRY = "Unknown"


def parse_kind(raw: object) -> str:
    if isinstance(raw, str) and raw.strip().lower() in LEAD_KINDS:
        return raw.strip().lower()
    return "all"


def parse_limit(raw: object, default: int = DEFAULT_LEAD_LIMIT) -> int:
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if not math.isfinite(value):
        return default
    return max(1, min(MAX_LEAD_LIMIT, math.floor(value)))


def _chunks(items: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for offset in range(0, len(items), size):
        yield items[offset:offset + size]


class MetricsAggregator:
    """
    Build the signup/login dashboard payload for one reporting period.

    Store failures propagate and abort the aggregation; geo failures only
    blank out the affected country.
    """

    def __init__(
        self,
        store: EventStore,
        resolver: GeoResolver,
        timezone: str = "UTC",
        top_ip_limit: int = 50,
        user_chunk_size: int = 500,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.timezone = coerce_timezone(timezone).key
        self.top_ip_limit = top_ip_limit
        self.user_chunk_size = user_chunk_size
        self._clock = clock or (lambda: datetime.now(coerce_timezone(self.timezone)))

    def aggregate(self, period: MetricsPeriod, now: Optional[datetime] = None) -> MetricsResult:
        plan = build_bucket_plan(period, now or self._clock(), self.timezone)
        signups = self.store.list_signups(plan.start, plan.end)
        logins = self.store.list_logins(plan.start, plan.end)

        signup_counts = plan.count(as_utc(event.created_at) for event in signups)
        login_counts = plan.count(as_utc(event.created_at) for event in logins)
        ip_groups = self._ip_groups(logins)
        signup_countries = self._signup_countries(signups)

        logger.debug(
            "Aggregated %s: %d signups, %d logins, %d ip groups",
            period.value,
            len(signups),
            len(logins),
            len(ip_groups),
        )
        return MetricsResult(
            period=period,
            start=plan.start,
            end=plan.end,
            labels=plan.labels,
            signups=signup_counts,
            logins=login_counts,
            ip_groups=ip_groups,
            signup_countries=signup_countries,
        )

    def _ip_groups(self, logins: Sequence[LoginEvent]) -> List[IpGroup]:
        ip_counts: Counter = Counter()
        for event in logins:
            ip = normalize_ip(event.ip)
            if ip:
                ip_counts[ip] += 1

        # Geo is resolved for the truncated set only.
        top = sorted(ip_counts.items(), key=lambda item: (-item[1], item[0]))[: self.top_ip_limit]
        geo = self.resolver.resolve_many(ip for ip, _ in top)
        return [
            IpGroup(
                ip=ip,
                count=count,
                country_name=geo[ip].name,
                country_iso2=geo[ip].iso2,
                country_iso3=geo[ip].iso3,
            )
            for ip, count in top
        ]

    def _signup_countries(self, signups: Sequence[SignupEvent]) -> List[CountryCount]:
        """
        Approximate signup geography from each user's earliest public login IP.

        Signups carry no IP, so this is where the user first logged in from, not
        necessarily where they registered.
        """

        first_ip = self._first_public_login_ips([event.user_id for event in signups])
        geo = self.resolver.resolve_many(first_ip.values())

        countries: Counter = Counter()
        for ip in first_ip.values():
            countries[geo[ip].name or UNKNOWN_COUNTRY] += 1
        return [
            CountryCount(country=country, count=count)
            for country, count in sorted(countries.items(), key=lambda item: (-item[1], item[0]))
        ]

    def _first_public_login_ips(self, user_ids: Sequence[str]) -> Dict[str, str]:
        distinct_ids = list(dict.fromkeys(user_id for user_id in user_ids if user_id))
        first_ip: Dict[str, str] = {}
        for chunk in _chunks(distinct_ids, self.user_chunk_size):
            for event in self.store.logins_for_users(chunk):
                if event.user_id in first_ip:
                    continue
                ip = normalize_ip(event.ip)
                if ip and not is_private_ip(ip):
                    first_ip[event.user_id] = ip
        return first_ip


class LeadsService:
    def __init__(
        self,
        store: EventStore,
        grouper: Optional[LeadGrouper] = None,
        raw_event_limit: int = 5000,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.grouper = grouper or LeadGrouper()
        self.raw_event_limit = raw_event_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def list_leads(self, kind: str = "all", limit: int = DEFAULT_LEAD_LIMIT) -> List[LeadRow]:
        """
        Group the most recent raw lead events into rows, newest first.

        Only the newest ``raw_event_limit`` events are scanned, so a very old
        conversation can appear truncated to its latest messages.
        """

        kind = parse_kind(kind)
        events = self.store.list_lead_events(None if kind == "all" else kind, self.raw_event_limit)
        return self.grouper.group(events, limit=limit)

    def summary(self, now: Optional[datetime] = None, recent_days: int = 7) -> LeadSummary:
        now = now or self._clock()
        since = now - timedelta(days=recent_days)
        total, contact, chat, recent_contact, recent_chat = self._counts(since)
        return LeadSummary(
            total=total,
            contact=contact,
            chat=chat,
            recent_contact=recent_contact,
            recent_chat=recent_chat,
            recent_days=recent_days,
            updated_at=now,
        )

    def _counts(self, since: datetime) -> Tuple[int, int, int, int, int]:
        return (
            self.store.count_lead_events(),
            self.store.count_lead_events("contact"),
            self.store.count_lead_events("chat"),
            self.store.count_lead_events("contact", since=since),
            self.store.count_lead_events("chat", since=since),
        )
