from __future__ import annotations

import json
import logging
import re
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Protocol, Tuple

from .countries import iso2_to_iso3
from .errors import ConfigurationError, GeoLookupFailure
from .models import GeoRecord

logger = logging.getLogger(__name__)

_PRIVATE_172 = re.compile(r"^172\.(1[6-9]|2\d|3[0-1])\.")
_IPV4_WITH_PORT = re.compile(r"^([0-9]{1,3}(?:\.[0-9]{1,3}){3}):(\d{1,5})$")
_MAPPED_V4_PREFIX = "::ffff:"


def is_private_ip(ip: str) -> bool:
    return (
        ip == "127.0.0.1"
        or ip == "::1"
        or ip.startswith("10.")
        or ip.startswith("192.168.")
        or bool(_PRIVATE_172.match(ip))
    )


def normalize_ip(raw: Optional[str]) -> str:
    """
    Reduce the IP formats seen in stored login rows to a bare address.

    ``"1.2.3.4, 10.0.0.1"`` -> ``"1.2.3.4"``, ``"1.2.3.4:12345"`` -> ``"1.2.3.4"``,
    ``"::ffff:1.2.3.4"`` -> ``"1.2.3.4"``, ``"[2001:db8::1]:443"`` -> ``"2001:db8::1"``.
    """

    ip = (raw or "").strip()
    if not ip:
        return ""
    if "," in ip:
        ip = ip.split(",", 1)[0].strip()
    if ip.lower().startswith(_MAPPED_V4_PREFIX):
        ip = ip[len(_MAPPED_V4_PREFIX):]
    if ip.startswith("[") and "]" in ip:
        return ip[1:ip.index("]")].strip()
    match = _IPV4_WITH_PORT.match(ip)
    if match:
        return match.group(1)
    return ip


@dataclass(frozen=True)
class GeoLookupResult:
    success: bool
    iso2: Optional[str] = None
    name: Optional[str] = None


class GeoLookup(Protocol):
    def lookup(self, ip: str) -> GeoLookupResult:  # pragma: no cover - protocol
        ...


class IpWhoIsClient:
    """
    Country lookup against an ipwho.is compatible endpoint.

    One GET per call, no retries. Transport and decoding problems are raised as
    :class:`GeoLookupFailure`; callers decide how to degrade.
    """

    def __init__(
        self,
        base_url: str = "https://ipwho.is",
        timeout_s: float = 2.5,
        user_agent: str = "admin-analytics-metrics",
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.user_agent = user_agent

    def _headers(self) -> Dict[str, str]:
        return {"User-Agent": self.user_agent, "Accept": "application/json"}

    def lookup(self, ip: str) -> GeoLookupResult:
        query = urllib.parse.urlencode({"fields": "success,country_code,country"})
        url = f"{self.base_url}/{urllib.parse.quote(ip, safe='')}?{query}"
        req = urllib.request.Request(url, headers=self._headers(), method="GET")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise GeoLookupFailure(f"Geo lookup for {ip} failed: {exc}") from exc

        if not isinstance(payload, dict):
            raise GeoLookupFailure(f"Geo lookup for {ip} returned a malformed body.")
        iso2 = payload.get("country_code")
        name = payload.get("country")
        return GeoLookupResult(
            success=bool(payload.get("success")),
            iso2=iso2 if isinstance(iso2, str) else None,
            name=name if isinstance(name, str) else None,
        )


class GeoCache:
    """
    Size-bounded LRU of resolved IPs with an optional time-to-live.

    Reads and writes are serialized by a lock so a reader never observes a
    half-written entry. Concurrent misses on the same IP may both perform a
    lookup; the last write wins.
    """

    def __init__(
        self,
        max_entries: int = 10_000,
        ttl_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ConfigurationError("Geo cache needs room for at least one entry.")
        if ttl_seconds < 0:
            raise ConfigurationError("Geo cache TTL cannot be negative.")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, GeoRecord]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, ip: str) -> Optional[GeoRecord]:
        with self._lock:
            item = self._entries.get(ip)
            if item is None:
                return None
            expire_at, record = item
            if expire_at and expire_at <= self._clock():
                del self._entries[ip]
                return None
            self._entries.move_to_end(ip)
            return record

    def set(self, ip: str, record: GeoRecord) -> None:
        expire_at = self._clock() + self.ttl_seconds if self.ttl_seconds else 0.0
        with self._lock:
            self._entries[ip] = (expire_at, record)
            self._entries.move_to_end(ip)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, ip: object) -> bool:
        with self._lock:
            return ip in self._entries


class GeoResolver:
    """
    Resolve IPs to countries without ever failing the caller.

    Private and loopback addresses short-circuit to the ``Private`` sentinel.
    Everything else is answered from the cache or by a single lookup whose
    failure degrades to an all-null record. ``lookup=None`` disables outbound
    calls entirely.
    """

    def __init__(
        self,
        lookup: Optional[GeoLookup],
        cache: Optional[GeoCache] = None,
        max_workers: int = 1,
    ) -> None:
        self._lookup = lookup
        self.cache = cache if cache is not None else GeoCache()
        self.max_workers = max(1, max_workers)

    def resolve(self, ip: str) -> GeoRecord:
        ip = (ip or "").strip()
        if not ip:
            return GeoRecord.unknown(ip)
        if is_private_ip(ip):
            return GeoRecord.private(ip)

        cached = self.cache.get(ip)
        if cached is not None:
            return cached
        if self._lookup is None:
            return GeoRecord.unknown(ip)

        record = self._lookup_record(ip)
        self.cache.set(ip, record)
        return record

    def resolve_many(self, ips: Iterable[str]) -> Dict[str, GeoRecord]:
        """Resolve each distinct IP once, with at most ``max_workers`` lookups in flight."""

        distinct = list(dict.fromkeys(ip for ip in ips if ip))
        if self.max_workers <= 1 or len(distinct) <= 1:
            return {ip: self.resolve(ip) for ip in distinct}

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(distinct))) as executor:
            records = list(executor.map(self.resolve, distinct))
        return dict(zip(distinct, records))

    def _lookup_record(self, ip: str) -> GeoRecord:
        try:
            result = self._lookup.lookup(ip)
        except Exception as exc:
            logger.warning("Geo lookup failed for %s: %s", ip, exc)
            return GeoRecord.unknown(ip)

        if not result.success:
            logger.warning("Geo lookup for %s was unsuccessful", ip)
            return GeoRecord.unknown(ip)

        iso2 = (result.iso2 or "").strip().upper() or None
        iso3 = iso2_to_iso3(iso2)
        if iso3 is None:
            logger.warning("Geo lookup for %s returned unknown country code %r", ip, result.iso2)
            return GeoRecord.unknown(ip)

        name = (result.name or "").strip() or iso2
        return GeoRecord(ip=ip, name=name, iso2=iso2, iso3=iso3)


def build_resolver(
    enable: bool = True,
    base_url: str = "https://ipwho.is",
    timeout_seconds: float = 2.5,
    user_agent: str = "admin-analytics-metrics",
    max_workers: int = 4,
    cache_max_entries: int = 10_000,
    cache_ttl_seconds: float = 0.0,
) -> GeoResolver:
    lookup = IpWhoIsClient(base_url, timeout_s=timeout_seconds, user_agent=user_agent) if enable else None
    cache = GeoCache(max_entries=cache_max_entries, ttl_seconds=cache_ttl_seconds)
    return GeoResolver(lookup, cache=cache, max_workers=max_workers)
