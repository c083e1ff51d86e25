import os
import threading

import pytest

# The HTTP app reads its settings at import time; keep tests offline and storeless.
os.environ.pop("ADMIN_ANALYTICS_DATABASE_URL", None)
os.environ["GEO_LOOKUP_ENABLE"] = "false"

from backend.admin_analytics.errors import GeoLookupFailure  # noqa: E402
from backend.admin_analytics.geo import GeoCache, GeoLookupResult, GeoResolver  # noqa: E402


class FakeGeoLookup:
    """Counts calls; answers from ``table`` and raises for IPs in ``fail``."""

    def __init__(self) -> None:
        self.table = {
            "8.8.8.8": ("US", "United States"),
            "1.1.1.1": ("AU", "Australia"),
            "5.9.0.1": ("DE", "Germany"),
        }
        self.fail = set()
        self.calls = []
        self._lock = threading.Lock()

    def lookup(self, ip: str) -> GeoLookupResult:
        with self._lock:
            self.calls.append(ip)
        if ip in self.fail:
            raise GeoLookupFailure(f"lookup for {ip} timed out")
        if ip in self.table:
            iso2, name = self.table[ip]
            return GeoLookupResult(success=True, iso2=iso2, name=name)
        return GeoLookupResult(success=False)


@pytest.fixture
def geo_lookup() -> FakeGeoLookup:
    return FakeGeoLookup()


@pytest.fixture
def resolver(geo_lookup: FakeGeoLookup) -> GeoResolver:
    return GeoResolver(geo_lookup, cache=GeoCache(max_entries=100))
