"""
Admin dashboard analytics.

Turns raw activity logs (signups, logins, chat and contact-form lead events)
into time-bucketed series, IP/country breakdowns and deduplicated lead rows.
"""

from .bucketing import BucketPlan, bucket_index_for, build_bucket_plan  # noqa: F401
from .errors import (  # noqa: F401
    AdminAnalyticsError,
    ConfigurationError,
    GeoLookupFailure,
    UpstreamUnavailable,
)
from .geo import (  # noqa: F401
    GeoCache,
    GeoLookupResult,
    GeoResolver,
    IpWhoIsClient,
    build_resolver,
    is_private_ip,
    normalize_ip,
)
from .leads import LeadGrouper  # noqa: F401
from .models import (  # noqa: F401
    Bucket,
    ChatLeadEvent,
    ContactLeadEvent,
    CountryCount,
    GeoRecord,
    IpGroup,
    LeadContact,
    LeadRow,
    LeadSummary,
    LoginEvent,
    MetricsPeriod,
    MetricsResult,
    SignupEvent,
)
from .repository import (  # noqa: F401
    EventStore,
    InMemoryEventStore,
    SQLEventStore,
    build_store,
    lead_event_from_record,
)
from .service import LeadsService, MetricsAggregator, parse_kind, parse_limit  # noqa: F401
