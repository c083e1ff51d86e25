"""Read-only FastAPI surface for the admin dashboard analytics.

Callers are expected to be authenticated administrators; access control lives
in front of this app.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from .config import AnalyticsConfig, load_config
from .errors import UpstreamUnavailable
from .geo import GeoResolver, build_resolver
from .leads import LeadGrouper
from .models import MetricsPeriod, rows_as_dicts
from .repository import EventStore, build_store
from .service import LeadsService, MetricsAggregator, parse_kind, parse_limit

load_dotenv()
config: AnalyticsConfig = load_config()
if config.log_level:
    logging.basicConfig(level=config.log_level.upper())

logger = logging.getLogger(__name__)

app = FastAPI(title="Admin Analytics API", version="0.1.0")
store: Optional[EventStore] = build_store(config.database)
resolver: GeoResolver = build_resolver(
    enable=config.geo.enable,
    base_url=config.geo.base_url,
    timeout_seconds=config.geo.timeout_seconds,
    user_agent=config.geo.user_agent,
    max_workers=config.geo.max_workers,
    cache_max_entries=config.geo.cache_max_entries,
    cache_ttl_seconds=config.geo.cache_ttl_seconds,
)


def get_store() -> EventStore:
    if store is None:
        raise UpstreamUnavailable(
            "ADMIN_ANALYTICS_DATABASE_URL is not configured; the event store is unavailable."
        )
    return store


def get_aggregator(event_store: EventStore = Depends(get_store)) -> MetricsAggregator:
    return MetricsAggregator(
        event_store,
        resolver,
        timezone=config.metrics.timezone,
        top_ip_limit=config.metrics.top_ip_limit,
        user_chunk_size=config.metrics.user_chunk_size,
    )


def get_leads_service(event_store: EventStore = Depends(get_store)) -> LeadsService:
    return LeadsService(
        event_store,
        grouper=LeadGrouper(),
        raw_event_limit=config.leads.raw_event_limit,
    )


@app.exception_handler(UpstreamUnavailable)
async def upstream_unavailable_handler(request: Request, exc: UpstreamUnavailable) -> JSONResponse:
    logger.warning("Request %s failed: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"ok": False, "error": str(exc)})


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/metrics")
def metrics_endpoint(
    period: Optional[str] = Query(None),
    aggregator: MetricsAggregator = Depends(get_aggregator),
) -> Dict[str, Any]:
    result = aggregator.aggregate(MetricsPeriod.parse(period))
    return {"ok": True, **result.as_dict()}


@app.get("/leads")
def leads_endpoint(
    kind: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    service: LeadsService = Depends(get_leads_service),
) -> Dict[str, Any]:
    lead_kind = parse_kind(kind)
    lead_limit = parse_limit(limit)
    rows = service.list_leads(lead_kind, lead_limit)
    return {"ok": True, "kind": lead_kind, "limit": lead_limit, "items": rows_as_dicts(rows)}


@app.get("/leads/summary")
def leads_summary_endpoint(service: LeadsService = Depends(get_leads_service)) -> Dict[str, Any]:
    return {"ok": True, **service.summary().as_dict()}
