from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import JSON as SAJSON
from sqlalchemy import Column, DateTime, MetaData, String, Table, create_engine, func, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine, Row
from sqlalchemy.exc import SQLAlchemyError

from .bucketing import as_utc
from .config import DatabaseConfig
from .errors import UpstreamUnavailable
from .models import (
    CONTACT_FIELDS,
    ChatLeadEvent,
    ContactLeadEvent,
    LeadContact,
    LeadEvent,
    LoginEvent,
    SignupEvent,
)

logger = logging.getLogger(__name__)

LEAD_KINDS = ("chat", "contact")

_CONTACT_KEYS = set(CONTACT_FIELDS) | {"preferredContact"}
_NESTED_CONTACT_KEYS = ("lead", "contact")


class EventStore:
    """
    Read-only access to the activity log.

    Implementations raise :class:`UpstreamUnavailable` when a query cannot be
    answered. Range arguments are half-open: ``start <= created_at < end``.
    """

    def list_signups(self, start: datetime, end: datetime) -> Sequence[SignupEvent]:
        raise NotImplementedError

    def list_logins(self, start: datetime, end: datetime) -> Sequence[LoginEvent]:
        raise NotImplementedError

    def logins_for_users(self, user_ids: Sequence[str]) -> Sequence[LoginEvent]:
        """Every login of the given users, oldest first."""
        raise NotImplementedError

    def list_lead_events(self, kind: Optional[str], limit: int) -> Sequence[LeadEvent]:
        """Newest lead events first; ``kind=None`` returns both chat and contact events."""
        raise NotImplementedError

    def count_lead_events(self, kind: Optional[str] = None, since: Optional[datetime] = None) -> int:
        raise NotImplementedError


def _as_utc(value: Any) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return as_utc(value)


def _to_db(value: datetime) -> datetime:
    """Columns hold naive UTC timestamps."""

    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _fill_missing(primary: LeadContact, fallback: LeadContact) -> LeadContact:
    return LeadContact(
        **{
            name: getattr(primary, name) or getattr(fallback, name)
            for name in CONTACT_FIELDS
        }
    )


def _without_name_email(contact: LeadContact) -> LeadContact:
    """Contact-form rows carry name and email as flat fields."""

    return LeadContact(
        phone=contact.phone,
        company=contact.company,
        website=contact.website,
        preferred_contact=contact.preferred_contact,
    )


def lead_event_from_record(
    *,
    id: str,
    source: str,
    timestamp: datetime,
    ip: Optional[str] = None,
    conversation_id: Optional[str] = None,
    raw: Optional[Mapping[str, Any]] = None,
) -> LeadEvent:
    """
    Build a typed lead event from a stored row.

    ``raw`` is the free-form JSON captured at write time. Contact-form rows keep
    name/email at the top level; chat rows nest the visitor record under
    ``lead``. Keys outside the core schema are kept in ``extra``.
    """

    payload: Dict[str, Any] = dict(raw or {})
    nested: Any = None
    for key in _NESTED_CONTACT_KEYS:
        if isinstance(payload.get(key), Mapping):
            nested = payload.pop(key)
            break
    flat = LeadContact.from_mapping(payload)
    nested_contact = LeadContact.from_mapping(nested)

    raw_conversation = payload.pop("conversationId", None)
    conversation_id = conversation_id or (str(raw_conversation) if raw_conversation else None)
    extra = {key: value for key, value in payload.items() if key not in _CONTACT_KEYS}

    kind = (source or "").strip().lower()
    if kind == ContactLeadEvent.kind:
        return ContactLeadEvent(
            id=str(id),
            timestamp=timestamp,
            ip=ip or None,
            conversation_id=conversation_id,
            contact=_fill_missing(nested_contact, _without_name_email(flat)),
            extra=extra,
            name=flat.name,
            email=flat.email,
        )
    if kind == ChatLeadEvent.kind:
        return ChatLeadEvent(
            id=str(id),
            timestamp=timestamp,
            ip=ip or None,
            conversation_id=conversation_id,
            contact=_fill_missing(nested_contact, flat),
            extra=extra,
        )
    raise ValueError(f"Unknown lead event source: {source!r}")


class SQLEventStore(EventStore):
    """
    Read events from the application database.

    Expected tables (timestamps are naive UTC):
      - "User"(id, "createdAt")
      - "LoginEvent"(id, "userId", ip, "createdAt")
      - "LeadEvent"(id, source, "conversationId", ip, raw, "createdAt")
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.metadata = MetaData()
        json_type = SAJSON().with_variant(JSONB, "postgresql")
        self.users = Table(
            "User",
            self.metadata,
            Column("id", String, primary_key=True),
            Column("createdAt", DateTime, nullable=False),
        )
        self.login_events = Table(
            "LoginEvent",
            self.metadata,
            Column("id", String, primary_key=True),
            Column("userId", String, index=True, nullable=False),
            Column("ip", String, nullable=False),
            Column("createdAt", DateTime, index=True, nullable=False),
        )
        self.lead_events = Table(
            "LeadEvent",
            self.metadata,
            Column("id", String, primary_key=True),
            Column("source", String(16), index=True, nullable=False),
            Column("conversationId", String, index=True),
            Column("ip", String),
            Column("raw", json_type),
            Column("createdAt", DateTime, index=True, nullable=False),
        )

    def create_schema(self) -> None:
        """Create the tables if missing. Intended for local development and tests."""
        self.metadata.create_all(self.engine, checkfirst=True)

    def list_signups(self, start: datetime, end: datetime) -> Sequence[SignupEvent]:
        created = self.users.c["createdAt"]
        query = (
            select(self.users.c["id"], created)
            .where(created >= _to_db(start), created < _to_db(end))
            .order_by(created.asc())
        )
        rows = self._fetch(query, "list_signups")
        return tuple(SignupEvent(user_id=str(row[0]), created_at=_as_utc(row[1])) for row in rows)

    def list_logins(self, start: datetime, end: datetime) -> Sequence[LoginEvent]:
        table = self.login_events
        created = table.c["createdAt"]
        query = (
            select(table.c["userId"], table.c["ip"], created)
            .where(created >= _to_db(start), created < _to_db(end))
            .order_by(created.desc())
        )
        rows = self._fetch(query, "list_logins")
        return tuple(self._row_to_login(row) for row in rows)

    def logins_for_users(self, user_ids: Sequence[str]) -> Sequence[LoginEvent]:
        if not user_ids:
            return ()
        table = self.login_events
        query = (
            select(table.c["userId"], table.c["ip"], table.c["createdAt"])
            .where(table.c["userId"].in_(list(user_ids)))
            .order_by(table.c["createdAt"].asc())
        )
        rows = self._fetch(query, "logins_for_users")
        return tuple(self._row_to_login(row) for row in rows)

    def list_lead_events(self, kind: Optional[str], limit: int) -> Sequence[LeadEvent]:
        table = self.lead_events
        query = select(
            table.c["id"],
            table.c["source"],
            table.c["conversationId"],
            table.c["ip"],
            table.c["raw"],
            table.c["createdAt"],
        )
        if kind:
            query = query.where(table.c["source"] == kind.upper())
        query = query.order_by(table.c["createdAt"].desc(), table.c["id"].desc()).limit(limit)
        rows = self._fetch(query, "list_lead_events")
        return tuple(self._row_to_lead_event(row) for row in rows)

    def count_lead_events(self, kind: Optional[str] = None, since: Optional[datetime] = None) -> int:
        table = self.lead_events
        query = select(func.count()).select_from(table)
        if kind:
            query = query.where(table.c["source"] == kind.upper())
        if since is not None:
            query = query.where(table.c["createdAt"] >= _to_db(since))
        rows = self._fetch(query, "count_lead_events")
        return int(rows[0][0]) if rows else 0

    def _fetch(self, query, description: str) -> List[Row]:
        try:
            with self.engine.connect() as connection:
                return list(connection.execute(query).fetchall())
        except SQLAlchemyError as exc:
            logger.exception("Event store query %s failed", description)
            raise UpstreamUnavailable(f"Event store query {description} failed.") from exc

    @staticmethod
    def _row_to_login(row: Row) -> LoginEvent:
        return LoginEvent(user_id=str(row[0]), ip=str(row[1] or ""), created_at=_as_utc(row[2]))

    @staticmethod
    def _row_to_lead_event(row: Row) -> LeadEvent:
        raw = row[4]
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError:
                raw = {}
        if not isinstance(raw, Mapping):
            raw = {}
        return lead_event_from_record(
            id=row[0],
            source=row[1],
            conversation_id=row[2],
            ip=row[3],
            raw=raw,
            timestamp=_as_utc(row[5]),
        )


@dataclass
class InMemoryEventStore(EventStore):
    """Event store over plain sequences; used for tests and ad-hoc datasets."""

    signups: Sequence[SignupEvent] = field(default_factory=tuple)
    logins: Sequence[LoginEvent] = field(default_factory=tuple)
    lead_events: Sequence[LeadEvent] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        self.signups = tuple(sorted(self.signups, key=lambda event: _as_utc(event.created_at)))
        self.logins = tuple(sorted(self.logins, key=lambda event: _as_utc(event.created_at)))
        self.lead_events = tuple(
            sorted(self.lead_events, key=lambda event: (_as_utc(event.timestamp), event.id), reverse=True)
        )

    def list_signups(self, start: datetime, end: datetime) -> Sequence[SignupEvent]:
        lower, upper = _as_utc(start), _as_utc(end)
        return tuple(event for event in self.signups if lower <= _as_utc(event.created_at) < upper)

    def list_logins(self, start: datetime, end: datetime) -> Sequence[LoginEvent]:
        lower, upper = _as_utc(start), _as_utc(end)
        in_range = [event for event in self.logins if lower <= _as_utc(event.created_at) < upper]
        return tuple(reversed(in_range))

    def logins_for_users(self, user_ids: Sequence[str]) -> Sequence[LoginEvent]:
        wanted = set(user_ids)
        return tuple(event for event in self.logins if event.user_id in wanted)

    def list_lead_events(self, kind: Optional[str], limit: int) -> Sequence[LeadEvent]:
        matching = [event for event in self.lead_events if not kind or event.kind == kind]
        return tuple(matching[:limit])

    def count_lead_events(self, kind: Optional[str] = None, since: Optional[datetime] = None) -> int:
        lower = _as_utc(since) if since is not None else None
        return sum(
            1
            for event in self.lead_events
            if (not kind or event.kind == kind)
            and (lower is None or _as_utc(event.timestamp) >= lower)
        )


def build_store(config: Optional[DatabaseConfig] = None) -> Optional[EventStore]:
    cfg = config or DatabaseConfig()
    if cfg.url:
        engine = create_engine(cfg.url, future=True)
        return SQLEventStore(engine)
    return None
