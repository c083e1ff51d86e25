"""
Collapse raw lead events into the rows shown in the admin Leads table.

Contact-form submissions map one-to-one onto rows. Chat events are grouped into
conversations by a key chosen in strict priority order:

1. the explicit conversation id,
2. the visitor's normalized email,
3. the IP plus a fixed time window (10 minutes by default).

The IP fallback is a heuristic with known failure modes: a visitor who pauses
longer than the window starts a new lead, and two visitors sharing an IP (NAT)
inside one window end up in the same lead.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from .models import CONTACT_FIELDS, ChatLeadEvent, ContactLeadEvent, LeadContact, LeadEvent, LeadRow

FALLBACK_WINDOW_SECONDS = 600


def _first_non_empty(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if value is not None and str(value).strip():
            return value
    return None


def _epoch_ms(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return int(ts.timestamp() * 1000)


def _sort_key(event: LeadEvent):
    return (_epoch_ms(event.timestamp), event.id)


class LeadGrouper:
    def __init__(self, fallback_window_seconds: int = FALLBACK_WINDOW_SECONDS) -> None:
        if fallback_window_seconds <= 0:
            raise ValueError("fallback_window_seconds must be positive")
        self.fallback_window_ms = fallback_window_seconds * 1000

    def grouping_key(self, event: ChatLeadEvent) -> str:
        conversation_id = (event.conversation_id or "").strip()
        if conversation_id:
            return f"conv:{conversation_id}"

        email = (event.contact.email or "").strip().lower()
        if email:
            return f"email:{email}"

        window = _epoch_ms(event.timestamp) // self.fallback_window_ms
        return f"ip:{(event.ip or '').strip()}:{window}"

    def group(self, events: Iterable[LeadEvent], limit: Optional[int] = None) -> List[LeadRow]:
        rows: List[LeadRow] = []
        conversations: Dict[str, List[ChatLeadEvent]] = defaultdict(list)

        for event in events:
            if isinstance(event, ContactLeadEvent):
                rows.append(self._contact_row(event))
            elif isinstance(event, ChatLeadEvent):
                conversations[self.grouping_key(event)].append(event)
            else:
                raise TypeError(f"Unsupported lead event type: {type(event).__name__}")

        rows.extend(self._chat_row(key, grouped) for key, grouped in conversations.items())
        rows.sort(key=lambda row: (_epoch_ms(row.timestamp), row.grouping_key), reverse=True)
        if limit is not None:
            rows = rows[: max(0, limit)]
        return rows

    @staticmethod
    def _contact_row(event: ContactLeadEvent) -> LeadRow:
        contact = replace(
            event.contact,
            name=_first_non_empty(event.name, event.contact.name),
            email=_first_non_empty(event.email, event.contact.email),
        )
        return LeadRow(
            grouping_key=f"contact:{event.id}",
            source=ContactLeadEvent.kind,
            first_seen=event.timestamp,
            last_seen=event.timestamp,
            ip=event.ip or None,
            contact=contact,
            events=(event,),
        )

    @staticmethod
    def _chat_row(key: str, events: Sequence[ChatLeadEvent]) -> LeadRow:
        ordered = sorted(events, key=_sort_key)
        first, last = ordered[0], ordered[-1]
        merged = {
            name: _first_non_empty(*(getattr(event.contact, name) for event in ordered))
            for name in CONTACT_FIELDS
        }
        return LeadRow(
            grouping_key=key,
            source=ChatLeadEvent.kind,
            first_seen=first.timestamp,
            last_seen=last.timestamp,
            ip=last.ip or first.ip or None,
            contact=LeadContact(**merged),
            events=tuple(ordered),
        )
