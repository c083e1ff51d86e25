from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Sequence, Tuple, Union


CONTACT_FIELDS: Tuple[str, ...] = (
    "name",
    "email",
    "phone",
    "company",
    "website",
    "preferred_contact",
)


class MetricsPeriod(str, Enum):
    TODAY = "today"
    SEVEN_DAYS = "7d"
    MONTH = "month"

    @classmethod
    def parse(cls, raw: Any) -> "MetricsPeriod":
        """Only exact values are accepted; anything else falls back to ``7d``."""

        if isinstance(raw, cls):
            return raw
        for member in cls:
            if member.value == raw:
                return member
        return cls.SEVEN_DAYS

    @property
    def hourly(self) -> bool:
        return self is MetricsPeriod.TODAY


@dataclass(frozen=True)
class SignupEvent:
    user_id: str
    created_at: datetime


@dataclass(frozen=True)
class LoginEvent:
    user_id: str
    ip: str
    created_at: datetime


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class LeadContact:
    """
    Contact details collected from a visitor.

    Every field is optional; chat transcripts typically fill them in one at a
    time as the conversation goes on.
    """

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    website: Optional[str] = None
    preferred_contact: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "LeadContact":
        if not isinstance(data, Mapping):
            return cls()
        preferred = data.get("preferred_contact")
        if preferred is None:
            preferred = data.get("preferredContact")
        return cls(
            name=_clean(data.get("name")),
            email=_clean(data.get("email")),
            phone=_clean(data.get("phone")),
            company=_clean(data.get("company")),
            website=_clean(data.get("website")),
            preferred_contact=_clean(preferred),
        )

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "company": self.company,
            "website": self.website,
            "preferredContact": self.preferred_contact,
        }


@dataclass(frozen=True)
class _LeadEventBase:
    id: str
    timestamp: datetime
    ip: Optional[str] = None
    conversation_id: Optional[str] = None
    contact: LeadContact = field(default_factory=LeadContact)
    extra: Dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[str] = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "timestamp": self.timestamp.isoformat(),
            "ip": self.ip,
            "conversationId": self.conversation_id,
            "contact": self.contact.as_dict(),
            "extra": dict(self.extra),
        }


@dataclass(frozen=True)
class ChatLeadEvent(_LeadEventBase):
    """One chat message (or chat turn) that carried lead information."""

    kind: ClassVar[str] = "chat"


@dataclass(frozen=True)
class ContactLeadEvent(_LeadEventBase):
    """
    A contact-form submission.

    ``name`` and ``email`` are the flat form fields; ``contact`` holds any
    nested contact record that came along with the submission.
    """

    name: Optional[str] = None
    email: Optional[str] = None

    kind: ClassVar[str] = "contact"

    def as_dict(self) -> Dict[str, Any]:
        payload = super().as_dict()
        payload["name"] = self.name
        payload["email"] = self.email
        return payload


LeadEvent = Union[ChatLeadEvent, ContactLeadEvent]


@dataclass(frozen=True)
class LeadRow:
    grouping_key: str
    source: str
    first_seen: datetime
    last_seen: datetime
    ip: Optional[str]
    contact: LeadContact
    events: Sequence[LeadEvent] = field(default_factory=tuple)

    @property
    def timestamp(self) -> datetime:
        return self.last_seen

    @property
    def name(self) -> Optional[str]:
        return self.contact.name

    @property
    def email(self) -> Optional[str]:
        return self.contact.email

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ts": self.timestamp.isoformat(),
            "source": self.source,
            "groupingKey": self.grouping_key,
            "firstSeen": self.first_seen.isoformat(),
            "lastSeen": self.last_seen.isoformat(),
            "ip": self.ip,
            "name": self.name,
            "email": self.email,
            "contact": self.contact.as_dict(),
            "events": [event.as_dict() for event in self.events],
        }


@dataclass(frozen=True)
class GeoRecord:
    ip: str
    name: Optional[str] = None
    iso2: Optional[str] = None
    iso3: Optional[str] = None

    PRIVATE_NAME: ClassVar[str] = "Private"

    @classmethod
    def private(cls, ip: str) -> "GeoRecord":
        return cls(ip=ip, name=cls.PRIVATE_NAME)

    @classmethod
    def unknown(cls, ip: str) -> "GeoRecord":
        return cls(ip=ip)


@dataclass(frozen=True)
class Bucket:
    index: int
    label: str
    start: datetime
    end: datetime


@dataclass(frozen=True)
class IpGroup:
    ip: str
    count: int
    country_name: Optional[str] = None
    country_iso2: Optional[str] = None
    country_iso3: Optional[str] = None


@dataclass(frozen=True)
class CountryCount:
    country: str
    count: int


@dataclass(frozen=True)
class MetricsResult:
    period: MetricsPeriod
    start: datetime
    end: datetime
    labels: Sequence[str]
    signups: Sequence[int]
    logins: Sequence[int]
    ip_groups: Sequence[IpGroup] = field(default_factory=list)
    signup_countries: Sequence[CountryCount] = field(default_factory=list)

    @property
    def totals(self) -> Dict[str, int]:
        return {"signups": sum(self.signups), "logins": sum(self.logins)}

    def as_dict(self) -> Dict[str, Any]:
        """
        Shape the result the way the admin dashboard consumes it.

        Keys are camelCase to match the existing frontend contract.
        """

        return {
            "period": self.period.value,
            "from": self.start.isoformat(),
            "to": self.end.isoformat(),
            "labels": list(self.labels),
            "signups": list(self.signups),
            "logins": list(self.logins),
            "totals": self.totals,
            "ipGroups": [
                {
                    "ip": group.ip,
                    "countryName": group.country_name,
                    "countryIso3": group.country_iso3,
                    "count": group.count,
                }
                for group in self.ip_groups
            ],
            "signupCountries": [
                {"country": row.country, "count": row.count} for row in self.signup_countries
            ],
        }


@dataclass(frozen=True)
class LeadSummary:
    total: int
    contact: int
    chat: int
    recent_contact: int
    recent_chat: int
    recent_days: int
    updated_at: datetime

    def as_dict(self) -> Dict[str, Any]:
        return {
            "totals": {"total": self.total, "contact": self.contact, "chat": self.chat},
            f"last{self.recent_days}d": {"contact": self.recent_contact, "chat": self.recent_chat},
            "updatedAt": self.updated_at.isoformat(),
        }


def rows_as_dicts(rows: Sequence[LeadRow]) -> List[Dict[str, Any]]:
    return [row.as_dict() for row in rows]
