from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from typing import Any, Literal

from journey.core.errors import SessionNotFound

# Wire names accepted for each context field (camelCase tracker payloads and
# snake_case commerce payloads).
_ALIASES: dict[str, tuple[str, ...]] = {
    "customer_id": ("customerId", "customer_id"),
    "user_agent": ("userAgent", "user_agent"),
    "ip_address": ("ipAddress", "ip_address"),
    "device_type": ("deviceType", "device_type"),
    "browser": ("browser",),
    "os": ("os",),
    "country": ("country",),
    "timezone": ("timezone",),
    "language": ("language",),
    "utm_source": ("utmSource", "utm_source"),
    "utm_medium": ("utmMedium", "utm_medium"),
    "utm_campaign": ("utmCampaign", "utm_campaign"),
    "utm_term": ("utmTerm", "utm_term"),
    "utm_content": ("utmContent", "utm_content"),
    "referrer": ("referrer",),
    "landing_page": ("landingPage", "landing_page"),
    "page_url": ("pageUrl", "page_url"),
    "page_title": ("pageTitle", "page_title"),
    "fbclid": ("fbclid",),
    "gclid": ("gclid",),
    "ttclid": ("ttclid",),
}


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


@dataclass(frozen=True, slots=True)
class TrackingContext:
    """
    Context observed on one tracking event. Empty strings are normalized to None
    so that "not observed" never overwrites or masks a captured value.
    """

    customer_id: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None
    device_type: str | None = None
    browser: str | None = None
    os: str | None = None
    country: str | None = None
    timezone: str | None = None
    language: str | None = None

    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_term: str | None = None
    utm_content: str | None = None
    referrer: str | None = None
    landing_page: str | None = None
    page_url: str | None = None
    page_title: str | None = None

    fbclid: str | None = None
    gclid: str | None = None
    ttclid: str | None = None

    def __post_init__(self) -> None:
        for f in fields(self):
            object.__setattr__(self, f.name, _clean(getattr(self, f.name)))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> TrackingContext:
        utm = data.get("utm_data") if isinstance(data.get("utm_data"), Mapping) else {}
        values: dict[str, Any] = {}
        for name, keys in _ALIASES.items():
            for key in keys:
                if data.get(key) not in (None, ""):
                    values[name] = data[key]
                    break
            else:
                if name in utm:
                    values[name] = utm[name]
        return cls(**values)

    @property
    def has_marketing_signal(self) -> bool:
        """True when the visit carries UTM parameters or an ad click id."""
        return any(
            (
                self.utm_source,
                self.utm_medium,
                self.utm_campaign,
                self.fbclid,
                self.gclid,
                self.ttclid,
            )
        )

    def session_values(self) -> dict[str, str | None]:
        """Values for the session row; landing page falls back to the page url."""
        out = {
            k: v
            for k, v in asdict(self).items()
            if k not in ("page_url", "page_title")
        }
        if out.get("landing_page") is None:
            out["landing_page"] = self.page_url
        return out


@dataclass(frozen=True, slots=True)
class Session:
    session_id: str
    visitor_id: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    customer_id: str | None = None

    user_agent: str | None = None
    ip_address: str | None = None
    device_type: str | None = None
    browser: str | None = None
    os: str | None = None
    country: str | None = None
    timezone: str | None = None
    language: str | None = None

    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_term: str | None = None
    utm_content: str | None = None
    referrer: str | None = None
    landing_page: str | None = None

    fbclid: str | None = None
    gclid: str | None = None
    ttclid: str | None = None

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at

    @property
    def campaign_key(self) -> tuple[str, str, str] | None:
        if self.utm_source and self.utm_medium and self.utm_campaign:
            return (self.utm_source, self.utm_medium, self.utm_campaign)
        return None


@dataclass(frozen=True, slots=True)
class Touchpoint:
    """
    One marketing-attributable visit. Immutable once created; `seq` records
    insertion order and breaks timestamp ties.
    """

    touchpoint_id: str
    session_id: str | None
    timestamp: datetime
    seq: int = 0

    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_term: str | None = None
    utm_content: str | None = None

    page_url: str | None = None
    page_title: str | None = None
    referrer: str | None = None

    fbclid: str | None = None
    gclid: str | None = None
    ttclid: str | None = None

    device_type: str | None = None
    browser: str | None = None

    @property
    def campaign_key(self) -> tuple[str, str, str] | None:
        if self.utm_source and self.utm_medium and self.utm_campaign:
            return (self.utm_source, self.utm_medium, self.utm_campaign)
        return None

    def as_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d


@dataclass(frozen=True, slots=True)
class ActivityResult:
    session: Session
    created: bool


@dataclass(frozen=True, slots=True)
class TouchpointResult:
    """
    recorded: touchpoint stored against a known session
    orphaned: touchpoint stored, but its session has no record (yet)
    """

    touchpoint: Touchpoint
    status: Literal["recorded", "orphaned"]
    warning: SessionNotFound | None = None

    @property
    def orphaned(self) -> bool:
        return self.status == "orphaned"
