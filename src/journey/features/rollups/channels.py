from __future__ import annotations

from typing import Any
from urllib.parse import urlparse

PAID_MEDIUMS = {
    "cpc",
    "ppc",
    "paid",
    "cpm",
    "cpv",
    "display",
    "paid_social",
    "paidsocial",
    "paid-social",
    "ads",
}
SOCIAL_MEDIUMS = {"social", "social-network", "social_network", "social-media", "sm"}
EMAIL_MEDIUMS = {"email", "e-mail", "newsletter"}
ORGANIC_MEDIUMS = {"organic", "seo"}

SOCIAL_SOURCES = {
    "facebook",
    "fb",
    "instagram",
    "ig",
    "twitter",
    "x",
    "linkedin",
    "pinterest",
    "tiktok",
    "reddit",
    "youtube",
}
SEARCH_SOURCES = {"google", "bing", "duckduckgo", "yahoo", "baidu", "yandex", "ecosia"}
# Referrers matched on exact host, besides the site names above.
SOCIAL_HOSTS = {"t.co", "x.com", "lnkd.in", "m.facebook.com"}


def _host(url: str | None) -> str:
    if not url:
        return ""
    return (urlparse(url).hostname or "").lower()


def _site_names(host: str) -> set[str]:
    return set(host.split(".")[:-1])


def classify_channel(
    *,
    utm_source: str | None = None,
    utm_medium: str | None = None,
    referrer: str | None = None,
    gclid: str | None = None,
    fbclid: str | None = None,
    ttclid: str | None = None,
) -> str:
    """
    Map a session's acquisition context onto one of CHANNELS.

    Precedence: ad click ids and paid mediums, then explicit mediums, then the
    utm source, then the referring host; nothing at all is direct.
    """
    medium = (utm_medium or "").strip().lower()
    source = (utm_source or "").strip().lower()

    if gclid or fbclid or ttclid or medium in PAID_MEDIUMS:
        return "paid"
    if medium in EMAIL_MEDIUMS or "email" in source or "newsletter" in source:
        return "email"
    if medium in SOCIAL_MEDIUMS or source in SOCIAL_SOURCES:
        return "social"
    if medium in ORGANIC_MEDIUMS or (source in SEARCH_SOURCES and not medium):
        return "organic"
    if medium == "referral" or source:
        return "referral"

    host = _host(referrer)
    if host:
        names = _site_names(host)
        if names & SEARCH_SOURCES:
            return "organic"
        if host in SOCIAL_HOSTS or names & SOCIAL_SOURCES:
            return "social"
        return "referral"
    return "direct"


def channel_of(ctx: Any) -> str:
    """classify_channel over any object exposing the session context attributes."""
    return classify_channel(
        utm_source=getattr(ctx, "utm_source", None),
        utm_medium=getattr(ctx, "utm_medium", None),
        referrer=getattr(ctx, "referrer", None),
        gclid=getattr(ctx, "gclid", None),
        fbclid=getattr(ctx, "fbclid", None),
        ttclid=getattr(ctx, "ttclid", None),
    )
