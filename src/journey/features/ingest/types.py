from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from journey.core.errors import JourneyError
from journey.features.conversion.types import ConversionResult
from journey.features.events.schema import Event
from journey.features.sessions.types import Session, Touchpoint

SESSION_START = "session_start"
PAGE_VIEW = "page_view"
INTERACTION = "interaction"
CONVERSION = "conversion"
AD_SPEND = "ad_spend"

IngestStatus = Literal["accepted", "orphaned", "duplicate", "ignored"]


@dataclass(frozen=True)
class IngestResult:
    """
    Outcome of one ingress envelope.

    accepted:  fully processed
    orphaned:  processed, but a touchpoint or conversion cited an unknown session
    duplicate: a redelivered order; only monetary fields were amended
    ignored:   a recognized topic the engine has nothing to do for
    """

    kind: str
    status: IngestStatus = "accepted"
    session: Session | None = None
    session_created: bool = False
    touchpoint: Touchpoint | None = None
    event: Event | None = None
    conversion: ConversionResult | None = None
    warnings: tuple[JourneyError, ...] = field(default=())
