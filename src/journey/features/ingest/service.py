from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from journey.core.errors import JourneyError, MalformedPayload
from journey.core.logging import get_logger
from journey.core.types import Clock, finite_float, parse_timestamp, utc_now
from journey.features.conversion.service import ConversionRecorder
from journey.features.conversion.types import OrderData
from journey.features.events.schema import (
    CHECKOUT_STARTED,
    COMMERCE_EVENT_NAMES,
    MAX_EVENT_NAME_LENGTH,
    PURCHASE_COMPLETED,
)
from journey.features.events.service import EventService
from journey.features.journeys.types import Journey
from journey.features.rollups.channels import channel_of
from journey.features.rollups.service import RollupAggregator
from journey.features.rollups.types import AdSpendRecord, DailyMetricsDelta, MetricsDelta
from journey.features.sessions.service import SessionTracker
from journey.features.sessions.types import ActivityResult, TrackingContext

from . import orders as order_topics
from .orders import first_of, order_from_tracking, order_from_webhook
from .types import (
    AD_SPEND,
    CONVERSION,
    INTERACTION,
    PAGE_VIEW,
    SESSION_START,
    IngestResult,
)

Handler = Callable[[Mapping[str, Any]], IngestResult]


def _opt_float(data: Mapping[str, Any], *keys: str) -> float | None:
    v = first_of(data, *keys)
    if v is None:
        return None
    try:
        return finite_float(v)
    except (TypeError, ValueError) as e:
        raise MalformedPayload(
            f"{keys[0]} must be a finite number, got {v!r}", field=keys[0]
        ) from e


def _opt_int(data: Mapping[str, Any], *keys: str) -> int | None:
    v = _opt_float(data, *keys)
    return int(v) if v is not None else None


class IngestService:
    """
    Ingress boundary. Validates envelopes and routes them into the core.

    Everything malformed is rejected here with MalformedPayload; the core only
    ever sees well-formed values. Unknown sessions are soft failures.
    """

    def __init__(
        self,
        *,
        sessions: SessionTracker,
        events: EventService,
        conversions: ConversionRecorder,
        rollups: RollupAggregator,
        clock: Clock = utc_now,
    ) -> None:
        self.sessions = sessions
        self.events = events
        self.conversions = conversions
        self.rollups = rollups
        self._clock = clock
        self._logger = get_logger(__name__)

        self._handlers: dict[str, Handler] = {
            SESSION_START: self._session_start,
            PAGE_VIEW: self._page_view,
            INTERACTION: self._interaction,
            CONVERSION: self._conversion,
            AD_SPEND: self._ad_spend,
        }
        for name in COMMERCE_EVENT_NAMES:
            self._handlers[name] = self._commerce_event

    # ----------------------------
    # Public API
    # ----------------------------

    def handle(self, envelope: Mapping[str, Any]) -> IngestResult:
        """Process one `{type, data}` envelope."""
        if not isinstance(envelope, Mapping):
            raise MalformedPayload("envelope must be an object")
        kind = envelope.get("type")
        handler = self._handlers.get(kind) if isinstance(kind, str) else None
        if handler is None:
            raise MalformedPayload(f"unknown event type: {kind!r}", field="type")
        data = envelope.get("data")
        if not isinstance(data, Mapping):
            raise MalformedPayload(f"{kind}: data must be an object", field="data")

        if kind in COMMERCE_EVENT_NAMES:
            data = {**data, "eventName": kind}
        return handler(data)

    def handle_order_webhook(self, topic: str, order: Mapping[str, Any]) -> IngestResult:
        """Route a commerce-platform webhook by topic."""
        if not isinstance(order, Mapping):
            raise MalformedPayload("webhook body must be an object")

        if topic == order_topics.ORDER_CREATE:
            return self._record_order(order_from_webhook(order), None)

        if topic == order_topics.ORDER_UPDATED:
            normalized = order_from_webhook(order)
            found = self.conversions.update_order(
                normalized.order_id,
                total_value=normalized.total_value,
                item_count=normalized.item_count,
            )
            return IngestResult(kind=topic, status="accepted" if found else "ignored")

        if topic == order_topics.CHECKOUT_CREATE:
            session_id = order_topics.extract_session_id(order)
            if session_id is None:
                return IngestResult(kind=topic, status="ignored")
            event = self.events.emit(
                event_name=CHECKOUT_STARTED,
                session_id=session_id,
                ts=self._timestamp(order, "created_at"),
                payload={
                    "checkout_id": order.get("id"),
                    "total_price": order.get("total_price"),
                    "line_items_count": len(order.get("line_items") or ()),
                },
            )
            return IngestResult(kind=topic, event=event)

        self._logger.info(
            "webhook_ignored", extra={"feature": "ingest", "reason": f"topic={topic}"}
        )
        return IngestResult(kind=topic, status="ignored")

    # ----------------------------
    # Handlers
    # ----------------------------

    def _session_start(self, data: Mapping[str, Any]) -> IngestResult:
        session_id = self._require(data, "sessionId", "session_id")
        visitor_id = self._require(data, "visitorId", "visitor_id")
        ts = self._timestamp(data)
        ctx = TrackingContext.from_mapping(data)

        activity = self.sessions.record_activity(session_id, visitor_id, ctx, ts)
        self._on_activity(activity, ts)
        tp = self.sessions.record_touchpoint(session_id, ctx, ts, session_start=True)

        return IngestResult(
            kind=SESSION_START,
            session=activity.session,
            session_created=activity.created,
            touchpoint=tp.touchpoint,
        )

    def _page_view(self, data: Mapping[str, Any]) -> IngestResult:
        session_id = self._require(data, "sessionId", "session_id")
        visitor_id = first_of(data, "visitorId", "visitor_id")
        ts = self._timestamp(data)
        ctx = TrackingContext.from_mapping(data)

        activity = None
        if visitor_id is not None:
            activity = self.sessions.record_activity(session_id, str(visitor_id), ctx, ts)
            self._on_activity(activity, ts)

        event = self.events.emit(
            event_name=PAGE_VIEW,
            session_id=session_id,
            ts=ts,
            visitor_id=str(visitor_id) if visitor_id is not None else None,
            page_url=ctx.page_url,
            page_title=ctx.page_title,
            referrer=ctx.referrer,
            load_time=_opt_float(data, "loadTime", "load_time"),
            lcp_time=_opt_float(data, "lcpTime", "lcp_time"),
            fid_time=_opt_float(data, "fidTime", "fid_time"),
            payload=self._custom(data),
        )
        self.rollups.increment_daily_metric(ts, DailyMetricsDelta(page_views=1))

        warnings: tuple[JourneyError, ...] = ()
        touchpoint = None
        if ctx.has_marketing_signal:
            tp = self.sessions.record_touchpoint(
                session_id, ctx, ts, session_start=bool(activity and activity.created)
            )
            touchpoint = tp.touchpoint
            if tp.warning is not None:
                warnings = (tp.warning,)

        return IngestResult(
            kind=PAGE_VIEW,
            status="orphaned" if warnings else "accepted",
            session=activity.session if activity else None,
            session_created=bool(activity and activity.created),
            touchpoint=touchpoint,
            event=event,
            warnings=warnings,
        )

    def _interaction(self, data: Mapping[str, Any]) -> IngestResult:
        session_id = self._require(data, "sessionId", "session_id")
        event_name = self._require(data, "eventName", "event_name")
        if len(event_name) > MAX_EVENT_NAME_LENGTH:
            raise MalformedPayload("eventName is too long", field="eventName")
        visitor_id = first_of(data, "visitorId", "visitor_id")
        ts = self._timestamp(data)

        activity = None
        if visitor_id is not None:
            ctx = TrackingContext.from_mapping(data)
            activity = self.sessions.record_activity(session_id, str(visitor_id), ctx, ts)
            self._on_activity(activity, ts)

        event = self.events.emit(
            event_name=event_name,
            session_id=session_id,
            ts=ts,
            visitor_id=str(visitor_id) if visitor_id is not None else None,
            page_url=first_of(data, "pageUrl", "page_url"),
            element_id=first_of(data, "elementId", "element_id"),
            element_class=first_of(data, "elementClass", "element_class"),
            element_text=first_of(data, "elementText", "element_text"),
            click_x=_opt_int(data, "clickX", "click_x"),
            click_y=_opt_int(data, "clickY", "click_y"),
            scroll_depth=_opt_float(data, "scrollDepth", "scroll_depth"),
            time_on_page=_opt_float(data, "timeOnPage", "time_on_page"),
            payload=self._custom(data),
        )
        return IngestResult(
            kind=INTERACTION,
            session=activity.session if activity else None,
            session_created=bool(activity and activity.created),
            event=event,
        )

    def _commerce_event(self, data: Mapping[str, Any]) -> IngestResult:
        session_id = self._require(data, "sessionId", "session_id")
        event_name = str(data["eventName"])
        payload = {k: v for k, v in data.items() if k != "eventName"}
        event = self.events.emit(
            event_name=event_name,
            session_id=session_id,
            ts=self._timestamp(data),
            page_url=first_of(data, "pageUrl", "page_url"),
            payload=payload,
        )
        return IngestResult(kind=event_name, event=event)

    def _conversion(self, data: Mapping[str, Any]) -> IngestResult:
        order = order_from_tracking(data)
        raw_journey = first_of(data, "customer_journey", "customerJourney")
        journey = None
        if raw_journey is not None:
            if not isinstance(raw_journey, list):
                raise MalformedPayload("customer_journey must be a list", field="customer_journey")
            try:
                journey = Journey.from_payload(raw_journey)
            except ValueError as e:
                raise MalformedPayload(str(e), field="customer_journey") from e

        return self._record_order(order, journey)

    def _ad_spend(self, data: Mapping[str, Any]) -> IngestResult:
        try:
            record = AdSpendRecord.from_mapping(dict(data))
        except KeyError as e:
            raise MalformedPayload(f"ad_spend: {e.args[0]} is required", field=e.args[0]) from e
        except (TypeError, ValueError) as e:
            raise MalformedPayload(f"ad_spend: {e}") from e
        self.rollups.apply_ad_spend(record)
        return IngestResult(kind=AD_SPEND)

    # ----------------------------
    # Internal helpers
    # ----------------------------

    def _on_activity(self, activity: ActivityResult, ts: datetime) -> None:
        """New sessions feed the session counters of their day and campaign."""
        if not activity.created:
            return
        session = activity.session
        self.rollups.increment_daily_metric(ts, DailyMetricsDelta.new_session(channel_of(session)))
        if session.campaign_key is not None:
            self.rollups.increment_campaign(*session.campaign_key, MetricsDelta(sessions=1))

    def _record_order(self, order: OrderData, journey: Journey | None) -> IngestResult:
        result = self.conversions.record_conversion(order, journey)
        warnings = (result.warning,) if result.warning is not None else ()
        if result.duplicate:
            return IngestResult(kind=CONVERSION, status="duplicate", conversion=result)

        event = None
        if order.session_id:
            # purchase step for the funnel
            event = self.events.emit(
                event_name=PURCHASE_COMPLETED,
                session_id=order.session_id,
                ts=order.created_at or self._clock(),
                payload={"order_id": order.order_id, "total_value": order.total_value},
            )
        return IngestResult(
            kind=CONVERSION,
            status="orphaned" if warnings else "accepted",
            conversion=result,
            event=event,
            warnings=warnings,
        )

    @staticmethod
    def _require(data: Mapping[str, Any], *keys: str) -> str:
        v = first_of(data, *keys)
        if v is None:
            raise MalformedPayload(f"{keys[0]} is required", field=keys[0])
        return str(v)

    def _timestamp(self, data: Mapping[str, Any], key: str = "timestamp") -> datetime:
        raw = data.get(key)
        if raw is None or raw == "":
            return self._clock()
        try:
            return parse_timestamp(raw)
        except ValueError as e:
            raise MalformedPayload(f"{key} is not a timestamp: {raw!r}", field=key) from e

    @staticmethod
    def _custom(data: Mapping[str, Any]) -> dict[str, Any] | None:
        custom = first_of(data, "customData", "custom_data", "payload")
        if custom is None:
            return None
        if not isinstance(custom, Mapping):
            raise MalformedPayload("customData must be an object", field="customData")
        return dict(custom)
