from __future__ import annotations

from dataclasses import fields
from datetime import datetime, timedelta
from typing import Any

from journey.core.errors import DuplicateConversion, SessionNotFound
from journey.core.ids import canonical_json, stable_id
from journey.core.logging import get_logger
from journey.core.types import Clock, ensure_utc, from_db_ts, to_db_ts, utc_now
from journey.features.attribution.service import compute_attribution
from journey.features.attribution.types import DEFAULT_HALF_LIFE, AttributionResult
from journey.features.journeys.service import JourneyAssembler
from journey.features.journeys.types import Journey
from journey.features.persistence.duckdb_adapter import DuckDBAdapter
from journey.features.persistence.schema import CONVERSIONS_TABLE_NAME, LINE_ITEMS_TABLE_NAME
from journey.features.rollups.service import RollupAggregator
from journey.features.rollups.types import DailyMetricsDelta, MetricsDelta
from journey.features.sessions.service import SessionTracker
from journey.features.sessions.types import Session

from .types import Conversion, ConversionResult, LineItem, OrderData

_LINE_ITEM_COLUMNS = ("conversion_id", "line_no") + tuple(f.name for f in fields(LineItem))


def conversion_id_for(order_id: str) -> str:
    return stable_id("conv", order_id)


def _attribution_columns(attr: AttributionResult | None) -> dict[str, Any]:
    """Flattened first/last click fields plus the full snapshot; all NULL when unattributed."""
    if attr is None:
        return {
            "first_click_utm_source": None,
            "first_click_utm_medium": None,
            "first_click_utm_campaign": None,
            "last_click_utm_source": None,
            "last_click_utm_medium": None,
            "last_click_utm_campaign": None,
            "attribution_json": None,
            "touchpoint_count": None,
            "days_to_purchase": None,
            "sessions_to_conversion": None,
        }
    first, last = attr.first_click, attr.last_click
    return {
        "first_click_utm_source": first.utm_source if first else None,
        "first_click_utm_medium": first.utm_medium if first else None,
        "first_click_utm_campaign": first.utm_campaign if first else None,
        "last_click_utm_source": last.utm_source if last else None,
        "last_click_utm_medium": last.utm_medium if last else None,
        "last_click_utm_campaign": last.utm_campaign if last else None,
        "attribution_json": canonical_json(attr.to_payload()),
        "touchpoint_count": attr.touchpoint_count,
        "days_to_purchase": attr.days_to_purchase,
        "sessions_to_conversion": attr.sessions_to_conversion,
    }


class ConversionRecorder:
    """
    Persists one conversion per order with its attribution snapshot.

    Idempotent on order_id: a repeat delivery amends total_value/item_count only,
    never re-runs attribution, and never re-triggers rollups.
    """

    def __init__(
        self,
        *,
        adapter: DuckDBAdapter,
        sessions: SessionTracker,
        assembler: JourneyAssembler,
        rollups: RollupAggregator,
        half_life: timedelta = DEFAULT_HALF_LIFE,
        clock: Clock = utc_now,
    ) -> None:
        self.adapter = adapter
        self.sessions = sessions
        self.assembler = assembler
        self.rollups = rollups
        self.half_life = half_life
        self._clock = clock
        self._logger = get_logger(__name__)

    # ----------------------------
    # Public API
    # ----------------------------

    def record_conversion(
        self, order: OrderData, journey: Journey | None = None
    ) -> ConversionResult:
        conversion_id = conversion_id_for(order.order_id)
        now = self._clock()

        # Fast path for redeliveries: skip journey assembly entirely.
        if self.exists(order.order_id):
            return self._amend(order, conversion_id)

        converted_at = ensure_utc(order.created_at) if order.created_at else now
        warning: SessionNotFound | None = None
        session = self.sessions.get_session(order.session_id) if order.session_id else None

        if journey is None:
            if session is not None:
                journey = self.assembler.assemble_journey(order.session_id, converted_at)
            else:
                warning = SessionNotFound(order.session_id)

        attribution = (
            compute_attribution(journey, converted_at=converted_at, half_life=self.half_life)
            if journey is not None
            else None
        )

        row: dict[str, Any] = {
            "order_id": order.order_id,
            "conversion_id": conversion_id,
            "order_number": order.order_number,
            "session_id": order.session_id,
            "created_at": to_db_ts(converted_at),
            "updated_at": to_db_ts(now),
            "total_value": float(order.total_value),
            "currency": order.currency or "USD",
            "item_count": order.item_count,
            "customer_id": order.customer_id,
            "email": order.email,
            **_attribution_columns(attribution),
        }
        cols = list(row)

        with self.adapter.transaction():
            inserted = self.adapter.changed_rows(
                f"""
                INSERT INTO {CONVERSIONS_TABLE_NAME} ({", ".join(cols)})
                VALUES ({", ".join("?" for _ in cols)})
                ON CONFLICT DO NOTHING
                """,
                [row[c] for c in cols],
            )
            if inserted:
                self.adapter.executemany(
                    f"""
                    INSERT INTO {LINE_ITEMS_TABLE_NAME} ({", ".join(_LINE_ITEM_COLUMNS)})
                    VALUES ({", ".join("?" for _ in _LINE_ITEM_COLUMNS)})
                    """,
                    [
                        (conversion_id, i, *(getattr(item, c) for c in _LINE_ITEM_COLUMNS[2:]))
                        for i, item in enumerate(order.line_items)
                    ],
                )
                # counters commit or roll back together with the conversion row
                self._apply_rollups(order, converted_at, session, attribution)

        if not inserted:
            # lost a race with a concurrent delivery of the same order
            return self._amend(order, conversion_id)

        if warning is not None:
            self._logger.warning(
                "conversion_unattributed",
                extra={
                    "feature": "conversion",
                    "order_id": order.order_id,
                    "session_id": order.session_id,
                    "warning": str(warning),
                },
            )

        self._logger.info(
            "conversion_recorded",
            extra={
                "feature": "conversion",
                "order_id": order.order_id,
                "conversion_id": conversion_id,
                "session_id": order.session_id,
            },
        )
        return ConversionResult(
            conversion_id=conversion_id,
            order_id=order.order_id,
            created=True,
            attribution=attribution,
            warning=warning,
        )

    def update_order(
        self,
        order_id: str,
        *,
        total_value: float | None = None,
        item_count: int | None = None,
    ) -> bool:
        """Amend monetary fields of an existing conversion. False when unknown."""
        changed = self.adapter.changed_rows(
            f"""
            UPDATE {CONVERSIONS_TABLE_NAME}
            SET total_value = coalesce(?, total_value),
                item_count = coalesce(?, item_count),
                updated_at = greatest(updated_at, ?)
            WHERE order_id = ?
            """,
            [total_value, item_count, to_db_ts(self._clock()), order_id],
        )
        return changed > 0

    def exists(self, order_id: str) -> bool:
        row = self.adapter.fetchone(
            f"SELECT 1 FROM {CONVERSIONS_TABLE_NAME} WHERE order_id = ?", [order_id]
        )
        return row is not None

    def get_conversion(self, order_id: str) -> Conversion | None:
        rows = self.adapter.fetch_dicts(
            f"SELECT * FROM {CONVERSIONS_TABLE_NAME} WHERE order_id = ?", [order_id]
        )
        if not rows:
            return None
        values = rows[0]
        values["created_at"] = from_db_ts(values["created_at"])
        values["updated_at"] = from_db_ts(values["updated_at"])
        return Conversion(**values)

    def line_items(self, order_id: str) -> list[LineItem]:
        rows = self.adapter.fetch_dicts(
            f"""
            SELECT {", ".join(_LINE_ITEM_COLUMNS[2:])}
            FROM {LINE_ITEMS_TABLE_NAME}
            WHERE conversion_id = ?
            ORDER BY line_no
            """,
            [conversion_id_for(order_id)],
        )
        return [LineItem(**r) for r in rows]

    # ----------------------------
    # Internal helpers
    # ----------------------------

    def _amend(self, order: OrderData, conversion_id: str) -> ConversionResult:
        self.update_order(
            order.order_id, total_value=order.total_value, item_count=order.item_count
        )
        dup = DuplicateConversion(order.order_id)
        self._logger.info(
            "conversion_updated",
            extra={
                "feature": "conversion",
                "order_id": order.order_id,
                "conversion_id": conversion_id,
                "reason": str(dup),
            },
        )
        return ConversionResult(
            conversion_id=conversion_id, order_id=order.order_id, created=False
        )

    def _apply_rollups(
        self,
        order: OrderData,
        converted_at: datetime,
        session: Session | None,
        attribution: AttributionResult | None,
    ) -> None:
        revenue = float(order.total_value)
        triple = order.campaign_key
        if triple is None and session is not None:
            triple = session.campaign_key
        if triple is None and attribution is not None and attribution.last_click is not None:
            triple = attribution.last_click.campaign_key

        if triple is not None:
            self.rollups.increment_campaign(*triple, MetricsDelta(conversions=1, revenue=revenue))
        self.rollups.increment_daily_metric(
            converted_at, DailyMetricsDelta(conversions=1, revenue=revenue)
        )
