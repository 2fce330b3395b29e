from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from datetime import datetime
from typing import Any

from journey.core.ids import stable_id
from journey.core.types import parse_timestamp
from journey.features.sessions.types import Touchpoint, TrackingContext

Loader = Callable[[], Iterable[Touchpoint]]


class Journey:
    """
    Ordered touchpoints of one visitor, ascending by (timestamp, insertion order).

    Lazy: the loader runs on first iteration and its result is cached, so the
    sequence can be traversed again without re-querying. Empty is valid.
    """

    __slots__ = ("key", "as_of", "_loader", "_items")

    def __init__(
        self,
        loader: Loader | None = None,
        *,
        touchpoints: Sequence[Touchpoint] | None = None,
        key: str | None = None,
        as_of: datetime | None = None,
    ) -> None:
        if loader is None and touchpoints is None:
            touchpoints = ()
        self.key = key
        self.as_of = as_of
        self._loader = loader
        self._items: tuple[Touchpoint, ...] | None = (
            tuple(touchpoints) if touchpoints is not None else None
        )

    @classmethod
    def empty(cls) -> Journey:
        return cls(touchpoints=())

    @classmethod
    def from_touchpoints(cls, touchpoints: Iterable[Touchpoint]) -> Journey:
        # sorted() is stable: equal timestamps keep the given order
        return cls(touchpoints=sorted(touchpoints, key=lambda tp: (tp.timestamp, tp.seq)))

    @classmethod
    def from_payload(cls, items: Sequence[Mapping[str, Any]] | None) -> Journey:
        """
        Build a journey from a pre-assembled `customer_journey` list as sent by
        the storefront script. Payload order breaks timestamp ties.
        """
        tps: list[Touchpoint] = []
        for idx, item in enumerate(items or ()):
            if not isinstance(item, Mapping):
                raise ValueError(f"customer_journey[{idx}] must be an object")
            raw_ts = item.get("timestamp")
            if raw_ts is None:
                raise ValueError(f"customer_journey[{idx}].timestamp is required")
            ts = parse_timestamp(raw_ts)
            ctx = TrackingContext.from_mapping(item)
            session_id = item.get("session_id") or item.get("sessionId")
            tp_id = item.get("touchpoint_id") or stable_id("tp", session_id, ts.isoformat(), idx)
            tps.append(
                Touchpoint(
                    touchpoint_id=str(tp_id),
                    session_id=str(session_id) if session_id is not None else None,
                    timestamp=ts,
                    seq=idx,
                    utm_source=ctx.utm_source,
                    utm_medium=ctx.utm_medium,
                    utm_campaign=ctx.utm_campaign,
                    utm_term=ctx.utm_term,
                    utm_content=ctx.utm_content,
                    page_url=ctx.page_url or ctx.landing_page,
                    page_title=ctx.page_title,
                    referrer=ctx.referrer,
                    fbclid=ctx.fbclid,
                    gclid=ctx.gclid,
                    ttclid=ctx.ttclid,
                    device_type=ctx.device_type,
                    browser=ctx.browser,
                )
            )
        return cls.from_touchpoints(tps)

    @property
    def materialized(self) -> bool:
        return self._items is not None

    @property
    def touchpoints(self) -> tuple[Touchpoint, ...]:
        if self._items is None:
            assert self._loader is not None
            self._items = tuple(self._loader())
        return self._items

    def __iter__(self) -> Iterator[Touchpoint]:
        return iter(self.touchpoints)

    def __len__(self) -> int:
        return len(self.touchpoints)

    def __bool__(self) -> bool:
        return len(self) > 0

    def __getitem__(self, idx: int) -> Touchpoint:
        return self.touchpoints[idx]

    def __repr__(self) -> str:
        n = len(self._items) if self._items is not None else "?"
        return f"Journey(key={self.key!r}, touchpoints={n})"
