from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from journey.core.logging import get_logger
from journey.core.types import Clock, ensure_utc, utc_now

from .schema import MAX_EVENT_NAME_LENGTH, Event, json_dumps


class IdGenerator(Protocol):
    def next_id(self, prefix: str) -> str: ...


class PersistenceSink(Protocol):
    """
    Minimal surface area the events feature needs (PersistenceService.append).
    """

    def append(self, row: dict[str, Any]) -> None: ...


class EventService:
    """
    Appends generic behavioral facts to the event log. Events are never mutated.
    """

    def __init__(
        self,
        *,
        persistence: PersistenceSink,
        ids: IdGenerator,
        clock: Clock = utc_now,
    ) -> None:
        self._persistence = persistence
        self._ids = ids
        self._clock = clock
        self._logger = get_logger(__name__)

    def emit(
        self,
        *,
        event_name: str,
        session_id: str,
        ts: datetime | None = None,
        visitor_id: str | None = None,
        page_url: str | None = None,
        page_title: str | None = None,
        referrer: str | None = None,
        element_id: str | None = None,
        element_class: str | None = None,
        element_text: str | None = None,
        click_x: int | None = None,
        click_y: int | None = None,
        scroll_depth: float | None = None,
        time_on_page: float | None = None,
        load_time: float | None = None,
        lcp_time: float | None = None,
        fid_time: float | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Event:
        """
        Emits a single event into cold storage via the persistence buffer.

        Contracts enforced:
        - event_name is a non-empty string of bounded length
        - every event belongs to a session (the session row may not exist yet)
        """
        if not isinstance(event_name, str) or not event_name.strip():
            raise ValueError("event_name must be a non-empty string")
        if len(event_name) > MAX_EVENT_NAME_LENGTH:
            raise ValueError(f"event_name longer than {MAX_EVENT_NAME_LENGTH} characters")
        if not session_id:
            raise ValueError(f"{event_name} requires session_id")

        now = self._clock()
        event = Event(
            event_id=self._ids.next_id("evt"),
            session_id=session_id,
            event_name=event_name.strip(),
            ts=ensure_utc(ts) if ts is not None else now,
            created_at=now,
            visitor_id=visitor_id,
            page_url=page_url,
            page_title=page_title,
            referrer=referrer,
            element_id=element_id,
            element_class=element_class,
            element_text=element_text,
            click_x=click_x,
            click_y=click_y,
            scroll_depth=scroll_depth,
            time_on_page=time_on_page,
            load_time=load_time,
            lcp_time=lcp_time,
            fid_time=fid_time,
            payload_json=json_dumps(payload),
        )

        self._persistence.append(event.as_row())

        self._logger.debug(
            "event_emitted",
            extra={
                "feature": "events",
                "event_type": event.event_name,
                "session_id": event.session_id,
            },
        )

        return event
