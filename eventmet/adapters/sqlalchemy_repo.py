"""SQLAlchemy repository adapter for EventMet."""

import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import JSON, Column, DateTime, Integer, MetaData, String, Table, bindparam, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DisconnectionError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from ..errors import RepositoryError
from ..models import Event, EventKind, ensure_utc, event_from_payload, event_to_payload, matches_filters

logger = logging.getLogger(__name__)

metadata = MetaData()

events_table = Table(
    "events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_type", String(32), nullable=False, index=True),
    Column("occurred_at", DateTime, nullable=False, index=True),
    Column("user_id", String(256), nullable=True),
    Column("payload", JSON, nullable=False),
)

_SELECT_EVENTS = (
    text(
        """
        SELECT id, event_type, occurred_at, payload
        FROM events
        WHERE event_type = :event_type
          AND occurred_at >= :start_date
          AND occurred_at <= :end_date
        """
    )
    .bindparams(
        bindparam("event_type", type_=String()),
        bindparam("start_date", type_=DateTime()),
        bindparam("end_date", type_=DateTime()),
    )
    .columns(id=Integer, event_type=String, occurred_at=DateTime, payload=JSON)
)


def create_schema(engine: Engine) -> None:
    """Create the ``events`` table if it does not exist."""
    metadata.create_all(engine)


class SQLAlchemyEventRepository:
    """Stores events as JSON payload rows and maps them back to domain models."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def append(self, event: Event) -> int:
        try:
            with self.session_factory() as db:
                result = db.execute(
                    events_table.insert().values(
                        event_type=event.kind.value,
                        occurred_at=_to_naive_utc(event.occurred_at),
                        user_id=event.user_id,
                        payload=event_to_payload(event),
                    )
                )
                db.commit()
                return int(result.inserted_primary_key[0])
        except SQLAlchemyError as exc:
            raise _wrap(exc, "append") from exc

    def query(
        self,
        event_kind: EventKind,
        start_date: datetime,
        end_date: datetime,
        filters: Tuple[Tuple[str, str], ...] = (),
    ) -> List[Event]:
        kind = EventKind.parse(event_kind)
        try:
            with self.session_factory() as db:
                rows = db.execute(
                    _SELECT_EVENTS,
                    {
                        "event_type": kind.value,
                        "start_date": _to_naive_utc(start_date),
                        "end_date": _to_naive_utc(end_date),
                    },
                ).fetchall()
        except SQLAlchemyError as exc:
            raise _wrap(exc, "query") from exc

        events = []
        for row in rows:
            payload = _parse_payload(row.payload)
            if payload is None:
                logger.warning("Skipping event row %s with unreadable payload", row.id)
                continue
            event = event_from_payload(kind, payload, row.occurred_at)
            if matches_filters(event, filters):
                events.append(event)
        return events


def _to_naive_utc(value: datetime) -> datetime:
    return ensure_utc(value).replace(tzinfo=None)


def _parse_payload(raw_payload: Any) -> Optional[Dict[str, Any]]:
    if isinstance(raw_payload, str):
        try:
            raw_payload = json.loads(raw_payload)
        except json.JSONDecodeError:
            return None
    if isinstance(raw_payload, dict):
        return raw_payload
    return None


def _wrap(exc: SQLAlchemyError, operation: str) -> RepositoryError:
    transient = isinstance(exc, (OperationalError, DisconnectionError, PoolTimeoutError)) or bool(
        getattr(exc, "connection_invalidated", False)
    )
    logger.warning("Event repository %s failed (transient=%s): %s", operation, transient, type(exc).__name__)
    return RepositoryError(f"event repository {operation} failed", transient=transient)
