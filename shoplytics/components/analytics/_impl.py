"""
AnalyticsIngestionService - event ingestion and identity stitching.

Key behaviors:
- name must be a non-empty string; properties must be a mapping (never schema-checked)
- timestamp defaults to the server clock; ms, ISO string or datetime accepted
- event + every rollup contribution commit in one transaction
- re-ingesting a known event id completes missing contributions without double counting
- link_identity sets user_id on anonymous events; contributions are not moved
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from shoplytics.core.entities import Actor, Event
from shoplytics.core.ports.time import to_millis

from ._aggregate import apply_contributions
from ._definitions import DEFINITIONS, AggregateDefinition
from .ports import AnalyticsStorePort, TimePort

logger = logging.getLogger(__name__)


# --- Configuration ---


@dataclass(frozen=True)
class IngestionConfig:
    """Analytics ingestion configuration."""

    max_name_length: int = 64
    max_batch_size: int = 100


DEFAULT_CONFIG = IngestionConfig()

# Last millisecond of year 9999, the end of the calendar range.
MAX_TIMESTAMP_MS = 253_402_300_799_999


# --- Validation Errors ---


@dataclass
class IngestionError:
    """Analytics ingestion error."""

    code: str
    message: str
    field_name: str | None = None


# --- Default Implementations ---


class DefaultTimePort:
    """Default time provider using system clock."""

    def now_utc(self) -> datetime:
        return datetime.now(UTC)


# --- Validation Functions ---


def validate_name(name: Any, config: IngestionConfig) -> tuple[str | None, IngestionError | None]:
    """Validate and trim the event name."""
    if not isinstance(name, str) or not name.strip():
        return None, IngestionError(
            code="name_required",
            message="Event name must be a non-empty string",
            field_name="name",
        )
    name = name.strip()
    if len(name) > config.max_name_length:
        return None, IngestionError(
            code="name_too_long",
            message=f"Event name exceeds {config.max_name_length} characters",
            field_name="name",
        )
    return name, None


def validate_properties(properties: Any) -> tuple[dict[str, Any] | None, IngestionError | None]:
    """Properties are open-schema; only the container type is checked."""
    if properties is None:
        return {}, None
    if not isinstance(properties, Mapping):
        return None, IngestionError(
            code="invalid_properties",
            message="Properties must be an object",
            field_name="properties",
        )
    return dict(properties), None


def parse_timestamp(value: Any) -> int | None:
    """
    Parse timestamp to epoch milliseconds.

    Accepts int/float milliseconds, ISO 8601 strings and datetimes.
    Naive datetimes are treated as UTC. Anything outside
    [1970-01-01, 9999-12-31T23:59:59.999Z] is rejected.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        if not math.isfinite(value) or not 0 <= value <= MAX_TIMESTAMP_MS:
            return None
        return int(value)
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=UTC)
        ms = to_millis(dt)
        return ms if 0 <= ms <= MAX_TIMESTAMP_MS else None
    if isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parse_timestamp(dt)
    return None


def validate_timestamp(
    value: Any, time_port: TimePort
) -> tuple[int | None, IngestionError | None]:
    if value is None:
        return to_millis(time_port.now_utc()), None
    ts = parse_timestamp(value)
    if ts is None:
        return None, IngestionError(
            code="invalid_timestamp",
            message="Timestamp must be epoch milliseconds, ISO 8601 or a datetime",
            field_name="timestamp",
        )
    return ts, None


def validate_event_id(event_id: Any) -> IngestionError | None:
    if event_id is None:
        return None
    if not isinstance(event_id, str) or not event_id.strip():
        return IngestionError(
            code="invalid_event_id",
            message="Event id must be a non-empty string",
            field_name="id",
        )
    return None


def _clean_id(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


# --- Service ---


class AnalyticsIngestionService:
    """
    Event ingestion service.

    Persists raw events and keeps every rollup in step, atomically.
    """

    def __init__(
        self,
        store: AnalyticsStorePort,
        time_port: TimePort | None = None,
        config: IngestionConfig | None = None,
        definitions: Iterable[AggregateDefinition] = DEFINITIONS,
    ) -> None:
        self._store = store
        self._time = time_port or DefaultTimePort()
        self._config = config or DEFAULT_CONFIG
        self._definitions = tuple(definitions)

    @property
    def config(self) -> IngestionConfig:
        return self._config

    def ingest(
        self,
        actor: Actor | None,
        name: Any,
        properties: Any = None,
        timestamp: Any = None,
        event_id: str | None = None,
    ) -> tuple[Event | None, list[IngestionError]]:
        """
        Ingest one event.

        Returns (event, errors). On validation errors nothing is persisted.
        Storage failures raise AnalyticsStoreError after rollback.
        """
        errors: list[IngestionError] = []

        clean_name, error = validate_name(name, self._config)
        if error:
            errors.append(error)

        clean_properties, error = validate_properties(properties)
        if error:
            errors.append(error)

        ts, error = validate_timestamp(timestamp, self._time)
        if error:
            errors.append(error)

        error = validate_event_id(event_id)
        if error:
            errors.append(error)

        if errors:
            return None, errors

        assert clean_name is not None and clean_properties is not None and ts is not None

        actor = actor or Actor()
        event_fields: dict[str, Any] = {
            "user_id": _clean_id(actor.user_id),
            "anonymous_id": _clean_id(actor.anonymous_id),
            "name": clean_name,
            "properties": clean_properties,
            "timestamp": ts,
        }
        if event_id is not None:
            event_fields["id"] = event_id.strip()
        event = Event(**event_fields)

        with self._store.transaction() as session:
            if not session.insert_event(event):
                stored = session.get_event(event.id)
                assert stored is not None
                event = stored
                logger.debug("Event %s already stored; re-applying contributions", event.id)
            applied = apply_contributions(session, event, self._definitions)

        logger.debug("Ingested %s event %s (%d contributions)", event.name, event.id, applied)
        return event, []

    def link_identity(self, anonymous_id: Any, user_id: str | None) -> tuple[int, list[IngestionError]]:
        """
        Attribute prior anonymous events to an authenticated user.

        Only user_id is patched. Rollups keep pre-link activity under the
        anonymous id; pruning reverts from the ledger so that stays consistent.
        """
        if not isinstance(anonymous_id, str) or not anonymous_id.strip():
            return 0, [
                IngestionError(
                    code="anonymous_id_required",
                    message="Anonymous id must be a non-empty string",
                    field_name="anonymous_id",
                )
            ]

        user_id = _clean_id(user_id)
        if user_id is None:
            return 0, []

        with self._store.transaction() as session:
            event_ids = session.list_unlinked_event_ids(anonymous_id.strip())
            linked = session.set_user_id(event_ids, user_id) if event_ids else 0

        if linked:
            logger.info("Linked %d anonymous events to user %s", linked, user_id)
        return linked, []


# --- Factory ---


def create_analytics_ingestion_service(
    store: AnalyticsStorePort,
    time_port: TimePort | None = None,
    config: IngestionConfig | None = None,
) -> AnalyticsIngestionService:
    """Create an ingestion service with the standard definitions."""
    return AnalyticsIngestionService(store=store, time_port=time_port, config=config)
