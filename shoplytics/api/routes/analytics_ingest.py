"""
Analytics Ingestion API Routes.

Endpoints called by storefront UIs:
- POST /track: one event
- POST /batch: several events, one transaction each
- POST /identify: stitch anonymous activity to the authenticated user

The authenticated user comes from the X-User-Id header set by the auth gateway.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from shoplytics.api.deps import (
    get_analytics_rules,
    get_current_user_id,
    get_store,
    get_time_port,
    storage_guard,
)
from shoplytics.components.analytics import (
    AnalyticsStorePort,
    AnalyticsValidationError,
    IngestBatchInput,
    IngestEventInput,
    LinkIdentityInput,
    TimePort,
    run_ingest,
    run_ingest_batch,
    run_link_identity,
)
from shoplytics.rules.models import AnalyticsRules

router = APIRouter()


# --- Request/Response Models ---


class TrackRequest(BaseModel):
    """Analytics event request."""

    event: Any = Field(None, description="Event name (page_viewed, order_completed, ...)")
    properties: Any = Field(None, description="Free-form event properties")
    anonymous_id: str | None = Field(None, alias="anonymousId", description="Client pseudo-id")
    timestamp: int | float | str | None = Field(None, description="Epoch ms or ISO 8601")
    id: str | None = Field(None, description="Optional idempotency key")

    model_config = ConfigDict(populate_by_name=True)


class TrackResponse(BaseModel):
    """Success response."""

    ok: bool = True
    id: str


class BatchRequest(BaseModel):
    events: list[TrackRequest]


class BatchItemResponse(BaseModel):
    index: int
    ok: bool
    id: str | None = None
    errors: list[dict[str, Any]] = Field(default_factory=list)


class BatchResponse(BaseModel):
    ok: bool = True
    accepted: int
    results: list[BatchItemResponse]


class IdentifyRequest(BaseModel):
    anonymous_id: str = Field(..., alias="anonymousId")

    model_config = ConfigDict(populate_by_name=True)


class IdentifyResponse(BaseModel):
    linked: int


class ErrorResponse(BaseModel):
    """Error response."""

    ok: bool = False
    errors: list[dict[str, Any]]


def _error_dicts(errors: list[AnalyticsValidationError]) -> list[dict[str, Any]]:
    return [{"code": e.code, "message": e.message, "field": e.field_name} for e in errors]


def _to_input(body: TrackRequest, user_id: str | None) -> IngestEventInput:
    return IngestEventInput(
        name=body.event,
        properties=body.properties,
        user_id=user_id,
        anonymous_id=body.anonymous_id,
        timestamp=body.timestamp,
        event_id=body.id,
    )


# --- Routes ---


@router.post(
    "/track",
    response_model=TrackResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
def track(
    body: TrackRequest,
    user_id: str | None = Depends(get_current_user_id),
    store: AnalyticsStorePort = Depends(get_store),
    time_port: TimePort = Depends(get_time_port),
    rules: AnalyticsRules = Depends(get_analytics_rules),
) -> TrackResponse:
    """Record one storefront event."""
    with storage_guard():
        out = run_ingest(_to_input(body, user_id), store=store, time_port=time_port, rules=rules)

    if not out.success or out.event is None:
        raise HTTPException(
            status_code=400,
            detail={"ok": False, "errors": _error_dicts(out.errors)},
        )
    return TrackResponse(id=out.event.id)


@router.post(
    "/batch",
    response_model=BatchResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
def track_batch(
    body: BatchRequest,
    user_id: str | None = Depends(get_current_user_id),
    store: AnalyticsStorePort = Depends(get_store),
    time_port: TimePort = Depends(get_time_port),
    rules: AnalyticsRules = Depends(get_analytics_rules),
) -> BatchResponse:
    """Record several events. Each is accepted or rejected on its own."""
    inp = IngestBatchInput(events=tuple(_to_input(e, user_id) for e in body.events))
    with storage_guard():
        out = run_ingest_batch(inp, store=store, time_port=time_port, rules=rules)

    if not out.success:
        raise HTTPException(
            status_code=400,
            detail={"ok": False, "errors": _error_dicts(out.errors)},
        )
    return BatchResponse(
        ok=out.accepted == len(out.results),
        accepted=out.accepted,
        results=[
            BatchItemResponse(
                index=r.index, ok=r.ok, id=r.event_id, errors=_error_dicts(r.errors)
            )
            for r in out.results
        ],
    )


@router.post(
    "/identify",
    response_model=IdentifyResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
def identify(
    body: IdentifyRequest,
    user_id: str | None = Depends(get_current_user_id),
    store: AnalyticsStorePort = Depends(get_store),
) -> IdentifyResponse:
    """Attribute this browser's anonymous events to the signed-in user."""
    with storage_guard():
        out = run_link_identity(
            LinkIdentityInput(anonymous_id=body.anonymous_id, user_id=user_id), store=store
        )
    if not out.success:
        raise HTTPException(
            status_code=400,
            detail={"ok": False, "errors": _error_dicts(out.errors)},
        )
    return IdentifyResponse(linked=out.linked)
