"""
Analytics component - event ingestion, rollups, stitching, queries, retention.

Invariants:
- every bucket accumulator equals the sum of its stored events' contributions
- an event and all its contributions are written atomically
- a (definition, event) pair contributes at most once
- pruning reverts contributions before deleting the event
- queries never write; missing buckets read as zero
"""

from __future__ import annotations

from dataclasses import replace

from shoplytics.core.entities import Actor
from shoplytics.rules.models import AnalyticsRules

from ._impl import AnalyticsIngestionService, IngestionConfig, IngestionError
from ._prune import RetentionConfig, RetentionPruner
from ._queries import AnalyticsQueryService, QueryConfig
from .models import (
    INTERVALS,
    SERIES_METRICS,
    AnalyticsValidationError,
    BatchItemResult,
    CartMetricsOutput,
    ConversionOutput,
    CouponMetricsOutput,
    FunnelInput,
    FunnelOutput,
    FunnelStage,
    IngestBatchInput,
    IngestBatchOutput,
    IngestEventInput,
    IngestOutput,
    LinkIdentityInput,
    LinkIdentityOutput,
    PruneInput,
    PruneOutput,
    RetentionOutput,
    SearchMetricsOutput,
    SummaryOutput,
    TimeSeriesInput,
    TimeSeriesOutput,
    TopNInput,
    TopNOutput,
)
from .ports import AnalyticsStorePort, TimePort


def _convert_errors(errors: list[IngestionError]) -> list[AnalyticsValidationError]:
    return [
        AnalyticsValidationError(code=e.code, message=e.message, field_name=e.field_name)
        for e in errors
    ]


def build_ingestion_config(rules: AnalyticsRules | None) -> IngestionConfig:
    if rules is None:
        return IngestionConfig()
    return IngestionConfig(
        max_name_length=rules.ingestion.max_name_length,
        max_batch_size=rules.ingestion.max_batch_size,
    )


def build_retention_config(rules: AnalyticsRules | None) -> RetentionConfig:
    if rules is None:
        return RetentionConfig()
    return RetentionConfig(
        days=rules.retention.days,
        batch_size=rules.retention.batch_size,
        max_batches_per_run=rules.retention.max_batches_per_run,
    )


def build_query_config(rules: AnalyticsRules | None) -> QueryConfig:
    if rules is None:
        return QueryConfig()
    q = rules.queries
    config = QueryConfig(
        daily_points=q.daily_points,
        weekly_points=q.weekly_points,
        monthly_points=q.monthly_points,
        top_n_default=q.top_n_default,
        top_n_max=q.top_n_max,
        funnel_window_days=q.funnel_window_days,
    )
    if q.checkout_funnel:
        stages = tuple(FunnelStage(s.label, s.event, s.step) for s in q.checkout_funnel)
        config = replace(config, checkout_funnel=stages)
    return config


# --- Component Entry Points ---


def run_ingest(
    inp: IngestEventInput,
    *,
    store: AnalyticsStorePort,
    time_port: TimePort | None = None,
    rules: AnalyticsRules | None = None,
) -> IngestOutput:
    """
    Ingest one analytics event.

    Validates the name, properties and timestamp, then persists the event
    and its rollup contributions in one transaction.

    Raises:
        AnalyticsStoreError: storage failed; nothing was written.
    """
    service = AnalyticsIngestionService(
        store=store, time_port=time_port, config=build_ingestion_config(rules)
    )
    event, errors = service.ingest(
        actor=Actor(user_id=inp.user_id, anonymous_id=inp.anonymous_id),
        name=inp.name,
        properties=inp.properties,
        timestamp=inp.timestamp,
        event_id=inp.event_id,
    )
    return IngestOutput(
        event=event,
        accepted=event is not None,
        errors=_convert_errors(errors),
        success=not errors,
    )


def run_ingest_batch(
    inp: IngestBatchInput,
    *,
    store: AnalyticsStorePort,
    time_port: TimePort | None = None,
    rules: AnalyticsRules | None = None,
) -> IngestBatchOutput:
    """Ingest several events, one transaction each. Invalid items do not block the rest."""
    config = build_ingestion_config(rules)
    if len(inp.events) > config.max_batch_size:
        return IngestBatchOutput(
            results=(),
            accepted=0,
            errors=[
                AnalyticsValidationError(
                    code="batch_too_large",
                    message=f"Batch exceeds {config.max_batch_size} events",
                    field_name="events",
                )
            ],
            success=False,
        )

    results = []
    for index, item in enumerate(inp.events):
        out = run_ingest(item, store=store, time_port=time_port, rules=rules)
        results.append(
            BatchItemResult(
                index=index,
                event_id=out.event.id if out.event else None,
                errors=out.errors,
            )
        )
    accepted = sum(1 for r in results if r.ok)
    return IngestBatchOutput(results=tuple(results), accepted=accepted)


def run_link_identity(
    inp: LinkIdentityInput,
    *,
    store: AnalyticsStorePort,
    time_port: TimePort | None = None,
) -> LinkIdentityOutput:
    """Stitch anonymous events to the authenticated user. No user means linked=0."""
    service = AnalyticsIngestionService(store=store, time_port=time_port)
    linked, errors = service.link_identity(inp.anonymous_id, inp.user_id)
    return LinkIdentityOutput(linked=linked, errors=_convert_errors(errors), success=not errors)


def run_prune(
    inp: PruneInput,
    *,
    store: AnalyticsStorePort,
    time_port: TimePort | None = None,
    rules: AnalyticsRules | None = None,
) -> PruneOutput:
    """Run one retention batch."""
    pruner = RetentionPruner(store=store, time_port=time_port, config=build_retention_config(rules))
    result, errors = pruner.prune_older_than(inp.retention_days, inp.batch_size)
    if errors:
        return PruneOutput(
            deleted=0, has_more=False, errors=_convert_errors(errors), success=False
        )
    assert result is not None
    return PruneOutput(deleted=result.deleted, has_more=result.has_more)


def _query_service(
    store: AnalyticsStorePort, time_port: TimePort | None, rules: AnalyticsRules | None
) -> AnalyticsQueryService:
    return AnalyticsQueryService(store=store, time_port=time_port, config=build_query_config(rules))


def run_query_time_series(
    inp: TimeSeriesInput,
    *,
    store: AnalyticsStorePort,
    time_port: TimePort | None = None,
    rules: AnalyticsRules | None = None,
) -> TimeSeriesOutput:
    """Query a daily/weekly/monthly series for views, visitors, sales or orders."""
    errors = []
    if inp.interval not in INTERVALS:
        errors.append(
            AnalyticsValidationError(
                code="invalid_interval",
                message=f"Interval must be one of: {', '.join(INTERVALS)}",
                field_name="interval",
            )
        )
    if inp.metric not in SERIES_METRICS:
        errors.append(
            AnalyticsValidationError(
                code="invalid_metric",
                message=f"Metric must be one of: {', '.join(SERIES_METRICS)}",
                field_name="metric",
            )
        )
    if inp.limit is not None and inp.limit < 1:
        errors.append(
            AnalyticsValidationError(
                code="invalid_limit", message="Limit must be positive", field_name="limit"
            )
        )
    if errors:
        return TimeSeriesOutput(
            metric=inp.metric, interval=inp.interval, points=(), errors=errors, success=False
        )
    return _query_service(store, time_port, rules).get_time_series(
        inp.metric, inp.interval, inp.limit
    )


def run_query_summary(
    *,
    store: AnalyticsStorePort,
    time_port: TimePort | None = None,
    rules: AnalyticsRules | None = None,
) -> SummaryOutput:
    return _query_service(store, time_port, rules).get_summary()


def run_query_funnel(
    inp: FunnelInput,
    *,
    store: AnalyticsStorePort,
    time_port: TimePort | None = None,
    rules: AnalyticsRules | None = None,
) -> FunnelOutput:
    """Distinct actors per ordered stage within a trailing window."""
    if not inp.stages:
        return FunnelOutput(
            steps=(),
            total_conversion=0.0,
            errors=[
                AnalyticsValidationError(
                    code="stages_required", message="At least one stage is required", field_name="stages"
                )
            ],
            success=False,
        )
    if inp.window_days is not None and inp.window_days < 1:
        return FunnelOutput(
            steps=(),
            total_conversion=0.0,
            errors=[
                AnalyticsValidationError(
                    code="invalid_window", message="Window must be at least one day", field_name="days"
                )
            ],
            success=False,
        )
    return _query_service(store, time_port, rules).get_funnel(inp.stages, inp.window_days)


def run_query_checkout_funnel(
    window_days: int | None = None,
    *,
    store: AnalyticsStorePort,
    time_port: TimePort | None = None,
    rules: AnalyticsRules | None = None,
) -> FunnelOutput:
    config = build_query_config(rules)
    return run_query_funnel(
        FunnelInput(stages=config.checkout_funnel, window_days=window_days),
        store=store,
        time_port=time_port,
        rules=rules,
    )


TOP_DIMENSIONS = ("products", "categories", "coupons", "searches")


def run_query_top(
    dimension: str,
    inp: TopNInput,
    *,
    store: AnalyticsStorePort,
    time_port: TimePort | None = None,
    rules: AnalyticsRules | None = None,
) -> TopNOutput:
    """Top-N products, categories, coupons or searches over the last `days` days."""
    if dimension not in TOP_DIMENSIONS or inp.days < 1:
        field_name = "dimension" if dimension not in TOP_DIMENSIONS else "days"
        return TopNOutput(
            items=(),
            errors=[
                AnalyticsValidationError(
                    code=f"invalid_{field_name}",
                    message=f"Invalid {field_name}",
                    field_name=field_name,
                )
            ],
            success=False,
        )
    service = _query_service(store, time_port, rules)
    query = {
        "products": service.get_top_products,
        "categories": service.get_top_categories,
        "coupons": service.get_top_coupons,
        "searches": service.get_top_searches,
    }[dimension]
    return TopNOutput(items=query(days=inp.days, limit=inp.limit))


def run_query_conversion(
    *,
    store: AnalyticsStorePort,
    time_port: TimePort | None = None,
    rules: AnalyticsRules | None = None,
) -> ConversionOutput:
    return _query_service(store, time_port, rules).get_conversion_metrics()


def run_query_cart(
    *,
    store: AnalyticsStorePort,
    time_port: TimePort | None = None,
    rules: AnalyticsRules | None = None,
) -> CartMetricsOutput:
    return _query_service(store, time_port, rules).get_cart_metrics()


def run_query_coupons(
    inp: TopNInput,
    *,
    store: AnalyticsStorePort,
    time_port: TimePort | None = None,
    rules: AnalyticsRules | None = None,
) -> CouponMetricsOutput:
    return _query_service(store, time_port, rules).get_coupon_metrics(inp.days, inp.limit)


def run_query_searches(
    inp: TopNInput,
    *,
    store: AnalyticsStorePort,
    time_port: TimePort | None = None,
    rules: AnalyticsRules | None = None,
) -> SearchMetricsOutput:
    return _query_service(store, time_port, rules).get_search_metrics(inp.days, inp.limit)


def run_query_retention(
    *,
    store: AnalyticsStorePort,
    time_port: TimePort | None = None,
) -> RetentionOutput:
    return AnalyticsQueryService(store=store, time_port=time_port).get_retention()
