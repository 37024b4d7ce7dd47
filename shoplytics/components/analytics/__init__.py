"""
Analytics component - event ingestion, rollups, identity stitching,
dashboard queries and retention pruning.
"""

from ._aggregate import (
    InMemoryAnalyticsStore,
    apply_contributions,
    build_contribution,
    compute_rollups,
    ledger_rollups,
    missing_contributions,
    revert_contributions,
    split_key,
)
from ._definitions import (
    DEFINITIONS,
    DEFINITIONS_BY_NAME,
    AggregateDefinition,
    day_key,
    end_of_day,
    get_definition,
    month_key,
    start_of_day,
    week_key,
)
from ._impl import (
    AnalyticsIngestionService,
    DefaultTimePort,
    IngestionConfig,
    IngestionError,
    create_analytics_ingestion_service,
    parse_timestamp,
    validate_name,
    validate_properties,
    validate_timestamp,
)
from ._prune import (
    PruneResult,
    RetentionConfig,
    RetentionPruner,
    create_retention_pruner,
)
from ._queries import (
    DEFAULT_CHECKOUT_FUNNEL,
    AnalyticsQueryService,
    QueryConfig,
    create_query_service,
    percent_change,
    rank_buckets,
    rate,
)
from .component import (
    TOP_DIMENSIONS,
    build_ingestion_config,
    build_query_config,
    build_retention_config,
    run_ingest,
    run_ingest_batch,
    run_link_identity,
    run_prune,
    run_query_cart,
    run_query_checkout_funnel,
    run_query_conversion,
    run_query_coupons,
    run_query_funnel,
    run_query_retention,
    run_query_searches,
    run_query_summary,
    run_query_time_series,
    run_query_top,
)
from .models import (
    AnalyticsValidationError,
    BatchItemResult,
    CartMetricsOutput,
    ConversionOutput,
    CouponMetricsOutput,
    FunnelInput,
    FunnelOutput,
    FunnelStage,
    FunnelStep,
    IngestBatchInput,
    IngestBatchOutput,
    IngestEventInput,
    IngestOutput,
    LinkIdentityInput,
    LinkIdentityOutput,
    PeriodComparison,
    PruneInput,
    PruneOutput,
    RetentionOutput,
    SearchMetricsOutput,
    SeriesPoint,
    SummaryOutput,
    TimeSeriesInput,
    TimeSeriesOutput,
    TopItem,
    TopNInput,
    TopNOutput,
)
from .ports import (
    AnalyticsSessionPort,
    AnalyticsStoreError,
    AnalyticsStorePort,
    RemovalStatus,
    TimePort,
)

__all__ = [
    # Store
    "AnalyticsSessionPort",
    "AnalyticsStoreError",
    "AnalyticsStorePort",
    "InMemoryAnalyticsStore",
    "RemovalStatus",
    "TimePort",
    # Definitions
    "DEFINITIONS",
    "DEFINITIONS_BY_NAME",
    "AggregateDefinition",
    "day_key",
    "end_of_day",
    "get_definition",
    "month_key",
    "start_of_day",
    "week_key",
    # Rollup maintenance
    "apply_contributions",
    "build_contribution",
    "compute_rollups",
    "ledger_rollups",
    "missing_contributions",
    "revert_contributions",
    "split_key",
    # Ingestion
    "AnalyticsIngestionService",
    "DefaultTimePort",
    "IngestionConfig",
    "IngestionError",
    "create_analytics_ingestion_service",
    "parse_timestamp",
    "validate_name",
    "validate_properties",
    "validate_timestamp",
    # Retention
    "PruneResult",
    "RetentionConfig",
    "RetentionPruner",
    "create_retention_pruner",
    # Queries
    "DEFAULT_CHECKOUT_FUNNEL",
    "AnalyticsQueryService",
    "QueryConfig",
    "create_query_service",
    "percent_change",
    "rank_buckets",
    "rate",
    # Entry points
    "TOP_DIMENSIONS",
    "build_ingestion_config",
    "build_query_config",
    "build_retention_config",
    "run_ingest",
    "run_ingest_batch",
    "run_link_identity",
    "run_prune",
    "run_query_cart",
    "run_query_checkout_funnel",
    "run_query_conversion",
    "run_query_coupons",
    "run_query_funnel",
    "run_query_retention",
    "run_query_searches",
    "run_query_summary",
    "run_query_time_series",
    "run_query_top",
    # Models
    "AnalyticsValidationError",
    "BatchItemResult",
    "CartMetricsOutput",
    "ConversionOutput",
    "CouponMetricsOutput",
    "FunnelInput",
    "FunnelOutput",
    "FunnelStage",
    "FunnelStep",
    "IngestBatchInput",
    "IngestBatchOutput",
    "IngestEventInput",
    "IngestOutput",
    "LinkIdentityInput",
    "LinkIdentityOutput",
    "PeriodComparison",
    "PruneInput",
    "PruneOutput",
    "RetentionOutput",
    "SearchMetricsOutput",
    "SeriesPoint",
    "SummaryOutput",
    "TimeSeriesInput",
    "TimeSeriesOutput",
    "TopItem",
    "TopNInput",
    "TopNOutput",
]
