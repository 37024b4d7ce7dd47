from pydantic import BaseModel, ConfigDict, Field


class ProjectRules(BaseModel):
    slug: str
    rules_version: str


class IngestionRules(BaseModel):
    max_name_length: int = Field(64, ge=1)
    max_batch_size: int = Field(100, ge=1)


class RetentionRules(BaseModel):
    days: int = Field(180, ge=1)
    batch_size: int = Field(500, ge=1, le=100_000)
    max_batches_per_run: int = Field(20, ge=1)
    poll_interval_seconds: float = Field(86400, gt=0)


class FunnelStageRule(BaseModel):
    label: str
    event: str
    step: str | None = None


class QueryRules(BaseModel):
    daily_points: int = Field(30, ge=1)
    weekly_points: int = Field(12, ge=1)
    monthly_points: int = Field(12, ge=1)
    top_n_default: int = Field(10, ge=1)
    top_n_max: int = Field(100, ge=1)
    funnel_window_days: int = Field(30, ge=1)
    checkout_funnel: list[FunnelStageRule] = Field(default_factory=list)


class StorageRules(BaseModel):
    busy_timeout_ms: int = Field(5000, ge=0)


class AnalyticsRules(BaseModel):
    ingestion: IngestionRules = Field(default_factory=IngestionRules)
    retention: RetentionRules = Field(default_factory=RetentionRules)
    queries: QueryRules = Field(default_factory=QueryRules)
    storage: StorageRules = Field(default_factory=StorageRules)


class Rules(BaseModel):
    project: ProjectRules
    analytics: AnalyticsRules = Field(default_factory=AnalyticsRules)

    model_config = ConfigDict(extra="forbid")
