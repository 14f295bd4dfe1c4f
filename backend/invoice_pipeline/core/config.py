from functools import lru_cache
import json
import logging
from pathlib import Path
from typing import Annotated, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from invoice_pipeline.errors import ValidationConfigError
from invoice_pipeline.schemas.invoice import DEFAULT_SEVERITY_PENALTIES

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        validate_by_name=True,
        populate_by_name=True,
    )
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: str = ""
    storage_bucket: str = Field(
        default="invoices",
        validation_alias=AliasChoices("STORAGE_BUCKET", "INVOICE_BUCKET"),
    )
    database_url: str = ""

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False

    openai_api_key: str = ""
    openai_vision_model: str = "gpt-4o-mini"
    google_cloud_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("GOOGLE_CLOUD_API_KEY", "GOOGLE_VISION_API_KEY"),
    )
    tesseract_cmd: str = ""
    tesseract_lang: str = "por"

    pipeline_config_path: str = Field(
        default="",
        validation_alias=AliasChoices("PIPELINE_CONFIG_PATH", "OCR_CONFIG_PATH"),
    )

    audit_redaction_enabled: bool = True
    audit_redaction_fields: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: [
            "cnpj_distribuidora",
            "api_key",
            "authorization",
        ],
    )

    enable_recurring_jobs: bool = False
    enable_notification_outbox: bool = True
    notification_worker_interval_seconds: int = 30
    notification_outbox_batch_size: int = 50
    notification_outbox_max_attempts: int = 5
    notification_channel: Literal["log", "webhook"] = "log"
    notification_webhook_url: str = ""
    notification_webhook_timeout_seconds: float = 5.0

    learning_feed_enabled: bool = True

    @field_validator("audit_redaction_fields", mode="before")
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            if value.strip() == "":
                return []
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


@lru_cache

def get_settings() -> Settings:
    return Settings()


# --- Pipeline configuration (engine catalogue, A/B, validation, orchestration) ---

SEVERITY_LEVELS = ("info", "warning", "error", "critical")
VALIDATION_RULE_IDS = (
    "mandatory-fields",
    "value-ranges",
    "date-consistency",
    "arithmetic-validation",
    "meter-reading-consistency",
    "tributary-validation",
    "bandeira-validation",
    "energy-consumption-anomaly",
    "cost-per-kwh-anomaly",
    "total-amount-anomaly",
    "extraction-confidence",
)


class EngineProfile(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    name: str = Field(..., min_length=1)
    priority: int = Field(..., ge=1)
    enabled: bool = True
    avg_accuracy: float = Field(0.9, ge=0.0, le=1.0, alias="avgAccuracy")
    avg_latency_ms: float = Field(2000.0, ge=0.0, alias="avgLatencyMs")
    cost_per_call: float = Field(0.0, ge=0.0, alias="costPerCall")


class ABTestConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    split_percent: float = Field(20.0, ge=0.0, le=100.0)
    comparison_criterion: Literal["confidence_score", "cost", "latency"] = "confidence_score"


class ValidationSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    confidence_threshold: float = Field(0.85, ge=0.0, le=1.0)
    review_score_threshold: float = Field(0.85, ge=0.0, le=1.0)
    anomaly_warn_z: float = Field(2.5, gt=0.0)
    anomaly_critical_z: float = Field(4.0, gt=0.0)
    min_historical_samples: int = Field(3, ge=2)
    historical_limit: int = Field(12, ge=1)
    arithmetic_abs_tolerance: float = Field(10.0, ge=0.0)
    arithmetic_pct_tolerance: float = Field(0.01, ge=0.0, le=1.0)
    required_fields: tuple[str, ...] = ("uc_code", "reference_month", "energy_kwh", "total_r$")
    enabled_rules: tuple[str, ...] = VALIDATION_RULE_IDS
    severity_penalties: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_SEVERITY_PENALTIES))
    # Optional per-state ICMS bands; empty means only the legal 0..35 range applies.
    icms_rate_schedule: tuple[float, ...] = ()


class OrchestrationSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    engine_timeout_seconds: float = Field(30.0, gt=0.0)
    max_fallback_depth: int = Field(2, ge=0)
    max_retries: int = Field(2, ge=0)
    retry_backoff_seconds: float = Field(0.5, ge=0.0)
    max_concurrent_engine_calls: int = Field(4, ge=1)
    validation_timeout_seconds: float = Field(10.0, gt=0.0)
    run_budget_margin_seconds: float = Field(5.0, ge=0.0)


class DecisionSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    prediction_disagreement_threshold: float = Field(0.9, ge=0.0, le=1.0)


def _default_engines() -> list[EngineProfile]:
    return [
        EngineProfile(
            name="openai", priority=1, enabled=True, avg_accuracy=0.985, avg_latency_ms=3500, cost_per_call=0.015
        ),
        EngineProfile(
            name="google_vision", priority=2, enabled=True, avg_accuracy=0.975, avg_latency_ms=2000, cost_per_call=0.005
        ),
        EngineProfile(
            name="tesseract", priority=3, enabled=False, avg_accuracy=0.89, avg_latency_ms=1500, cost_per_call=0.001
        ),
    ]


class PipelineConfig(BaseModel):
    """Snapshot of everything a pipeline run needs to make its decisions."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    engines: tuple[EngineProfile, ...] = Field(default_factory=lambda: tuple(_default_engines()))
    ab_test: ABTestConfig = Field(default_factory=ABTestConfig)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    orchestration: OrchestrationSettings = Field(default_factory=OrchestrationSettings)
    decision: DecisionSettings = Field(default_factory=DecisionSettings)

    @model_validator(mode="after")
    def _check_consistency(self):
        names = [engine.name for engine in self.engines]
        if len(names) != len(set(names)):
            raise ValueError("engine names must be unique")
        v = self.validation
        if v.anomaly_critical_z <= v.anomaly_warn_z:
            raise ValueError("anomaly_critical_z must be greater than anomaly_warn_z")
        unknown = [rule for rule in v.enabled_rules if rule not in VALIDATION_RULE_IDS]
        if unknown:
            raise ValueError(f"unknown validation rules: {unknown}")
        for level in SEVERITY_LEVELS:
            penalty = v.severity_penalties.get(level)
            if penalty is None or not 0.0 <= penalty <= 1.0:
                raise ValueError(f"severity penalty for {level!r} must be within [0, 1]")
        return self

    def enabled_engines(self) -> list[EngineProfile]:
        """Enabled engines ordered by priority (1 = most preferred)."""
        return sorted((e for e in self.engines if e.enabled), key=lambda e: (e.priority, e.name))

    def engine(self, name: str) -> EngineProfile | None:
        for profile in self.engines:
            if profile.name == name:
                return profile
        return None


def parse_pipeline_config(data: dict) -> PipelineConfig:
    try:
        return PipelineConfig.model_validate(data)
    except ValidationError as exc:
        raise ValidationConfigError(f"Invalid pipeline configuration: {exc}") from exc


def load_pipeline_config(path: str | None = None) -> PipelineConfig:
    """Load the pipeline configuration from a JSON file, or defaults when no path is set."""
    path = path if path is not None else get_settings().pipeline_config_path
    if not path:
        return PipelineConfig()
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationConfigError(f"Pipeline configuration not readable: {path}") from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationConfigError(f"Pipeline configuration is not valid JSON: {path}") from exc
    if not isinstance(data, dict):
        raise ValidationConfigError("Pipeline configuration must be a JSON object")
    return parse_pipeline_config(data)


_active_config: PipelineConfig | None = None


def get_pipeline_config() -> PipelineConfig:
    global _active_config
    if _active_config is None:
        _active_config = load_pipeline_config()
    return _active_config


def reload_pipeline_config() -> PipelineConfig:
    """Swap in a freshly loaded configuration.

    An invalid file raises and the previous configuration stays active. Runs
    already in flight keep the snapshot they started with.
    """
    global _active_config
    config = load_pipeline_config()
    _active_config = config
    logger.info(
        "Pipeline configuration reloaded: engines=%s ab_split=%s",
        [e.name for e in config.enabled_engines()],
        config.ab_test.split_percent,
    )
    return config
