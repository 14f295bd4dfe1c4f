from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, computed_field, field_validator, model_validator

from invoice_pipeline.utils.brl import normalize_reference_month, parse_br_date, parse_brl_number

logger = logging.getLogger(__name__)


class PipelineStatus(str, Enum):
    RECEIVED = "received"
    EXTRACTING = "extracting"
    EXTRACTED = "extracted"
    VALIDATING = "validating"
    VALIDATED = "validated"
    APPROVED = "approved"
    REVIEW_REQUIRED = "review_required"
    REJECTED = "rejected"
    CLOSED = "closed"
    EXTRACTION_FAILED = "extraction_failed"
    VALIDATION_FAILED = "validation_failed"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.WARNING: 1,
    Severity.ERROR: 2,
    Severity.CRITICAL: 3,
}

DEFAULT_SEVERITY_PENALTIES = {"info": 0.0, "warning": 0.1, "error": 0.25, "critical": 0.6}


class FindingCategory(str, Enum):
    MISSING_FIELD = "missing_field"
    OUT_OF_RANGE = "out_of_range"
    CROSS_FIELD_ARITHMETIC = "cross_field_arithmetic"
    HISTORICAL_ANOMALY = "historical_anomaly"
    LOW_CONFIDENCE = "low_confidence"


# Monetary components that add up to the invoice total.
TOTAL_COMPONENT_FIELDS = (
    "valor_tusd",
    "valor_te",
    "valor_demanda_tusd",
    "valor_demanda_te",
    "icms_valor",
    "pis_valor",
    "cofins_valor",
    "bandeira_valor",
    "contrib_ilum_publica",
    "issqn_valor",
    "outras_taxas",
    "valor_multa",
    "valor_juros",
)

CORE_FIELDS = ("uc_code", "reference_month", "energy_kwh", "total_r$")
CORE_FIELD_WEIGHT = 2.0


class InvoiceFields(BaseModel):
    """Typed business fields of a utility invoice. Everything is optional until extracted."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    # identification / totals
    uc_code: Optional[str] = None
    reference_month: Optional[str] = None
    energy_kwh: Optional[float] = None
    demand_kw: Optional[float] = None
    total_rs: Optional[float] = Field(default=None, alias="total_r$")
    taxes_rs: Optional[float] = Field(default=None, alias="taxes_r$")
    distribuidora: Optional[str] = None
    cnpj_distribuidora: Optional[str] = None
    numero_fatura: Optional[str] = None

    # consumption
    subgrupo_tensao: Optional[str] = None
    consumo_fp_te_kwh: Optional[float] = None
    consumo_p_te_kwh: Optional[float] = None
    demanda_tusd_kw: Optional[float] = None
    demanda_te_kw: Optional[float] = None
    demanda_contratada_kw: Optional[float] = None
    classe_subclasse: Optional[str] = None
    modalidade_tarifaria: Optional[str] = None
    fator_potencia: Optional[float] = None
    energia_reativa_kvarh: Optional[float] = None

    # taxes
    icms_valor: Optional[float] = None
    icms_aliquota: Optional[float] = None
    pis_valor: Optional[float] = None
    pis_aliquota: Optional[float] = None
    cofins_valor: Optional[float] = None
    cofins_aliquota: Optional[float] = None
    contrib_ilum_publica: Optional[float] = None
    issqn_valor: Optional[float] = None
    outras_taxas: Optional[float] = None
    valor_multa: Optional[float] = None
    valor_juros: Optional[float] = None

    # tariff flag
    bandeira_tipo: Optional[str] = None
    bandeira_valor: Optional[float] = None
    tarifa_te_tusd: Optional[float] = None
    tarifa_te_te: Optional[float] = None
    tarifa_demanda_tusd: Optional[float] = None
    tarifa_demanda_te: Optional[float] = None

    # distributed generation / itemized charges
    energia_injetada_kwh: Optional[float] = None
    energia_compensada_kwh: Optional[float] = None
    saldo_creditos_kwh: Optional[float] = None
    valor_tusd: Optional[float] = None
    valor_te: Optional[float] = None
    valor_demanda_tusd: Optional[float] = None
    valor_demanda_te: Optional[float] = None

    # dates and meter
    data_leitura: Optional[date] = None
    data_emissao: Optional[date] = None
    data_vencimento: Optional[date] = None
    leitura_atual: Optional[float] = None
    leitura_anterior: Optional[float] = None
    multiplicador: Optional[float] = None
    dias_faturamento: Optional[int] = None

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_brazilian_notation(cls, value, info):
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        name = info.field_name
        if name in DATE_FIELDS:
            return parse_br_date(value)
        if name == "reference_month":
            return normalize_reference_month(value)
        if name in NUMERIC_FIELDS:
            parsed = parse_brl_number(value)
            if parsed is None:
                raise ValueError(f"not a number: {value!r}")
            if name == "dias_faturamento":
                return int(round(parsed))
            return parsed
        if isinstance(value, (int, float)):
            return str(value)
        return value.strip() if isinstance(value, str) else value


FIELD_ALIASES = {"total_rs": "total_r$", "taxes_rs": "taxes_r$"}
ATTRIBUTE_NAMES = {alias: attr for attr, alias in FIELD_ALIASES.items()}
FIELD_NAMES = tuple(FIELD_ALIASES.get(name, name) for name in InvoiceFields.model_fields)
DATE_FIELDS = frozenset({"data_leitura", "data_emissao", "data_vencimento"})
NUMERIC_FIELDS = frozenset(
    name
    for name, info in InvoiceFields.model_fields.items()
    if info.annotation in (Optional[float], Optional[int])
)


def attribute_name(field: str) -> str:
    return ATTRIBUTE_NAMES.get(field, field)


def coerce_fields(raw: dict[str, Any], *, source: str = "") -> dict[str, Any]:
    """Keep only the values that validate as known invoice fields.

    A single bad value never discards the rest of an engine's output.
    Keys in the result are external field names (``total_r$``).
    """
    accepted: dict[str, Any] = {}
    for key, value in (raw or {}).items():
        name = FIELD_ALIASES.get(key, key)
        if name not in FIELD_NAMES or value is None:
            continue
        try:
            parsed = InvoiceFields.model_validate({name: value})
        except (ValidationError, ValueError):
            logger.debug("Dropping unparseable field source=%s field=%s value=%r", source, name, value)
            continue
        coerced = getattr(parsed, attribute_name(name))
        if coerced is not None:
            accepted[name] = coerced
    return accepted


def weighted_confidence(confidences: dict[str, float]) -> float:
    if not confidences:
        return 0.0
    weighted = 0.0
    weights = 0.0
    for name, confidence in confidences.items():
        weight = CORE_FIELD_WEIGHT if name in CORE_FIELDS else 1.0
        weighted += confidence * weight
        weights += weight
    return round(weighted / weights, 6)


class FieldProvenance(BaseModel):
    model_config = ConfigDict(frozen=True)

    engine: str
    confidence: float = Field(..., ge=0.0, le=1.0)


class CanonicalInvoiceRecord(BaseModel):
    """The normalized, immutable result of extracting one invoice document."""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    document_locator: str
    ingested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    fields: InvoiceFields = Field(default_factory=InvoiceFields)
    provenance: dict[str, FieldProvenance] = Field(default_factory=dict)
    extraction_method: str = ""
    supersedes_id: Optional[uuid.UUID] = None
    corrected_by: Optional[str] = None

    @model_validator(mode="after")
    def _provenance_matches_fields(self):
        populated = set(self.populated_fields())
        missing = populated - set(self.provenance)
        if missing:
            raise ValueError(f"populated fields without provenance: {sorted(missing)}")
        stale = set(self.provenance) - populated
        if stale:
            raise ValueError(f"provenance for empty fields: {sorted(stale)}")
        return self

    @computed_field
    @property
    def confidence(self) -> float:
        """Weighted mean of per-field confidences; core fields count double."""
        return weighted_confidence({name: prov.confidence for name, prov in self.provenance.items()})

    @property
    def unit_id(self) -> Optional[str]:
        return self.fields.uc_code

    def value(self, field: str) -> Any:
        return getattr(self.fields, attribute_name(field), None)

    def populated_fields(self) -> list[str]:
        return [name for name in FIELD_NAMES if self.value(name) is not None]

    def field_values(self) -> dict[str, Any]:
        return {name: self.value(name) for name in self.populated_fields()}

    def corrected(self, updates: dict[str, Any], *, actor_id: str) -> "CanonicalInvoiceRecord":
        """Return a new record carrying human corrections; this record stays untouched.

        A ``None`` value clears the field.
        """
        values = self.field_values()
        provenance = dict(self.provenance)
        clean = coerce_fields({k: v for k, v in updates.items() if v is not None}, source="human_review")
        for key, value in updates.items():
            name = FIELD_ALIASES.get(key, key)
            if name not in FIELD_NAMES:
                raise ValueError(f"unknown invoice field: {key}")
            if value is None:
                values.pop(name, None)
                provenance.pop(name, None)
            elif name not in clean:
                raise ValueError(f"invalid value for {name}: {value!r}")
        for name, value in clean.items():
            values[name] = value
            provenance[name] = FieldProvenance(engine="human_review", confidence=1.0)
        method = self.extraction_method
        if "human_review" not in method.split("+"):
            method = f"{method}+human_review" if method else "human_review"
        return CanonicalInvoiceRecord(
            document_locator=self.document_locator,
            fields=InvoiceFields.model_validate(values),
            provenance=provenance,
            extraction_method=method,
            supersedes_id=self.id,
            corrected_by=actor_id,
        )

    def audit_summary(self) -> dict[str, Any]:
        return {
            "record_id": str(self.id),
            "unit_id": self.unit_id,
            "reference_month": self.fields.reference_month,
            "extraction_method": self.extraction_method,
            "confidence": self.confidence,
            "populated_fields": len(self.provenance),
        }


class ValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    field: Optional[str] = None
    category: FindingCategory
    error_type: str
    severity: Severity
    message: str
    passed: bool = False
    anomaly_score: Optional[float] = None
    suggested_fix: Optional[str] = None
    historical_context: Optional[dict[str, Any]] = None


class ValidationReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    results: tuple[ValidationResult, ...] = ()
    penalties: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_SEVERITY_PENALTIES))
    skipped_rules: tuple[str, ...] = ()

    @computed_field
    @property
    def score(self) -> float:
        """Product of ``1 - penalty(severity)`` over failed results; 1.0 when nothing failed."""
        score = 1.0
        for result in self.findings:
            score *= 1.0 - self.penalties.get(result.severity.value, 0.0)
        return round(score, 6)

    @property
    def findings(self) -> list[ValidationResult]:
        return [r for r in self.results if not r.passed]

    @property
    def highest_severity(self) -> Optional[Severity]:
        findings = self.findings
        if not findings:
            return None
        return max((f.severity for f in findings), key=lambda s: s.rank)

    def has_severity(self, severity: Severity) -> bool:
        return any(f.severity == severity for f in self.findings)
