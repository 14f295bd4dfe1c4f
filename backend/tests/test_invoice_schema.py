"""
Unit tests for the canonical invoice record.

Covers:
  - Brazilian number/date/month notation coercion on InvoiceFields
  - coerce_fields keeps good values and drops bad ones per field (NaN and inf included)
  - provenance must cover exactly the populated fields
  - weighted record confidence (core fields count double)
  - corrected(): new record, supersedes link, human provenance, clearing fields
  - ValidationReport helpers; score is derived from the failed results
"""

from __future__ import annotations

from datetime import date

import pytest
from pydantic import ValidationError


def _record(values: dict, confidence: float = 0.9, engine: str = "openai"):
    from invoice_pipeline.schemas.invoice import CanonicalInvoiceRecord, FieldProvenance, InvoiceFields

    fields = InvoiceFields.model_validate(values)
    return CanonicalInvoiceRecord(
        document_locator="invoices/2024/03/doc.png",
        fields=fields,
        provenance={name: FieldProvenance(engine=engine, confidence=confidence) for name in values},
        extraction_method=engine,
    )


# ── InvoiceFields ────────────────────────────────────────────────────


def test_fields_accept_brazilian_notation():
    from invoice_pipeline.schemas.invoice import InvoiceFields

    fields = InvoiceFields.model_validate(
        {
            "total_r$": "R$ 1.234,56",
            "energy_kwh": "1.250 kWh",
            "data_vencimento": "20/03/2024",
            "reference_month": "MAR/2024",
            "dias_faturamento": "30,0",
            "uc_code": 3004589712,
        }
    )
    assert fields.total_rs == pytest.approx(1234.56)
    assert fields.energy_kwh == pytest.approx(1250.0)
    assert fields.data_vencimento == date(2024, 3, 20)
    assert fields.reference_month == "2024-03"
    assert fields.dias_faturamento == 30
    assert fields.uc_code == "3004589712"


def test_fields_reject_garbage_numbers():
    from invoice_pipeline.schemas.invoice import InvoiceFields

    with pytest.raises(ValidationError):
        InvoiceFields.model_validate({"energy_kwh": "about a thousand"})


def test_coerce_fields_drops_only_invalid_values():
    from invoice_pipeline.schemas.invoice import coerce_fields

    result = coerce_fields(
        {
            "energy_kwh": "1250,5",
            "total_rs": "890,45",
            "data_emissao": "not a date",
            "favourite_colour": "blue",
            "demand_kw": None,
        }
    )
    assert result == {"energy_kwh": 1250.5, "total_r$": 890.45}


def test_non_finite_numbers_are_dropped():
    from invoice_pipeline.schemas.invoice import InvoiceFields, coerce_fields

    result = coerce_fields({"energy_kwh": "NaN", "total_rs": "inf", "demand_kw": float("nan"), "icms_valor": "160,28"})
    assert result == {"icms_valor": 160.28}

    with pytest.raises(ValidationError):
        InvoiceFields.model_validate({"energy_kwh": float("inf")})


def test_blank_strings_are_missing_values():
    from invoice_pipeline.schemas.invoice import coerce_fields

    assert coerce_fields({"uc_code": "   ", "distribuidora": ""}) == {}


# ── CanonicalInvoiceRecord ───────────────────────────────────────────


def test_record_requires_provenance_for_every_populated_field():
    from invoice_pipeline.schemas.invoice import CanonicalInvoiceRecord, InvoiceFields

    with pytest.raises(ValidationError):
        CanonicalInvoiceRecord(
            document_locator="invoices/x.png",
            fields=InvoiceFields.model_validate({"energy_kwh": 100}),
            provenance={},
        )


def test_record_rejects_provenance_for_empty_fields():
    from invoice_pipeline.schemas.invoice import CanonicalInvoiceRecord, FieldProvenance

    with pytest.raises(ValidationError):
        CanonicalInvoiceRecord(
            document_locator="invoices/x.png",
            provenance={"energy_kwh": FieldProvenance(engine="openai", confidence=0.9)},
        )


def test_record_is_immutable():
    record = _record({"energy_kwh": 100})
    with pytest.raises(ValidationError):
        record.extraction_method = "other"


def test_confidence_weights_core_fields_double():
    from invoice_pipeline.schemas.invoice import (
        CanonicalInvoiceRecord,
        FieldProvenance,
        InvoiceFields,
    )

    record = CanonicalInvoiceRecord(
        document_locator="invoices/x.png",
        fields=InvoiceFields.model_validate({"energy_kwh": 100, "demand_kw": 20}),
        provenance={
            "energy_kwh": FieldProvenance(engine="a", confidence=0.9),
            "demand_kw": FieldProvenance(engine="a", confidence=0.6),
        },
    )
    # (0.9 * 2 + 0.6 * 1) / 3
    assert record.confidence == pytest.approx(0.8)


def test_empty_record_has_zero_confidence():
    from invoice_pipeline.schemas.invoice import CanonicalInvoiceRecord

    record = CanonicalInvoiceRecord(document_locator="invoices/x.png")
    assert record.confidence == 0.0
    assert record.populated_fields() == []


def test_value_accepts_external_field_names():
    record = _record({"total_r$": 890.45, "uc_code": "3004589712"})
    assert record.value("total_r$") == pytest.approx(890.45)
    assert record.unit_id == "3004589712"
    assert set(record.field_values()) == {"total_r$", "uc_code"}


def test_corrected_returns_new_superseding_record():
    original = _record({"energy_kwh": 1250.5, "total_r$": 890.45, "demand_kw": 12})
    corrected = original.corrected({"energy_kwh": "1.205,5", "demand_kw": None}, actor_id="reviewer-7")

    assert corrected.id != original.id
    assert corrected.supersedes_id == original.id
    assert corrected.corrected_by == "reviewer-7"
    assert corrected.value("energy_kwh") == pytest.approx(1205.5)
    assert corrected.value("demand_kw") is None
    assert corrected.provenance["energy_kwh"].engine == "human_review"
    assert corrected.provenance["energy_kwh"].confidence == 1.0
    assert corrected.provenance["total_r$"].engine == "openai"
    assert corrected.extraction_method == "openai+human_review"
    # the original is untouched
    assert original.value("energy_kwh") == pytest.approx(1250.5)
    assert original.value("demand_kw") == pytest.approx(12)


def test_corrected_rejects_unknown_fields_and_bad_values():
    original = _record({"energy_kwh": 1250.5})
    with pytest.raises(ValueError):
        original.corrected({"colour": "blue"}, actor_id="r")
    with pytest.raises(ValueError):
        original.corrected({"energy_kwh": "lots"}, actor_id="r")


def test_record_round_trips_through_json():
    from invoice_pipeline.schemas.invoice import CanonicalInvoiceRecord

    record = _record({"energy_kwh": 1250.5, "data_leitura": "01/03/2024", "total_r$": 890.45})
    restored = CanonicalInvoiceRecord.model_validate_json(record.model_dump_json(by_alias=True))
    assert restored.field_values() == record.field_values()
    assert restored.id == record.id


# ── ValidationReport ─────────────────────────────────────────────────


def test_report_highest_severity_ignores_passed_results():
    from invoice_pipeline.schemas.invoice import (
        FindingCategory,
        Severity,
        ValidationReport,
        ValidationResult,
    )

    report = ValidationReport(
        results=(
            ValidationResult(
                rule_id="value-ranges",
                category=FindingCategory.OUT_OF_RANGE,
                error_type="value_out_of_range",
                severity=Severity.WARNING,
                message="w",
            ),
            ValidationResult(
                rule_id="mandatory-fields",
                category=FindingCategory.MISSING_FIELD,
                error_type="none",
                severity=Severity.INFO,
                message="ok",
                passed=True,
            ),
        )
    )
    assert report.highest_severity == Severity.WARNING
    assert len(report.findings) == 1
    assert not report.has_severity(Severity.CRITICAL)
    assert ValidationReport().highest_severity is None


def test_report_score_follows_results():
    from invoice_pipeline.schemas.invoice import FindingCategory, Severity, ValidationReport, ValidationResult

    critical = ValidationResult(
        rule_id="arithmetic-validation",
        category=FindingCategory.CROSS_FIELD_ARITHMETIC,
        error_type="total_mismatch",
        severity=Severity.CRITICAL,
        message="c",
    )
    warning = critical.model_copy(update={"severity": Severity.WARNING})

    assert ValidationReport().score == 1.0
    assert ValidationReport(results=(critical,)).score == pytest.approx(0.4)
    assert ValidationReport(results=(critical, warning)).score == pytest.approx(0.36)
    assert ValidationReport(results=(warning,), penalties={"warning": 0.5}).score == pytest.approx(0.5)
    assert ValidationReport(results=(critical,)).model_dump()["score"] == pytest.approx(0.4)
