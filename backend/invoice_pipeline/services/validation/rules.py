"""Invoice validation rules.

Each rule takes the record, its historical context and the validation settings
and returns the results it produced. An empty list means the rule did not
apply to this record (for example, not enough data to check).
"""

from __future__ import annotations

import re
from datetime import date
from typing import Callable, Optional

from invoice_pipeline.core.config import ValidationSettings
from invoice_pipeline.schemas.invoice import (
    TOTAL_COMPONENT_FIELDS,
    CanonicalInvoiceRecord,
    FindingCategory,
    Severity,
    ValidationResult,
)

from .history import HistoricalContext, z_score

Rule = Callable[[CanonicalInvoiceRecord, HistoricalContext, ValidationSettings], list[ValidationResult]]

# R$/kWh surcharge per tariff flag
BANDEIRA_RATES = {
    "Verde": 0.0,
    "Amarela": 0.01874,
    "Vermelha Patamar 1": 0.03971,
    "Vermelha Patamar 2": 0.09492,
    "Escassez Hídrica": 0.142,
}

# declared tax value must match total * rate / 100 within this share of the total
TAX_TOLERANCES = {
    "icms": 0.01,
    "pis": 0.005,
    "cofins": 0.005,
}

METER_TOLERANCE = 0.02
ICMS_MAX_RATE = 35.0

_REFERENCE_MONTH = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")

NON_NEGATIVE_FIELDS = (
    "energy_kwh",
    "demand_kw",
    "total_r$",
    "taxes_r$",
    "consumo_fp_te_kwh",
    "consumo_p_te_kwh",
    "demanda_tusd_kw",
    "demanda_te_kw",
    "demanda_contratada_kw",
    "energia_reativa_kvarh",
    "energia_injetada_kwh",
    "energia_compensada_kwh",
    "saldo_creditos_kwh",
    "tarifa_te_tusd",
    "tarifa_te_te",
    "tarifa_demanda_tusd",
    "tarifa_demanda_te",
    "leitura_atual",
    "leitura_anterior",
) + TOTAL_COMPONENT_FIELDS

PERCENT_FIELDS = ("icms_aliquota", "pis_aliquota", "cofins_aliquota")


def _passed(rule_id: str, category: FindingCategory, message: str, field: Optional[str] = None, **extra) -> ValidationResult:
    return ValidationResult(
        rule_id=rule_id,
        field=field,
        category=category,
        error_type="none",
        severity=Severity.INFO,
        message=message,
        passed=True,
        **extra,
    )


def _money(value: float) -> str:
    return f"R$ {value:,.2f}"


def check_mandatory_fields(record, history, settings) -> list[ValidationResult]:
    results = []
    for name in settings.required_fields:
        if record.value(name) is None:
            results.append(
                ValidationResult(
                    rule_id="mandatory-fields",
                    field=name,
                    category=FindingCategory.MISSING_FIELD,
                    error_type="missing_required_field",
                    severity=Severity.ERROR,
                    message=f"Required field {name} was not extracted",
                    suggested_fix=f"Enter {name} from the invoice",
                )
            )
        else:
            results.append(_passed("mandatory-fields", FindingCategory.MISSING_FIELD, f"{name} present", field=name))
    return results


def _range_failure(field: str, message: str, error_type: str = "value_out_of_range", fix: Optional[str] = None):
    return ValidationResult(
        rule_id="value-ranges",
        field=field,
        category=FindingCategory.OUT_OF_RANGE,
        error_type=error_type,
        severity=Severity.ERROR,
        message=message,
        suggested_fix=fix,
    )


def check_value_ranges(record, history, settings) -> list[ValidationResult]:
    failures = []
    checked = 0

    for name in NON_NEGATIVE_FIELDS:
        value = record.value(name)
        if value is None:
            continue
        checked += 1
        if value < 0:
            failures.append(_range_failure(name, f"{name} must not be negative (got {value})"))

    for name in PERCENT_FIELDS:
        value = record.value(name)
        if value is None:
            continue
        checked += 1
        upper = ICMS_MAX_RATE if name == "icms_aliquota" else 100.0
        if not 0.0 <= value <= upper:
            failures.append(_range_failure(name, f"{name} {value}% is outside [0, {upper:g}]"))

    icms_rate = record.value("icms_aliquota")
    if icms_rate is not None and settings.icms_rate_schedule and 0.0 <= icms_rate <= ICMS_MAX_RATE:
        if not any(abs(icms_rate - allowed) <= 0.01 for allowed in settings.icms_rate_schedule):
            failures.append(
                _range_failure(
                    "icms_aliquota",
                    f"ICMS rate {icms_rate}% is not in the configured schedule {list(settings.icms_rate_schedule)}",
                    error_type="icms_rate_not_in_schedule",
                )
            )

    power_factor = record.value("fator_potencia")
    if power_factor is not None:
        checked += 1
        if not 0.0 <= power_factor <= 1.0:
            failures.append(_range_failure("fator_potencia", f"fator_potencia {power_factor} is outside [0, 1]"))

    days = record.value("dias_faturamento")
    if days is not None:
        checked += 1
        if not 1 <= days <= 62:
            failures.append(_range_failure("dias_faturamento", f"dias_faturamento {days} is outside [1, 62]"))

    multiplier = record.value("multiplicador")
    if multiplier is not None:
        checked += 1
        if multiplier <= 0:
            failures.append(_range_failure("multiplicador", f"multiplicador must be positive (got {multiplier})"))

    month = record.value("reference_month")
    if month is not None:
        checked += 1
        if not _REFERENCE_MONTH.match(month):
            failures.append(
                _range_failure(
                    "reference_month",
                    f"reference_month {month!r} is not in YYYY-MM format",
                    error_type="invalid_format",
                    fix="Use the billing month as YYYY-MM",
                )
            )

    if failures:
        return failures
    if not checked:
        return []
    return [_passed("value-ranges", FindingCategory.OUT_OF_RANGE, f"{checked} values within range")]


def check_date_consistency(record, history, settings) -> list[ValidationResult]:
    ordered = [
        ("data_leitura", record.value("data_leitura")),
        ("data_emissao", record.value("data_emissao")),
        ("data_vencimento", record.value("data_vencimento")),
    ]
    present = [(name, value) for name, value in ordered if isinstance(value, date)]
    if len(present) < 2:
        return []
    results = []
    for (earlier_name, earlier), (later_name, later) in zip(present, present[1:]):
        if earlier > later:
            results.append(
                ValidationResult(
                    rule_id="date-consistency",
                    field=later_name,
                    category=FindingCategory.OUT_OF_RANGE,
                    error_type="date_inconsistency",
                    severity=Severity.ERROR,
                    message=f"{earlier_name} ({earlier.isoformat()}) is after {later_name} ({later.isoformat()})",
                )
            )
    if results:
        return results
    return [_passed("date-consistency", FindingCategory.OUT_OF_RANGE, "invoice dates in order")]


def check_arithmetic(record, history, settings) -> list[ValidationResult]:
    total = record.value("total_r$")
    components = {name: record.value(name) for name in TOTAL_COMPONENT_FIELDS if record.value(name) is not None}
    if total is None or not components:
        return []
    computed = round(sum(components.values()), 2)
    tolerance = max(settings.arithmetic_abs_tolerance, settings.arithmetic_pct_tolerance * abs(total))
    difference = round(total - computed, 2)
    context = {"declared_total": total, "computed_total": computed, "tolerance": round(tolerance, 2)}
    if abs(difference) <= tolerance:
        return [
            _passed(
                "arithmetic-validation",
                FindingCategory.CROSS_FIELD_ARITHMETIC,
                f"components {_money(computed)} match total {_money(total)}",
                field="total_r$",
                historical_context=context,
            )
        ]
    return [
        ValidationResult(
            rule_id="arithmetic-validation",
            field="total_r$",
            category=FindingCategory.CROSS_FIELD_ARITHMETIC,
            error_type="arithmetic_inconsistency",
            severity=Severity.ERROR,
            message=(
                f"Declared total {_money(total)} differs from sum of components {_money(computed)} "
                f"by {_money(abs(difference))} (tolerance {_money(tolerance)})"
            ),
            suggested_fix="Check itemized charges and the total amount",
            historical_context=context,
        )
    ]


def check_meter_readings(record, history, settings) -> list[ValidationResult]:
    current = record.value("leitura_atual")
    previous = record.value("leitura_anterior")
    energy = record.value("energy_kwh")
    if current is None or previous is None or energy is None:
        return []
    if current < previous:
        return [
            ValidationResult(
                rule_id="meter-reading-consistency",
                field="leitura_atual",
                category=FindingCategory.OUT_OF_RANGE,
                error_type="meter_reading_regression",
                severity=Severity.WARNING,
                message=f"Current reading {current} is below previous reading {previous} (meter replaced or rolled over?)",
            )
        ]
    multiplier = record.value("multiplicador") or 1.0
    expected = (current - previous) * multiplier
    tolerance = max(1.0, METER_TOLERANCE * expected)
    if abs(expected - energy) <= tolerance:
        return [_passed("meter-reading-consistency", FindingCategory.CROSS_FIELD_ARITHMETIC, "meter readings match consumption", field="energy_kwh")]
    return [
        ValidationResult(
            rule_id="meter-reading-consistency",
            field="energy_kwh",
            category=FindingCategory.CROSS_FIELD_ARITHMETIC,
            error_type="meter_reading_mismatch",
            severity=Severity.WARNING,
            message=f"Readings imply {expected:.1f} kWh but energy_kwh is {energy}",
            suggested_fix="Confirm readings and multiplier",
        )
    ]


def check_tributary(record, history, settings) -> list[ValidationResult]:
    total = record.value("total_r$")
    if total is None:
        return []
    results = []
    for tax, share in TAX_TOLERANCES.items():
        value = record.value(f"{tax}_valor")
        rate = record.value(f"{tax}_aliquota")
        if value is None or rate is None:
            continue
        expected = round(total * rate / 100.0, 2)
        if abs(expected - value) <= share * abs(total):
            results.append(
                _passed("tributary-validation", FindingCategory.CROSS_FIELD_ARITHMETIC, f"{tax.upper()} consistent", field=f"{tax}_valor")
            )
            continue
        results.append(
            ValidationResult(
                rule_id="tributary-validation",
                field=f"{tax}_valor",
                category=FindingCategory.CROSS_FIELD_ARITHMETIC,
                error_type="tax_inconsistency",
                severity=Severity.WARNING,
                message=f"{tax.upper()} {_money(value)} does not match {rate}% of total ({_money(expected)})",
            )
        )
    return results


def check_bandeira(record, history, settings) -> list[ValidationResult]:
    flag = record.value("bandeira_tipo")
    energy = record.value("energy_kwh")
    charged = record.value("bandeira_valor")
    if flag not in BANDEIRA_RATES or energy is None or charged is None:
        return []
    expected = round(energy * BANDEIRA_RATES[flag], 2)
    tolerance = max(0.10 * expected, 1.0)
    if abs(charged - expected) <= tolerance:
        return [_passed("bandeira-validation", FindingCategory.CROSS_FIELD_ARITHMETIC, f"{flag} surcharge consistent", field="bandeira_valor")]
    return [
        ValidationResult(
            rule_id="bandeira-validation",
            field="bandeira_valor",
            category=FindingCategory.CROSS_FIELD_ARITHMETIC,
            error_type="tariff_flag_inconsistency",
            severity=Severity.WARNING,
            message=f"{flag} surcharge {_money(charged)} differs from expected {_money(expected)} for {energy} kWh",
        )
    ]


def _anomaly_rule(rule_id: str, field: str, label: str, precision: int = 2) -> Rule:
    def check(record, history, settings) -> list[ValidationResult]:
        if field == "cost_per_kwh":
            total = record.value("total_r$")
            energy = record.value("energy_kwh")
            value = total / energy if total is not None and energy else None
        else:
            value = record.value(field)
        if value is None:
            return []
        stats = z_score(float(value), history.values(field), min_samples=settings.min_historical_samples)
        if stats is None:
            return []
        z = stats.z
        context = {
            "mean": round(stats.mean, 4),
            "stdev": round(stats.stdev, 4),
            "samples": stats.samples,
            "z_score": round(z, 4),
        }
        if abs(z) > settings.anomaly_critical_z:
            severity = Severity.CRITICAL
        elif abs(z) > settings.anomaly_warn_z:
            severity = Severity.WARNING
        else:
            return [
                _passed(
                    rule_id,
                    FindingCategory.HISTORICAL_ANOMALY,
                    f"{label} within historical range (z-score {z:.2f})",
                    field=field,
                    anomaly_score=round(z, 4),
                    historical_context=context,
                )
            ]
        direction = "above" if z > 0 else "below"
        return [
            ValidationResult(
                rule_id=rule_id,
                field=field,
                category=FindingCategory.HISTORICAL_ANOMALY,
                error_type="historical_anomaly",
                severity=severity,
                message=(
                    f"{label} {value:.{precision}f} is {direction} the unit's history "
                    f"(mean {stats.mean:.{precision}f}, {stats.samples} samples, z-score {z:.2f})"
                ),
                anomaly_score=round(z, 4),
                suggested_fix=f"Confirm {label} against the printed invoice",
                historical_context=context,
            )
        ]

    check.__name__ = f"check_{field.replace('$', 's')}_anomaly"
    return check


def check_extraction_confidence(record, history, settings) -> list[ValidationResult]:
    confidence = record.confidence
    if confidence >= settings.confidence_threshold:
        return [
            _passed(
                "extraction-confidence",
                FindingCategory.LOW_CONFIDENCE,
                f"extraction confidence {confidence:.2f}",
            )
        ]
    return [
        ValidationResult(
            rule_id="extraction-confidence",
            category=FindingCategory.LOW_CONFIDENCE,
            error_type="low_extraction_confidence",
            severity=Severity.WARNING,
            message=f"Extraction confidence {confidence:.2f} is below {settings.confidence_threshold:.2f}",
            suggested_fix="Review the extracted values against the document",
        )
    ]


# Execution order is the order of this mapping.
RULES: dict[str, Rule] = {
    "mandatory-fields": check_mandatory_fields,
    "value-ranges": check_value_ranges,
    "date-consistency": check_date_consistency,
    "arithmetic-validation": check_arithmetic,
    "meter-reading-consistency": check_meter_readings,
    "tributary-validation": check_tributary,
    "bandeira-validation": check_bandeira,
    "energy-consumption-anomaly": _anomaly_rule("energy-consumption-anomaly", "energy_kwh", "energy_kwh"),
    "cost-per-kwh-anomaly": _anomaly_rule("cost-per-kwh-anomaly", "cost_per_kwh", "cost per kWh", precision=4),
    "total-amount-anomaly": _anomaly_rule("total-amount-anomaly", "total_r$", "total_r$"),
    "extraction-confidence": check_extraction_confidence,
}
