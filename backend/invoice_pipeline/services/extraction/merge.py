"""Builds one canonical record out of one or more engine outputs."""

from __future__ import annotations

from typing import Any

from invoice_pipeline.core.config import EngineProfile
from invoice_pipeline.schemas.invoice import CanonicalInvoiceRecord, FieldProvenance, InvoiceFields

from .engines.base import EngineOutput


class RecordDraft:
    """Mutable accumulator; ``freeze()`` produces the immutable record.

    A populated field is only replaced by a strictly more confident value, or
    by an equally confident one from an engine with higher declared accuracy.
    """

    def __init__(self, document_locator: str, profiles: dict[str, EngineProfile] | None = None) -> None:
        self.document_locator = document_locator
        self._profiles = profiles or {}
        self._values: dict[str, Any] = {}
        self._provenance: dict[str, FieldProvenance] = {}
        self._contributors: list[str] = []

    def _accuracy(self, engine: str) -> float:
        profile = self._profiles.get(engine)
        return profile.avg_accuracy if profile else 0.0

    def _takes_precedence(self, engine: str, confidence: float, current: FieldProvenance) -> bool:
        if confidence > current.confidence:
            return True
        if confidence == current.confidence:
            return self._accuracy(engine) > self._accuracy(current.engine)
        return False

    def absorb(self, output: EngineOutput, *, fill_only: bool = False) -> list[str]:
        """Merge *output* into the draft and return the fields it contributed."""
        taken: list[str] = []
        for name, value in output.fields.items():
            if value is None:
                continue
            confidence = float(output.field_confidence.get(name, 0.0))
            current = self._provenance.get(name)
            if current is not None and (fill_only or not self._takes_precedence(output.engine, confidence, current)):
                continue
            self._values[name] = value
            self._provenance[name] = FieldProvenance(engine=output.engine, confidence=confidence)
            taken.append(name)
        if (taken or not self._contributors) and output.engine not in self._contributors:
            self._contributors.append(output.engine)
        return taken

    @property
    def extraction_method(self) -> str:
        return "+".join(self._contributors)

    def freeze(self) -> CanonicalInvoiceRecord:
        return CanonicalInvoiceRecord(
            document_locator=self.document_locator,
            fields=InvoiceFields.model_validate(self._values),
            provenance=dict(self._provenance),
            extraction_method=self.extraction_method,
        )
