"""
End-to-end tests for the pipeline runner (mock engines, in-memory storage, SQLite).

Covers:
  - clean invoice → approved → closed, persisted with audit trail, notified, fed to learning
  - arithmetic error → review_required; reviewer approves with a correction that supersedes the record
  - review of a closed run is an invalid transition
  - human labels carry the run's own findings; corrections are re-validated against prior history
  - non-finite engine values never reach an approved record
  - rejected credentials → extraction_failed with operator flag, no fallback
  - idempotency key: second execution returns the first stored run, nothing re-announced
  - historical store outage → HISTORY_UNAVAILABLE, run still completes
  - notification failure never fails the run
  - cancellation persists nothing
"""

from __future__ import annotations

import asyncio
import uuid

import pytest


class _RecordingSink:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple] = []

    def notify(self, run_id, status, summary) -> None:
        if self.fail:
            raise ConnectionError("outbox unavailable")
        self.sent.append((run_id, status, summary))


def _config():
    from invoice_pipeline.core.config import ABTestConfig, EngineProfile, OrchestrationSettings, PipelineConfig

    return PipelineConfig(
        engines=(
            EngineProfile(name="openai", priority=1, avg_accuracy=0.985, cost_per_call=0.015),
            EngineProfile(name="google_vision", priority=2, avg_accuracy=0.975, cost_per_call=0.005),
        ),
        ab_test=ABTestConfig(enabled=False),
        orchestration=OrchestrationSettings(
            engine_timeout_seconds=0.2,
            max_retries=0,
            retry_backoff_seconds=0.0,
            validation_timeout_seconds=2.0,
            run_budget_margin_seconds=1.0,
        ),
    )


def _runner(record_store, object_store, session_factory, engines: dict, *, notifier=None):
    from invoice_pipeline.services.extraction.orchestrator import EngineOrchestrator
    from invoice_pipeline.services.learning_feed import LearningFeed
    from invoice_pipeline.services.pipeline_runs import PipelineRunner

    config = _config()
    orchestrator = EngineOrchestrator(object_store, engine_factory=lambda name: engines[name])
    feed = LearningFeed(session_factory)
    runner = PipelineRunner(
        record_store,
        orchestrator,
        notifier=notifier,
        learning_feed=feed,
        config_provider=lambda: config,
    )
    return runner, feed


def _samples(session_factory):
    from sqlalchemy import select

    from invoice_pipeline.models.invoice import LearningSample

    db = session_factory()
    try:
        return db.execute(select(LearningSample)).scalars().all()
    finally:
        db.close()


def _fields(**changes):
    from invoice_pipeline.services.extraction.engines.mock import SAMPLE_FIELDS

    return {**SAMPLE_FIELDS, **changes}


# ── automated path ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_clean_invoice_is_approved_and_closed(record_store, object_store, session_factory, document_locator):
    from invoice_pipeline.services.extraction.engines.mock import MockEngine

    sink = _RecordingSink()
    engines = {"openai": MockEngine("openai"), "google_vision": MockEngine("google_vision")}
    runner, feed = _runner(record_store, object_store, session_factory, engines, notifier=sink)

    run = await runner.execute(document_locator, actor_id="uploader-1")
    await feed.drain()

    assert run.status.value == "closed"
    assert run.disposition == "approved"
    assert run.stored_run_id == run.id
    assert engines["google_vision"].calls == 0

    view = record_store.get_run(run.id)
    assert (view.status, view.disposition) == ("closed", "approved")
    assert view.validation_score == 1.0
    assert view.record["extraction_method"] == "openai"
    assert view.engine_attempts[0]["engine"] == "openai"

    actions = [e["action"] for e in record_store.list_audit(run.id)]
    assert actions[0] == "RUN_RECEIVED"
    assert "ENGINE_ATTEMPT" in actions
    assert "PREDICTION" in actions
    assert actions[-1] == "STATUS_CHANGE"

    assert [(r, s) for r, s, _ in sink.sent] == [(run.id, "approved")]
    samples = _samples(session_factory)
    assert [(s.decision, s.source) for s in samples] == [("approved", "automated")]
    # the approved record is now history for the unit
    assert record_store.get_historical("3004589712", "energy_kwh", 12) == [1250.5]


@pytest.mark.asyncio
async def test_arithmetic_error_then_review_with_correction(record_store, object_store, session_factory, document_locator):
    from invoice_pipeline.services.extraction.engines.mock import MockEngine

    sink = _RecordingSink()
    engines = {"openai": MockEngine("openai", fields=_fields(valor_tusd=239.7))}
    runner, feed = _runner(record_store, object_store, session_factory, engines, notifier=sink)

    run = await runner.execute(document_locator)
    await feed.drain()

    assert run.status.value == "review_required"
    assert any("arithmetic-validation" in reason for reason in run.decision.reasons)
    view = record_store.get_run(run.id)
    assert view.status == "review_required"
    assert any(f["rule_id"] == "arithmetic-validation" and not f["passed"] for f in view.findings)
    # nothing labelled yet, nothing in history
    assert _samples(session_factory) == []
    assert record_store.get_historical("3004589712", "energy_kwh", 12) == []

    reviewed = await runner.apply_review_decision(
        run.id,
        decision="approved",
        actor_id="reviewer-7",
        corrections={"valor_tusd": 380.1},
        reason="TUSD misread on scan",
    )
    await feed.drain()

    assert (reviewed.status, reviewed.disposition) == ("closed", "approved")
    assert reviewed.corrected_record_id is not None
    assert reviewed.record["supersedes_id"] == str(view.record_id)
    assert reviewed.record["fields"]["valor_tusd"] == pytest.approx(380.1)
    assert record_store.load_record(view.record_id).value("valor_tusd") == pytest.approx(239.7)

    audit = record_store.list_audit(run.id)
    tail = [(e["action"], e["actor_type"]) for e in audit[-3:]]
    assert tail == [("REVIEW_DECISION", "REVIEWER"), ("RECORD_CORRECTED", "REVIEWER"), ("STATUS_CHANGE", "REVIEWER")]
    assert audit[-2]["old_value"] == {"valor_tusd": 239.7}
    assert audit[-3]["metadata"]["reason"] == "TUSD misread on scan"

    assert [s for _, s, _ in sink.sent] == ["review_required", "approved"]
    samples = _samples(session_factory)
    assert [(s.decision, s.source, s.record_id) for s in samples] == [
        ("approved", "human", reviewed.corrected_record_id)
    ]
    assert record_store.get_historical("3004589712", "energy_kwh", 12) == [1250.5]


@pytest.mark.asyncio
async def test_review_of_closed_run_is_refused(record_store, object_store, session_factory, document_locator):
    from invoice_pipeline.errors import InvalidTransitionError
    from invoice_pipeline.services.extraction.engines.mock import MockEngine

    runner, feed = _runner(record_store, object_store, session_factory, {"openai": MockEngine("openai")})
    run = await runner.execute(document_locator)
    await feed.drain()

    with pytest.raises(InvalidTransitionError):
        await runner.apply_review_decision(run.id, decision="rejected", actor_id="reviewer-7")
    with pytest.raises(ValueError):
        await runner.apply_review_decision(run.id, decision="maybe", actor_id="reviewer-7")

    assert record_store.get_run(run.id).disposition == "approved"


@pytest.mark.asyncio
async def test_review_of_unknown_run(record_store, object_store, session_factory):
    from invoice_pipeline.errors import RunNotFoundError

    runner, _ = _runner(record_store, object_store, session_factory, {})

    with pytest.raises(RunNotFoundError):
        await runner.apply_review_decision(uuid.uuid4(), decision="approved", actor_id="reviewer-7")


# ── learning evidence after review ───────────────────────────────────


def _seed_history(record_store):
    from invoice_pipeline.schemas.invoice import CanonicalInvoiceRecord, FieldProvenance, InvoiceFields

    months = ("2023-10", "2023-11", "2023-12", "2024-01", "2024-02")
    energies = (1050.0, 1075.0, 1100.0, 1125.0, 1150.0)
    totals = (714.0, 752.5, 781.0, 810.0, 851.0)
    for month, energy, total in zip(months, energies, totals):
        values = {"uc_code": "3004589712", "reference_month": month, "energy_kwh": energy, "total_r$": total}
        record = CanonicalInvoiceRecord(
            document_locator=f"invoices/3004589712/{month}.png",
            fields=InvoiceFields.model_validate(values),
            provenance={name: FieldProvenance(engine="openai", confidence=0.95) for name in values},
            extraction_method="openai",
        )
        record_store.save(record, disposition="approved")


def _failed_rules(results):
    return sorted(r["rule_id"] for r in results if not r["passed"])


@pytest.mark.asyncio
async def test_human_label_keeps_the_findings_the_reviewer_saw(
    record_store, object_store, session_factory, document_locator
):
    from invoice_pipeline.services.extraction.engines.mock import MockEngine

    _seed_history(record_store)
    engines = {"openai": MockEngine("openai", fields=_fields(valor_tusd=239.7))}
    runner, feed = _runner(record_store, object_store, session_factory, engines)

    run = await runner.execute(document_locator)
    await feed.drain()
    view = record_store.get_run(run.id)
    assert view.status == "review_required"
    assert _failed_rules(view.findings) == ["arithmetic-validation", "energy-consumption-anomaly"]

    await runner.apply_review_decision(run.id, decision="rejected", actor_id="reviewer-7")
    await feed.drain()

    (sample,) = _samples(session_factory)
    assert (sample.decision, sample.source) == ("rejected", "human")
    assert _failed_rules(sample.results) == _failed_rules(view.findings)
    anomaly = next(r for r in sample.results if r["rule_id"] == "energy-consumption-anomaly")
    assert anomaly["historical_context"]["samples"] == 5


@pytest.mark.asyncio
async def test_corrected_record_is_revalidated_against_history(
    record_store, object_store, session_factory, document_locator
):
    from invoice_pipeline.services.extraction.engines.mock import MockEngine

    _seed_history(record_store)
    engines = {"openai": MockEngine("openai", fields=_fields(valor_tusd=239.7))}
    runner, feed = _runner(record_store, object_store, session_factory, engines)

    run = await runner.execute(document_locator)
    await runner.apply_review_decision(
        run.id, decision="approved", actor_id="reviewer-7", corrections={"valor_tusd": 380.1}
    )
    await feed.drain()

    (sample,) = _samples(session_factory)
    assert (sample.decision, sample.source) == ("approved", "human")
    # arithmetic is fixed; the consumption spike is still measured against the five prior invoices
    assert _failed_rules(sample.results) == ["energy-consumption-anomaly"]


@pytest.mark.asyncio
async def test_non_finite_engine_value_is_not_approved(record_store, object_store, session_factory, document_locator):
    from invoice_pipeline.services.extraction.engines.mock import MockEngine

    engines = {"openai": MockEngine("openai", fields=_fields(**{"energy_kwh": "NaN", "total_r$": "inf"}))}
    runner, feed = _runner(record_store, object_store, session_factory, engines)

    run = await runner.execute(document_locator)
    await feed.drain()

    assert run.status.value == "review_required"
    assert run.record.value("energy_kwh") is None
    assert run.record.value("total_r$") is None
    missing = {f.field for f in run.report.findings if f.rule_id == "mandatory-fields"}
    assert missing == {"energy_kwh", "total_r$"}
    assert record_store.get_historical("3004589712", "energy_kwh", 12) == []


# ── failures ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_rejected_credentials_fail_extraction(record_store, object_store, session_factory, document_locator):
    from invoice_pipeline.errors import PermanentEngineError
    from invoice_pipeline.services.extraction.engines.mock import MockEngine
    from invoice_pipeline.utils.alerting import alert_tracker

    sink = _RecordingSink()
    engines = {
        "openai": MockEngine("openai", steps=[PermanentEngineError("invalid api key", kind="unauthorized")]),
        "google_vision": MockEngine("google_vision"),
    }
    runner, feed = _runner(record_store, object_store, session_factory, engines, notifier=sink)

    run = await runner.execute(document_locator)
    await feed.drain()

    assert run.status.value == "extraction_failed"
    assert run.operator_action_required
    assert engines["google_vision"].calls == 0
    assert "ENGINE_CREDENTIALS_REJECTED" in run.audit_actions
    assert "EXTRACTION_FAILED" in run.audit_actions

    view = record_store.get_run(run.id)
    assert (view.status, view.failure_kind, view.failure_engine) == ("extraction_failed", "unauthorized", "openai")
    assert view.operator_action_required
    assert view.record is None
    assert [s for _, s, _ in sink.sent] == ["extraction_failed"]
    assert _samples(session_factory) == []
    assert alert_tracker.count("ENGINE_CREDENTIALS_REJECTED") == 1


@pytest.mark.asyncio
async def test_all_engines_time_out(record_store, object_store, session_factory, document_locator):
    from invoice_pipeline.services.extraction.engines.mock import Delay, MockEngine

    engines = {
        "openai": MockEngine("openai", steps=[Delay(5.0)]),
        "google_vision": MockEngine("google_vision", steps=[Delay(5.0)]),
    }
    runner, _ = _runner(record_store, object_store, session_factory, engines)

    run = await runner.execute(document_locator)

    assert run.status.value == "extraction_failed"
    assert run.failure_kind == "timeout"
    assert not run.operator_action_required
    assert [a["engine"] for a in record_store.get_run(run.id).engine_attempts] == ["openai", "google_vision"]


@pytest.mark.asyncio
async def test_history_outage_still_completes(record_store, object_store, session_factory, document_locator):
    from invoice_pipeline.services.extraction.engines.mock import MockEngine
    from invoice_pipeline.services.record_store import SqlRecordStore

    class _NoHistoryStore(SqlRecordStore):
        def get_historical(self, unit_id, field, limit):
            raise ConnectionError("replica unreachable")

    store = _NoHistoryStore(session_factory)
    runner, feed = _runner(store, object_store, session_factory, {"openai": MockEngine("openai")})

    run = await runner.execute(document_locator)
    await feed.drain()

    assert run.status.value == "closed"
    assert run.history.available is False
    assert "HISTORY_UNAVAILABLE" in run.audit_actions
    assert "energy-consumption-anomaly" in run.report.skipped_rules


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_run(record_store, object_store, session_factory, document_locator):
    from invoice_pipeline.services.extraction.engines.mock import MockEngine

    runner, feed = _runner(
        record_store, object_store, session_factory, {"openai": MockEngine("openai")}, notifier=_RecordingSink(fail=True)
    )

    run = await runner.execute(document_locator)
    await feed.drain()

    assert run.status.value == "closed"
    assert record_store.get_run(run.id).status == "closed"


# ── idempotency / cancellation ───────────────────────────────────────


@pytest.mark.asyncio
async def test_idempotency_key_returns_first_run(record_store, object_store, session_factory, document_locator):
    from invoice_pipeline.services.extraction.engines.mock import MockEngine

    sink = _RecordingSink()
    runner, feed = _runner(record_store, object_store, session_factory, {"openai": MockEngine("openai")}, notifier=sink)

    first = await runner.execute(document_locator, idempotency_key="upload-42")
    second = await runner.execute(document_locator, idempotency_key="upload-42")
    await feed.drain()

    assert second.stored_run_id == first.id
    assert len(sink.sent) == 1
    assert len(_samples(session_factory)) == 1
    assert record_store.find_run_id("upload-42") == first.id


@pytest.mark.asyncio
async def test_cancelled_run_persists_nothing(record_store, object_store, session_factory, document_locator):
    from sqlalchemy import func, select

    from invoice_pipeline.models.invoice import PipelineRunRow
    from invoice_pipeline.services.extraction.engines.mock import Delay, MockEngine

    engines = {"openai": MockEngine("openai", steps=[Delay(5.0)])}
    runner, _ = _runner(record_store, object_store, session_factory, engines)

    task = asyncio.create_task(runner.execute(document_locator))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    db = session_factory()
    try:
        assert db.execute(select(func.count()).select_from(PipelineRunRow)).scalar_one() == 0
    finally:
        db.close()
