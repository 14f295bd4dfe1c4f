"""
API tests for /api/v1 (documents, runs, review, config reload).

Covers:
  - document upload → locator; empty upload → 400
  - POST /runs executes a run and returns the persisted view; idempotency key replays it
  - GET /runs/{id} and /runs/{id}/audit; unknown ids → 404
  - POST /runs/{id}/review: 200 with correction, 409 on closed runs, 422 on bad input
  - POST /config/reload: 200 on a valid file, 422 on an invalid one (old config kept)
"""

from __future__ import annotations

import json
import uuid

import pytest


def _install(record_store, object_store, session_factory, engines: dict):
    from invoice_pipeline.api.v1.runs import get_document_store, get_pipeline_runner, get_record_store
    from invoice_pipeline.core.config import ABTestConfig, EngineProfile, OrchestrationSettings, PipelineConfig
    from invoice_pipeline.main import app
    from invoice_pipeline.services.extraction.orchestrator import EngineOrchestrator
    from invoice_pipeline.services.learning_feed import LearningFeed
    from invoice_pipeline.services.pipeline_runs import PipelineRunner

    config = PipelineConfig(
        engines=(EngineProfile(name="openai", priority=1, avg_accuracy=0.985),),
        ab_test=ABTestConfig(enabled=False),
        orchestration=OrchestrationSettings(engine_timeout_seconds=0.5, max_retries=0, retry_backoff_seconds=0.0),
    )
    runner = PipelineRunner(
        record_store,
        EngineOrchestrator(object_store, engine_factory=lambda name: engines[name]),
        learning_feed=LearningFeed(session_factory, enabled=False),
        config_provider=lambda: config,
    )
    app.dependency_overrides[get_pipeline_runner] = lambda: runner
    app.dependency_overrides[get_record_store] = lambda: record_store
    app.dependency_overrides[get_document_store] = lambda: object_store
    return runner


def _mock(**changes):
    from invoice_pipeline.services.extraction.engines.mock import SAMPLE_FIELDS, MockEngine

    return MockEngine("openai", fields={**SAMPLE_FIELDS, **changes})


# ── documents ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_upload_document(client, record_store, object_store, session_factory):
    _install(record_store, object_store, session_factory, {"openai": _mock()})

    res = await client.post(
        "/api/v1/documents",
        files={"file": ("fatura.png", b"\x89PNG scan", "image/png")},
    )

    assert res.status_code == 201
    body = res.json()
    assert body["document_locator"].endswith(".png")
    assert body["size"] == 9
    assert object_store.get(body["document_locator"]).content == b"\x89PNG scan"


@pytest.mark.asyncio
async def test_upload_empty_document(client, record_store, object_store, session_factory):
    _install(record_store, object_store, session_factory, {"openai": _mock()})

    res = await client.post("/api/v1/documents", files={"file": ("fatura.png", b"", "image/png")})

    assert res.status_code == 400


# ── runs ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_run_and_read_it_back(client, record_store, object_store, session_factory, document_locator):
    _install(record_store, object_store, session_factory, {"openai": _mock()})

    res = await client.post("/api/v1/runs", json={"document_locator": document_locator, "actor_id": "uploader-1"})

    assert res.status_code == 201
    run = res.json()
    assert run["status"] == "closed"
    assert run["disposition"] == "approved"
    assert run["record"]["fields"]["uc_code"] == "3004589712"

    res = await client.get(f"/api/v1/runs/{run['id']}")
    assert res.status_code == 200
    assert res.json()["id"] == run["id"]

    res = await client.get(f"/api/v1/runs/{run['id']}/audit")
    assert res.status_code == 200
    items = res.json()["items"]
    assert items[0]["action"] == "RUN_RECEIVED"
    assert items[0]["actor_id"] == "uploader-1"
    assert [i["sequence"] for i in items] == list(range(len(items)))


@pytest.mark.asyncio
async def test_create_run_is_idempotent(client, record_store, object_store, session_factory, document_locator):
    engine = _mock()
    _install(record_store, object_store, session_factory, {"openai": engine})
    payload = {"document_locator": document_locator, "idempotency_key": "upload-42"}

    first = await client.post("/api/v1/runs", json=payload)
    second = await client.post("/api/v1/runs", json=payload)

    assert first.json()["id"] == second.json()["id"]
    assert engine.calls == 1


@pytest.mark.asyncio
async def test_unknown_run_is_404(client, record_store, object_store, session_factory):
    _install(record_store, object_store, session_factory, {})
    missing = uuid.uuid4()

    assert (await client.get(f"/api/v1/runs/{missing}")).status_code == 404
    assert (await client.get(f"/api/v1/runs/{missing}/audit")).status_code == 404
    res = await client.post(f"/api/v1/runs/{missing}/review", json={"decision": "approved", "actor_id": "r-1"})
    assert res.status_code == 404


# ── review ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_review_with_correction(client, record_store, object_store, session_factory, document_locator):
    _install(record_store, object_store, session_factory, {"openai": _mock(valor_tusd=239.7)})
    run = (await client.post("/api/v1/runs", json={"document_locator": document_locator})).json()
    assert run["status"] == "review_required"

    res = await client.post(
        f"/api/v1/runs/{run['id']}/review",
        json={
            "decision": "approved",
            "actor_id": "reviewer-7",
            "reason": "TUSD misread",
            "corrections": {"valor_tusd": "380,10"},
        },
    )

    assert res.status_code == 200
    body = res.json()
    assert (body["status"], body["disposition"]) == ("closed", "approved")
    assert body["corrected_record_id"] is not None
    assert body["record"]["fields"]["valor_tusd"] == pytest.approx(380.1)


@pytest.mark.asyncio
async def test_review_of_closed_run_conflicts(client, record_store, object_store, session_factory, document_locator):
    _install(record_store, object_store, session_factory, {"openai": _mock()})
    run = (await client.post("/api/v1/runs", json={"document_locator": document_locator})).json()

    res = await client.post(f"/api/v1/runs/{run['id']}/review", json={"decision": "rejected", "actor_id": "r-1"})

    assert res.status_code == 409
    assert "Invalid transition" in res.json()["detail"]


@pytest.mark.asyncio
async def test_review_rejects_bad_input(client, record_store, object_store, session_factory, document_locator):
    _install(record_store, object_store, session_factory, {"openai": _mock(valor_tusd=239.7)})
    run = (await client.post("/api/v1/runs", json={"document_locator": document_locator})).json()
    url = f"/api/v1/runs/{run['id']}/review"

    assert (await client.post(url, json={"decision": "maybe", "actor_id": "r-1"})).status_code == 422
    res = await client.post(url, json={"decision": "approved", "actor_id": "r-1", "corrections": {"moon_phase": 3}})
    assert res.status_code == 422
    # the run is still waiting for a valid review
    assert (await client.get(f"/api/v1/runs/{run['id']}")).json()["status"] == "review_required"


# ── config reload ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_config_reload(client, tmp_path, monkeypatch):
    from invoice_pipeline.core.config import get_pipeline_config, get_settings

    path = tmp_path / "pipeline.json"
    path.write_text(
        json.dumps(
            {
                "engines": [
                    {"name": "google_vision", "priority": 1, "avgAccuracy": 0.975, "costPerCall": 0.005},
                    {"name": "openai", "priority": 2, "enabled": False},
                ],
                "ab_test": {"enabled": False},
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("PIPELINE_CONFIG_PATH", str(path))
    # importing the app already cached settings without the path
    get_settings.cache_clear()

    res = await client.post("/api/v1/config/reload")

    assert res.status_code == 200
    assert res.json()["engines"] == ["google_vision"]
    assert res.json()["ab_test_enabled"] is False

    path.write_text(json.dumps({"validation": {"enabled_rules": ["moon-phase-check"]}}), encoding="utf-8")
    res = await client.post("/api/v1/config/reload")

    assert res.status_code == 422
    assert [e.name for e in get_pipeline_config().enabled_engines()] == ["google_vision"]


@pytest.mark.asyncio
async def test_health(client):
    res = await client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}
