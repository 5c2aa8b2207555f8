from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from brandtrust.core.clock import FixedClock, get_clock
from brandtrust.core.config import Settings, get_settings
from brandtrust.core.security import hash_api_key
from brandtrust.main import app
from brandtrust.services.push import get_push_sender
from brandtrust.services.repository import (
    BrandScoreSummaryRecord,
    CategoryScoreRecord,
    DeadJobRecord,
    MachineCredentialRecord,
    UserWeightsRecord,
    get_repository,
)
from brandtrust.services.store import InMemoryStore
from brandtrust.services.sufficiency import EvidenceProfile

from conftest import NOON, RecordingPushSender

RUNNER_HEADERS = {"X-Module-Id": "cron", "X-API-Key": "cron-key"}
FEED_HEADERS = {"X-Module-Id": "feed", "X-API-Key": "feed-key"}


@pytest.fixture
def api_store() -> InMemoryStore:
    clock = FixedClock(NOON)
    store = InMemoryStore(clock=clock)
    store.credentials["cron"] = [
        MachineCredentialRecord(module_id="cron", scopes=["jobs:run", "jobs:read"], key_hash=hash_api_key("cron-key"))
    ]
    store.credentials["feed"] = [
        MachineCredentialRecord(module_id="feed", scopes=["evidence:write"], key_hash=hash_api_key("feed-key"))
    ]
    return store


@pytest.fixture
def client(api_store: InMemoryStore) -> TestClient:
    settings = Settings(storage_backend="memory", otel_enabled=False)
    app.dependency_overrides[get_repository] = lambda: api_store
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_clock] = lambda: api_store.clock
    app.dependency_overrides[get_push_sender] = lambda: RecordingPushSender()
    yield TestClient(app)
    app.dependency_overrides.clear()


def _seed_scores(store: InMemoryStore) -> None:
    for category, score in {"labor": -1.0, "environment": 0.5, "politics": 0.0, "social": 0.2}.items():
        store.category_scores[("acme", category)] = CategoryScoreRecord(
            brand_id="acme",
            category=category,
            baseline=score,
            news=0.0,
            score=score,
            event_count=0,
            computed_at=NOON,
        )
    store.summaries["acme"] = BrandScoreSummaryRecord(
        brand_id="acme",
        baseline_only=True,
        event_count=0,
        explanation=["Baseline only: no qualifying events"],
        computed_at=NOON,
    )


def test_healthz(client: TestClient) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_run_requires_machine_credentials(client: TestClient) -> None:
    assert client.post("/jobs/run").status_code == 401
    assert client.post("/jobs/run", headers={**RUNNER_HEADERS, "X-API-Key": "wrong"}).status_code == 401


def test_run_requires_jobs_run_scope(client: TestClient) -> None:
    response = client.post("/jobs/run", headers=FEED_HEADERS)
    assert response.status_code == 403


def test_candidates_flow_through_the_engine(client: TestClient, api_store: InMemoryStore) -> None:
    response = client.post(
        "/events/candidates",
        headers=FEED_HEADERS,
        json={
            "candidates": [
                {
                    "brand_id": "acme",
                    "title": "Acme cited by OSHA",
                    "url": "https://www.osha.gov/news/acme",
                    "occurred_at": (NOON - timedelta(days=3)).isoformat(),
                    "severity": "high",
                    "impacts": {"labor": -1.0},
                }
            ]
        },
    )
    assert response.status_code == 202
    assert len(response.json()["job_ids"]) == 1

    first = client.post("/jobs/run", headers=RUNNER_HEADERS)
    assert first.status_code == 200
    assert first.json()["succeeded"] == 1
    assert first.json()["lease_lost"] == 0
    assert len(api_store.events) == 1

    second = client.post("/jobs/run", headers=RUNNER_HEADERS)
    body = second.json()
    assert body["claimed"] == 2
    assert body["succeeded"] == 2
    event = next(iter(api_store.events.values()))
    assert event.verification.value == "official"
    assert ("acme", "labor") in api_store.category_scores


def test_candidates_require_evidence_scope(client: TestClient) -> None:
    response = client.post("/events/candidates", headers=RUNNER_HEADERS, json={"candidates": []})
    assert response.status_code == 403


def test_dead_letter_listing(client: TestClient, api_store: InMemoryStore) -> None:
    api_store.dead_jobs.append(
        DeadJobRecord(
            id="job-dead",
            stage="score_brand",
            payload={"brand_id": "acme"},
            attempts=3,
            last_error="RuntimeError: boom",
            original_created_at=NOON - timedelta(minutes=1),
            moved_to_dead_at=NOON,
        )
    )

    response = client.get("/jobs/dead", headers=RUNNER_HEADERS, params={"limit": 10})

    assert response.status_code == 200
    assert response.json()[0]["id"] == "job-dead"
    assert response.json()[0]["attempts"] == 3


def test_brand_scores(client: TestClient, api_store: InMemoryStore) -> None:
    assert client.get("/brands/acme/scores").status_code == 404

    _seed_scores(api_store)
    response = client.get("/brands/acme/scores")

    assert response.status_code == 200
    body = response.json()
    assert body["baseline_only"] is True
    assert [row["category"] for row in body["scores"]] == ["labor", "environment", "politics", "social"]


def test_personalized_score(client: TestClient, api_store: InMemoryStore) -> None:
    _seed_scores(api_store)
    api_store.user_weights["user-1"] = UserWeightsRecord(
        user_id="user-1",
        weights={"labor": 1.0, "environment": 0.5},
        dealbreakers={"labor": 0.5},
    )

    response = client.get("/brands/acme/personalized", params={"user_id": "user-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["raw_score"] == pytest.approx(-0.75)
    assert body["final_score"] == 18
    assert body["dealbreaker_triggered"] is True
    assert body["dealbreaker_category"] == "labor"
    assert body["top_negative"][0]["description"] == "Labor & Workers: significant negative impact"
    assert client.get("/brands/acme/personalized", params={"user_id": "nobody"}).status_code == 404


def test_sufficiency(client: TestClient, api_store: InMemoryStore) -> None:
    api_store.evidence_profiles["acme"] = EvidenceProfile(website="https://acme.example", product_count=12)

    response = client.get("/brands/acme/sufficiency")

    assert response.status_code == 200
    body = response.json()
    assert body["recommendation"] == "show_preview"
    assert body["domains_covered"] == 2
    assert client.get("/brands/unknown/sufficiency").json()["recommendation"] == "show_stub"
