"""Tests for the vault and job API endpoints."""

import uuid
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from tests.fakes.fake_generator import FakeGenerator
from vault_engine.api.vault import get_vault
from vault_engine.core.exceptions import ConcurrencyConflictError
from vault_engine.core.generation_pipeline import GenerationPipeline
from vault_engine.main import app
from vault_engine.services.funnel_vault import FunnelVault

FUNNEL = "11111111-1111-1111-1111-111111111111"
JOB_ID = uuid.UUID("12345678-1234-1234-1234-123456789abc")


@pytest.fixture
def generator():
    return FakeGenerator({"offer": {"offerName": "Acme"}, "bio": {"shortBio": "Hi"}})


@pytest.fixture
def vault(store, generator):
    pipeline = GenerationPipeline(
        generate_fn=generator, max_attempts=1, initial_delay=0.0, max_delay=0.0, multiplier=1.0
    )
    return FunnelVault(store=store, pipeline=pipeline, propagation_enabled=True)


@pytest.fixture
def client(vault):
    app.dependency_overrides[get_vault] = lambda: vault
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generate_section_endpoint(client, sections_db):
    response = client.post(
        f"/v1/funnels/{FUNNEL}/sections/offer/generate",
        json={"fallback_answers": {"businessName": "Acme Co"}},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "generated"
    assert data["content"] == {"offerName": "Acme"}
    assert sections_db.versions(funnel_id=FUNNEL, section_id="offer") == [1]


def test_generate_unknown_section_is_404(client):
    response = client.post(f"/v1/funnels/{FUNNEL}/sections/nope/generate", json={})
    assert response.status_code == 404


def test_generate_conflict_is_409(client, vault):
    async def conflicted(*args, **kwargs):
        raise ConcurrencyConflictError({"section_id": "offer"}, 5)

    vault.generate_section = conflicted
    response = client.post(f"/v1/funnels/{FUNNEL}/sections/offer/generate", json={})
    assert response.status_code == 409


def test_write_field_endpoint_schedules_propagation(client, store):
    first = client.patch(f"/v1/funnels/{FUNNEL}/sections/offer/fields/offerName", json={"value": "Acme"})
    second = client.patch(
        f"/v1/funnels/{FUNNEL}/sections/offer/fields/offerName", json={"value": "Acme Pro"}
    )

    assert first.status_code == 200
    assert first.json()["propagation_scheduled"] is False
    assert second.json()["version"] == 2
    assert second.json()["propagation_scheduled"] is True


def test_write_field_invalid_nested_path_is_422(client):
    client.patch(f"/v1/funnels/{FUNNEL}/sections/leadMagnet/fields/titleAndHook", json={"value": "text"})

    response = client.patch(
        f"/v1/funnels/{FUNNEL}/sections/leadMagnet/fields/titleAndHook.mainTitle",
        json={"value": "Kit"},
    )

    assert response.status_code == 422


def test_propagate_endpoint(client, store):
    client.patch(f"/v1/funnels/{FUNNEL}/sections/emails/fields/email1", json={"value": "Try Acme"})

    response = client.post(
        f"/v1/funnels/{FUNNEL}/propagate",
        json={"section_id": "offer", "field_id": "offerName", "old_value": "Acme", "new_value": "Acme Pro"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["replacementsCount"] == 1
    assert data["updatedFields"][0]["fieldId"] == "email1"

    status = client.get(f"/v1/funnels/{FUNNEL}/update-status").json()
    assert status["count"] == 1
    assert status["updates"][0]["lastAutoUpdate"]["source"] == "offer.offerName"


def test_propagate_requires_values(client):
    response = client.post(
        f"/v1/funnels/{FUNNEL}/propagate",
        json={"section_id": "offer", "field_id": "offerName", "old_value": "", "new_value": "x"},
    )
    assert response.status_code == 422


def test_impact_endpoint(client):
    response = client.get("/v1/dependencies/offer/impact", params={"field_id": "offerName"})

    assert response.status_code == 200
    assert response.json()["affected_sections"] == [
        "setterScript",
        "salesScripts",
        "emails",
        "vsl",
        "funnelCopy",
    ]
    assert client.get("/v1/dependencies/story/impact").json()["affected_sections"] == [
        "vsl",
        "funnelCopy",
        "bio",
    ]


def test_regenerate_endpoint_runs_job_in_background(client, sections_db):
    with (
        patch("vault_engine.api.vault.create_job", return_value=JOB_ID) as create_job,
        patch("vault_engine.db.generation_jobs.start_job"),
        patch("vault_engine.db.generation_jobs.append_job_section") as append,
        patch("vault_engine.db.generation_jobs.finish_job", return_value="completed") as finish,
    ):
        response = client.post(
            f"/v1/funnels/{FUNNEL}/regenerate", json={"sections": ["bio", "offer"]}
        )

    assert response.status_code == 200
    assert response.json() == {"job_id": str(JOB_ID), "status": "queued", "sections": ["bio", "offer"]}
    create_job.assert_called_once()
    assert {c.args[1] for c in append.call_args_list} == {"bio", "offer"}
    finish.assert_called_once()
    assert sections_db.versions(funnel_id=FUNNEL, section_id="bio") == [1]


def test_regenerate_rejects_unknown_sections(client):
    response = client.post(f"/v1/funnels/{FUNNEL}/regenerate", json={"sections": ["bio", "nope"]})
    assert response.status_code == 404


def test_get_job_endpoint(client):
    with patch("vault_engine.api.jobs.get_job", return_value={"id": str(JOB_ID), "status": "completed"}):
        response = client.get(f"/v1/jobs/{JOB_ID}")

    assert response.status_code == 200
    assert response.json()["status"] == "completed"


def test_get_missing_job_is_404(client):
    with patch("vault_engine.api.jobs.get_job", return_value=None):
        response = client.get(f"/v1/jobs/{JOB_ID}")

    assert response.status_code == 404
