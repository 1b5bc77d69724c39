# tests/test_http_api.py
"""End-to-end tests for the HTTP API (in-memory store, dev caller header)"""
from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from herodispatch.transport.http_app import app

from conftest import make_hero

CUSTOMER = {"X-Caller-Id": "cust-1"}
HERO_1 = {"X-Caller-Id": "h1"}
HERO_2 = {"X-Caller-Id": "h2"}
STRANGER = {"X-Caller-Id": "someone-else"}

NEW_JOB = {"service_type": "Jump Start", "pickup": {"latitude": 0.0, "longitude": 0.0}}


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def _seed_hero(client: TestClient, hero) -> None:
    client.portal.call(app.state.store.upsert_hero, hero)


def _wait_for_status(client: TestClient, job_id: str, status: str, headers=CUSTOMER) -> dict:
    for _ in range(200):
        body = client.get(f"/jobs/{job_id}", headers=headers).json()
        if body["status"] == status:
            return body
        time.sleep(0.01)
    raise AssertionError(f"job {job_id} never reached {status}")


def _searching_job(client: TestClient) -> str:
    resp = client.post("/jobs", json=NEW_JOB, headers=CUSTOMER)
    assert resp.status_code == 201
    job_id = resp.json()["id"]
    _wait_for_status(client, job_id, "searching")
    return job_id


class TestPublicEndpoints:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}

    def test_ready_with_memory_store(self, client):
        assert client.get("/ready").status_code == 200

    def test_metrics_in_dev(self, client):
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert set(resp.json()) == {"counters", "histograms"}

    def test_unknown_route(self, client):
        resp = client.get("/admin/secret")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Not found"}


class TestJobs:
    def test_create_job(self, client):
        resp = client.post("/jobs", json=NEW_JOB, headers=CUSTOMER)

        assert resp.status_code == 201
        body = resp.json()
        assert len(body["id"]) == 32
        assert body["customer_id"] == "cust-1"
        assert body["service_type"] == "jump_start"
        assert body["status"] in ("pending", "searching")
        assert "notified_heroes" not in body

    def test_create_job_requires_caller(self, client):
        resp = client.post("/jobs", json=NEW_JOB)
        assert resp.status_code == 401
        assert "error" in resp.json()

    def test_create_job_rejects_bad_location(self, client):
        bad = {"service_type": "tow", "pickup": {"latitude": 123.0, "longitude": 0.0}}
        assert client.post("/jobs", json=bad, headers=CUSTOMER).status_code == 422

    def test_get_job_not_found(self, client):
        resp = client.get("/jobs/missing", headers=CUSTOMER)
        assert resp.status_code == 404
        assert resp.json()["error"] == "Job missing not found"

    def test_get_job_hidden_from_strangers(self, client):
        job_id = client.post("/jobs", json=NEW_JOB, headers=CUSTOMER).json()["id"]
        assert client.get(f"/jobs/{job_id}", headers=STRANGER).status_code == 403

    def test_dispatch_record_while_searching(self, client):
        job_id = _searching_job(client)

        resp = client.get(f"/jobs/{job_id}/dispatch", headers=CUSTOMER)

        assert resp.status_code == 200
        body = resp.json()
        assert body["job_id"] == job_id
        assert body["total_waves"] == 5
        assert body["result"] == "in_progress"


class TestAssignment:
    def test_first_accept_wins(self, client):
        _seed_hero(client, make_hero("h1"))
        _seed_hero(client, make_hero("h2"))
        job_id = _searching_job(client)

        first = client.post(f"/jobs/{job_id}/accept", headers=HERO_1)
        second = client.post(f"/jobs/{job_id}/accept", headers=HERO_2)

        assert first.status_code == 200
        assert first.json()["hero_id"] == "h1"
        assert second.status_code == 409
        assert second.json()["reason"] == "already_assigned"

        job = client.get(f"/jobs/{job_id}", headers=HERO_1).json()
        assert job["status"] == "assigned"
        assert job["hero_id"] == "h1"
        assert job["hero"]["name"] == "Hero h1"

        record = client.get(f"/jobs/{job_id}/dispatch", headers=CUSTOMER).json()
        assert record["result"] == "accepted"
        assert record["accepted_by"] == "h1"

    def test_busy_hero_cannot_accept_second_job(self, client):
        _seed_hero(client, make_hero("h1"))
        first_job = _searching_job(client)
        second_job = _searching_job(client)

        assert client.post(f"/jobs/{first_job}/accept", headers=HERO_1).status_code == 200
        resp = client.post(f"/jobs/{second_job}/accept", headers=HERO_1)

        assert resp.status_code == 409
        assert resp.json()["reason"] == "worker_busy"

    def test_accept_unknown_job(self, client):
        _seed_hero(client, make_hero("h1"))
        assert client.post("/jobs/nope/accept", headers=HERO_1).status_code == 404

    def test_decline_is_idempotent(self, client):
        _seed_hero(client, make_hero("h1"))
        job_id = _searching_job(client)

        first = client.post(f"/jobs/{job_id}/decline", json={"reason": "too far"}, headers=HERO_1)
        again = client.post(f"/jobs/{job_id}/decline", headers=HERO_1)

        assert first.status_code == 200
        assert first.json()["recorded"] is True
        assert again.json()["recorded"] is False

        record = client.get(f"/jobs/{job_id}/dispatch", headers=CUSTOMER).json()
        assert record["declined_count"] == 1


class TestLifecycle:
    def test_hero_drives_job_to_completion(self, client):
        _seed_hero(client, make_hero("h1"))
        job_id = _searching_job(client)
        client.post(f"/jobs/{job_id}/accept", headers=HERO_1)

        for status in ("en_route", "arrived", "in_progress", "completed"):
            resp = client.post(f"/jobs/{job_id}/status", json={"status": status}, headers=HERO_1)
            assert resp.status_code == 200, resp.text
            assert resp.json()["status"] == status

        presence = client.put("/heroes/me/presence", json={"is_online": True}, headers=HERO_1).json()
        assert presence["dispatchable"] is True

    def test_customer_cannot_advance_job(self, client):
        _seed_hero(client, make_hero("h1"))
        job_id = _searching_job(client)
        client.post(f"/jobs/{job_id}/accept", headers=HERO_1)

        resp = client.post(f"/jobs/{job_id}/status", json={"status": "en_route"}, headers=CUSTOMER)
        assert resp.status_code == 403

    def test_internal_status_cannot_be_requested(self, client):
        job_id = client.post("/jobs", json=NEW_JOB, headers=CUSTOMER).json()["id"]
        resp = client.post(f"/jobs/{job_id}/status", json={"status": "assigned"}, headers=CUSTOMER)
        assert resp.status_code == 400

    def test_hero_cannot_skip_ahead(self, client):
        _seed_hero(client, make_hero("h1"))
        job_id = _searching_job(client)
        client.post(f"/jobs/{job_id}/accept", headers=HERO_1)

        resp = client.post(f"/jobs/{job_id}/status", json={"status": "completed"}, headers=HERO_1)

        assert resp.status_code == 409
        assert resp.json()["reason"] == "invalid_transition"

    def test_customer_cancels_search(self, client):
        job_id = _searching_job(client)

        resp = client.post(f"/jobs/{job_id}/status", json={"status": "cancelled"}, headers=CUSTOMER)

        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"
        again = client.post(f"/jobs/{job_id}/status", json={"status": "cancelled"}, headers=CUSTOMER)
        assert again.status_code == 409
        assert again.json()["reason"] == "invalid_transition"


class TestHeroesAndUsers:
    def test_presence_unknown_hero(self, client):
        resp = client.put("/heroes/me/presence", json={"is_online": True}, headers=HERO_1)
        assert resp.status_code == 404

    def test_presence_update_with_location(self, client):
        _seed_hero(client, make_hero("h1", distance_m=None, is_online=False))

        resp = client.put(
            "/heroes/me/presence",
            json={"is_online": True, "location": {"latitude": 30.27, "longitude": -97.74}},
            headers=HERO_1,
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["is_online"] is True
        assert body["dispatchable"] is True
        assert body["location_updated_at"] is not None

    def test_register_push_token(self, client):
        resp = client.put("/users/me/push-token", json={"token": " device-token "}, headers=CUSTOMER)

        assert resp.status_code == 204
        assert client.portal.call(app.state.store.get_push_token, "cust-1") == "device-token"
