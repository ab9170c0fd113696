"""
test_main.py
------------
LabResults — Lab Order Result Entry — Test Suite for main.py
------------------------------------------------------------
Uses FastAPI TestClient with the OpenMRS client dependency overridden by
one backed by httpx.MockTransport, so no server is needed.

Tests cover:
    - GET /health returns 200 and required fields
    - GET /orders/{uuid}/result-form in create and edit mode, 404s
    - POST /orders/{uuid}/results success, step failure, invalid values
    - the shared response cache: filled by reads, emptied by a successful save

Run:
    pytest tests/test_main.py -v --tb=short

Project: LabResults — Lab Order Result Entry
"""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from main import app, get_client, response_cache
from openmrs_client import OpenMRSClient
from lab_results.session import LabResultsSession
from tests.sample_data import (
    BASE_URL,
    EXISTING_GROUP_OBS_JSON,
    ORDER_JSON,
    REST,
    SET_CONCEPT_JSON,
    encounter_json,
)


class FakeOpenMRS:
    """Routes REST calls to canned responses and records writes."""

    def __init__(self):
        self.encounter = encounter_json()
        self.fail_fulfiller = False
        self.writes = []
        self.reads = []

    def __call__(self, request):
        path = request.url.path.replace("/openmrs/ws/rest/v1", "")
        if request.method == "GET":
            self.reads.append(path)
        if request.method == "POST":
            self.writes.append((path, json.loads(request.content)))
            if path.endswith("/fulfillerdetails") and self.fail_fulfiller:
                return httpx.Response(500, json={"error": {"message": "network timeout"}})
            return httpx.Response(201, json={"uuid": "created"})
        if path == "/order":
            if request.url.params.get("patient") == "p1":
                return httpx.Response(200, json={"results": [ORDER_JSON]})
            return httpx.Response(500, json={"error": {"message": "Unable to list orders"}})
        if path == "/order/o1":
            return httpx.Response(200, json=ORDER_JSON)
        if path == "/concept/c1":
            return httpx.Response(200, json=SET_CONCEPT_JSON)
        if path == "/encounter/e1":
            return httpx.Response(200, json=self.encounter)
        if path == "/obs/obs-1":
            return httpx.Response(200, json=EXISTING_GROUP_OBS_JSON)
        return httpx.Response(404, json={"error": {"message": "Object with given uuid doesn't exist"}})


@pytest.fixture
def openmrs():
    return FakeOpenMRS()


@pytest.fixture
def api(openmrs):
    async def _override():
        async with OpenMRSClient(
            base_url=BASE_URL,
            transport=httpx.MockTransport(openmrs),
            cache=response_cache,
        ) as client:
            yield client

    response_cache.clear()
    app.dependency_overrides[get_client] = _override
    yield TestClient(app)
    app.dependency_overrides.clear()
    response_cache.clear()


# ── GET /health ────────────────────────────────────────────────────────────────

def test_health_required_fields(api):
    """GET /health returns service, version, status, timestamp."""
    response = api.get("/health")
    assert response.status_code == 200
    data = response.json()
    for field in ["service", "version", "status", "timestamp"]:
        assert field in data, f"Missing field in /health response: {field}"
    assert data["status"] == "ok"


# ── GET /orders/{uuid}/result-form ─────────────────────────────────────────────

def test_result_form_create_mode(api):
    data = api.get("/orders/o1/result-form").json()
    assert data["mode"] == "create"
    assert data["obs_uuid"] is None
    assert data["heading"] == "Vitals panel"
    assert [m["uuid"] for m in data["concept"]["setMembers"]] == ["m1", "m2"]
    assert data["initial_values"] == {}


def test_result_form_edit_mode(api, openmrs):
    openmrs.encounter = encounter_json({"uuid": "obs-1", "concept": {"uuid": "c1"}})
    data = api.get("/orders/o1/result-form").json()
    assert data["mode"] == "edit"
    assert data["obs_uuid"] == "obs-1"
    assert data["initial_values"] == {"m1": 99.1, "m2": "opt-B"}


def test_result_form_unknown_order(api):
    assert api.get("/orders/nope/result-form").status_code == 404


# ── POST /orders/{uuid}/results ────────────────────────────────────────────────

def test_submit_results_success(api, openmrs):
    response_cache.set(f"{REST}/order?patient=p1&status=ACTIVE", ["o1"])
    response_cache.set(f"{REST}/order?patient=p2&status=ACTIVE", ["o9"])

    response = api.post("/orders/o1/results", json={"values": {"m1": "98.6", "m2": "opt-A"}})

    assert response.status_code == 200
    data = response.json()
    assert data["state"] == "succeeded"
    assert data["workspace_closed"] is True
    assert data["notifications"][0]["subtitle"] == "Lab results for ORD-42 have been successfully updated"
    assert [path for path, _ in openmrs.writes] == ["/encounter/e1", "/order/o1/fulfillerdetails", "/order"]
    assert response_cache.get(f"{REST}/order?patient=p1&status=ACTIVE") is None
    assert response_cache.get(f"{REST}/order?patient=p2&status=ACTIVE") == ["o9"]


def test_submit_results_step_failure(api, openmrs):
    openmrs.fail_fulfiller = True
    data = api.post("/orders/o1/results", json={"values": {"m1": "98.6", "m2": "opt-A"}}).json()
    assert data["state"] == "failed"
    assert data["reason"] == "network timeout"
    assert data["workspace_closed"] is False
    assert data["notifications"][0]["kind"] == "error"
    assert [s["status"] for s in data["steps"]] == ["succeeded", "failed", "skipped"]


def test_submit_results_invalid_values(api, openmrs):
    response = api.post("/orders/o1/results", json={"values": {"m1": "not a number"}})
    assert response.status_code == 422
    detail = response.json()["detail"]
    assert set(detail["field_errors"]) == {"m1", "m2"}
    assert openmrs.writes == []


# ── Shared response cache ──────────────────────────────────────────────────────

ENCOUNTER_KEY = f"{REST}/encounter/e1?v=full"


def test_result_form_fills_cache_and_save_empties_it(api, openmrs):
    """The encounter read is cached across requests and dropped after a save."""
    api.get("/orders/o1/result-form")
    api.get("/orders/o1/result-form")
    assert response_cache.get(ENCOUNTER_KEY) is not None
    assert openmrs.reads.count("/encounter/e1") == 1

    response = api.post("/orders/o1/results", json={"values": {"m1": "98.6", "m2": "opt-A"}})

    assert response.json()["state"] == "succeeded"
    assert response_cache.keys() == []


def test_patient_orders_cached_until_save(api, openmrs):
    first = api.get("/patients/p1/orders")
    assert first.status_code == 200
    assert [o["orderNumber"] for o in first.json()["orders"]] == ["ORD-42"]
    api.get("/patients/p1/orders")
    assert openmrs.reads.count("/order") == 1

    api.post("/orders/o1/results", json={"values": {"m1": "98.6", "m2": "opt-A"}})
    api.get("/patients/p1/orders")

    assert openmrs.reads.count("/order") == 2


def test_patient_orders_upstream_failure(api):
    response = api.get("/patients/p2/orders")
    assert response.status_code == 502
    assert response.json()["detail"] == "Unable to list orders"
    assert response_cache.keys() == []


# ── Session teardown ───────────────────────────────────────────────────────────

def test_every_request_closes_its_session(api, monkeypatch):
    """Sessions are closed after success, after a failed save and after a 422."""
    closed = []
    original_close = LabResultsSession.close

    async def _recording_close(self):
        closed.append(self.order.uuid)
        await original_close(self)

    monkeypatch.setattr(LabResultsSession, "close", _recording_close)

    api.get("/orders/o1/result-form")
    api.post("/orders/o1/results", json={"values": {"m1": "not a number"}})
    api.post("/orders/o1/results", json={"values": {"m1": "98.6", "m2": "opt-A"}})

    assert closed == ["o1", "o1", "o1"]
