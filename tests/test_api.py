import os

import pytest
from fastapi.testclient import TestClient

import api
from batch_jobs import JobRegistry
from bulk_ads import BatchOrchestrator
from fakes import FakeMetaClient
from meta_client import MetaAPIError


class FakeDiscoveryClient:
    def __init__(self, fail=False):
        self.fail = fail

    def _maybe_fail(self):
        if self.fail:
            raise MetaAPIError("Meta API error (400): Invalid OAuth access token", http_status=400, error={"code": 190})

    def list_adaccounts(self):
        self._maybe_fail()
        return [{"id": "act_1", "name": "Main"}]

    def list_campaigns(self, account_id):
        self._maybe_fail()
        return [{"id": "c1", "name": f"Campaign of {account_id}", "page_id": "p1"}]

    def list_adsets(self, campaign_id):
        self._maybe_fail()
        return [{"id": "as1", "name": "Ad set", "campaign_id": campaign_id}]


@pytest.fixture()
def orchestrator(fake_client, stager, settings):
    return BatchOrchestrator(fake_client, stager, settings)


@pytest.fixture()
def registry():
    return JobRegistry()


@pytest.fixture()
def client(orchestrator, registry):
    api.app.dependency_overrides[api.get_orchestrator] = lambda: orchestrator
    api.app.dependency_overrides[api.get_job_registry] = lambda: registry
    api.app.dependency_overrides[api.get_meta_client] = lambda: FakeDiscoveryClient()
    with TestClient(api.app) as c:
        yield c
    api.app.dependency_overrides.clear()


def _videos(*names):
    return [("files", (n, f"bytes of {n}".encode(), "video/mp4")) for n in names]


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_create_ads_runs_whole_batch(client, fake_client, upload_dir):
    resp = client.post(
        "/api/create-ads",
        files=_videos("a.mp4", "b.mp4"),
        data={"targets": ["t1", "t2"], "name_prefix": "Launch"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Batch complete: 4 ads created."
    assert len(body["success"]) == 4
    assert body["failures"] == []
    assert len(fake_client.uploads) == 2
    assert sorted(a["name"] for a in fake_client.ads) == ["Launch - a", "Launch - a", "Launch - b", "Launch - b"]
    assert os.listdir(upload_dir) == []


def test_create_ads_accepts_comma_separated_targets(client, fake_client):
    resp = client.post("/api/create-ads", files=_videos("a.mp4"), data={"targets": "t1, t2,t3"})

    assert resp.status_code == 200
    assert [a["adset_id"] for a in fake_client.ads] == ["t1", "t2", "t3"]


def test_create_ads_reports_partial_failure(orchestrator, client, fake_client):
    fake_client.templates = {"t1": None}
    resp = client.post("/api/create-ads", files=_videos("a.mp4"), data={"targets": "t1"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] == []
    assert body["message"] == "No ads were created."
    assert "No template ad found for target t1" in body["failures"][0]


def test_create_ads_without_files_is_rejected_before_any_platform_call(client, fake_client):
    resp = client.post("/api/create-ads", data={"targets": "t1"})

    assert resp.status_code == 422
    assert fake_client.call_count == 0


def test_create_ads_without_targets_is_rejected(client, fake_client, upload_dir):
    resp = client.post("/api/create-ads", files=_videos("a.mp4"))

    assert resp.status_code == 422
    assert fake_client.call_count == 0
    assert os.listdir(upload_dir) == []


def test_create_ads_rejects_unknown_status(client, fake_client):
    resp = client.post("/api/create-ads", files=_videos("a.mp4"), data={"targets": "t1", "status": "DELETED"})

    assert resp.status_code == 422
    assert fake_client.call_count == 0


def test_api_key_is_enforced(client, monkeypatch):
    monkeypatch.setenv("SERVICE_API_KEY", "secret")

    assert client.get("/api/accounts").status_code == 401
    resp = client.get("/api/accounts", headers={"X-API-Key": "secret"})
    assert resp.status_code == 200
    assert resp.json() == [{"id": "act_1", "name": "Main"}]


def test_discovery_endpoints(client):
    assert client.get("/api/campaigns/act_1").json()[0]["name"] == "Campaign of act_1"
    assert client.get("/api/adsets/c1").json()[0]["campaign_id"] == "c1"


def test_meta_errors_map_to_bad_gateway(client):
    api.app.dependency_overrides[api.get_meta_client] = lambda: FakeDiscoveryClient(fail=True)

    resp = client.get("/api/campaigns/act_1")

    assert resp.status_code == 502
    assert resp.json()["detail"]["meta_error"] == {"code": 190}


def test_async_batch_queues_and_finishes(client, fake_client, registry, upload_dir):
    resp = client.post(
        "/api/create-ads-async",
        files=_videos("a.mp4"),
        data={"targets": "t1", "correlation_id": "row-7"},
    )

    assert resp.status_code == 202
    job_id = resp.json()["job_id"]
    assert resp.json()["status_url"] == f"/api/jobs/{job_id}"

    # TestClient runs background tasks before returning.
    job = client.get(f"/api/jobs/{job_id}").json()
    assert job["status"] == "succeeded"
    assert job["correlation_id"] == "row-7"
    assert job["report"]["success"] == ["ad-t1-creative-1"]
    assert len(fake_client.ads) == 1
    assert os.listdir(upload_dir) == []


def test_async_batch_rejects_bad_callback_url(client, fake_client, upload_dir):
    resp = client.post(
        "/api/create-ads-async",
        files=_videos("a.mp4"),
        data={"targets": "t1", "callback_url": "ftp://example.com/hook"},
    )

    assert resp.status_code == 422
    assert fake_client.call_count == 0
    assert os.listdir(upload_dir) == []


def test_unknown_job_is_404(client):
    assert client.get("/api/jobs/does-not-exist").status_code == 404


def test_async_batch_without_targets_is_rejected_before_staging(client, fake_client, registry, upload_dir):
    resp = client.post("/api/create-ads-async", files=_videos("a.mp4"), data={"correlation_id": "row-8"})

    assert resp.status_code == 422
    assert fake_client.call_count == 0
    assert os.listdir(upload_dir) == []
    assert registry._jobs == {}
