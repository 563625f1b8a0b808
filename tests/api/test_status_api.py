"""
Test cases for the status API.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from conftest import FakeChain, RecordingNotifier
from monitor.models import MonitorConfig
from monitor.scheduler_service import MonitoringScheduler
from storage.base import InMemoryTargetStore


class TestStatusAPI:
    """Test cases for the status API endpoints."""

    @pytest.fixture
    def scheduler(self, make_targets, logger):
        targets = make_targets(3)
        targets[0].owner_id = "user-1"
        targets[2].is_paused = True
        scheduler = MonitoringScheduler(
            config=MonitorConfig(report_interval_seconds=None),
            store=InMemoryTargetStore(targets),
            chain=FakeChain(),
            notifier=RecordingNotifier(),
            logger=logger,
        )
        asyncio.run(scheduler.load_targets())
        return scheduler

    @pytest.fixture
    def client(self, scheduler):
        with TestClient(create_app(scheduler)) as client:
            yield client

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "stopped"
        assert data["scheduler"]["targets"] == 3
        assert data["scheduler"]["enabled_targets"] == 2

    def test_list_targets(self, client):
        data = client.get("/targets").json()
        assert data["total"] == 3
        assert [target["id"] for target in data["targets"]] == ["target-0", "target-1", "target-2"]
        assert "last_fingerprint" not in data["targets"][0]

    def test_list_targets_for_owner(self, client):
        data = client.get("/targets", params={"owner_id": "user-1"}).json()
        assert [target["id"] for target in data["targets"]] == ["target-0"]

    def test_get_target(self, client):
        data = client.get("/targets/target-2").json()
        assert data["is_paused"] is True
        assert data["state"] == "idle"

    def test_unknown_target(self, client):
        response = client.get("/targets/missing")
        assert response.status_code == 404
        assert response.json()["error"] == "Target not found: missing"

    def test_check_target(self, client):
        response = client.post("/targets/target-0/check")
        assert response.status_code == 200
        data = response.json()
        assert data["performed"] is True
        assert data["outcome"]["success"] is True

        target = client.get("/targets/target-0").json()
        assert target["total_checks"] == 1
        assert target["statistics"]["total_checks"] == 1

    def test_check_disabled_target(self, client):
        data = client.post("/targets/target-2/check").json()
        assert data["performed"] is False
        assert data["outcome"] is None

    def test_pause_and_resume(self, client):
        assert client.post("/targets/target-1/pause").json()["is_paused"] is True
        assert client.post("/targets/target-1/resume").json()["is_paused"] is False

    def test_statistics(self, client):
        client.post("/targets/target-0/check")
        data = client.get("/statistics").json()
        assert data["statistics"]["total_checks"] == 1
        assert data["error_rate"] == 0.0

    def test_check_after_stop(self, scheduler):
        asyncio.run(scheduler.stop())
        with TestClient(create_app(scheduler)) as client:
            response = client.post("/targets/target-0/check")
        assert response.status_code == 503
