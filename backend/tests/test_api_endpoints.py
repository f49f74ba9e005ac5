"""Tests for API endpoints."""

import pytest
from unittest.mock import patch, Mock
import json

from sprint_engine.errors import TransportFailure, UnknownSprintError
from sprint_engine.models import IssueChangelog


class TestHealth:
    """Test health check endpoint."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert json.loads(response.data) == {"status": "ok"}


class TestAppConfig:
    """Test engine configuration loading."""

    def test_team_loaded(self, app):
        engine = app.extensions["sprint_engine"]
        assert [d.id for d in engine.calendar.developers] == ["1", "2"]
        assert len(engine.calendar.absences) == 1

    def test_missing_config_uses_defaults(self, tmp_path):
        from app import create_app
        app = create_app(str(tmp_path / "missing.json"))
        engine = app.extensions["sprint_engine"]

        assert engine.settings.fallback_velocity == 0.76
        assert engine.calendar.developers == []
        engine.close()

    def test_invalid_config_uses_defaults(self, tmp_path):
        from app import create_app
        path = tmp_path / "engine-config.json"
        path.write_text("{not json")
        app = create_app(str(path))

        assert app.extensions["sprint_engine"].settings.daily_overhead == 0.6
        app.extensions["sprint_engine"].close()


class TestSprintAnalysisEndpoints:
    """Test burnup, full-info and capacity endpoints."""

    @pytest.mark.parametrize("url", [
        "/api/sprints/55/burnup",
        "/api/sprints/55/full-info",
        "/api/sprints/boards/7/sprints/56/developers/capacity",
    ])
    def test_missing_credentials(self, client, url):
        """Should return 401 when Jira credentials are missing."""
        response = client.get(url)
        assert response.status_code == 401
        assert "error" in json.loads(response.data)

    @patch("app.api.sprints.SprintAnalysisService")
    def test_burnup_success(self, mock_service_cls, client, jira_headers):
        mock_service_cls.return_value.build_burnup.return_value = {"points": [], "totalJH": 0.0}

        response = client.get("/api/sprints/55/burnup", headers=jira_headers)

        assert response.status_code == 200
        assert json.loads(response.data)["data"] == {"points": [], "totalJH": 0.0}
        mock_service_cls.return_value.build_burnup.assert_called_once_with("55")

    @patch("app.api.sprints.SprintAnalysisService")
    def test_full_info_success(self, mock_service_cls, client, jira_headers):
        mock_service_cls.return_value.analyse_sprint.return_value = {"kpis": {"totalTickets": 3}}

        response = client.get("/api/sprints/55/full-info", headers=jira_headers)

        assert response.status_code == 200
        assert json.loads(response.data)["data"]["kpis"]["totalTickets"] == 3

    @patch("app.api.sprints.SprintAnalysisService")
    def test_capacity_success(self, mock_service_cls, client, jira_headers):
        mock_service_cls.return_value.forecast_capacity.return_value = {"developers": []}

        response = client.get(
            "/api/sprints/boards/7/sprints/56/developers/capacity", headers=jira_headers
        )

        assert response.status_code == 200
        mock_service_cls.return_value.forecast_capacity.assert_called_once_with(7, "56")

    @patch("app.api.sprints.SprintAnalysisService")
    def test_board_sprints_success(self, mock_service_cls, client, jira_headers):
        mock_service_cls.return_value.list_board_sprints.return_value = [
            {"id": "54", "velocity": 0.9, "velocityStart": 0.8}
        ]

        response = client.get("/api/sprints/boards/7/sprints", headers=jira_headers)

        assert response.status_code == 200
        assert json.loads(response.data)["data"][0]["velocity"] == 0.9
        mock_service_cls.return_value.list_board_sprints.assert_called_once_with(7)

    def test_board_sprints_missing_credentials(self, client):
        response = client.get("/api/sprints/boards/7/sprints")
        assert response.status_code == 401

    @patch("app.api.sprints.JiraHistoryGateway")
    @patch("app.api.sprints.SprintAnalysisService")
    def test_gateway_built_from_headers(self, mock_service_cls, mock_gateway_cls, client, jira_headers):
        mock_service_cls.return_value.build_burnup.return_value = {}

        client.get("/api/sprints/55/burnup", headers=jira_headers)

        args = mock_gateway_cls.call_args.args
        assert args[:3] == ("https://test.atlassian.net", "test@example.com", "test-token-123")

    @pytest.mark.parametrize("error,status", [
        (TransportFailure("Jira API error: 503", 503), 502),
        (UnknownSprintError("55"), 404),
        (RuntimeError("boom"), 500),
    ])
    @patch("app.api.sprints.SprintAnalysisService")
    def test_error_mapping(self, mock_service_cls, client, jira_headers, error, status):
        mock_service_cls.return_value.build_burnup.side_effect = error

        response = client.get("/api/sprints/55/burnup", headers=jira_headers)

        assert response.status_code == status
        assert "error" in json.loads(response.data)


class TestAvailabilityEndpoints:
    """Test developer availability per sprint."""

    def test_default_is_full_availability(self, client):
        response = client.get("/api/sprints/56/developers/1/availability")

        assert response.status_code == 200
        assert json.loads(response.data)["data"]["percent"] == 100

    def test_put_then_get(self, client):
        response = client.put("/api/sprints/56/developers/1/availability", json={"percent": 60})
        assert response.status_code == 200

        response = client.get("/api/sprints/56/developers/1/availability")
        assert json.loads(response.data)["data"]["percent"] == 60

        response = client.get("/api/sprints/56/availability")
        assert json.loads(response.data)["data"] == {"1": 60}

    @pytest.mark.parametrize("body", [{"percent": 150}, {"percent": -1}, {"percent": "half"}])
    def test_invalid_percent(self, client, body):
        response = client.put("/api/sprints/56/developers/1/availability", json=body)
        assert response.status_code == 400

    def test_missing_percent(self, client):
        response = client.put("/api/sprints/56/developers/1/availability", json={})
        assert response.status_code == 400


class TestSprintDatesEndpoint:
    """Test pinning sprint dates."""

    def test_unknown_sprint(self, client):
        response = client.put("/api/sprints/999/dates", json={"startDate": "2025-03-04T09:00:00"})
        assert response.status_code == 404

    def test_malformed_date(self, app, client, sprint_window):
        app.extensions["sprint_engine"].sprint_store.save_sprint(sprint_window)

        response = client.put("/api/sprints/55/dates", json={"startDate": "next monday"})
        assert response.status_code == 400

    def test_pin_start(self, app, client, sprint_window):
        store = app.extensions["sprint_engine"].sprint_store
        store.save_sprint(sprint_window)

        response = client.put("/api/sprints/55/dates", json={"startDate": "2025-03-04T09:00:00"})

        assert response.status_code == 200
        assert json.loads(response.data)["data"]["startDate"] == "2025-03-04T09:00:00+01:00"
        assert store.get_date_overrides("55")[0].day == 4


class TestDebugCache:
    """Test changelog cache debug endpoints."""

    def test_stats(self, client):
        response = client.get("/api/debug/changelog-cache")

        data = json.loads(response.data)["data"]
        assert data["size"] == 0
        assert data["ttlSeconds"] == 7200

    def test_evict(self, app, client):
        app.extensions["sprint_engine"].cache.prewarm("SAG-1", IssueChangelog.empty("SAG-1"))

        response = client.delete("/api/debug/changelog-cache/SAG-1")
        assert json.loads(response.data)["data"] == {"key": "SAG-1", "evicted": True}

        response = client.delete("/api/debug/changelog-cache/SAG-1")
        assert json.loads(response.data)["data"]["evicted"] is False
