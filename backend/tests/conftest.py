"""Shared fixtures for sprint burnup analytics tests."""

import json
import os
import sys
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from sprint_engine.config import EngineSettings  # noqa: E402
from sprint_engine.models import SprintWindow  # noqa: E402

PARIS = ZoneInfo("Europe/Paris")


@pytest.fixture
def tz():
    """Default engine timezone."""
    return PARIS


@pytest.fixture
def settings():
    """Engine settings with default business constants."""
    return EngineSettings()


@pytest.fixture
def jira_headers():
    """Jira credential headers expected by the API."""
    return {
        "X-Jira-Server": "https://test.atlassian.net",
        "X-Jira-Email": "test@example.com",
        "X-Jira-Token": "test-token-123"
    }


@pytest.fixture
def sprint_window():
    """Active two-week sprint 55 on board 7 (3 to 14 March 2025, Paris time)."""
    return SprintWindow(
        id="55",
        state="active",
        start=datetime(2025, 3, 3, 9, 0, tzinfo=PARIS),
        end=datetime(2025, 3, 14, 18, 0, tzinfo=PARIS),
        board_id=7,
        name="Sprint 12"
    )


@pytest.fixture
def sample_sprint_payload():
    """Sample Jira agile payload for sprint 55."""
    return {
        "id": 55,
        "name": "Sprint 12",
        "state": "active",
        "startDate": "2025-03-03T09:00:00.000+0100",
        "endDate": "2025-03-14T18:00:00.000+0100",
        "originBoardId": 7
    }


@pytest.fixture
def history_entry():
    """Factory for raw Jira changelog entries with a single item."""
    def make(created, field, from_string=None, to_string=None, from_id=None, to_id=None):
        return {
            "created": created,
            "items": [
                {
                    "field": field,
                    "fromString": from_string,
                    "toString": to_string,
                    "from": from_id,
                    "to": to_id
                }
            ]
        }
    return make


@pytest.fixture
def sample_changelog_pages(history_entry):
    """Two history pages mixing status, progress, sprint and ignored fields."""
    return [
        [
            history_entry("2025-02-28T17:00:00.000+0100", "Sprint", to_id="55", to_string="Sprint 12"),
            history_entry("2025-03-04T10:00:00.000+0100", "status", "A FAIRE", "ON GOING"),
            history_entry("2025-03-05T11:00:00.000+0100", "Avancement", "0", "40"),
        ],
        [
            history_entry("2025-03-06T09:30:00.000+0100", "summary", "Old title", "New title"),
            history_entry("2025-03-07T15:00:00.000+0100", "Avancement", "40", "100"),
            history_entry("2025-03-07T15:05:00.000+0100", "status", "ON GOING", "FAIT"),
        ],
    ]


@pytest.fixture
def engine_config_file(tmp_path):
    """Engine config with a two-developer team written to a temp file."""
    config = {
        "engine": {"timezone": "Europe/Paris", "fallback_velocity": 0.76},
        "team": {
            "developers": [
                {"id": "1", "firstName": "Alice", "lastName": "Martin"},
                {"id": "2", "firstName": "Bruno", "lastName": "Petit"}
            ],
            "holidays": ["2025-05-01"],
            "absences": [
                {"developerId": "2", "startDate": "2025-03-10", "endDate": "2025-03-11"}
            ]
        }
    }
    path = tmp_path / "engine-config.json"
    path.write_text(json.dumps(config))
    return str(path)


@pytest.fixture
def app(engine_config_file):
    """Create Flask test app."""
    from app import create_app
    app = create_app(engine_config_file)
    app.config['TESTING'] = True
    yield app
    app.extensions["sprint_engine"].close()


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
