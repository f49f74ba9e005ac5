"""Flask application factory."""

import json
import os
from flask import Flask
from flask_cors import CORS

from sprint_engine.config import EngineSettings
from sprint_engine.service import EngineResources
from sprint_engine.store import TeamCalendar

DEFAULT_CONFIG_PATH = os.path.join(
    os.path.dirname(__file__), "..", "config", "engine-config.json"
)


def load_engine_config(app, config_path):
    """Load engine settings and the team calendar from a JSON config file.

    Expects an ``engine`` section (EngineSettings overrides) and a ``team``
    section (developers, holidays, absences). A missing or unreadable file
    gives default settings and an empty team.
    """
    config = {}
    if os.path.exists(config_path):
        try:
            with open(config_path, "r") as f:
                config = json.load(f)
            app.logger.info(f"Loaded engine config from {config_path}")
        except (json.JSONDecodeError, IOError) as e:
            app.logger.warning(f"Failed to load engine config: {e}")
            config = {}
    else:
        app.logger.info("No engine-config.json found, using default settings")

    settings = EngineSettings.from_dict(config.get("engine", {}))
    calendar = TeamCalendar.from_config(config.get("team", {}))
    return settings, calendar


def get_engine(app) -> EngineResources:
    """Shared engine resources of an app."""
    return app.extensions["sprint_engine"]


def create_app(config_path=None):
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Enable CORS for frontend
    CORS(app, resources={
        r"/api/*": {
            "origins": ["http://localhost:4200", "http://127.0.0.1:4200"],
            "methods": ["GET", "PUT", "DELETE", "OPTIONS"],
            "allow_headers": [
                "Content-Type",
                "X-Jira-Token", "X-Jira-Email", "X-Jira-Server"
            ]
        }
    })

    # Register blueprints
    from app.api import sprints, debug
    app.register_blueprint(sprints.bp)
    app.register_blueprint(debug.bp)

    # Shared cache, worker pool and stores live for the app's lifetime
    settings, calendar = load_engine_config(app, config_path or DEFAULT_CONFIG_PATH)
    app.extensions["sprint_engine"] = EngineResources(settings, calendar)

    # Health check endpoint
    @app.route("/health")
    def health():
        return {"status": "ok"}

    return app
