"""Sprint analysis API endpoints: burnup, full info, capacity and availability."""

from flask import Blueprint, current_app, request, jsonify

from app import get_engine
from sprint_engine.dates import parse_jira_timestamp
from sprint_engine.errors import (
    InvalidAvailabilityError,
    MalformedTimestamp,
    TransportFailure,
    UnknownSprintError,
)
from sprint_engine.jira_gateway import JiraHistoryGateway
from sprint_engine.service import SprintAnalysisService

bp = Blueprint("sprints", __name__, url_prefix="/api/sprints")


def get_jira_credentials():
    """Extract Jira credentials from request headers."""
    server = request.headers.get("X-Jira-Server", "").rstrip("/")
    email = request.headers.get("X-Jira-Email")
    token = request.headers.get("X-Jira-Token")

    if not all([server, email, token]):
        return None, None, None

    return server, email, token


def build_service():
    """Analysis service for the Jira connection in the request headers.

    Returns:
        SprintAnalysisService, or None when credentials are missing
    """
    server, email, token = get_jira_credentials()
    if not server:
        return None

    engine = get_engine(current_app)
    gateway = JiraHistoryGateway(server, email, token, engine.settings)
    return SprintAnalysisService(gateway, engine)


def error_response(error):
    """Map an engine error to a JSON error response."""
    if isinstance(error, UnknownSprintError):
        return jsonify({"error": str(error)}), 404
    if isinstance(error, (InvalidAvailabilityError, MalformedTimestamp)):
        return jsonify({"error": str(error)}), 400
    if isinstance(error, TransportFailure):
        return jsonify({"error": str(error)}), 502
    current_app.logger.exception("Unexpected error during sprint analysis")
    return jsonify({"error": f"Internal error: {error}"}), 500


@bp.route("/<sprint_id>/burnup", methods=["GET"])
def get_burnup(sprint_id):
    """Burnup series of a sprint.

    Requires headers:
        - X-Jira-Server: Jira server URL
        - X-Jira-Email: User's Jira email
        - X-Jira-Token: Jira API token

    Returns:
        - points: one entry per working date (date, done, capacity, capacityJH, velocity)
        - totalStoryPoints, totalJH, velocity, selectedVelocity
    """
    service = build_service()
    if service is None:
        return jsonify({"error": "Missing Jira credentials in headers"}), 401

    try:
        return jsonify({"data": service.build_burnup(sprint_id)})
    except Exception as e:
        return error_response(e)


@bp.route("/<sprint_id>/full-info", methods=["GET"])
def get_full_info(sprint_id):
    """Committed, added and removed tickets of a sprint with its KPIs."""
    service = build_service()
    if service is None:
        return jsonify({"error": "Missing Jira credentials in headers"}), 401

    try:
        return jsonify({"data": service.analyse_sprint(sprint_id)})
    except Exception as e:
        return error_response(e)


@bp.route("/boards/<int:board_id>/sprints", methods=["GET"])
def list_board_sprints(board_id):
    """Closed, active and future sprints of a board.

    Returns:
        - id, name, state, startDate, endDate, completeDate, originBoardId
        - velocity: observed velocity (closed sprints whose burnup was built)
        - velocityStart: start estimate, else the closed and active average
    """
    service = build_service()
    if service is None:
        return jsonify({"error": "Missing Jira credentials in headers"}), 401

    try:
        return jsonify({"data": service.list_board_sprints(board_id)})
    except Exception as e:
        return error_response(e)


@bp.route("/boards/<int:board_id>/sprints/<next_sprint_id>/developers/capacity", methods=["GET"])
def get_capacity(board_id, next_sprint_id):
    """Capacity forecast of every developer for the board's next sprint."""
    service = build_service()
    if service is None:
        return jsonify({"error": "Missing Jira credentials in headers"}), 401

    try:
        return jsonify({"data": service.forecast_capacity(board_id, next_sprint_id)})
    except Exception as e:
        return error_response(e)


@bp.route("/<sprint_id>/dates", methods=["PUT"])
def put_dates(sprint_id):
    """Pin a sprint's start and/or end date.

    Body:
        - startDate: Optional ISO timestamp
        - endDate: Optional ISO timestamp
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Request body required"}), 400

    engine = get_engine(current_app)
    try:
        start = parse_jira_timestamp(data["startDate"], engine.settings.tz) if data.get("startDate") else None
        end = parse_jira_timestamp(data["endDate"], engine.settings.tz) if data.get("endDate") else None
        engine.sprint_store.override_dates(sprint_id, start, end)
    except Exception as e:
        return error_response(e)

    return jsonify({"data": {
        "sprintId": sprint_id,
        "startDate": start.isoformat() if start else None,
        "endDate": end.isoformat() if end else None,
    }})


@bp.route("/<sprint_id>/developers/<developer_id>/availability", methods=["GET"])
def get_availability(sprint_id, developer_id):
    """Availability percentage of a developer for a sprint (100 by default)."""
    store = get_engine(current_app).availability_store
    return jsonify({"data": {
        "sprintId": sprint_id,
        "developerId": developer_id,
        "percent": store.get_percent(sprint_id, developer_id),
    }})


@bp.route("/<sprint_id>/developers/<developer_id>/availability", methods=["PUT"])
def put_availability(sprint_id, developer_id):
    """Set a developer's availability for a sprint.

    Body:
        - percent: Number between 0 and 100
    """
    data = request.get_json(silent=True)
    if not data or "percent" not in data:
        return jsonify({"error": "Missing required field: percent"}), 400

    store = get_engine(current_app).availability_store
    try:
        percent = store.set_percent(sprint_id, developer_id, data["percent"])
    except Exception as e:
        return error_response(e)

    return jsonify({"data": {
        "sprintId": sprint_id,
        "developerId": developer_id,
        "percent": percent,
    }})


@bp.route("/<sprint_id>/availability", methods=["GET"])
def list_availability(sprint_id):
    """Every availability set for a sprint, keyed by developer id."""
    store = get_engine(current_app).availability_store
    return jsonify({"data": store.list_for_sprint(sprint_id)})
