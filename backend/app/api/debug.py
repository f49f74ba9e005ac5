"""Debug API endpoints for troubleshooting."""

from flask import Blueprint, current_app, jsonify

from app import get_engine

bp = Blueprint("debug", __name__, url_prefix="/api/debug")


@bp.route("/changelog-cache", methods=["GET"])
def get_cache_stats():
    """Changelog cache counters (hits, misses, loads, evictions, size)."""
    cache = get_engine(current_app).cache
    return jsonify({"data": {
        **cache.stats(),
        "ttlSeconds": cache.ttl_seconds,
    }})


@bp.route("/changelog-cache/<issue_key>", methods=["DELETE"])
def evict_changelog(issue_key):
    """Drop one issue's cached changelog so the next read refetches it."""
    evicted = get_engine(current_app).cache.evict(issue_key)
    if evicted:
        current_app.logger.info(f"Evicted cached changelog for {issue_key}")
    return jsonify({"data": {"key": issue_key, "evicted": evicted}})
