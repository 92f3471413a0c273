"""Session routes for Agentboard.

Read-only status surface over the session table, plus a health check.
"""

import logging

from flask import Blueprint, current_app, jsonify

from agentboard.services.session_store import SessionStore

logger = logging.getLogger(__name__)

sessions_bp = Blueprint("sessions", __name__)


def _get_store() -> SessionStore:
    """Get the session store from app extensions (shared instance)."""
    return current_app.extensions["session_store"]


@sessions_bp.route("/sessions", methods=["GET"])
def list_sessions():
    """List all sessions with their current status.

    Returns:
        JSON object {"sessions": [...]}, oldest first.
    """
    sessions = _get_store().list_sessions()
    logger.debug(f"[API] GET /sessions - returning {len(sessions)} sessions")
    return jsonify({"sessions": [s.model_dump(mode="json") for s in sessions]})


@sessions_bp.route("/sessions/<session_id>", methods=["GET"])
def get_session(session_id: str):
    """Get a single session."""
    session = _get_store().get(session_id)
    if session is None:
        return jsonify({"error": "Session not found"}), 404
    return jsonify(session.model_dump(mode="json"))


@sessions_bp.route("/health", methods=["GET"])
def health():
    """Watcher, worker and client counts."""
    watcher = current_app.extensions.get("status_watcher")
    manager = current_app.extensions.get("session_manager")
    event_bus = current_app.extensions.get("event_bus")

    return jsonify(
        {
            "status": "ok",
            "sessions": len(_get_store()),
            "watcher": watcher.get_status() if watcher else None,
            "terminal_clients": manager.client_count if manager else 0,
            "sse_clients": event_bus.subscriber_count if event_bus else 0,
        }
    )
