"""Terminal routes for Agentboard.

HTTP transport for the terminal message contract: clients POST inbound
messages and read outbound ones from an SSE stream, both keyed by a
client id of their choosing.
"""

import logging

from flask import Blueprint, Response, current_app, jsonify, request

from agentboard.routes.events import SSE_HEADERS
from agentboard.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

terminal_bp = Blueprint("terminal", __name__)


def _get_manager() -> SessionManager:
    """Get the session manager from app extensions (shared instance)."""
    return current_app.extensions["session_manager"]


@terminal_bp.route("/terminal/<client_id>/messages", methods=["POST"])
def post_message(client_id: str):
    """Apply one inbound terminal message.

    Expected JSON payload:
        {"type": "terminal-attach", "session_id": "<id>", "cols": 120, "rows": 40}
        {"type": "terminal-input", "session_id": "<id>", "data": "y"}

    Returns:
        {"accepted": bool}. Rejections are explained on the client's stream
        as terminal-error messages.
    """
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "Expected a JSON object"}), 400

    accepted = _get_manager().handle_message(client_id, payload)
    return jsonify({"accepted": accepted}), 200 if accepted else 422


@terminal_bp.route("/terminal/<client_id>/stream", methods=["GET"])
def stream(client_id: str):
    """SSE stream of outbound terminal messages for a client."""
    manager = _get_manager()

    def generate():
        yield from manager.get_stream(client_id)

    return Response(generate(), mimetype="text/event-stream", headers=SSE_HEADERS)
