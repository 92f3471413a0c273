"""Event routes for Agentboard.

Provides the Server-Sent Events (SSE) endpoint for session table updates.
"""

from flask import Blueprint, Response, current_app, request

events_bp = Blueprint("events", __name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@events_bp.route("/events")
def sse_events():
    """Server-Sent Events endpoint for session updates.

    Events:
    - session_created: A window or log started being tracked
    - session_updated: Status, binding or activity changed
    - session_removed: A session closed or expired
    - sessions_refreshed: A poll tick completed

    A reconnecting client sends Last-Event-ID (header or ``last_event_id``
    query parameter) to receive the changes it missed, or a ``resync``
    event when they are gone.

    Returns:
        SSE stream with events in format:
        event: <event_type>
        data: <json_payload>
    """
    event_bus = current_app.extensions["event_bus"]
    last_event_id = request.headers.get("Last-Event-ID") or request.args.get("last_event_id")

    def generate():
        yield from event_bus.get_sse_stream(last_event_id=last_event_id)

    return Response(generate(), mimetype="text/event-stream", headers=SSE_HEADERS)
