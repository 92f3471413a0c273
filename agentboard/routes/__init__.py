"""Flask routes for Agentboard."""

from agentboard.routes.events import events_bp
from agentboard.routes.sessions import sessions_bp
from agentboard.routes.terminal import terminal_bp

__all__ = [
    "events_bp",
    "sessions_bp",
    "terminal_bp",
]


def register_blueprints(app):
    """Register all blueprints with the Flask app.

    Args:
        app: The Flask application instance.
    """
    app.register_blueprint(events_bp, url_prefix="/api")
    app.register_blueprint(sessions_bp, url_prefix="/api")
    app.register_blueprint(terminal_bp, url_prefix="/api")
