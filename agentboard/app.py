"""Flask application factory for Agentboard.

Wires the services together; nothing here is a module-level singleton:

- ConfigService: config.yaml + environment overrides
- SessionStore: the canonical session table
- EventBus: SSE broadcasting of session changes
- SessionManager: terminal attach/input/resize and output fan-out
- MatchWorkerClient: the log matching process
- StatusWatcher: the poll loop owning the session table

Usage:
    from agentboard.app import create_app
    app = create_app()
    app.run(port=4040)
"""

import logging
import os
import socket
import subprocess
import sys
from pathlib import Path

from flask import Flask

from agentboard.backends import TmuxBackend
from agentboard.models import AppConfig
from agentboard.routes import register_blueprints
from agentboard.services import (
    ConfigService,
    EventBus,
    MatchWorkerClient,
    SessionManager,
    SessionStore,
    StatusWatcher,
)

logger = logging.getLogger(__name__)


def _load_dotenv(env_file: str | Path = ".env") -> None:
    """Load environment variables from .env file if it exists.

    Variables already set in the environment win.
    """
    env_file = Path(env_file)
    if not env_file.exists():
        return
    with open(env_file) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip().strip('"').strip("'")
                if key and key not in os.environ:
                    os.environ[key] = value


def create_app(config_path: str = "config.yaml", config: AppConfig | None = None) -> Flask:
    """Create and configure the Flask application.

    Background work (the match worker and the poll loop) is not started
    here; see start_background_tasks.

    Args:
        config_path: Path to the configuration file.
        config: Ready configuration, bypassing config_path.

    Returns:
        Configured Flask application.
    """
    config_service = ConfigService(config_path)
    if config is None:
        config = config_service.get_config()

    app = Flask(__name__)
    app.config["TESTING"] = False

    app.extensions["config"] = config
    app.extensions["config_service"] = config_service

    _init_services(app, config)
    register_blueprints(app)

    return app


def _init_services(app: Flask, config: AppConfig) -> None:
    """Initialize all services and wire them together.

    Args:
        app: Flask application.
        config: Application configuration.
    """
    session_store = SessionStore(data_dir=config.data_dir)
    app.extensions["session_store"] = session_store

    event_bus = EventBus()
    session_store.subscribe("*", event_bus.on_store_event)
    app.extensions["event_bus"] = event_bus

    backend = TmuxBackend()
    app.extensions["terminal_backend"] = backend

    session_manager = SessionManager(
        session_store,
        queue_size=config.terminal.subscriber_queue_size,
        output_buffer_chars=config.terminal.output_buffer_chars,
    )
    app.extensions["session_manager"] = session_manager

    match_worker = MatchWorkerClient(
        max_outstanding=config.matching.max_outstanding_requests,
        stuck_seconds=config.matching.stuck_seconds,
    )
    app.extensions["match_worker"] = match_worker

    status_watcher = StatusWatcher(
        store=session_store,
        worker=match_worker,
        backend=backend,
        session_manager=session_manager,
        event_bus=event_bus,
        config=config,
    )
    app.extensions["status_watcher"] = status_watcher

    logger.info("Services initialized")


def start_background_tasks(app: Flask) -> None:
    """Start the match worker and the poll loop.

    Args:
        app: Flask application.
    """
    match_worker = app.extensions["match_worker"]
    status_watcher = app.extensions["status_watcher"]

    match_worker.start()
    status_watcher.start()
    logger.info(f"Started status watcher (interval: {status_watcher.poll_interval_seconds}s)")


def stop_background_tasks(app: Flask) -> None:
    """Stop the poll loop, the worker and any attached terminals."""
    app.extensions["status_watcher"].stop()
    app.extensions["match_worker"].stop()
    app.extensions["session_manager"].stop()


def _run_command(*cmd: str, timeout: int = 5) -> tuple[int, str, str]:
    """Run a helper command.

    Returns:
        Tuple of (return_code, stdout, stderr).
    """
    try:
        result = subprocess.run(
            list(cmd),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return (result.returncode, result.stdout or "", result.stderr or "")
    except subprocess.TimeoutExpired:
        return (1, "", "Command timed out")
    except FileNotFoundError:
        return (127, "", f"{cmd[0]} not found")


def _port_owner(port: int) -> str | None:
    """Describe the process listening on a port, via lsof and ps.

    Returns:
        "name (pid N)", "pid N", an empty string when the port is free, or
        None if lsof is unavailable.
    """
    returncode, stdout, _ = _run_command("lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-t")
    if returncode == 127:
        return None

    pids = [line.strip() for line in stdout.splitlines() if line.strip()]
    if returncode != 0 or not pids:
        return ""

    pid = pids[0]
    returncode, stdout, _ = _run_command("ps", "-p", pid, "-o", "comm=")
    name = stdout.strip() if returncode == 0 else ""
    return f"{name} (pid {pid})" if name else f"pid {pid}"


def _port_bindable(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def check_port_available(port: int, host: str = "0.0.0.0") -> None:
    """Exit with status 1 if another process already listens on the port."""
    owner = _port_owner(port)
    if owner is None:
        in_use = not _port_bindable(host, port)
    else:
        in_use = bool(owner)

    if in_use:
        suffix = f" by {owner}" if owner else ""
        logger.error(f"Port {port} already in use{suffix}")
        sys.exit(1)


def main():
    """Run the Flask application."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    _load_dotenv()

    app = create_app()
    config = app.extensions["config"]

    check_port_available(config.port, config.host)
    start_background_tasks(app)

    logger.info(f"Starting Agentboard on port {config.port}")
    try:
        app.run(host=config.host, port=config.port, debug=config.debug, threaded=True, use_reloader=False)
    finally:
        stop_background_tasks(app)


if __name__ == "__main__":
    main()
