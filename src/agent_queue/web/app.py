"""Webhook and health endpoints served next to the poll loop."""

import json
import logging
import threading

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

logger = logging.getLogger(__name__)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def webhook(request: Request):
    daemon = request.app.state.daemon
    body = await request.body()
    try:
        payload = json.loads(body)
        if not isinstance(payload, dict):
            raise ValueError("payload is not an object")
    except ValueError:
        logger.info("Webhook received (unparseable payload)")
    else:
        parts = [str(payload.get("event") or "unknown")]
        if payload.get("task_id"):
            parts.append(f"(task: {payload['task_id']})")
        if payload.get("message_id"):
            parts.append(f"(message: {payload['message_id']})")
        logger.info("Webhook received: %s", " ".join(parts))

    daemon.wake()
    return JSONResponse({"ok": True})


async def health(request: Request):
    daemon = request.app.state.daemon
    task = daemon.executor.current_task
    return JSONResponse(
        {
            "status": "ok",
            "agent": daemon.config.agent_name,
            "busy": daemon.executor.busy,
            "task_id": task.id if task else None,
        }
    )


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(daemon) -> Starlette:
    routes = [
        Route("/webhook", webhook, methods=["POST"]),
        Route("/health", health, methods=["GET"]),
    ]
    app = Starlette(routes=routes)
    app.state.daemon = daemon
    return app


class WebhookServer:
    """Runs the app under uvicorn in a background thread."""

    def __init__(self, daemon, host: str = "0.0.0.0", port: int = 9100):
        self.host = host
        self.port = port
        self._server = uvicorn.Server(
            uvicorn.Config(create_app(daemon), host=host, port=port, log_level="warning")
        )
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        # Off the main thread uvicorn leaves signal handling to the daemon.
        self._thread = threading.Thread(target=self._server.run, name="webhook-server", daemon=True)
        self._thread.start()
        logger.info("Webhook server listening on %s:%s", self.host, self.port)

    def stop(self):
        self._server.should_exit = True
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
