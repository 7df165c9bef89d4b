"""
Reception-form Slack bot
========================

Process entry point for the Slack side of the service.  It runs two
things side by side:

* A Slack Bolt app (Socket Mode) listening for ``app_mention`` events.
  Each mention is handed to ``uketsuke.mention_worker.handle_mention``,
  which reads the thread, extracts a reception record with the LLM and
  replies with a link to the web form.  Bolt dispatches listeners on its
  own worker threads, so mentions in different threads are handled
  concurrently and independently.
* A small FastAPI app, the *confirmation callback*.  The web form calls
  ``POST /api/confirm`` with ``{channelId, threadTs}`` once a sales
  person has confirmed the record, and the bot posts "確認完了" into the
  originating thread.

Service handles (Bolt app, Firestore store, bot token) are built once in
``build_services`` and passed to the handlers explicitly.

Run with ``python slack_bot.py``.
"""

from __future__ import annotations

import os
import logging
import threading

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from slack_bolt import App
from slack_bolt.adapter.socket_mode import SocketModeHandler
from starlette.concurrency import run_in_threadpool

from logging_setup import init_logging, log_context
from uketsuke.mention_worker import Services, handle_mention, send_confirm_notification
from uketsuke.store import UketsukeStore

load_dotenv()
init_logging()
log = logging.getLogger("slack_bot")

# ---------------------------------------------------------------------------
# Environment driven configuration
# ---------------------------------------------------------------------------
SLACK_BOT_TOKEN = os.getenv("SLACK_BOT_TOKEN", "")
SLACK_APP_TOKEN = os.getenv("SLACK_APP_TOKEN", "")
SLACK_SIGNING_SECRET = os.getenv("SLACK_SIGNING_SECRET", "")
CONFIRM_API_HOST = os.getenv("CONFIRM_API_HOST", "0.0.0.0")
CONFIRM_API_PORT = int(os.getenv("CONFIRM_API_PORT", "3001"))
CONFIRM_PATH = "/api/confirm"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


# ---------------------------------------------------------------------------
# Confirmation callback API
# ---------------------------------------------------------------------------
def create_confirm_api(client) -> FastAPI:
    """FastAPI app exposing ``POST /api/confirm`` for the given Slack client."""
    api = FastAPI(title="Uketsuke confirmation callback", docs_url=None, redoc_url=None, openapi_url=None)

    @api.middleware("http")
    async def _cors(request: Request, call_next):
        # Preflight for any path is answered here, before routing
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=CORS_HEADERS)
        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response

    @api.post(CONFIRM_PATH)
    async def confirm(request: Request):
        try:
            body = await request.json()
            channel_id = body["channelId"]
            thread_ts = body["threadTs"]
            if not channel_id or not thread_ts:
                raise ValueError("channelId and threadTs are required")
            with log_context(channel=channel_id, thread_ts=thread_ts):
                await run_in_threadpool(send_confirm_notification, client, channel_id, thread_ts)
        except Exception:
            log.exception("confirm_api_error")
            return JSONResponse(
                {"success": False, "error": "Failed to send notification"},
                status_code=500,
            )
        return {"success": True}

    @api.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"])
    async def not_found(path: str):
        return Response(status_code=404)

    return api


# ---------------------------------------------------------------------------
# Slack app
# ---------------------------------------------------------------------------
def build_services(store: UketsukeStore | None = None) -> Services:
    return Services(store=store or UketsukeStore(), bot_token=SLACK_BOT_TOKEN)


def create_slack_app(services: Services) -> App:
    app = App(token=services.bot_token, signing_secret=SLACK_SIGNING_SECRET)

    @app.event("app_mention")
    def on_mention(event, client, say):
        handle_mention(event, client, say, services)

    return app


def _log_env() -> None:
    log.info(
        "env_check",
        extra={"kv": {
            "SLACK_BOT_TOKEN": "set" if SLACK_BOT_TOKEN else "missing",
            "SLACK_APP_TOKEN": "set" if SLACK_APP_TOKEN else "missing",
            "SLACK_SIGNING_SECRET": "set" if SLACK_SIGNING_SECRET else "missing",
        }},
    )


def main() -> None:
    _log_env()
    services = build_services()
    app = create_slack_app(services)

    api = create_confirm_api(app.client)
    server = threading.Thread(
        target=uvicorn.run,
        args=(api,),
        kwargs={"host": CONFIRM_API_HOST, "port": CONFIRM_API_PORT, "log_config": None},
        name="confirm-api",
        daemon=True,
    )
    server.start()
    log.info("confirm_api_started", extra={"kv": {"url": f"http://localhost:{CONFIRM_API_PORT}{CONFIRM_PATH}"}})

    log.info("slack_bot_starting", extra={"kv": {"mode": "socket", "link_mode": services.link_mode}})
    SocketModeHandler(app, SLACK_APP_TOKEN).start()


if __name__ == "__main__":
    main()
