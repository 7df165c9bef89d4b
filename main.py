"""
Reception Form Web App
======================

FastAPI application serving the editable, printable reception form
("受付表").  It exposes the following endpoints:

* ``GET /health`` – Returns a confirmation and configuration values.
* ``GET /`` – A blank form.  With ``?data=<json>&slack=<json>`` (links
  posted by the bot in ``LINK_MODE=url``) the form is pre-filled from the
  query string instead.
* ``POST /`` – Form actions on a not-yet-stored record: ``add_row``
  re-renders with one more work-item row, ``save`` stores it and
  redirects to its ID page, ``confirm`` stores it and notifies Slack.
* ``GET /uketsuke/{id}`` – Loads a stored record.  Unknown IDs render a
  dedicated "not found" page with a link back to ``/``.
* ``POST /uketsuke/{id}`` – ``add_row`` / ``save`` / ``confirm`` on a
  stored record.

The "確認" (confirm) action is only offered for records that came from a
Slack thread; it saves the record and then calls the bot process's
confirmation callback, which posts into that thread.

Store failures are not hidden: the page is re-rendered with an error
notice and HTTP 500.
"""

from __future__ import annotations

import os
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.concurrency import run_in_threadpool

from logging_setup import init_logging, log_context
from uketsuke.confirm_client import ConfirmError, request_confirmation
from uketsuke.links import decode_legacy_params
from uketsuke.schema import ReceptionRecord, WorkItem, coerce_record, empty_record
from uketsuke.store import FIELD_CHANNEL_ID, FIELD_DATA, FIELD_THREAD_TS, UketsukeStore

init_logging()
log = logging.getLogger("main")

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

app = FastAPI(title="Uketsuke Reception Form")

ACTION_SAVE = "save"
ACTION_ADD_ROW = "add_row"
ACTION_CONFIRM = "confirm"

NOTICES = {
    "saved": "保存しました",
    "save_failed": "保存に失敗しました",
    "confirmed": "保存し、Slackに確認完了を通知しました",
    "confirm_failed": "保存しましたが、Slackへの確認通知に失敗しました",
}

# Text controls on the form, in display order
TEXT_FIELDS = (
    "formTitle", "jisshiDate", "uketsukeSha", "uketsukeDate",
    "kaishaAddress", "kaishaName", "tantouSha", "keitai",
    "genbaName", "kenName", "genbaAddress", "renrakusakiTel",
    "machiawaseJikanBasho", "genbaJimushoBasho", "memo",
)

_store: Optional[UketsukeStore] = None


def get_store() -> UketsukeStore:
    """The process-wide store; Firestore connects on first use."""
    global _store
    if _store is None:
        _store = UketsukeStore()
    return _store


# ---------------------------------------------------------------------------
# Form helpers
# ---------------------------------------------------------------------------
def _clean(value: Any) -> str:
    return str(value or "").replace("\r\n", "\n")

def form_to_record(form) -> ReceptionRecord:
    """Browser form fields → record. Work-item rows arrive as repeated ``tokkiJiko``."""
    data: Dict[str, Any] = {k: _clean(form.get(k)) for k in TEXT_FIELDS}
    data["genbaJimushoAri"] = form.get("genbaJimushoAri") == "1"
    data["sagyoNaiyo"] = [{"tokkiJiko": _clean(v)} for v in form.getlist("tokkiJiko")]
    return coerce_record(data)

def _slack_from_form(form) -> Optional[Dict[str, str]]:
    channel, thread = form.get("slackChannelId"), form.get("slackThreadTs")
    if channel and thread:
        return {"channelId": channel, "threadTs": thread}
    return None

def _slack_log_fields(slack: Optional[Dict[str, str]]) -> Dict[str, Optional[str]]:
    if not slack:
        return {}
    return {"channel": slack["channelId"], "thread_ts": slack["threadTs"]}

def _render(
    request: Request,
    record: ReceptionRecord,
    *,
    doc_id: Optional[str] = None,
    slack: Optional[Dict[str, str]] = None,
    subtitle: str = "新しい受付表を作成できます",
    notice: Optional[str] = None,
    error: bool = False,
    status_code: int = 200,
) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "uketsuke_form.html",
        {
            "record": record,
            "doc_id": doc_id,
            "slack": slack,
            "subtitle": subtitle,
            "notice": notice,
            "error": error,
        },
        status_code=status_code,
    )

def _render_not_found(request: Request, doc_id: str, message: str, status_code: int = 404) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "not_found.html",
        {"doc_id": doc_id, "message": message},
        status_code=status_code,
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------
@app.get("/health")
def health() -> Dict[str, Any]:
    return {
        "ok": True,
        "collection": get_store().collection,
        "log_level": os.getenv("LOG_LEVEL", "INFO").upper(),
    }


# ---------------------------------------------------------------------------
# Unsaved form (blank, or pre-filled from a legacy link)
# ---------------------------------------------------------------------------
@app.get("/", response_class=HTMLResponse)
def home(request: Request, data: Optional[str] = None, slack: Optional[str] = None):
    if data:
        parsed, slack_info = decode_legacy_params(data, slack)
        log.info("legacy_link_opened", extra={"kv": {"fields": len(parsed), "slack": bool(slack_info)}})
        return _render(
            request,
            coerce_record(parsed),
            slack=slack_info,
            subtitle="Slack会話から自動生成された受付表を確認・編集できます",
        )
    return _render(request, empty_record())


@app.post("/", response_class=HTMLResponse)
async def home_action(request: Request, store: UketsukeStore = Depends(get_store)):
    form = await request.form()
    action = form.get("action") or ACTION_SAVE
    record = form_to_record(form)
    slack = _slack_from_form(form)

    if action == ACTION_ADD_ROW:
        record.sagyoNaiyo.append(WorkItem())
        return _render(request, record, slack=slack)

    with log_context(request_id=uuid.uuid4().hex, **_slack_log_fields(slack)):
        # Firestore and the confirm callback are blocking; keep them off the event loop
        try:
            doc_id = await run_in_threadpool(
                store.create,
                record.model_dump(),
                thread_ts=slack["threadTs"] if slack else None,
                channel_id=slack["channelId"] if slack else None,
            )
        except Exception:
            log.exception("form_create_failed")
            return _render(request, record, slack=slack, notice=NOTICES["save_failed"],
                           error=True, status_code=500)

        notice = "saved"
        if action == ACTION_CONFIRM and slack:
            notice = await run_in_threadpool(_confirm, slack)
    return RedirectResponse(url=f"/uketsuke/{doc_id}?notice={notice}", status_code=303)


# ---------------------------------------------------------------------------
# Stored record
# ---------------------------------------------------------------------------
def _slack_from_doc(doc: Dict[str, Any]) -> Optional[Dict[str, str]]:
    channel, thread = doc.get(FIELD_CHANNEL_ID), doc.get(FIELD_THREAD_TS)
    if channel and thread:
        return {"channelId": channel, "threadTs": thread}
    return None

def _confirm(slack: Dict[str, str]) -> str:
    try:
        request_confirmation(slack["channelId"], slack["threadTs"])
    except ConfirmError:
        log.exception("confirm_failed", extra={"kv": slack})
        return "confirm_failed"
    return "confirmed"


@app.get("/uketsuke/{doc_id}", response_class=HTMLResponse)
def record_page(request: Request, doc_id: str, notice: Optional[str] = None,
                store: UketsukeStore = Depends(get_store)):
    try:
        doc = store.get_document(doc_id)
    except Exception:
        log.exception("form_load_failed", extra={"kv": {"id": doc_id}})
        return _render_not_found(request, doc_id, "データの取得に失敗しました", status_code=500)
    if doc is None:
        return _render_not_found(request, doc_id, "データが見つかりません")

    return _render(
        request,
        coerce_record(doc.get(FIELD_DATA) or {}),
        doc_id=doc_id,
        slack=_slack_from_doc(doc),
        subtitle="受付表を確認・編集できます",
        notice=NOTICES.get(notice or ""),
        error=notice in ("save_failed", "confirm_failed"),
    )


@app.post("/uketsuke/{doc_id}", response_class=HTMLResponse)
async def record_action(request: Request, doc_id: str, store: UketsukeStore = Depends(get_store)):
    form = await request.form()
    action = form.get("action") or ACTION_SAVE
    record = form_to_record(form)
    slack = _slack_from_form(form)
    subtitle = "受付表を確認・編集できます"

    if action == ACTION_ADD_ROW:
        record.sagyoNaiyo.append(WorkItem())
        return _render(request, record, doc_id=doc_id, slack=slack, subtitle=subtitle)

    with log_context(request_id=uuid.uuid4().hex, **_slack_log_fields(slack)):
        try:
            await run_in_threadpool(store.update, doc_id, record.model_dump())
        except Exception:
            log.exception("form_save_failed", extra={"kv": {"id": doc_id}})
            return _render(request, record, doc_id=doc_id, slack=slack, subtitle=subtitle,
                           notice=NOTICES["save_failed"], error=True, status_code=500)

        notice = "saved"
        if action == ACTION_CONFIRM and slack:
            notice = await run_in_threadpool(_confirm, slack)
    return _render(request, record, doc_id=doc_id, slack=slack, subtitle=subtitle,
                   notice=NOTICES[notice], error=notice == "confirm_failed")
