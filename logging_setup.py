"""
Shared logging for the reception-form service (Slack bot process + web form).

Every record carries the Slack context it was emitted under, so one
mention or one form submission can be followed across modules:

    service     SERVICE_NAME (default uketsuke-bot)
    request_id  one id per mention / per form POST
    channel     Slack channel of the thread being processed
    thread_ts   Slack thread being processed

Set them for a block of work with ``log_context(...)``; values are
restored when the block exits, including on Bolt's reused worker threads.

Output (LOG_STYLE):
    json   one JSON object per line (default), via python-json-logger
    human  "<time> <LEVEL> <service> <logger>: <event> | k=v ..."
    both   both handlers

Modules log event names as the message and details under ``extra={"kv": {...}}``.
Long free text (conversation, model output) goes through ``preview``.
"""

from __future__ import annotations

import os
import logging
import contextvars
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional

from pythonjsonlogger.json import JsonFormatter

# ----------------------------
# Context
# ----------------------------
request_id_var = contextvars.ContextVar("request_id", default=None)
channel_var    = contextvars.ContextVar("channel", default=None)
thread_ts_var  = contextvars.ContextVar("thread_ts", default=None)

_CONTEXT: Dict[str, contextvars.ContextVar] = {
    "request_id": request_id_var,
    "channel": channel_var,
    "thread_ts": thread_ts_var,
}

@contextmanager
def log_context(**values: Optional[str]) -> Iterator[None]:
    """Bind context fields (request_id / channel / thread_ts) for a block."""
    unknown = set(values) - set(_CONTEXT)
    if unknown:
        raise KeyError(f"unknown log context field(s): {sorted(unknown)}")
    tokens = [(_CONTEXT[k], _CONTEXT[k].set(v)) for k, v in values.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)

PREVIEW_CHARS = int(os.getenv("LOG_PREVIEW_CHARS", "280"))
VALUE_CHARS   = int(os.getenv("LOG_VALUE_CHARS", "140"))

# ----------------------------
# Value rendering
# ----------------------------
def _short(value: Any, limit: int = VALUE_CHARS) -> str:
    """One-line, truncated text for a log value; None renders as '-'."""
    if value is None:
        return "-"
    if isinstance(value, BaseException):
        text = f"{type(value).__name__}: {value}"
    else:
        text = str(value)
    text = " ".join(text.split())
    return text if len(text) <= limit else text[:limit] + "…"

def human_kv(items: Mapping[str, Any] | Iterable[tuple[str, Any]], sep: str = " ") -> str:
    """'k=v' tokens for a mapping or an iterable of pairs."""
    pairs = items.items() if isinstance(items, Mapping) else items
    return sep.join(f"{k}={_short(v)}" for k, v in pairs)

def preview(s: str | None, lim: int = PREVIEW_CHARS) -> Dict[str, Any]:
    """{len, preview} for conversation text and model output."""
    if not s:
        return {"len": 0, "preview": ""}
    s = s.strip()
    return {"len": len(s), "preview": s[:lim] + ("…" if len(s) > lim else "")}

# ----------------------------
# Filter & formatters
# ----------------------------
class _SlackContextFilter(logging.Filter):
    """Stamp service name and the current Slack context onto each record."""

    def __init__(self, service: str):
        super().__init__()
        self.service = service

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.service = self.service
        for name, var in _CONTEXT.items():
            setattr(record, name, var.get())
        return True

class _HumanFormatter(logging.Formatter):
    default_msec_format = "%s.%03d"

    def format(self, record: logging.LogRecord) -> str:
        # 2026-01-14 10:36:28.047 INFO uketsuke-bot uketsuke.store: firestore_create_ok | thread_ts=... id=...
        head = " ".join((
            self.formatTime(record),
            record.levelname,
            getattr(record, "service", "-"),
            f"{record.name}:",
            record.getMessage(),
        ))
        pairs = [(k, getattr(record, k, None)) for k in _CONTEXT]
        pairs = [(k, v) for k, v in pairs if v]
        kv = getattr(record, "kv", None)
        if isinstance(kv, Mapping):
            pairs.extend(kv.items())
        if pairs:
            head += " | " + human_kv(pairs)
        if record.exc_info:
            head += "\n" + self.formatException(record.exc_info)
        return head

def _json_formatter() -> JsonFormatter:
    fields = ["asctime", "levelname", "service", "name", "message", *_CONTEXT]
    return JsonFormatter(" ".join(f"%({f})s" for f in fields))

# ----------------------------
# Init
# ----------------------------
def init_logging() -> None:
    """Configure the root logger once per process from LOG_* env vars."""
    root = logging.getLogger()
    if getattr(root, "_initialized_by_app", False):
        return

    level = os.getenv("LOG_LEVEL", "INFO").upper()
    style = os.getenv("LOG_STYLE", "json").lower()
    ctx_filter = _SlackContextFilter(os.getenv("SERVICE_NAME", "uketsuke-bot"))

    formatters = []
    if style in ("human", "both"):
        formatters.append(_HumanFormatter())
    if style in ("json", "both"):
        formatters.append(_json_formatter())

    root.handlers.clear()
    root.setLevel(level)
    for fmt in formatters:
        handler = logging.StreamHandler()
        handler.setFormatter(fmt)
        handler.addFilter(ctx_filter)
        root.addHandler(handler)

    # Bolt and slack_sdk are chatty at DEBUG
    lib_level = os.getenv("LIBRARY_LOG_LEVEL", level).upper()
    for name in ("slack_bolt", "slack_sdk", "uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.setLevel(lib_level)
        lg.propagate = True

    root._initialized_by_app = True  # type: ignore[attr-defined]
