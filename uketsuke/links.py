"""
Links posted back to Slack.

Two shapes exist:
  • record link  – ``<APP_URL>/uketsuke/<id>`` for a stored record
  • legacy link  – ``<APP_URL>?data=<json>&slack=<json>``: the whole record
    and its thread context percent-encoded into the query string
"""

from __future__ import annotations

import os
import json
import logging
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote, unquote

log = logging.getLogger("uketsuke.links")

APP_URL = os.getenv("APP_URL", "http://localhost:8000").rstrip("/")

# encodeURIComponent leaves these unescaped as well
_SAFE = "!*'()"


def _encode(obj: Any) -> str:
    return quote(json.dumps(obj, ensure_ascii=False, separators=(",", ":")), safe=_SAFE)


def record_url(doc_id: str, app_url: str = APP_URL) -> str:
    return f"{app_url}/uketsuke/{quote(doc_id, safe='')}"


def legacy_record_url(
    data: Dict[str, Any],
    channel_id: str,
    thread_ts: str,
    app_url: str = APP_URL,
) -> str:
    slack = {"channelId": channel_id, "threadTs": thread_ts}
    return f"{app_url}?data={_encode(data)}&slack={_encode(slack)}"


def _loads(raw: Optional[str]) -> Any:
    if not raw:
        return None
    for candidate in (raw, unquote(raw)):
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    log.warning("legacy_param_unparseable", extra={"kv": {"chars": len(raw)}})
    return None


def decode_legacy_params(
    data_param: Optional[str],
    slack_param: Optional[str],
) -> Tuple[Dict[str, Any], Optional[Dict[str, str]]]:
    """Query values (already URL-decoded once by the web framework) → (record, slack info)."""
    data = _loads(data_param)
    slack = _loads(slack_param)
    if not isinstance(data, dict):
        data = {}
    if not (isinstance(slack, dict) and slack.get("channelId") and slack.get("threadTs")):
        slack = None
    return data, slack
