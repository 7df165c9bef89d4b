"""
Conversation assembly for one Slack thread.

Turns the raw ``conversations.replies`` messages into the plain
``[name]: text`` conversation the extraction prompt expects:

1. Author IDs are resolved to display names via ``users.info``.  Names are
   kept in a per-run ``UserNameCache`` so each user is looked up once; a
   failed lookup caches the raw ID and is not retried in the same run.
2. Inline mention tokens (``<@U123>``, ``<@U123|label>``) are replaced by
   the resolved display name, sharing the same cache.
3. File attachments are downloaded with the bot token and run through the
   attachment text extractor.  A file that cannot be downloaded or read is
   logged and skipped; it never aborts the batch.

Messages are processed on a small thread pool.  Output order always
matches input order.
"""

from __future__ import annotations

import os
import re
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, List, Optional

from slack_sdk.errors import SlackApiError

from logging_setup import preview
from uketsuke.extract_attachments import (
    METHOD_UNSUPPORTED,
    download_slack_file,
    extract_text_from_attachment,
)

log = logging.getLogger("uketsuke.conversation")

WORKERS = int(os.getenv("ASSEMBLER_WORKERS", "4"))

MENTION_PATTERN = re.compile(r"<@([A-Z0-9]+)(?:\|[^>]*)?>")

UNKNOWN_USER = "Unknown"


@dataclass
class ChatMessage:
    user: str
    text: str
    timestamp: str = ""


@dataclass
class AssembledConversation:
    messages: List[ChatMessage] = field(default_factory=list)
    file_texts: List[str] = field(default_factory=list)
    unreadable_files: List[str] = field(default_factory=list)


class UserNameCache:
    """Thread-safe user ID → display name map backed by ``users.info``."""

    def __init__(self, client):
        self._client = client
        self._names: Dict[str, str] = {}
        self._lock = Lock()

    def __contains__(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._names

    def resolve(self, user_id: str) -> str:
        with self._lock:
            if user_id in self._names:
                return self._names[user_id]
        name = self._lookup(user_id)
        with self._lock:
            # A concurrent lookup may have finished first; keep the first answer
            return self._names.setdefault(user_id, name)

    def _lookup(self, user_id: str) -> str:
        try:
            resp = self._client.users_info(user=user_id)
            user = resp.get("user") or {}
            return user.get("real_name") or user.get("name") or user_id
        except SlackApiError as e:
            log.warning("users_info_failed", extra={"kv": {"user": user_id, "error": e.response.get("error")}})
        except Exception as e:
            log.warning("users_info_failed", extra={"kv": {"user": user_id, "error": e}})
        return user_id


def resolve_user_mentions(text: str, names: UserNameCache) -> str:
    """Replace every ``<@USERID>`` token in ``text`` with a display name."""
    if not text:
        return ""
    return MENTION_PATTERN.sub(lambda m: names.resolve(m.group(1)), text)


def _attachment_texts(msg: Dict[str, Any], bot_token: str) -> tuple[List[str], List[str]]:
    texts: List[str] = []
    unreadable: List[str] = []
    for f in msg.get("files") or []:
        url = f.get("url_private_download") or f.get("url_private")
        name = f.get("name")
        if not url or not name:
            continue
        mimetype = f.get("mimetype") or ""
        try:
            log.info("file_download_begin", extra={"kv": {"file": name, "mimetype": mimetype}})
            content = download_slack_file(url, bot_token)
        except Exception:
            log.exception("file_download_failed", extra={"kv": {"file": name}})
            unreadable.append(name)
            continue
        text, method = extract_text_from_attachment(content, name, mimetype)
        if text:
            texts.append(f"【添付ファイル: {name}】\n{text}")
        elif method != METHOD_UNSUPPORTED:
            unreadable.append(name)
    return texts, unreadable


def _assemble_one(msg: Dict[str, Any], names: UserNameCache, bot_token: str):
    user_id = msg.get("user")
    user = names.resolve(user_id) if user_id else UNKNOWN_USER
    text = resolve_user_mentions(msg.get("text") or "", names)
    texts, unreadable = _attachment_texts(msg, bot_token)
    return ChatMessage(user=user, text=text, timestamp=msg.get("ts") or ""), texts, unreadable


def assemble_conversation(
    messages: List[Dict[str, Any]],
    client,
    bot_token: str,
    names: Optional[UserNameCache] = None,
    workers: int = WORKERS,
) -> AssembledConversation:
    """Resolve authors/mentions and collect attachment text for a thread."""
    names = names or UserNameCache(client)
    out = AssembledConversation()
    if not messages:
        return out

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        # map() yields in submission order regardless of completion order
        results = pool.map(lambda m: _assemble_one(m, names, bot_token), messages)
        for chat_msg, texts, unreadable in results:
            out.messages.append(chat_msg)
            out.file_texts.extend(texts)
            out.unreadable_files.extend(unreadable)

    log.info(
        "conversation_assembled",
        extra={"kv": {
            "messages": len(out.messages),
            "files": len(out.file_texts),
            "unreadable": len(out.unreadable_files),
            "last": preview(out.messages[-1].text if out.messages else ""),
        }},
    )
    return out
