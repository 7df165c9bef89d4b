"""
Per-mention pipeline for the reception-form bot.

When the bot is mentioned in a thread, ``handle_mention`` runs the whole
flow for that one event:

1. Fetch up to ``MAX_THREAD_MESSAGES`` replies of the thread.
2. Assemble the conversation: author names, mention tokens and attachment
   text (``uketsuke.conversation``).
3. Post a status reply ("受付表を作成中...").
4. Ask the model for a partial record (``uketsuke.ollama_llm``) and apply
   the deterministic corrections (``uketsuke.postprocess``).
5. Depending on ``LINK_MODE`` either store the record and link to it by ID,
   or encode the record into the link itself (legacy form URLs).
6. Post the link.

The handler never raises.  Model and download problems already degrade to
empty results upstream; anything else (Slack API errors, store failures)
is logged here and the event is dropped without a completion reply.
"""

from __future__ import annotations

import os
import uuid
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from logging_setup import log_context
from uketsuke.conversation import AssembledConversation, assemble_conversation
from uketsuke.links import APP_URL, legacy_record_url, record_url
from uketsuke.ollama_llm import extract_uketsuke_data
from uketsuke.postprocess import postprocess
from uketsuke.store import UketsukeStore

log = logging.getLogger("uketsuke.mention_worker")

MAX_THREAD_MESSAGES = int(os.getenv("MAX_THREAD_MESSAGES", "100"))

LINK_MODE_STORE = "store"
LINK_MODE_URL = "url"
LINK_MODE = os.getenv("LINK_MODE", LINK_MODE_STORE).lower()

CONFIRM_COLOR = "#2eb67d"


@dataclass
class Services:
    """Long-lived handles shared by every mention handler in the process."""
    store: UketsukeStore
    bot_token: str
    link_mode: str = LINK_MODE
    app_url: str = APP_URL
    llm: Any = None


def status_text(conv: AssembledConversation) -> str:
    n_msgs = len(conv.messages)
    n_files = len(conv.file_texts)
    if n_files:
        info = f"{n_msgs}件のメッセージ + {n_files}件のファイルを解析"
    else:
        info = f"{n_msgs}件のメッセージを解析"
    text = f"受付表を作成中... ({info})"
    if conv.unreadable_files:
        text += "\n⚠️ 読み取れなかったファイル: " + ", ".join(conv.unreadable_files)
    return text


def result_text(url: str) -> str:
    return f"受付表を作成しました!\n\n確認・編集はこちら:\n{url}"


def handle_mention(event: Dict[str, Any], client, say: Callable[..., Any], services: Services) -> Optional[str]:
    """Run the extraction flow for one ``app_mention`` event.

    Returns the link that was posted, or None if the event was dropped.
    """
    thread_ts = event.get("thread_ts") or event.get("ts")
    channel_id = event.get("channel")
    with log_context(request_id=uuid.uuid4().hex, channel=channel_id, thread_ts=thread_ts):
        return _run_mention(event, client, say, services, channel_id, thread_ts)


def _run_mention(event, client, say, services: Services, channel_id, thread_ts) -> Optional[str]:
    try:
        log.info("mention_received", extra={"kv": {"text": event.get("text")}})

        replies = client.conversations_replies(
            channel=channel_id,
            ts=thread_ts,
            limit=MAX_THREAD_MESSAGES,
        )
        messages = replies.get("messages") or []
        log.info("thread_fetched", extra={"kv": {"count": len(messages)}})

        conv = assemble_conversation(messages, client, services.bot_token)
        say(thread_ts=thread_ts, text=status_text(conv))

        extracted = extract_uketsuke_data(conv.messages, conv.file_texts, llm=services.llm)
        record = postprocess(extracted)

        if services.link_mode == LINK_MODE_URL:
            url = legacy_record_url(record, channel_id, thread_ts, app_url=services.app_url)
        else:
            doc_id = services.store.create(record, thread_ts=thread_ts, channel_id=channel_id)
            url = record_url(doc_id, app_url=services.app_url)

        say(thread_ts=thread_ts, text=result_text(url))
        log.info("mention_done", extra={"kv": {"fields": len(record), "link_mode": services.link_mode}})
        return url
    except Exception:
        log.exception("mention_failed")
        return None


def send_confirm_notification(client, channel_id: str, thread_ts: str,
                              now: Optional[datetime] = None) -> None:
    """Post "確認完了" into the originating thread. Raises on Slack errors."""
    now = now or datetime.now()
    date_str = now.strftime("%Y/%m/%d %H:%M")
    client.chat_postMessage(
        channel=channel_id,
        thread_ts=thread_ts,
        text="✅ 受付表 確認完了",
        attachments=[
            {
                "color": CONFIRM_COLOR,
                "blocks": [
                    {
                        "type": "section",
                        "text": {
                            "type": "mrkdwn",
                            "text": (
                                "*✅ 受付表 確認完了*\n"
                                "営業担当者が受付表の最終確認及び保存を行いました。\n"
                                f"📅 確認日時: {date_str}"
                            ),
                        },
                    }
                ],
            }
        ],
    )
    log.info("confirm_notification_sent", extra={"kv": {"channel": channel_id, "thread_ts": thread_ts}})
