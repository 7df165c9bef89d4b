import json
from datetime import datetime
from urllib.parse import parse_qs, urlparse

from logging_setup import channel_var, request_id_var, thread_ts_var
from uketsuke import mention_worker
from uketsuke.links import decode_legacy_params
from uketsuke.mention_worker import (
    LINK_MODE_URL,
    Services,
    handle_mention,
    send_confirm_notification,
)
from uketsuke.store import FIELD_CHANNEL_ID, FIELD_THREAD_TS

EVENT = {"channel": "C1", "ts": "1700000000.000200", "thread_ts": "1700000000.000100", "text": "<@UBOT> 受付表"}

THREAD = [
    {"user": "U1", "text": "A社様より①X線と②コアの依頼です", "ts": "1700000000.000100"},
    {"user": "U2", "text": "<@UBOT> 受付表", "ts": "1700000000.000200"},
]


def _services(store, llm, **kw):
    return Services(store=store, bot_token="xoxb-test", app_url="https://form.example", llm=llm, **kw)


def test_mention_creates_record_and_replies_with_link(slack_client, say, store, firestore_client, fake_llm):
    """Thread → status reply → stored, post-processed record → link reply."""
    slack_client.replies = THREAD
    llm = fake_llm('{"kaishaName": "A社", "sagyoNaiyo": [{"tokkiJiko": "①X線撮影 ②コア削孔"}],'
                   ' "satsueiMaisuBasho": "10枚"}')

    url = handle_mention(EVENT, slack_client, say, _services(store, llm))

    assert slack_client.replies_calls == [
        {"channel": "C1", "ts": "1700000000.000100", "limit": mention_worker.MAX_THREAD_MESSAGES}
    ]
    assert say.texts[0] == "受付表を作成中... (2件のメッセージを解析)"
    assert all(c["thread_ts"] == "1700000000.000100" for c in say.calls)

    doc_id = url.rsplit("/", 1)[1]
    assert url == f"https://form.example/uketsuke/{doc_id}"
    assert say.texts[1] == f"受付表を作成しました!\n\n確認・編集はこちら:\n{url}"

    assert store.get(doc_id) == {
        "kaishaName": "A社",
        "sagyoNaiyo": [{"tokkiJiko": "①X線撮影"}, {"tokkiJiko": "②コア削孔"}],
    }
    doc = firestore_client.docs()[doc_id]
    assert doc[FIELD_THREAD_TS] == "1700000000.000100"
    assert doc[FIELD_CHANNEL_ID] == "C1"


def test_already_split_output_is_stored_unchanged(slack_client, say, store, fake_llm):
    slack_client.replies = [{"user": "U1", "text": "①X線 11/14,17 ②コア 11/18,19", "ts": "1"}]
    model_output = {
        "jisshiDate": "①X線: 2025年11月14日、17日\n②コア: 2025年11月18日、19日",
        "sagyoNaiyo": [{"tokkiJiko": "①X線撮影"}, {"tokkiJiko": "②コア削孔"}],
    }
    llm = fake_llm(json.dumps(model_output, ensure_ascii=False))

    url = handle_mention(EVENT, slack_client, say, _services(store, llm))

    saved = store.get(url.rsplit("/", 1)[1])
    assert saved == model_output
    assert len(saved["sagyoNaiyo"]) == 2
    assert "[山田 太郎]: ①X線 11/14,17 ②コア 11/18,19" in llm.calls[0]["messages"][1]["content"]


def test_model_failure_still_replies_with_blank_record(slack_client, say, store, fake_llm):
    slack_client.replies = THREAD
    url = handle_mention(EVENT, slack_client, say, _services(store, fake_llm(RuntimeError("model down"))))

    assert url is not None
    assert len(say.calls) == 2
    assert store.get(url.rsplit("/", 1)[1]) == {"sagyoNaiyo": [{"tokkiJiko": ""}]}


def test_top_level_mention_uses_its_own_ts_as_thread(slack_client, say, store, fake_llm):
    event = {"channel": "C1", "ts": "1700000000.000300", "text": "<@UBOT>"}
    slack_client.replies = [{"user": "U1", "text": "<@UBOT>", "ts": "1700000000.000300"}]
    handle_mention(event, slack_client, say, _services(store, fake_llm("{}")))
    assert slack_client.replies_calls[0]["ts"] == "1700000000.000300"
    assert say.calls[0]["thread_ts"] == "1700000000.000300"


def test_status_mentions_files_and_unreadable_ones(slack_client, say, store, fake_llm, monkeypatch):
    monkeypatch.setattr("uketsuke.conversation.download_slack_file", lambda url, token: b"%PDF")
    monkeypatch.setattr(
        "uketsuke.conversation.extract_text_from_attachment",
        lambda content, name, mimetype="": ("本文", "pdf") if name == "ok.pdf" else (None, "error"),
    )
    slack_client.replies = [{
        "user": "U1", "text": "資料", "ts": "1",
        "files": [{"name": "ok.pdf", "url_private": "u1"}, {"name": "bad.xlsx", "url_private": "u2"}],
    }]
    llm = fake_llm("{}")
    handle_mention(EVENT, slack_client, say, _services(store, llm))

    assert say.texts[0] == (
        "受付表を作成中... (1件のメッセージ + 1件のファイルを解析)\n"
        "⚠️ 読み取れなかったファイル: bad.xlsx"
    )
    assert "【添付ファイル: ok.pdf】\n本文" in llm.calls[0]["messages"][1]["content"]


def test_url_link_mode_encodes_record_without_storing(slack_client, say, store, firestore_client, fake_llm):
    slack_client.replies = THREAD
    llm = fake_llm('{"jisshiDate": "①X線: 11月14日 ②コア: 11月18日"}')
    url = handle_mention(EVENT, slack_client, say, _services(store, llm, link_mode=LINK_MODE_URL))

    assert firestore_client.docs() == {}
    assert url.startswith("https://form.example?data=")
    qs = parse_qs(urlparse(url).query)
    data, slack = decode_legacy_params(qs["data"][0], qs["slack"][0])
    assert data == {"jisshiDate": "①X線: 11月14日\n②コア: 11月18日", "sagyoNaiyo": [{"tokkiJiko": ""}]}
    assert slack == {"channelId": "C1", "threadTs": "1700000000.000100"}


def test_store_failure_drops_event_without_completion_reply(slack_client, say, fake_llm):
    class BrokenStore:
        def create(self, *a, **kw):
            raise RuntimeError("firestore unavailable")

    slack_client.replies = THREAD
    assert handle_mention(EVENT, slack_client, say, _services(BrokenStore(), fake_llm("{}"))) is None
    assert len(say.calls) == 1  # status only


def test_confirm_notification_posts_into_thread(slack_client):
    send_confirm_notification(slack_client, "C1", "1700000000.000100", now=datetime(2025, 11, 14, 9, 5))

    post = slack_client.posted[0]
    assert post["channel"] == "C1"
    assert post["thread_ts"] == "1700000000.000100"
    assert post["text"] == "✅ 受付表 確認完了"
    attachment = post["attachments"][0]
    assert attachment["color"] == "#2eb67d"
    assert "確認日時: 2025/11/14 09:05" in attachment["blocks"][0]["text"]["text"]


def test_log_context_is_bound_during_mention_and_cleared_after(slack_client, say, store, fake_llm):
    seen = {}

    class ContextLLM(fake_llm):
        def chat(self, **kwargs):
            seen.update(channel=channel_var.get(), thread_ts=thread_ts_var.get(),
                        request_id=request_id_var.get())
            return super().chat(**kwargs)

    slack_client.replies = THREAD
    handle_mention(EVENT, slack_client, say, _services(store, ContextLLM("{}")))

    assert seen["channel"] == "C1"
    assert seen["thread_ts"] == "1700000000.000100"
    assert seen["request_id"]
    assert (channel_var.get(), thread_ts_var.get(), request_id_var.get()) == (None, None, None)
