"""
Reception-form extraction with a hosted LLM
===========================================

This module turns an assembled Slack conversation (plus any attachment
text) into a partial reception-form record by asking an Ollama-served
model for JSON.

The contract is deliberately fail-closed:

* **Never raises** – transport errors, a response with no text content,
  or output that is not a JSON object all produce ``{}`` and an error log
  line.  The Slack handler can always carry on and reply.
* **No post-processing here** – the parsed object is returned as the
  model produced it; ``uketsuke.postprocess`` applies the deterministic
  corrections afterwards.

Environment
-----------

``OLLAMA_HOST``
    URL of the Ollama server (defaults to ``http://localhost:11434``).
    May point at a remote, hosted instance.

``EXTRACTION_MODEL``
    Name of the model used for extraction.

``LLM_NUM_PREDICT``, ``LLM_TEMPERATURE``, ``LLM_NUM_CTX``
    Output-token limit, sampling temperature and context size.

``LLM_TIMEOUT_SEC``
    Client-side timeout for one model call.  ``0`` disables it and falls
    back to the transport default.

``LLM_MAX_RETRIES``
    Extra attempts after a failed model call (transport errors only).
    Defaults to ``0``.

``SLOW_LLM_MS``
    Calls slower than this are logged at warning level.
"""

from __future__ import annotations

import os
import re
import json
import time
import hashlib
import logging
from typing import Any, Dict, Iterable, List, Optional

from dotenv import load_dotenv
import ollama

from logging_setup import preview
from uketsuke.conversation import ChatMessage

load_dotenv()

log = logging.getLogger("uketsuke.ollama_llm")

# ---------------------------------------------------------------------------
# Model and client configuration
# ---------------------------------------------------------------------------
def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default

def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default

OLLAMA_HOST: str = os.getenv("OLLAMA_HOST", "http://localhost:11434").rstrip("/")
EXTRACTION_MODEL: str = os.getenv("EXTRACTION_MODEL", "qwen2.5:14b-instruct")

LLM_TEMPERATURE: float = _get_float("LLM_TEMPERATURE", 0.0)
LLM_NUM_PREDICT: int   = _get_int("LLM_NUM_PREDICT", 2048)
LLM_NUM_CTX: int       = _get_int("LLM_NUM_CTX", 16384)
LLM_KEEP_ALIVE: str    = os.getenv("LLM_KEEP_ALIVE", "30m")
LLM_TIMEOUT_SEC: float = _get_float("LLM_TIMEOUT_SEC", 120.0)
LLM_MAX_RETRIES: int   = max(0, _get_int("LLM_MAX_RETRIES", 0))
SLOW_LLM_MS: int       = _get_int("SLOW_LLM_MS", 30000)

# The client does not connect until the first call; an unreachable host
# surfaces as an exception from chat(), which extract_uketsuke_data catches.
client = ollama.Client(host=OLLAMA_HOST, timeout=LLM_TIMEOUT_SEC or None)

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------
SYSTEM_PROMPT: str = (
    "あなたは建設・測量会社の受付表作成アシスタントです。"
    "与えられたSlackの会話から受付表の項目を正確に抽出し、"
    "指示されたJSONオブジェクトのみを出力してください。"
    "会話に無い情報を推測で補ってはいけません。"
)

EXTRACTION_PROMPT: str = """Slackでの会話から、以下の受付表の項目を抽出してください。

## 抽出する項目
- formTitle: 受付表タイトル（例: レーダー探査受付表）
- jisshiDate: 実施日（例: 令和8年2月4日（水））
- uketsukeSha: 受付者名
- uketsukeDate: 受付日
- kaishaAddress: 会社住所（〒含む）
- kaishaName: 会社名
- tantouSha: 担当者名
- keitai: 携帯電話番号
- genbaName: 現場名
- kenName: 件名
- genbaAddress: 現場住所
- renrakusakiTel: 連絡先電話番号
- machiawaseJikanBasho: 待合時間・場所
- genbaJimushoAri: 現場事務所の有無（true/false）
- genbaJimushoBasho: 現場事務所の場所
- memo: MEMO（特記事項）
- sagyoNaiyo: 作業内容・撮影枚数・箇所（配列）
  - tokkiJiko: 1行分のテキスト

## 作業区分（①・②）のルール
- 会話の中で「①」「②」のように丸数字で2種類の作業（例: ①X線撮影、②コア削孔）が区別されている場合、
  それらを1つの項目にまとめてはいけません。
- jisshiDate は作業区分ごとに改行で分けてください。
  例: "①X線: 2025年11月14日、17日\\n②コア: 2025年11月18日、19日"
- sagyoNaiyo は作業区分ごとに別の要素にしてください。
  例: [{"tokkiJiko": "①X線撮影 10枚"}, {"tokkiJiko": "②コア削孔 φ100 5本"}]

## 数値・単位のルール
- 厚さ・コアサイズ・開口寸法は mm、本数は「本」、撮影枚数は「枚」を付けて記載してください。
- コア径は「φ」を付けて記載してください（例: φ100）。
- 数字は半角で記載してください。

## 日付のルール
- 「11/14,17」のように月が省略された日付の列挙は、同じ月の日付として解釈してください
  （例: 11/14,17 → 11月14日、17日）。
- 年が書かれていない場合は、会話の時期から最も近い将来の年を用いてください。

## 出力形式
JSON形式のオブジェクトのみを出力してください。抽出できなかった項目は空文字列""にしてください。

## 会話内容
"""

ATTACHMENT_HEADER: str = "\n\n## 添付ファイルの内容\n"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)

def _strip_code_fences(s: str) -> str:
    """Return the body of a ```json ... ``` block, or ``s`` unchanged."""
    m = _FENCE_RE.search(s)
    return m.group(1) if m else s.strip()

def sha256_8(s: str) -> str:
    """Compute a short SHA256 digest for correlation logging."""
    return hashlib.sha256((s or "").encode("utf-8")).hexdigest()[:8]

def render_conversation(messages: Iterable[ChatMessage]) -> str:
    return "\n".join(f"[{m.user}]: {m.text}" for m in messages)

def build_prompt(messages: Iterable[ChatMessage], file_texts: Optional[List[str]] = None) -> str:
    prompt = EXTRACTION_PROMPT + render_conversation(messages)
    texts = [t for t in (file_texts or []) if t]
    if texts:
        prompt += ATTACHMENT_HEADER + "\n\n".join(texts)
    return prompt

def _chat_with_retries(llm, prompt: str) -> Any:
    attempts = 1 + LLM_MAX_RETRIES
    for attempt in range(1, attempts + 1):
        try:
            return llm.chat(
                model=EXTRACTION_MODEL,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                options={
                    "temperature": LLM_TEMPERATURE,
                    "num_predict": LLM_NUM_PREDICT,
                    "num_ctx": LLM_NUM_CTX,
                },
                keep_alive=LLM_KEEP_ALIVE,
            )
        except Exception as e:
            if attempt >= attempts:
                raise
            log.warning("llm_call_retry", extra={"kv": {"attempt": attempt, "error": e}})

def _response_text(resp: Any) -> str:
    """Text content of a chat response; raises if there is none."""
    message = resp["message"]
    content = message["content"]
    if not isinstance(content, str) or not content.strip():
        raise ValueError("model response has no text content")
    return content

# ---------------------------------------------------------------------------
# Public
# ---------------------------------------------------------------------------
def extract_uketsuke_data(
    messages: List[ChatMessage],
    file_texts: Optional[List[str]] = None,
    llm=None,
) -> Dict[str, Any]:
    """Ask the model for a partial reception record; ``{}`` on any failure."""
    llm = llm or client
    prompt = build_prompt(messages, file_texts)
    log.info(
        "llm_extract_invoked",
        extra={"kv": {
            "model": EXTRACTION_MODEL,
            "messages": len(messages),
            "files": len(file_texts or []),
            "prompt_chars": len(prompt),
            "hash": sha256_8(prompt),
        }},
    )

    start = time.perf_counter()
    try:
        resp = _chat_with_retries(llm, prompt)
        raw = _response_text(resp)
        data = json.loads(_strip_code_fences(raw))
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    except Exception:
        log.exception("llm_extract_failed", extra={"kv": {"model": EXTRACTION_MODEL}})
        return {}
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        if elapsed_ms > SLOW_LLM_MS:
            log.warning("slow_llm_extract", extra={"kv": {"elapsed_ms": elapsed_ms}})

    log.info(
        "llm_extract_complete",
        extra={"kv": {
            "elapsed_ms": elapsed_ms,
            "fields": sorted(data.keys()),
            "raw": preview(raw),
        }},
    )
    return data
