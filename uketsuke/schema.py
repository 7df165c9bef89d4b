"""
uketsuke/schema.py
------------------
Pydantic models for the reception form ("受付表") record.

Two record generations exist in stored data and in old model prompts:

  • v1 (LegacyReceptionRecord) – work items carry thickness / core size /
    count / opening size sub-fields, an optional core-drilling block, and
    the record carries a quote-recipient block and ``satsueiMaisuBasho``.
  • v2 (ReceptionRecord) – work items are a single free-text note
    (``tokkiJiko``); photo count/locations live in those notes.

``coerce_record`` is the single entry point used by the web form and the
bot: it accepts any dict (model output, stored data, decoded URL payload),
detects the generation and returns a current-generation record with every
field defaulted so the form always renders.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

log = logging.getLogger("uketsuke.schema")

CURRENT_SCHEMA_VERSION = 2
DEFAULT_FORM_TITLE = "レーダー探査受付表"

# Work-item sub-fields of the v1 schema, in display order
LEGACY_WORK_ITEM_FIELDS = ("atsusa", "coaSize", "honsu", "kaikouSunpo", "tokkiJiko")

# Keys that only ever appear in v1 records
_LEGACY_ONLY_KEYS = {"satsueiMaisuBasho", "mitsumoriAtesaki"}


def join_legacy_work_item(item: Dict[str, Any]) -> str:
    """Concatenate present v1 sub-fields with single spaces ('' if none)."""
    parts = []
    for key in LEGACY_WORK_ITEM_FIELDS:
        val = item.get(key)
        if val is None or val == "":
            continue
        parts.append(str(val))
    return " ".join(parts)


class _Lenient(BaseModel):
    """Ignore unknown keys and turn None into the field default."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    @field_validator("*", mode="before")
    @classmethod
    def _none_to_default(cls, v, info):
        if v is None:
            field = cls.model_fields[info.field_name]
            return field.get_default(call_default_factory=True)
        return v


# =========================
# v2 (current)
# =========================
class WorkItem(_Lenient):
    tokkiJiko: str = ""  # 特記事項（テキスト行）


class ReceptionRecord(_Lenient):
    schemaVersion: Literal[2] = 2

    formTitle: str = DEFAULT_FORM_TITLE

    # 基本情報
    jisshiDate: str = ""
    uketsukeSha: str = ""
    uketsukeDate: str = ""

    # 顧客情報
    kaishaAddress: str = ""
    kaishaName: str = ""
    tantouSha: str = ""
    keitai: str = ""

    # 現場情報
    genbaName: str = ""
    kenName: str = ""
    genbaAddress: str = ""
    renrakusakiTel: str = ""

    sagyoNaiyo: List[WorkItem] = Field(default_factory=lambda: [WorkItem()])

    # 段取り
    machiawaseJikanBasho: str = ""
    genbaJimushoAri: bool = False
    genbaJimushoBasho: str = ""

    memo: str = ""

    @field_validator("sagyoNaiyo", mode="before")
    @classmethod
    def _wrap_strings(cls, v):
        if isinstance(v, list):
            out = []
            for item in v:
                if isinstance(item, str):
                    out.append({"tokkiJiko": item})
                elif isinstance(item, dict) and "tokkiJiko" not in item:
                    out.append({"tokkiJiko": join_legacy_work_item(item)})
                else:
                    out.append(item)
            return out
        return v

    @field_validator("sagyoNaiyo")
    @classmethod
    def _never_empty(cls, v: List[WorkItem]) -> List[WorkItem]:
        return v or [WorkItem()]

    @field_validator("formTitle")
    @classmethod
    def _title_default(cls, v: str) -> str:
        return v or DEFAULT_FORM_TITLE


# =========================
# v1 (legacy)
# =========================
class CoreDrilling(_Lenient):
    """コア抜き block of a v1 work item."""
    deckPlate: bool = False   # デッキプレート
    dengen: bool = False      # 電源
    hatsuri: bool = False     # はつり


class LegacyWorkItem(_Lenient):
    atsusa: str = ""
    coaSize: str = ""
    honsu: str = ""
    kaikouSunpo: str = ""
    tokkiJiko: str = ""
    coaNuki: Optional[CoreDrilling] = None


class QuoteRecipient(_Lenient):
    """見積宛先 block of a v1 record."""
    atena: str = ""
    kaishaName: str = ""
    genbaName: str = ""
    address: str = ""


class LegacyReceptionRecord(_Lenient):
    schemaVersion: Literal[1] = 1

    formTitle: str = DEFAULT_FORM_TITLE
    jisshiDate: str = ""
    uketsukeSha: str = ""
    uketsukeDate: str = ""
    kaishaAddress: str = ""
    kaishaName: str = ""
    tantouSha: str = ""
    keitai: str = ""
    genbaName: str = ""
    kenName: str = ""
    genbaAddress: str = ""
    renrakusakiTel: str = ""
    sagyoNaiyo: List[LegacyWorkItem] = Field(default_factory=list)
    satsueiMaisuBasho: str = ""
    machiawaseJikanBasho: str = ""
    genbaJimushoAri: bool = False
    genbaJimushoBasho: str = ""
    memo: str = ""
    mitsumoriAtesaki: Optional[QuoteRecipient] = None


_CORE_FLAG_LABELS = (("deckPlate", "デッキプレート"), ("dengen", "電源"), ("hatsuri", "はつり"))


def migrate_legacy(old: LegacyReceptionRecord) -> ReceptionRecord:
    """Convert a v1 record to v2 without dropping information.

    Sub-fielded work items collapse into notes; core-drilling flags, the
    quote recipient and photo count/locations are appended to ``memo``.
    """
    items: List[WorkItem] = []
    memo_lines: List[str] = [old.memo] if old.memo else []

    for idx, item in enumerate(old.sagyoNaiyo, start=1):
        items.append(WorkItem(tokkiJiko=join_legacy_work_item(item.model_dump())))
        if item.coaNuki is not None:
            flags = [label for key, label in _CORE_FLAG_LABELS if getattr(item.coaNuki, key)]
            if flags:
                memo_lines.append(f"コア抜き({idx}): " + "・".join(flags))

    if old.satsueiMaisuBasho:
        memo_lines.append(f"撮影枚数・箇所: {old.satsueiMaisuBasho}")

    q = old.mitsumoriAtesaki
    if q is not None:
        parts = [p for p in (q.atena, q.kaishaName, q.genbaName, q.address) if p]
        if parts:
            memo_lines.append("見積宛先: " + " / ".join(parts))

    flat = old.model_dump(exclude={"schemaVersion", "sagyoNaiyo", "satsueiMaisuBasho",
                                   "mitsumoriAtesaki", "memo"})
    return ReceptionRecord(**flat, sagyoNaiyo=items, memo="\n".join(memo_lines))


def detect_schema_version(data: Dict[str, Any]) -> int:
    version = data.get("schemaVersion")
    if version in (1, 2):
        return version
    if _LEGACY_ONLY_KEYS & data.keys():
        return 1
    for item in data.get("sagyoNaiyo") or []:
        if isinstance(item, dict) and (set(item) - {"tokkiJiko"}) & set(LEGACY_WORK_ITEM_FIELDS + ("coaNuki",)):
            return 1
    return CURRENT_SCHEMA_VERSION


def coerce_record(data: Optional[Dict[str, Any]]) -> ReceptionRecord:
    """Build a current-generation record from any partial dict.

    Fields that fail validation are dropped one by one and defaulted
    rather than rejecting the whole record.
    """
    payload = dict(data or {})
    if detect_schema_version(payload) == 1:
        payload.pop("schemaVersion", None)
        return migrate_legacy(_validate_dropping_bad(LegacyReceptionRecord, payload))
    payload.pop("schemaVersion", None)
    return _validate_dropping_bad(ReceptionRecord, payload)


def _validate_dropping_bad(model, payload: Dict[str, Any]):
    while True:
        try:
            return model(**payload)
        except ValidationError as e:
            bad = {err["loc"][0] for err in e.errors() if err.get("loc")}
            bad &= payload.keys()
            if not bad:
                raise
            log.warning("record_fields_dropped", extra={"kv": {"fields": sorted(bad)}})
            for key in bad:
                payload.pop(key)


def empty_record() -> ReceptionRecord:
    return ReceptionRecord()
