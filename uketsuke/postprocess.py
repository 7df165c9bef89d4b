"""
Deterministic corrections applied to the model's JSON before it is stored.

The model is told to keep the two task categories (① and ②) apart, but it
does not always comply.  These rules repair the common slips:

  1. normalize_work_items – every sagyoNaiyo entry becomes {"tokkiJiko": str}
  2. split_work_items     – "①… ②…" in one entry becomes two entries
  3. ensure_work_item     – a missing or empty sagyoNaiyo becomes one empty row
  4. split_jisshi_date    – a one-line date with both markers gets a line break
  5. drop_deprecated      – satsueiMaisuBasho is removed (content now lives in
                            the sagyoNaiyo rows)

Nothing here raises; values of an unexpected shape pass through unchanged.
"""

from __future__ import annotations

import re
import logging
from typing import Any, Dict, List

from uketsuke.schema import join_legacy_work_item

log = logging.getLogger("uketsuke.postprocess")

MARKER_1 = "①"
MARKER_2 = "②"

DEPRECATED_FIELDS = ("satsueiMaisuBasho",)

_TWO_CATEGORY_RE = re.compile(rf"^\s*({MARKER_1}.+?)\s*({MARKER_2}.+?)\s*$", re.DOTALL)


def _normalize_item(item: Any) -> Any:
    if isinstance(item, str):
        return {"tokkiJiko": item}
    if isinstance(item, dict):
        # An entry that already carries a note keeps only the note
        if "tokkiJiko" in item:
            note = item["tokkiJiko"]
            return {"tokkiJiko": "" if note is None else str(note)}
        return {"tokkiJiko": join_legacy_work_item(item)}
    return item


def normalize_work_items(items: Any) -> Any:
    if not isinstance(items, list):
        return items
    return [_normalize_item(i) for i in items]


def split_work_items(items: Any) -> Any:
    if not isinstance(items, list):
        return items
    out: List[Any] = []
    for item in items:
        note = item.get("tokkiJiko") if isinstance(item, dict) else None
        m = _TWO_CATEGORY_RE.match(note) if isinstance(note, str) else None
        if m:
            out.append({"tokkiJiko": m.group(1).strip()})
            out.append({"tokkiJiko": m.group(2).strip()})
        else:
            out.append(item)
    return out


def split_jisshi_date(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    if MARKER_1 not in value or MARKER_2 not in value or "\n" in value:
        return value
    idx1, idx2 = value.index(MARKER_1), value.index(MARKER_2)
    if idx1 < idx2:
        first, second = value[:idx2], value[idx2:]
    else:
        # "②… ①… [②…]": the ① portion goes on the first line, every ② portion on the second
        end1 = value.find(MARKER_2, idx1)
        if end1 == -1:
            first, rest = value[idx1:], [value[:idx1]]
        else:
            first, rest = value[idx1:end1], [value[:idx1], value[end1:]]
        second = " ".join(p.strip() for p in rest if p.strip())
    return f"{first.strip()}\n{second.strip()}"


def ensure_work_item(items: Any) -> Any:
    """A missing or empty work-item list becomes one empty row."""
    if items is None or items == []:
        return [{"tokkiJiko": ""}]
    return items


def postprocess(record: Dict[str, Any]) -> Dict[str, Any]:
    """Apply the correction rules in order and return a new dict."""
    if not isinstance(record, dict):
        return record
    out = dict(record)

    before = out.get("sagyoNaiyo")
    items = split_work_items(normalize_work_items(before))
    if isinstance(before, list) and isinstance(items, list) and len(items) != len(before):
        log.info("work_items_split", extra={"kv": {"before": len(before), "after": len(items)}})
    out["sagyoNaiyo"] = ensure_work_item(items)

    if "jisshiDate" in out:
        out["jisshiDate"] = split_jisshi_date(out["jisshiDate"])

    for key in DEPRECATED_FIELDS:
        out.pop(key, None)

    return out
