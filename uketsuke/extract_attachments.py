"""
- Download files attached to Slack messages (bot token, url_private*)
- Best-effort attachment text extraction:
    * pdf: text layer via pdfplumber (layout is not preserved)
    * xlsx/xls: every sheet as a header line + CSV rows (blank rows dropped)
    * anything else: unsupported (None)
- Never raises for malformed files: failures come back as None with an
  "error" method tag so callers can tell them apart from "unsupported".
"""

# =========================
# Imports
# =========================
import os
import logging
from io import BytesIO
from typing import List, Optional, Tuple

import requests
import pdfplumber
import pandas as pd

log = logging.getLogger("uketsuke.extract_attachments")

DOWNLOAD_TIMEOUT_SEC = float(os.getenv("SLACK_DOWNLOAD_TIMEOUT_SEC", "60"))

PDF_MIMETYPES = {"application/pdf"}
EXCEL_MIMETYPES = {
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-excel",
}

METHOD_PDF = "pdf"
METHOD_XLSX = "xlsx"
METHOD_UNSUPPORTED = "unsupported"
METHOD_ERROR = "error"


# =========================
# Slack download
# =========================
def download_slack_file(url: str, token: str) -> bytes:
    """Fetch a private Slack file. Raises on HTTP errors."""
    resp = requests.get(
        url,
        headers={"Authorization": f"Bearer {token}"},
        timeout=DOWNLOAD_TIMEOUT_SEC,
    )
    resp.raise_for_status()
    return resp.content


# =========================
# Format readers
# =========================
def _extract_pdf_text_layer(pdf_bytes: bytes) -> str:
    out = []
    with pdfplumber.open(BytesIO(pdf_bytes)) as pdf:
        for page in pdf.pages:
            t = page.extract_text()
            if t:
                out.append(t)
    return "\n".join(out).strip()

def _extract_excel(xlsx_bytes: bytes) -> str:
    out: List[str] = []
    xls = pd.ExcelFile(BytesIO(xlsx_bytes))
    for sheet in xls.sheet_names:
        df = pd.read_excel(xls, sheet_name=sheet, header=None, dtype=str)
        out.append(f"【シート: {sheet}】")
        df = df.dropna(how="all")
        if df.empty:
            continue
        csv = df.fillna("").to_csv(index=False, header=False, lineterminator="\n").strip("\n")
        if csv:
            out.append(csv)
    return "\n".join(out)


def _is_pdf(name: str, mimetype: str) -> bool:
    return mimetype in PDF_MIMETYPES or name.endswith(".pdf")

def _is_excel(name: str, mimetype: str) -> bool:
    return mimetype in EXCEL_MIMETYPES or name.endswith((".xlsx", ".xls"))


# =========================
# Public: single-attachment extraction
# =========================
def extract_text_from_attachment(file_bytes: bytes, name: str, mimetype: str = "") -> Tuple[Optional[str], str]:
    """
    Returns (extracted_text | None, method_tag)
    """
    n = (name or "").lower().strip()
    mt = (mimetype or "").lower().strip()
    try:
        if _is_pdf(n, mt):
            text = _extract_pdf_text_layer(file_bytes)
            log.info("pdf_text_extracted", extra={"kv": {"file": name, "chars": len(text)}})
            return text, METHOD_PDF
        if _is_excel(n, mt):
            text = _extract_excel(file_bytes)
            log.info("excel_text_extracted", extra={"kv": {"file": name, "chars": len(text)}})
            return text, METHOD_XLSX
    except Exception as e:
        log.warning("attachment_read_failed", extra={"kv": {"file": name, "mimetype": mimetype, "error": e}})
        return None, METHOD_ERROR

    log.info("attachment_unsupported", extra={"kv": {"file": name, "mimetype": mimetype}})
    return None, METHOD_UNSUPPORTED


def extract_text_from_file(file_bytes: bytes, name: str, mimetype: str = "") -> Optional[str]:
    """Text of a PDF/Excel file, or None if unsupported or unreadable."""
    text, _ = extract_text_from_attachment(file_bytes, name, mimetype)
    return text
