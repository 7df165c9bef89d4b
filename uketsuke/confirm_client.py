"""
    uketsuke/confirm_client.py
    --------------------------
    Client for the bot's confirmation callback (POST /api/confirm).

    - Only used by the web form's "確認" action.
    - No retries: a failed confirmation is shown to the user, who can press
      the button again.
"""

# =========================
# Imports & Session
# =========================
import os
import time
import logging
from typing import Optional

import requests

log = logging.getLogger("uketsuke.confirm_client")

CONFIRM_API_URL = os.getenv("CONFIRM_API_URL", "http://localhost:3001/api/confirm")

# Warn when the bot takes longer than this to post the notification.
WARN_THRESHOLD = float(os.getenv("CONFIRM_WARN_SEC", "5"))
TIMEOUT_ENV    = os.getenv("CONFIRM_TIMEOUT_SEC")

TIMEOUT: Optional[float]
if not TIMEOUT_ENV:
    TIMEOUT = 10.0
elif TIMEOUT_ENV == "0":
    TIMEOUT = None
else:
    try:
        TIMEOUT = float(TIMEOUT_ENV)
    except ValueError:
        TIMEOUT = 10.0

_session = requests.Session()


class ConfirmError(RuntimeError):
    """The bot did not acknowledge the confirmation."""


# =========================
# Public: request_confirmation
# =========================
def request_confirmation(channel_id: str, thread_ts: str,
                         url: str = CONFIRM_API_URL,
                         timeout: Optional[float] = TIMEOUT) -> None:
    """
    Ask the bot process to post "確認完了" into the originating thread.

    Raises ConfirmError on connection errors, non-2xx responses or a
    ``{"success": false}`` body.
    """
    payload = {"channelId": channel_id, "threadTs": thread_ts}
    log.info("confirm_request", extra={"kv": {"url": url, "channel": channel_id, "thread_ts": thread_ts}})

    start = time.perf_counter()
    try:
        resp = _session.post(url, json=payload, timeout=timeout)
        resp.raise_for_status()
        body = resp.json()
    except requests.ConnectionError as e:
        raise ConfirmError(f"Confirm API connection error at {url}: {e}") from e
    except requests.RequestException as e:
        msg = getattr(e.response, "text", None) or str(e)
        raise ConfirmError(f"Confirm API request failed at {url}: {msg}") from e
    except ValueError as e:
        raise ConfirmError(f"Confirm API returned a non-JSON body at {url}") from e
    finally:
        duration = time.perf_counter() - start
        if WARN_THRESHOLD and duration > WARN_THRESHOLD:
            log.warning(
                f"Confirm call took {duration:.2f}s which exceeds the warning threshold of "
                f"{WARN_THRESHOLD}s"
            )

    if not (isinstance(body, dict) and body.get("success")):
        raise ConfirmError(f"Confirm API reported failure: {body!r}")
