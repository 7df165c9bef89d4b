"""
uketsuke/store.py
--------------------------------
Firestore persistence for reception-form records.

Document shape (collection ``uketsuke`` by default):

    {
      "data":           <partial ReceptionRecord as a dict>,
      "createdAt":      server timestamp,
      "updatedAt":      server timestamp (after the first save),
      "slackThreadTs":  originating thread (optional),
      "slackChannelId": originating channel (optional),
    }

Rules:
  • IDs are generated here: 12 random characters from [A-Za-z0-9]
  • create() uses a create-only write; an ID collision draws a new ID
  • get() on an unknown ID returns None (not an error)
  • update() always stamps updatedAt
  • Store errors propagate to the caller
"""

# =========================
# Imports & Setup
# =========================
import os
import secrets
import string
import logging
from threading import Lock
from typing import Optional, Dict, Any

from dotenv import load_dotenv
from google.api_core.exceptions import AlreadyExists
from google.cloud import firestore
from google.oauth2 import service_account

load_dotenv()

log = logging.getLogger("uketsuke.store")

# =========================
# Environment / Constants
# =========================
COLLECTION = os.getenv("FIRESTORE_COLLECTION", "uketsuke")

ID_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits
ID_LENGTH = 12
MAX_ID_ATTEMPTS = 5

FIELD_DATA        = "data"
FIELD_CREATED_AT  = "createdAt"
FIELD_UPDATED_AT  = "updatedAt"
FIELD_THREAD_TS   = "slackThreadTs"
FIELD_CHANNEL_ID  = "slackChannelId"

_client: Optional[firestore.Client] = None
_client_lock = Lock()


def generate_id(length: int = ID_LENGTH) -> str:
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


# =========================
# Client (one per process)
# =========================
def _credentials():
    """Service-account file first, then discrete env vars (deploy targets)."""
    path = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
    if path:
        return service_account.Credentials.from_service_account_file(path)

    project_id   = os.getenv("FIREBASE_PROJECT_ID")
    client_email = os.getenv("FIREBASE_CLIENT_EMAIL")
    private_key  = (os.getenv("FIREBASE_PRIVATE_KEY") or "").replace("\\n", "\n")
    if project_id and client_email and private_key:
        return service_account.Credentials.from_service_account_info({
            "type": "service_account",
            "project_id": project_id,
            "client_email": client_email,
            "private_key": private_key,
            "token_uri": "https://oauth2.googleapis.com/token",
        })

    raise RuntimeError(
        "Firestore credentials are not configured. Set GOOGLE_APPLICATION_CREDENTIALS "
        "or FIREBASE_PROJECT_ID, FIREBASE_CLIENT_EMAIL and FIREBASE_PRIVATE_KEY."
    )


def get_firestore_client() -> firestore.Client:
    """Create the Firestore client once; later calls return the same handle."""
    global _client
    with _client_lock:
        if _client is None:
            creds = _credentials()
            project = os.getenv("FIREBASE_PROJECT_ID") or getattr(creds, "project_id", None)
            _client = firestore.Client(project=project, credentials=creds)
            log.info("firestore_client_ready", extra={"kv": {"project": project, "collection": COLLECTION}})
        return _client


# =========================
# Store
# =========================
class UketsukeStore:
    """create / get / update for reception records keyed by generated IDs."""

    def __init__(self, client=None, collection: str = COLLECTION):
        self._client = client
        self.collection = collection

    @property
    def client(self):
        if self._client is None:
            self._client = get_firestore_client()
        return self._client

    def _doc(self, doc_id: str):
        return self.client.collection(self.collection).document(doc_id)

    def create(
        self,
        data: Dict[str, Any],
        thread_ts: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> str:
        doc: Dict[str, Any] = {
            FIELD_DATA: data,
            FIELD_CREATED_AT: firestore.SERVER_TIMESTAMP,
        }
        if thread_ts:
            doc[FIELD_THREAD_TS] = thread_ts
        if channel_id:
            doc[FIELD_CHANNEL_ID] = channel_id

        for attempt in range(1, MAX_ID_ATTEMPTS + 1):
            doc_id = generate_id()
            try:
                self._doc(doc_id).create(doc)
            except AlreadyExists:
                log.warning("firestore_id_collision", extra={"kv": {"id": doc_id, "attempt": attempt}})
                continue
            log.info("firestore_create_ok", extra={"kv": {"id": doc_id, "thread_ts": thread_ts}})
            return doc_id
        raise RuntimeError(f"could not allocate a unique id after {MAX_ID_ATTEMPTS} attempts")

    def get_document(self, doc_id: str) -> Optional[Dict[str, Any]]:
        """The whole stored document, or None if ``doc_id`` does not exist."""
        if not doc_id:
            return None
        snap = self._doc(doc_id).get()
        if not snap.exists:
            log.info("firestore_not_found", extra={"kv": {"id": doc_id}})
            return None
        return snap.to_dict() or {}

    def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = self.get_document(doc_id)
        if doc is None:
            return None
        return doc.get(FIELD_DATA) or {}

    def update(self, doc_id: str, data: Dict[str, Any]) -> None:
        self._doc(doc_id).update({
            FIELD_DATA: data,
            FIELD_UPDATED_AT: firestore.SERVER_TIMESTAMP,
        })
        log.info("firestore_update_ok", extra={"kv": {"id": doc_id}})
