"""Pytest configuration: import path, quiet logging and in-memory fakes for Slack, Firestore and the LLM."""
import os
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List

import pytest

# Ensure repository root is on sys.path for module resolution
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("LOG_STYLE", "human")

from google.api_core.exceptions import AlreadyExists, NotFound
from slack_sdk.errors import SlackApiError

from uketsuke.store import UketsukeStore


# ---------------------------------------------------------------------------
# Slack
# ---------------------------------------------------------------------------
class FakeSlackClient:
    """Just enough of slack_sdk.WebClient for the bot code paths."""

    def __init__(self, users: Dict[str, Dict[str, Any]] | None = None,
                 replies: List[Dict[str, Any]] | None = None,
                 failing_users: set | None = None):
        self.users = users or {}
        self.replies = replies or []
        self.failing_users = failing_users or set()
        self.users_info_calls: List[str] = []
        self.replies_calls: List[Dict[str, Any]] = []
        self.posted: List[Dict[str, Any]] = []
        self.post_error: Exception | None = None
        self._lock = threading.Lock()

    def users_info(self, user: str):
        with self._lock:
            self.users_info_calls.append(user)
        if user in self.failing_users or user not in self.users:
            raise SlackApiError("users.info failed", {"ok": False, "error": "user_not_found"})
        return {"ok": True, "user": self.users[user]}

    def conversations_replies(self, **kwargs):
        self.replies_calls.append(kwargs)
        return {"ok": True, "messages": list(self.replies)}

    def chat_postMessage(self, **kwargs):
        if self.post_error is not None:
            raise self.post_error
        self.posted.append(kwargs)
        return {"ok": True}


class SayRecorder:
    def __init__(self):
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, **kwargs):
        self.calls.append(kwargs)

    @property
    def texts(self) -> List[str]:
        return [c["text"] for c in self.calls]


@pytest.fixture
def slack_client() -> FakeSlackClient:
    return FakeSlackClient(users={
        "U1": {"real_name": "山田 太郎", "name": "yamada"},
        "U2": {"name": "sato"},
    })


@pytest.fixture
def say() -> SayRecorder:
    return SayRecorder()


# ---------------------------------------------------------------------------
# Firestore
# ---------------------------------------------------------------------------
class FakeSnapshot:
    def __init__(self, data):
        self._data = data

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self):
        return None if self._data is None else dict(self._data)


class FakeDocRef:
    def __init__(self, docs: Dict[str, Dict[str, Any]], doc_id: str):
        self._docs = docs
        self.id = doc_id

    def create(self, data):
        if self.id in self._docs:
            raise AlreadyExists(f"document {self.id} exists")
        self._docs[self.id] = dict(data)

    def get(self):
        return FakeSnapshot(self._docs.get(self.id))

    def update(self, fields):
        if self.id not in self._docs:
            raise NotFound(f"document {self.id} missing")
        self._docs[self.id].update(fields)


class FakeCollection:
    def __init__(self, docs):
        self._docs = docs

    def document(self, doc_id: str) -> FakeDocRef:
        return FakeDocRef(self._docs, doc_id)


class FakeFirestore:
    def __init__(self):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def collection(self, name: str) -> FakeCollection:
        return FakeCollection(self.collections.setdefault(name, {}))

    def docs(self, name: str = "uketsuke") -> Dict[str, Dict[str, Any]]:
        return self.collections.setdefault(name, {})


@pytest.fixture
def firestore_client() -> FakeFirestore:
    return FakeFirestore()


@pytest.fixture
def store(firestore_client) -> UketsukeStore:
    return UketsukeStore(client=firestore_client, collection="uketsuke")


# ---------------------------------------------------------------------------
# LLM
# ---------------------------------------------------------------------------
class FakeLLM:
    """Returns canned chat responses (or raises) and records the calls."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: List[Dict[str, Any]] = []

    def chat(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return {"message": {"role": "assistant", "content": outcome}}


@pytest.fixture
def fake_llm():
    return FakeLLM
