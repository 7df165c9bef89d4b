import re

import pytest
from google.cloud import firestore

from uketsuke import store as store_mod
from uketsuke.store import (
    FIELD_CHANNEL_ID,
    FIELD_CREATED_AT,
    FIELD_DATA,
    FIELD_THREAD_TS,
    FIELD_UPDATED_AT,
    MAX_ID_ATTEMPTS,
    generate_id,
)


def test_generated_ids_are_12_alphanumerics():
    for _ in range(20):
        assert re.fullmatch(r"[A-Za-z0-9]{12}", generate_id())


def test_create_then_get_returns_the_same_data(store, firestore_client):
    data = {"kaishaName": "A社", "sagyoNaiyo": [{"tokkiJiko": "①X線"}]}
    doc_id = store.create(data, thread_ts="1700000000.000100", channel_id="C1")

    assert store.get(doc_id) == data
    doc = firestore_client.docs()[doc_id]
    assert doc[FIELD_CREATED_AT] is firestore.SERVER_TIMESTAMP
    assert doc[FIELD_THREAD_TS] == "1700000000.000100"
    assert doc[FIELD_CHANNEL_ID] == "C1"


def test_create_without_thread_context_omits_tags(store, firestore_client):
    doc_id = store.create({"memo": "x"})
    doc = firestore_client.docs()[doc_id]
    assert FIELD_THREAD_TS not in doc and FIELD_CHANNEL_ID not in doc


def test_unknown_id_is_none_not_an_error(store):
    assert store.get("doesNotExist") is None
    assert store.get_document("doesNotExist") is None
    assert store.get("") is None


def test_update_replaces_data_and_stamps_updated_at(store, firestore_client):
    doc_id = store.create({"memo": "before"}, thread_ts="1.0", channel_id="C1")
    store.update(doc_id, {"memo": "after"})

    doc = firestore_client.docs()[doc_id]
    assert doc[FIELD_DATA] == {"memo": "after"}
    assert doc[FIELD_UPDATED_AT] is firestore.SERVER_TIMESTAMP
    # thread tags survive an edit
    assert doc[FIELD_THREAD_TS] == "1.0"


def test_id_collision_draws_a_new_id(store, firestore_client, monkeypatch):
    firestore_client.docs()["AAAAAAAAAAAA"] = {FIELD_DATA: {"memo": "existing"}}
    ids = iter(["AAAAAAAAAAAA", "BBBBBBBBBBBB"])
    monkeypatch.setattr(store_mod, "generate_id", lambda: next(ids))

    assert store.create({"memo": "new"}) == "BBBBBBBBBBBB"
    assert store.get("AAAAAAAAAAAA") == {"memo": "existing"}


def test_persistent_collisions_raise(store, firestore_client, monkeypatch):
    firestore_client.docs()["AAAAAAAAAAAA"] = {}
    monkeypatch.setattr(store_mod, "generate_id", lambda: "AAAAAAAAAAAA")
    with pytest.raises(RuntimeError):
        store.create({"memo": "new"})
    assert len(firestore_client.docs()) == 1
    assert MAX_ID_ATTEMPTS == 5


def test_missing_credentials_raise(monkeypatch):
    for name in ("GOOGLE_APPLICATION_CREDENTIALS", "FIREBASE_PROJECT_ID",
                 "FIREBASE_CLIENT_EMAIL", "FIREBASE_PRIVATE_KEY"):
        monkeypatch.delenv(name, raising=False)
    with pytest.raises(RuntimeError):
        store_mod._credentials()
