import json
import time

import pytest

from common.constants import DIGIT_SNAPSHOT_PREFIX
from common.exceptions import StorageError
from deriv_gateway.models import Account
from deriv_gateway.token_store import (
    JsonFileStore, MemoryStore, TokenStore, create_token_store, normalize_id,
)


def test_normalize_id():
    assert normalize_id("  CR799393 ") == "cr799393"


def test_tokens_are_keyed_case_insensitively():
    store = TokenStore()
    store.set("CR123", "tok-direct")
    assert store.get("cr123") == "tok-direct"
    assert store.known_accounts() == ["cr123"]


def test_resolve_priority():
    store = TokenStore()
    store.save_user_accounts([Account("CR1", token="tok-oauth")])
    assert store.resolve("CR1") == "tok-oauth"

    store.map_token("CR1", "tok-map")
    assert store.resolve("CR1") == "tok-map"

    store.set_verified("CR1", "tok-verified")
    assert store.resolve("CR1") == "tok-verified"

    store.set("CR1", "tok-direct")
    assert store.resolve("cr1") == "tok-direct"


def test_resolve_falls_back_to_known_accounts():
    store = TokenStore()
    known = [Account("VRTC9", token="tok-known"), Account("CR5")]
    assert store.resolve("vrtc9", known) == "tok-known"
    assert store.resolve("CR5", known) is None
    assert store.resolve("CR404") is None


def test_user_accounts_round_trip_skips_tokenless_entries():
    store = TokenStore()
    store.save_user_accounts([
        Account("CR1", token="a", currency="USD"),
        Account("VRTC2", token="b", currency="USD"),
        Account("CR3"),
    ])
    accounts = store.user_accounts()
    assert [a.loginid for a in accounts] == ["CR1", "VRTC2"]
    assert accounts[1].is_virtual and not accounts[0].is_virtual


def test_active_account_and_last_token():
    store = TokenStore()
    store.set_active_account("CR1")
    store.set_last_token("tok")
    assert store.get_active_account() == "cr1"
    assert store.get_last_token() == "tok"


def test_remove_account():
    store = TokenStore()
    store.set("CR1", "a")
    store.set_verified("CR1", "a")
    store.map_token("CR1", "a")
    store.set_active_account("CR1")
    store.set("CR2", "b")

    store.remove("CR1")

    assert store.resolve("CR1") is None
    assert store.get_active_account() is None
    assert store.known_accounts() == ["cr2"]
    assert store.get("CR2") == "b"


def test_clear_removes_only_session_keys():
    backend = MemoryStore({"unrelated_setting": "keep"})
    store = TokenStore(backend)
    store.set("CR1", "a")
    store.set_verified("VRTC2", "b")
    store.map_token("CR1", "a")
    store.save_user_accounts([Account("CR1", token="a")])
    store.set_active_account("CR1")
    store.set_last_token("a")
    store.save_snapshot("R_100", [{"value": 1.0, "time": 1.0}])

    store.clear()

    assert set(backend.keys()) == {"unrelated_setting", DIGIT_SNAPSHOT_PREFIX + "R_100"}
    assert store.resolve("CR1") is None

    store.clear(include_snapshots=True)
    assert backend.keys() == ["unrelated_setting"]


def test_snapshot_round_trip():
    store = TokenStore()
    ticks = [{"value": 1.23, "time": 10.0}]
    store.save_snapshot("R_100", ticks)
    assert store.load_snapshot("R_100", max_age=60) == ticks
    assert store.load_snapshot("R_50") is None


def test_stale_snapshot_is_discarded():
    store = TokenStore()
    store.save_snapshot("R_100", [{"value": 1.23, "time": 10.0}], timestamp=time.time() - 7200)
    assert store.load_snapshot("R_100", max_age=3600) is None
    assert DIGIT_SNAPSHOT_PREFIX + "R_100" not in store.store


def test_json_file_store_persists(tmp_path):
    path = tmp_path / "nested" / "store.json"
    store = TokenStore(JsonFileStore(str(path)))
    store.set("CR1", "tok")
    store.set_active_account("CR1")

    reopened = TokenStore(JsonFileStore(str(path)))
    assert reopened.get("CR1") == "tok"
    assert reopened.get_active_account() == "cr1"
    assert json.loads(path.read_text())["deriv_token_cr1"] == "tok"


def test_json_file_store_rejects_corrupt_file(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{not json")
    with pytest.raises(StorageError):
        JsonFileStore(str(path))

    path.write_text("[1, 2]")
    with pytest.raises(StorageError):
        JsonFileStore(str(path))


def test_create_token_store(tmp_path):
    assert isinstance(create_token_store("memory").store, MemoryStore)
    assert isinstance(create_token_store("file", str(tmp_path / "s.json")).store, JsonFileStore)
    with pytest.raises(StorageError):
        create_token_store("file")
    with pytest.raises(StorageError):
        create_token_store("redis")
