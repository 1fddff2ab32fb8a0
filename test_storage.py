"""
Tests for encrypted local storage, accounts and configuration.
"""

import json
import sqlite3
from pathlib import Path

import pytest

from messenger.account import AccountManager, validate_username
from messenger.config import Settings, normalize_server_url
from messenger.errors import AccountError, StorageLocked, TransportFailure
from messenger.storage import LocalStore

from conftest import TEST_ITERATIONS, TEST_SERVER_URL, open_store


def test_wrong_passphrase_is_rejected(tmp_path):
    path = tmp_path / "messenger.db"
    first = open_store(path)
    first.set_config("server_url", TEST_SERVER_URL)
    first.close()

    locked = LocalStore(path, iterations=TEST_ITERATIONS)
    with pytest.raises(StorageLocked):
        locked.unlock("wrong passphrase")
    with pytest.raises(StorageLocked):
        locked.get_config("server_url")
    locked.close()

    reopened = open_store(path)
    assert reopened.get_config("server_url") == TEST_SERVER_URL
    reopened.close()


def test_message_bodies_are_encrypted_on_disk(store):
    store.save_message("alice", "bob", "alice", "bob", "top secret", is_outgoing=True)
    raw = store.db.execute("SELECT encrypted_content FROM messages").fetchone()[0]
    assert b"top secret" not in raw


def test_transaction_excludes_other_connections(store):
    other = open_store(store.db_path)
    other.db.execute("PRAGMA busy_timeout=0")

    with store.transaction():
        store.save_session("alice:bob", b"state")
        with pytest.raises(sqlite3.OperationalError):
            other.save_session("alice:carol", b"interleaved")
        other.db.rollback()
        # Not visible until the block ends
        assert other.load_session("alice:bob") is None

    assert other.load_session("alice:bob") == b"state"
    other.save_session("alice:carol", b"after")
    assert store.load_session("alice:carol") == b"after"
    other.close()


def test_transaction_rolls_back_on_error(store):
    store.save_session("alice:bob", b"before")

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.save_session("alice:bob", b"after")
            store.save_session("alice:carol", b"new")
            raise RuntimeError("transform failed")

    assert store.load_session("alice:bob") == b"before"
    assert store.load_session("alice:carol") is None

    with store.transaction():
        with store.transaction():
            store.save_session("alice:carol", b"new")
    assert store.load_session("alice:carol") == b"new"


def test_history_and_conversations(store):
    store.save_message("alice", "bob", "alice", "bob", "hi bob", is_outgoing=True)
    store.save_message("alice", "bob", "bob", "alice", "hi alice", is_outgoing=False)
    store.save_message("alice", "carol", "carol", "alice", "hey", is_outgoing=False)
    store.save_message("bob", "alice", "bob", "alice", "other owner", is_outgoing=True)

    history = store.get_messages("alice", "bob")
    assert [m['content'] for m in history] == ["hi bob", "hi alice"]
    assert [m['content'] for m in store.get_messages("alice", "bob", limit=1)] == ["hi alice"]

    conversations = store.list_conversations("alice")
    assert [c['peer'] for c in conversations] == ["carol", "bob"]
    assert conversations[0]['last_message'] == "hey"
    assert conversations[1]['unread'] == 1

    store.mark_read("alice", "bob")
    assert store.list_conversations("alice")[1]['unread'] == 0
    assert store.count_messages("alice") == 3


@pytest.mark.parametrize("username", ["", "has space", "a:b", "x" * 33])
def test_invalid_usernames(username):
    with pytest.raises(AccountError):
        validate_username(username)


@pytest.mark.asyncio
async def test_register_login_logout(store, relay):
    accounts = AccountManager(store)
    with pytest.raises(AccountError):
        accounts.current()

    account = await accounts.register("alice", relay, TEST_SERVER_URL, num_one_time_keys=3)
    assert account.device_id == relay.users["alice"]["device_id"]
    assert sorted(account.keys.one_time_pre_keys) == [1, 2, 3]

    with pytest.raises(AccountError):
        await accounts.register("alice", relay, TEST_SERVER_URL)

    accounts.login("alice")
    current = accounts.current()
    assert current.identity_public == account.identity_public
    assert current.server_url == TEST_SERVER_URL

    accounts.logout()
    with pytest.raises(AccountError):
        accounts.current()

    with pytest.raises(AccountError):
        accounts.login("nobody")


@pytest.mark.asyncio
async def test_relay_rejection_leaves_no_local_account(store, relay):
    accounts = AccountManager(store)
    await relay.register("alice", {'one_time_pre_keys': []})

    with pytest.raises(TransportFailure):
        await accounts.register("alice", relay, TEST_SERVER_URL)
    with pytest.raises(AccountError):
        accounts.load("alice")


@pytest.mark.asyncio
async def test_export_and_import_keys(tmp_path, store, relay):
    accounts = AccountManager(store)
    account = await accounts.register("alice", relay, TEST_SERVER_URL)
    backup = tmp_path / "alice-keys.json"

    exported = accounts.export_keys("alice", backup)
    assert exported['version'] == "1.0"
    assert json.loads(backup.read_text())['username'] == "alice"

    with pytest.raises(AccountError):
        accounts.import_keys(backup)

    other = AccountManager(open_store(tmp_path / "other.db"))
    restored = other.import_keys(backup)
    assert restored.identity_public == account.identity_public
    assert restored.device_id == account.device_id
    assert other.load("alice").keys.public_bundle() == account.keys.public_bundle()
    other.store.close()


def test_import_rejects_bad_files(tmp_path, store):
    accounts = AccountManager(store)
    with pytest.raises(AccountError):
        accounts.import_keys(tmp_path / "missing.json")

    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({'username': 'alice', 'keys': {'version': 9}}))
    with pytest.raises(AccountError):
        accounts.import_keys(bad)


@pytest.mark.asyncio
async def test_delete_account_removes_sessions_and_history(make_party):
    alice = await make_party("alice")
    await make_party("bob")
    await alice.send("bob", "hello")

    alice.pipeline.accounts.login("alice")
    alice.pipeline.accounts.delete("alice")

    assert alice.store.load_account("alice") is None
    assert alice.store.list_sessions("alice") == []
    assert alice.store.count_messages("alice") == 0
    with pytest.raises(AccountError):
        alice.pipeline.accounts.current()


def test_normalize_server_url():
    assert normalize_server_url(" https://relay.example.com/ ") == "https://relay.example.com"
    with pytest.raises(ValueError):
        normalize_server_url("relay.example.com")


def test_settings_from_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RATCHET_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("RATCHET_SERVER_URL", "http://localhost:8000")
    monkeypatch.setenv("RATCHET_LOG_LEVEL", "debug")
    monkeypatch.setenv("RATCHET_MAX_CACHED_KEYS", "50")
    monkeypatch.delenv("RATCHET_PASSPHRASE", raising=False)

    settings = Settings.from_env()
    assert settings.db_path == Path(tmp_path / "home" / "messenger.db")
    assert settings.server_url == "http://localhost:8000"
    assert settings.log_level == "DEBUG"
    assert settings.max_cached_keys == 50
    assert settings.passphrase is None
