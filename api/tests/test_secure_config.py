"""Tests for the encrypted config store."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from factories import TEST_PASSPHRASE
from ticketpulse.errors import DecryptionError
from ticketpulse.models.activity_log import ActivityLog
from ticketpulse.models.system_config import SystemConfig
from ticketpulse.services.activity_log import CONFIG_ACCESS, CONFIG_DELETE, CONFIG_UPDATE
from ticketpulse.services.secure_config import (
    MASK,
    NOT_CONFIGURED,
    ConfigCipher,
    SecureConfigStore,
    mask_value,
    should_encrypt_key,
)


async def _row(session_factory, key):
    async with session_factory() as session:
        return await session.get(SystemConfig, key)


async def _activities(session_factory, activity_type):
    async with session_factory() as session:
        result = await session.execute(
            select(ActivityLog).where(ActivityLog.activity_type == activity_type)
        )
        return list(result.scalars().all())


def test_cipher_uses_fresh_iv_per_encryption():
    cipher = ConfigCipher(TEST_PASSPHRASE)

    first = cipher.encrypt("same secret")
    second = cipher.encrypt("same secret")

    assert first != second
    assert len(first.split(":")[0]) == 32
    assert cipher.decrypt(first) == cipher.decrypt(second) == "same secret"


@pytest.mark.parametrize("stored", ["no-separator", ":deadbeef", "zz:zz", "00" * 16 + ":abcd"])
def test_cipher_rejects_malformed_ciphertext(stored):
    with pytest.raises(DecryptionError):
        ConfigCipher(TEST_PASSPHRASE).decrypt(stored)


def test_should_encrypt_key():
    assert should_encrypt_key("HELPDESK_API_KEY")
    assert should_encrypt_key("DATABASE_URL")
    assert should_encrypt_key("smtp_password")
    assert should_encrypt_key("SLACK_TOKEN")
    assert not should_encrypt_key("HELPDESK_DOMAIN")
    assert not should_encrypt_key("ytd_last_sync_timestamp")


def test_mask_value():
    assert mask_value(None) == NOT_CONFIGURED
    assert mask_value("") == NOT_CONFIGURED
    assert mask_value("short") == MASK
    assert mask_value("abcdefghijklmnop") == f"abcd{MASK}mnop"


async def test_set_encrypts_at_rest_and_get_round_trips(store, session_factory):
    await store.set("HELPDESK_API_KEY", "super-secret-api-key")

    row = await _row(session_factory, "HELPDESK_API_KEY")
    assert row.encrypted is True
    assert "super-secret" not in row.value
    assert ":" in row.value

    store.clear_cache()
    assert await store.get("HELPDESK_API_KEY") == "super-secret-api-key"


async def test_plain_values_stored_as_is(store, session_factory):
    await store.set("HELPDESK_DOMAIN", "acme.example.com", updated_by="ops")

    row = await _row(session_factory, "HELPDESK_DOMAIN")
    assert row.encrypted is False
    assert row.value == "acme.example.com"
    assert row.updated_by == "ops"


async def test_set_writes_activity_without_the_value(store, session_factory):
    await store.set("HELPDESK_API_KEY", "super-secret-api-key")

    entries = await _activities(session_factory, CONFIG_UPDATE)
    assert len(entries) == 1
    assert entries[0].metadata_json == {
        "key": "HELPDESK_API_KEY",
        "encrypted": True,
        "value_length": len("super-secret-api-key"),
    }
    assert "super-secret" not in entries[0].description


async def test_write_invalidates_cache(store):
    await store.set("REPORT_RECIPIENT", "a@example.com")
    assert await store.get("REPORT_RECIPIENT") == "a@example.com"

    await store.set("REPORT_RECIPIENT", "b@example.com")

    assert await store.get("REPORT_RECIPIENT") == "b@example.com"


class InterleavedFactory:
    """Session factory that runs one queued coroutine right after the next session closes."""

    def __init__(self, factory):
        self._factory = factory
        self._pending = None

    def after_next_session(self, make_coro):
        self._pending = make_coro

    @asynccontextmanager
    async def __call__(self):
        async with self._factory() as session:
            yield session
        pending, self._pending = self._pending, None
        if pending is not None:
            await pending()


async def test_read_overlapping_a_write_does_not_cache_old_value(session_factory):
    factory = InterleavedFactory(session_factory)
    store = SecureConfigStore(
        factory, passphrase=TEST_PASSPHRASE, cache_ttl_seconds=60, env_fallback=None
    )
    await store.set("REPORT_RECIPIENT", "a@example.com")

    # the write lands after the read fetched its row but before it fills the cache
    factory.after_next_session(lambda: store.set("REPORT_RECIPIENT", "b@example.com"))
    assert await store.get("REPORT_RECIPIENT") == "a@example.com"

    assert await store.get("REPORT_RECIPIENT") == "b@example.com"


async def test_undecryptable_value_reads_as_absent(store, session_factory):
    async with session_factory() as session:
        session.add(
            SystemConfig(
                key="LEGACY_TOKEN",
                value="00112233445566778899aabbccddeeff:not-hex",
                encrypted=True,
                updated_at=datetime.now(timezone.utc),
            )
        )
        await session.commit()

    assert await store.get("LEGACY_TOKEN") is None


async def test_different_passphrase_cannot_read(store, session_factory):
    await store.set("HELPDESK_API_KEY", "a-fairly-long-secret-value-spanning-blocks")

    other = SecureConfigStore(session_factory, passphrase="another-passphrase", env_fallback=None)

    assert await other.get("HELPDESK_API_KEY") is None


async def test_missing_key_uses_fallback(session_factory):
    env = {"HELPDESK_DOMAIN": "env.example.com"}
    store = SecureConfigStore(session_factory, passphrase=TEST_PASSPHRASE, env_fallback=env.get)

    assert await store.get("HELPDESK_DOMAIN") == "env.example.com"
    assert await store.get("UNKNOWN") is None


async def test_stored_value_wins_over_fallback(session_factory):
    env = {"HELPDESK_DOMAIN": "env.example.com"}
    store = SecureConfigStore(session_factory, passphrase=TEST_PASSPHRASE, env_fallback=env.get)

    await store.set("HELPDESK_DOMAIN", "db.example.com")

    assert await store.get("HELPDESK_DOMAIN") == "db.example.com"


async def test_access_logging_is_opt_in(store, session_factory):
    await store.set("HELPDESK_DOMAIN", "acme.example.com")

    await store.get("HELPDESK_DOMAIN")
    assert await _activities(session_factory, CONFIG_ACCESS) == []

    store.clear_cache()
    await store.get("HELPDESK_DOMAIN", log_access=True)
    assert len(await _activities(session_factory, CONFIG_ACCESS)) == 1


async def test_listeners_notified_synchronously(store):
    seen = []
    store.on_change("HELPDESK_DOMAIN", seen.append)

    await store.set("HELPDESK_DOMAIN", "new.example.com")

    assert seen == ["new.example.com"]


async def test_failing_listener_does_not_block_others(store):
    seen = []

    def broken(_value):
        raise RuntimeError("listener bug")

    store.on_change("HELPDESK_DOMAIN", broken)
    store.on_change("HELPDESK_DOMAIN", seen.append)

    await store.set("HELPDESK_DOMAIN", "new.example.com")

    assert seen == ["new.example.com"]


async def test_validate_required_reports_missing(store):
    await store.set("HELPDESK_DOMAIN", "acme.example.com")

    missing = await store.validate_required(["HELPDESK_DOMAIN", "HELPDESK_API_KEY"])

    assert missing == ["HELPDESK_API_KEY"]


async def test_list_entries_masks_encrypted_values(store):
    await store.set("HELPDESK_API_KEY", "super-secret-api-key")
    await store.set("HELPDESK_DOMAIN", "acme.example.com")

    entries = {e.key: e for e in await store.list_entries()}

    assert entries["HELPDESK_API_KEY"].value == MASK
    assert entries["HELPDESK_DOMAIN"].value == "acme.example.com"


async def test_mask_reads_through_store(store):
    await store.set("HELPDESK_API_KEY", "super-secret-api-key")

    assert await store.mask("HELPDESK_API_KEY") == f"supe{MASK}-key"
    assert await store.mask("NOTHING_HERE") == NOT_CONFIGURED


async def test_delete(store, session_factory):
    await store.set("HELPDESK_DOMAIN", "acme.example.com")
    assert await store.get("HELPDESK_DOMAIN") == "acme.example.com"

    assert await store.delete("HELPDESK_DOMAIN") is True
    assert await store.get("HELPDESK_DOMAIN") is None
    assert await store.delete("HELPDESK_DOMAIN") is False
    assert len(await _activities(session_factory, CONFIG_DELETE)) == 1
