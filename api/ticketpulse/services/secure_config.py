"""Encrypted key/value credential store.

Values flagged as encrypted are stored as ``<iv hex>:<ciphertext hex>``
using AES-256-CBC with a key derived once per process from the configured
passphrase via scrypt and a fixed salt. Every write uses a fresh random IV.

Decrypted plaintext lives only in a bounded-TTL in-memory cache. Writes
invalidate the cache entry, append an activity-log row (key name, encrypted
flag and value length, never the value) and synchronously notify any
listeners registered for that key so dependents can drop stale sessions
without a restart.

The passphrase is fixed for the lifetime of the process. Changing it makes
previously encrypted rows undecryptable; they read back as absent.
"""

import os
import secrets
import threading
from collections import defaultdict
from typing import Callable, Optional

import structlog
from cachetools import TTLCache
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketpulse.config import settings
from ticketpulse.errors import DecryptionError, PersistenceError
from ticketpulse.models.system_config import SystemConfig
from ticketpulse.schemas.config import ConfigEntryView
from ticketpulse.services.activity_log import (
    CONFIG_ACCESS,
    CONFIG_DELETE,
    CONFIG_UPDATE,
    CONFIG_UPDATE_FAILED,
    log_activity,
)
from ticketpulse.services.periods import utcnow

log = structlog.get_logger()

KDF_SALT = b"secure-config-salt-v1"
IV_LENGTH = 16
DEFAULT_PASSPHRASE = "default-key-change-in-production-32"
MASK = "********"
NOT_CONFIGURED = "Not configured"

SENSITIVE_CONFIG_KEYS = frozenset(
    {
        "HELPDESK_API_KEY",
        "CONFIG_ENCRYPTION_KEY",
        "DATABASE_URL",
    }
)
_SENSITIVE_FRAGMENTS = ("password", "secret", "key", "token")

ConfigListener = Callable[[str], None]


def should_encrypt_key(key: str) -> bool:
    """True for known-sensitive keys and anything that looks like a credential."""
    if key in SENSITIVE_CONFIG_KEYS:
        return True
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SENSITIVE_FRAGMENTS)


def mask_value(value: Optional[str]) -> str:
    if not value:
        return NOT_CONFIGURED
    if len(value) > 12:
        return f"{value[:4]}{MASK}{value[-4:]}"
    return MASK


class ConfigCipher:
    """AES-256-CBC with PKCS7 padding and a scrypt-derived key."""

    def __init__(self, passphrase: str):
        kdf = Scrypt(salt=KDF_SALT, length=32, n=2**14, r=8, p=1)
        self._key = kdf.derive(passphrase.encode("utf-8"))

    def encrypt(self, plaintext: str) -> str:
        iv = secrets.token_bytes(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, stored: str) -> str:
        iv_hex, sep, cipher_hex = stored.partition(":")
        if not sep or not iv_hex or not cipher_hex:
            raise DecryptionError("Invalid encrypted format")
        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(cipher_hex)
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except ValueError as exc:
            # Bad hex, wrong IV length, bad padding and bad UTF-8 all land here
            raise DecryptionError("Ciphertext could not be decrypted") from exc


def _settings_fallback(key: str) -> Optional[str]:
    value = getattr(settings, key.lower(), None)
    if isinstance(value, str) and value:
        return value
    return os.environ.get(key) or None


class SecureConfigStore:
    """Injectable secret store. One instance per process; state is lock-guarded."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        passphrase: Optional[str] = None,
        cache_ttl_seconds: Optional[int] = None,
        env_fallback: Optional[Callable[[str], Optional[str]]] = _settings_fallback,
    ):
        passphrase = passphrase if passphrase is not None else settings.config_encryption_key
        if not passphrase or passphrase == DEFAULT_PASSPHRASE:
            log.warning("config_encryption_key_default")
            passphrase = DEFAULT_PASSPHRASE

        self._session_factory = session_factory
        self._cipher = ConfigCipher(passphrase)
        self._env_fallback = env_fallback
        ttl = cache_ttl_seconds if cache_ttl_seconds is not None else settings.config_cache_ttl_seconds
        self._cache: TTLCache = TTLCache(maxsize=256, ttl=ttl)
        self._listeners: dict[str, list[ConfigListener]] = defaultdict(list)
        # bumped on every write so a read that raced a write does not cache stale data
        self._versions: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    # -- cache -------------------------------------------------------------

    def _cache_get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._cache.get(key)

    def _version(self, key: str) -> int:
        with self._lock:
            return self._versions[key]

    def _cache_put(self, key: str, value: str, version: int) -> None:
        with self._lock:
            if self._versions[key] == version:
                self._cache[key] = value

    def _cache_drop(self, key: str) -> None:
        with self._lock:
            self._versions[key] += 1
            self._cache.pop(key, None)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
        log.info("config_cache_cleared")

    # -- reads -------------------------------------------------------------

    async def get(self, key: str, log_access: bool = False) -> Optional[str]:
        """Return the plaintext value, or None when absent or undecryptable.

        Falls back to settings / environment when no row exists.
        """
        cached = self._cache_get(key)
        if cached is not None:
            return cached
        version = self._version(key)

        try:
            async with self._session_factory() as session:
                entry = await session.get(SystemConfig, key)
                if entry is None:
                    return self._env_fallback(key) if self._env_fallback else None

                if entry.encrypted:
                    try:
                        value = self._cipher.decrypt(entry.value)
                    except DecryptionError:
                        log.error("config_decrypt_failed", key=key)
                        return None
                else:
                    value = entry.value

                if log_access:
                    log_activity(
                        session,
                        CONFIG_ACCESS,
                        f"Accessed config: {key}",
                        {"key": key, "encrypted": entry.encrypted},
                    )
                    await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to read config", {"key": key}) from exc

        self._cache_put(key, value, version)
        return value

    async def mask(self, key: str) -> str:
        return mask_value(await self.get(key))

    async def validate_required(self, keys: list[str]) -> list[str]:
        """Return the subset of ``keys`` with no usable value."""
        missing = []
        for key in keys:
            if not await self.get(key):
                missing.append(key)
        return missing

    async def list_entries(self) -> list[ConfigEntryView]:
        async with self._session_factory() as session:
            result = await session.execute(select(SystemConfig).order_by(SystemConfig.key))
            entries = result.scalars().all()
        return [
            ConfigEntryView(
                key=entry.key,
                value=MASK if entry.encrypted else entry.value,
                encrypted=entry.encrypted,
                updated_by=entry.updated_by,
                updated_at=entry.updated_at,
            )
            for entry in entries
        ]

    # -- writes ------------------------------------------------------------

    async def set(
        self,
        key: str,
        value: str,
        should_encrypt: Optional[bool] = None,
        updated_by: Optional[str] = None,
    ) -> None:
        """Encrypt (if requested), upsert, invalidate cache, notify listeners.

        ``should_encrypt`` defaults to the key-name heuristic.
        """
        if should_encrypt is None:
            should_encrypt = should_encrypt_key(key)
        stored = self._cipher.encrypt(value) if should_encrypt else value

        try:
            async with self._session_factory() as session:
                entry = await session.get(SystemConfig, key)
                if entry is None:
                    entry = SystemConfig(key=key)
                    session.add(entry)
                entry.value = stored
                entry.encrypted = should_encrypt
                entry.updated_by = updated_by
                entry.updated_at = utcnow()
                log_activity(
                    session,
                    CONFIG_UPDATE,
                    f"Updated config: {key}",
                    {"key": key, "encrypted": should_encrypt, "value_length": len(value)},
                )
                await session.commit()
        except SQLAlchemyError as exc:
            log.error("config_update_failed", key=key, error=str(exc))
            await self._record_failure(key, str(exc))
            raise PersistenceError("Failed to update config", {"key": key}) from exc

        self._cache_drop(key)
        log.info("config_updated", key=key, encrypted=should_encrypt)
        self._notify(key, value)

    async def _record_failure(self, key: str, error: str) -> None:
        try:
            async with self._session_factory() as session:
                log_activity(
                    session,
                    CONFIG_UPDATE_FAILED,
                    f"Failed to update config: {key}",
                    {"key": key, "error": error},
                )
                await session.commit()
        except SQLAlchemyError as exc:
            log.error("config_failure_record_failed", key=key, error=str(exc))

    async def delete(self, key: str) -> bool:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(SystemConfig).where(SystemConfig.key == key)
                )
                removed = result.rowcount > 0
                if removed:
                    log_activity(
                        session, CONFIG_DELETE, f"Deleted config: {key}", {"key": key}
                    )
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to delete config", {"key": key}) from exc

        self._cache_drop(key)
        if removed:
            log.info("config_deleted", key=key)
        return removed

    # -- hot reload --------------------------------------------------------

    def on_change(self, key: str, listener: ConfigListener) -> None:
        with self._lock:
            self._listeners[key].append(listener)

    def _notify(self, key: str, value: str) -> None:
        with self._lock:
            listeners = list(self._listeners.get(key, ()))
        for listener in listeners:
            try:
                listener(value)
            except Exception:
                log.error("config_listener_failed", key=key, exc_info=True)
        log.info("config_change_notified", key=key, listener_count=len(listeners))
