"""Secret Store — encrypt-by-reference storage for agent credentials.

The rest of the control plane only ever holds opaque references
(``sec_<uuid>``). Plaintext exists transiently in memory while a
credential is being set or brokered.

``FernetSecretStore`` keeps Fernet ciphertext in its own SQLite file
so a leak of the registry database does not expose anything usable.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Protocol

import aiosqlite
from cryptography.fernet import Fernet, InvalidToken

from toolshed.errors import CredentialError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS secrets (
    ref TEXT PRIMARY KEY,
    ciphertext BLOB NOT NULL,
    created_at TEXT NOT NULL
);
"""


class SecretStore(Protocol):
    async def put(self, plaintext: str) -> str: ...

    async def resolve(self, ref: str) -> str: ...

    async def release(self, ref: str) -> None: ...


def mask_secret(plaintext: str) -> str:
    """Masked display identifier: first two and last two characters at most."""
    if len(plaintext) <= 4:
        return "…"
    return f"{plaintext[:2]}…{plaintext[-2:]}"


class FernetSecretStore:
    """SQLite + Fernet implementation of ``SecretStore``."""

    def __init__(self, db_path: str, key: str | bytes):
        self.db_path = db_path
        self._fernet = Fernet(key)
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Secret store initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Secret store not initialized — call initialize() first")
        return self._db

    async def put(self, plaintext: str) -> str:
        ref = f"sec_{uuid.uuid4().hex}"
        token = self._fernet.encrypt(plaintext.encode())
        await self.db.execute(
            "INSERT INTO secrets (ref, ciphertext, created_at) VALUES (?, ?, ?)",
            (ref, token, datetime.now(timezone.utc).isoformat()),
        )
        await self.db.commit()
        return ref

    async def resolve(self, ref: str) -> str:
        cursor = await self.db.execute("SELECT ciphertext FROM secrets WHERE ref = ?", (ref,))
        row = await cursor.fetchone()
        if row is None:
            logger.warning("Secret reference %s not found", ref)
            raise CredentialError()
        try:
            return self._fernet.decrypt(row[0]).decode()
        except InvalidToken as exc:
            logger.error("Secret reference %s failed to decrypt (key rotated?)", ref)
            raise CredentialError() from exc

    async def release(self, ref: str) -> None:
        await self.db.execute("DELETE FROM secrets WHERE ref = ?", (ref,))
        await self.db.commit()
        logger.debug("Released secret reference %s", ref)

    async def count(self) -> int:
        cursor = await self.db.execute("SELECT COUNT(*) FROM secrets")
        row = await cursor.fetchone()
        return row[0]


def generate_key() -> str:
    return Fernet.generate_key().decode()
