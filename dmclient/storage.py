"""
Durable local key storage for the messaging client.

Key pair records are kept in a SQLite database through async SQLAlchemy.
When a passphrase is supplied, each record is additionally encrypted with a
key derived from it, so the private scalar never sits on disk in the clear.
"""

import os
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy import Column, String, DateTime, LargeBinary, select, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from dmcrypto.keys import KEYS_STORE, KeyStore, KeyStoreError

logger = logging.getLogger(__name__)

Base = declarative_base()

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./client_data/keys.db"
PBKDF2_ITERATIONS = 100000
SALT_SIZE = 16


class StoredKey(Base):
    """One key pair record, keyed by user identity"""
    __tablename__ = KEYS_STORE

    id = Column(String(255), primary_key=True)
    payload = Column(LargeBinary, nullable=False)
    salt = Column(LargeBinary, nullable=True)  # set only for passphrase-protected rows
    created_at = Column(DateTime, default=datetime.utcnow)


class SQLKeyStore(KeyStore):
    """
    KeyStore backed by SQLite (or any async SQLAlchemy database).
    """

    def __init__(self, database_url: str = DEFAULT_DATABASE_URL, passphrase: Optional[str] = None):
        """
        Initialize the key store.

        Args:
            database_url: SQLAlchemy database URL
            passphrase: Optional passphrase used to encrypt records at rest
        """
        _ensure_sqlite_dir(database_url)
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self._passphrase = passphrase
        self._tables_ready = False

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._tables_ready = True

    async def _ready(self):
        if not self._tables_ready:
            await self.create_tables()

    def derive_key(self, salt: bytes) -> bytes:
        """
        Derive the record encryption key from the passphrase using PBKDF2.

        Args:
            salt: Per-record salt

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(self._passphrase.encode())

    def _seal(self, data: bytes):
        if self._passphrase is None:
            return data, None
        salt = os.urandom(SALT_SIZE)
        nonce = os.urandom(12)
        aesgcm = AESGCM(self.derive_key(salt))
        return nonce + aesgcm.encrypt(nonce, data, None), salt

    def _open(self, payload: bytes, salt: Optional[bytes]) -> bytes:
        if salt is None:
            return payload
        if self._passphrase is None:
            raise KeyStoreError("Record is passphrase-protected but no passphrase was given")
        aesgcm = AESGCM(self.derive_key(salt))
        try:
            return aesgcm.decrypt(payload[:12], payload[12:], None)
        except (InvalidTag, ValueError):
            raise KeyStoreError("Could not unlock record (wrong passphrase or corrupted data)")

    async def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        """
        Load a record.

        Raises:
            KeyStoreError: If the database fails or the row cannot be decoded
        """
        try:
            await self._ready()
            async with self.async_session() as session:
                result = await session.execute(select(StoredKey).where(StoredKey.id == record_id))
                row = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise KeyStoreError(f"Key store read failed: {e}")

        if row is None:
            return None

        data = self._open(row.payload, row.salt)
        try:
            record = json.loads(data.decode())
        except (UnicodeDecodeError, ValueError) as e:
            raise KeyStoreError(f"Stored record is corrupt: {e}")
        if not isinstance(record, dict):
            raise KeyStoreError("Stored record is not an object")
        return record

    async def put(self, record: Dict[str, Any]) -> None:
        """
        Insert or replace a record.

        Raises:
            KeyStoreError: If the write fails
        """
        payload, salt = self._seal(json.dumps(record).encode())
        try:
            await self._ready()
            async with self.async_session() as session:
                await session.merge(StoredKey(id=record['id'], payload=payload, salt=salt))
                await session.commit()
        except SQLAlchemyError as e:
            raise KeyStoreError(f"Key store write failed: {e}")

    async def delete(self, record_id: str) -> None:
        """Remove a record if present"""
        try:
            await self._ready()
            async with self.async_session() as session:
                await session.execute(delete(StoredKey).where(StoredKey.id == record_id))
                await session.commit()
        except SQLAlchemyError as e:
            raise KeyStoreError(f"Key store delete failed: {e}")

    async def close(self):
        """Dispose of the database engine"""
        await self.engine.dispose()


def _ensure_sqlite_dir(database_url: str):
    """Create the parent directory of a file-based SQLite database"""
    marker = ":///"
    if not database_url.startswith("sqlite") or marker not in database_url:
        return
    path = database_url.split(marker, 1)[1]
    if path and path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
