"""
Database models and operations for the key directory server.

Uses SQLAlchemy with SQLite for storing content-addressed JSON blobs (public
key records) and user profiles. Blobs are immutable once stored.
"""

import json
from datetime import datetime
from typing import Any, Dict, Optional
from sqlalchemy import Column, Integer, String, DateTime, Text, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from dmclient.content_store import canonical_json, content_id
from dmclient.directory import normalize_address

Base = declarative_base()

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./dm_server.db"


class Blob(Base):
    """Content-addressed JSON blob"""
    __tablename__ = "blobs"

    cid = Column(String(128), primary_key=True)
    content = Column(Text, nullable=False)
    size = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Profile(Base):
    """User profile, keyed by normalized address"""
    __tablename__ = "profiles"

    address = Column(String(128), primary_key=True)
    display_name = Column(String(255), nullable=True)
    public_key_cid = Column(String(128), nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'address': self.address,
            'publicKeyCid': self.public_key_cid,
            'displayName': self.display_name,
        }


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = DEFAULT_DATABASE_URL):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def put_blob(self, data: Dict[str, Any]) -> Blob:
        """
        Store a JSON blob under its content id.

        Storing the same content twice returns the existing row.

        Args:
            data: JSON object to store

        Returns:
            The stored Blob
        """
        cid = content_id(data)
        async with self.async_session() as session:
            result = await session.execute(select(Blob).where(Blob.cid == cid))
            blob = result.scalar_one_or_none()
            if blob:
                return blob

            encoded = canonical_json(data)
            blob = Blob(cid=cid, content=encoded.decode("utf-8"), size=len(encoded))
            session.add(blob)
            await session.commit()
            return blob

    async def get_blob(self, cid: str) -> Optional[Dict[str, Any]]:
        """
        Get a stored JSON blob.

        Returns:
            Decoded JSON object or None if unknown
        """
        async with self.async_session() as session:
            result = await session.execute(select(Blob).where(Blob.cid == cid))
            blob = result.scalar_one_or_none()
            if not blob:
                return None
            return json.loads(blob.content)

    async def get_profile(self, address: str) -> Optional[Profile]:
        """Get a profile by address"""
        async with self.async_session() as session:
            result = await session.execute(
                select(Profile).where(Profile.address == normalize_address(address))
            )
            return result.scalar_one_or_none()

    async def upsert_profile(self, address: str, display_name: Optional[str] = None,
                             public_key_cid: Optional[str] = None) -> Profile:
        """
        Create or update a profile. Fields left as None keep their value.

        Args:
            address: User address (normalized before storage)
            display_name: New display name
            public_key_cid: Content id of the user's key record

        Returns:
            The stored Profile
        """
        normalized = normalize_address(address)
        async with self.async_session() as session:
            result = await session.execute(select(Profile).where(Profile.address == normalized))
            profile = result.scalar_one_or_none()

            if profile:
                if display_name is not None:
                    profile.display_name = display_name
                if public_key_cid is not None:
                    profile.public_key_cid = public_key_cid
                profile.updated_at = datetime.utcnow()
            else:
                profile = Profile(
                    address=normalized,
                    display_name=display_name,
                    public_key_cid=public_key_cid
                )
                session.add(profile)

            await session.commit()
            return profile

    async def close(self):
        """Dispose of the database engine"""
        await self.engine.dispose()
