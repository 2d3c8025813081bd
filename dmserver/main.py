"""
FastAPI server for the direct-messaging key system.

This server:
- Stores public key records as content-addressed JSON blobs
- Serves those blobs back by content id
- Keeps user profiles that point at a user's published key record

It never sees private keys or message contents.

There is no authentication: any client may PUT any profile and repoint its
publicKeyCid. This is a development stand-in for a real directory. Clients
must compare key fingerprints out-of-band (the CLI `/verify` command)
before trusting a resolved key.
"""

import os
import logging
from typing import Any, Dict, Optional
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Body
from pydantic import BaseModel, Field

from dmclient.content_store import canonical_json

from .database import Database, DEFAULT_DATABASE_URL

logger = logging.getLogger(__name__)

MAX_BLOB_SIZE = 64 * 1024


# Pydantic models for API
class AddResult(BaseModel):
    cid: str
    size: int


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = Field(default=None, alias="displayName", max_length=255)
    public_key_cid: Optional[str] = Field(default=None, alias="publicKeyCid", max_length=128)


class ProfileOut(BaseModel):
    address: str
    publicKeyCid: Optional[str] = None
    displayName: Optional[str] = None


def create_app(database_url: str = DEFAULT_DATABASE_URL) -> FastAPI:
    """
    Build the application around its own database.

    Args:
        database_url: SQLAlchemy database URL

    Returns:
        FastAPI application (the Database is available as ``app.state.db``)
    """
    db = Database(database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await db.create_tables()
        logger.info("Database initialized")
        yield
        await db.close()
        logger.info("Server shutting down")

    app = FastAPI(
        title="Key Directory Server",
        description="Content-addressed public key records and profile directory",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.db = db

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/api/ipfs/add", response_model=AddResult)
    async def add_blob(data: Dict[str, Any] = Body(...)):
        """
        Store a JSON object and return its content id.

        Identical content always yields the same id.
        """
        if len(canonical_json(data)) > MAX_BLOB_SIZE:
            raise HTTPException(status_code=413, detail="Content too large")
        blob = await db.put_blob(data)
        logger.info("Stored blob %s (%d bytes)", blob.cid, blob.size)
        return AddResult(cid=blob.cid, size=blob.size)

    @app.get("/api/ipfs/{cid}")
    async def get_blob(cid: str):
        """Fetch a stored JSON object by content id"""
        data = await db.get_blob(cid)
        if data is None:
            raise HTTPException(status_code=404, detail="Content not found")
        return data

    @app.get("/api/profiles/{address}", response_model=ProfileOut)
    async def get_profile(address: str):
        """Get a user's profile"""
        profile = await db.get_profile(address)
        if not profile:
            raise HTTPException(status_code=404, detail="Profile not found")
        return profile.to_dict()

    @app.put("/api/profiles/{address}", response_model=ProfileOut)
    async def update_profile(address: str, update: ProfileUpdate):
        """Create or update a user's profile"""
        profile = await db.upsert_profile(
            address,
            display_name=update.display_name,
            public_key_cid=update.public_key_cid
        )
        return profile.to_dict()

    return app


app = create_app(os.environ.get("DM_DATABASE_URL", DEFAULT_DATABASE_URL))


def run():
    """Console script entry point"""
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(
        app,
        host=os.environ.get("DM_HOST", "0.0.0.0"),
        port=int(os.environ.get("DM_PORT", "8000"))
    )


if __name__ == "__main__":
    run()
