"""
Content-addressed blob store clients.

Public key records are published as JSON blobs and addressed by a content id
derived from their bytes. The HTTP client talks to the ``/api/ipfs`` routes
of the dmserver (or any service exposing the same two endpoints).
"""

import json
import hashlib
import logging
from urllib.parse import quote
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0

# httpx raises InvalidURL (not an HTTPError) for unusable request URLs
REQUEST_ERRORS = (httpx.HTTPError, httpx.InvalidURL, ValueError)


class ContentStoreError(Exception):
    """Publishing to or fetching from the content store failed"""
    pass


def canonical_json(data: Any) -> bytes:
    """Deterministic JSON encoding used for content addressing"""
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def content_id(data: Any) -> str:
    """Content id of a JSON-serializable value"""
    return "sha256-" + hashlib.sha256(canonical_json(data)).hexdigest()


class ContentStore(ABC):
    """publish(JSON) -> content id, fetch(content id) -> JSON"""

    @abstractmethod
    async def publish(self, data: Dict[str, Any]) -> str:
        """Store a JSON object and return its content id"""

    @abstractmethod
    async def fetch(self, cid: str) -> Dict[str, Any]:
        """
        Fetch a JSON object by content id.

        Raises:
            ContentStoreError: If the content is unavailable or not JSON
        """


class MemoryContentStore(ContentStore):
    """In-process content store, mainly for tests and offline use"""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}

    async def publish(self, data: Dict[str, Any]) -> str:
        cid = content_id(data)
        self.blobs[cid] = canonical_json(data)
        return cid

    async def fetch(self, cid: str) -> Dict[str, Any]:
        if cid not in self.blobs:
            raise ContentStoreError(f"Content not found: {cid}")
        return json.loads(self.blobs[cid])


class HTTPContentStore(ContentStore):
    """
    Content store reached over HTTP.
    """

    def __init__(self, base_url: str = "http://localhost:8000",
                 client: Optional[httpx.AsyncClient] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        """
        Args:
            base_url: Server base URL
            client: Optional shared httpx client (not closed by aclose)
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.http_client = client or httpx.AsyncClient(timeout=timeout)

    async def publish(self, data: Dict[str, Any]) -> str:
        try:
            response = await self.http_client.post(f"{self.base_url}/api/ipfs/add", json=data)
        except REQUEST_ERRORS as e:
            raise ContentStoreError(f"Upload failed: {e}")

        if response.status_code != 200:
            raise ContentStoreError(f"Upload failed: {_error_detail(response)}")

        try:
            cid = response.json().get("cid")
        except (ValueError, AttributeError):
            cid = None
        if not cid:
            raise ContentStoreError("Upload failed: no content id returned")
        return cid

    async def fetch(self, cid: str) -> Dict[str, Any]:
        try:
            response = await self.http_client.get(
                f"{self.base_url}/api/ipfs/{quote(cid, safe='')}",
                headers={"Accept": "application/json"},
            )
        except REQUEST_ERRORS as e:
            raise ContentStoreError(f"Fetch failed: {e}")

        if response.status_code != 200:
            raise ContentStoreError(f"Fetch failed: {_error_detail(response)}")

        try:
            data = response.json()
        except ValueError as e:
            raise ContentStoreError(f"Fetch returned invalid JSON: {e}")
        if not isinstance(data, dict):
            raise ContentStoreError("Fetch returned a non-object payload")
        return data

    async def aclose(self):
        """Close the underlying HTTP client if we created it"""
        if self._owns_client:
            await self.http_client.aclose()


def _error_detail(response: httpx.Response) -> str:
    try:
        detail = response.json().get("detail")
    except (ValueError, AttributeError):
        detail = None
    return f"{response.status_code} {detail or response.reason_phrase}"
