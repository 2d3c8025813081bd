"""
Profile directory clients.

The directory maps a user address to their profile, which may carry the
content id of a previously published public key record.
"""

import logging
from urllib.parse import quote
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional
import httpx

from .content_store import DEFAULT_TIMEOUT, REQUEST_ERRORS

logger = logging.getLogger(__name__)


class DirectoryError(Exception):
    """The profile directory could not be queried"""
    pass


def to_address_string(address: Any) -> str:
    """Lowercase string form of an address (ints become 0x-hex)"""
    if address is None or address == "":
        return ""
    if isinstance(address, int):
        return hex(address).lower()
    return str(address).lower()


def normalize_address(address: Any) -> str:
    """
    Normalize an address for comparison: lowercase, ``0x`` prefix,
    leading zeros stripped.
    """
    addr = to_address_string(address)
    if not addr:
        return ""
    without_prefix = addr[2:] if addr.startswith("0x") else addr
    return "0x" + (without_prefix.lstrip("0") or "0")


@dataclass
class Profile:
    """
    Directory entry for a user.

    Attributes:
        address: User address (normalized)
        public_key_cid: Content id of the user's published key record
        display_name: Optional display name
    """
    address: str
    public_key_cid: Optional[str] = None
    display_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'address': self.address,
            'publicKeyCid': self.public_key_cid,
            'displayName': self.display_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Profile':
        """Create from dictionary"""
        return cls(
            address=normalize_address(data['address']),
            public_key_cid=data.get('publicKeyCid') or None,
            display_name=data.get('displayName') or None,
        )


class ProfileDirectory(ABC):
    """Resolves addresses to profiles"""

    @abstractmethod
    async def get_profile(self, address: str) -> Optional[Profile]:
        """
        Return the profile for ``address`` or None.

        Raises:
            DirectoryError: If the directory is unreachable
        """


class MemoryProfileDirectory(ProfileDirectory):
    """In-process directory"""

    def __init__(self):
        self.profiles: Dict[str, Profile] = {}

    async def get_profile(self, address: str) -> Optional[Profile]:
        return self.profiles.get(normalize_address(address))

    async def save_profile(self, address: str, public_key_cid: Optional[str] = None,
                           display_name: Optional[str] = None) -> Profile:
        """Create or update a profile, keeping fields that are not given"""
        normalized = normalize_address(address)
        profile = self.profiles.get(normalized) or Profile(address=normalized)
        if public_key_cid is not None:
            profile.public_key_cid = public_key_cid
        if display_name is not None:
            profile.display_name = display_name
        self.profiles[normalized] = profile
        return profile


class HTTPProfileDirectory(ProfileDirectory):
    """
    Directory served by the dmserver ``/api/profiles`` routes.
    """

    def __init__(self, base_url: str = "http://localhost:8000",
                 client: Optional[httpx.AsyncClient] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.http_client = client or httpx.AsyncClient(timeout=timeout)

    async def get_profile(self, address: str) -> Optional[Profile]:
        try:
            response = await self.http_client.get(
                f"{self.base_url}/api/profiles/{quote(normalize_address(address), safe='')}"
            )
        except REQUEST_ERRORS as e:
            raise DirectoryError(f"Profile lookup failed: {e}")

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise DirectoryError(f"Profile lookup failed: {response.status_code}")

        try:
            return Profile.from_dict(response.json())
        except (ValueError, KeyError, TypeError) as e:
            raise DirectoryError(f"Malformed profile: {e}")

    async def save_profile(self, address: str, public_key_cid: Optional[str] = None,
                           display_name: Optional[str] = None) -> Profile:
        """Create or update our profile on the server"""
        body = {}
        if public_key_cid is not None:
            body['publicKeyCid'] = public_key_cid
        if display_name is not None:
            body['displayName'] = display_name

        try:
            response = await self.http_client.put(
                f"{self.base_url}/api/profiles/{quote(normalize_address(address), safe='')}",
                json=body,
            )
        except REQUEST_ERRORS as e:
            raise DirectoryError(f"Profile update failed: {e}")

        if response.status_code != 200:
            raise DirectoryError(f"Profile update failed: {response.status_code}")
        return Profile.from_dict(response.json())

    async def aclose(self):
        """Close the underlying HTTP client if we created it"""
        if self._owns_client:
            await self.http_client.aclose()
