"""
Long-term Key Pair Management

Generates, exports, imports and persists the P-256 key pair each user holds
for direct messaging. Public keys travel as JWK-style ``{x, y}`` coordinate
pairs; private keys are exported as full JWKs for device-local storage only.
"""

import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union
from cryptography.hazmat.primitives.asymmetric import ec

from .primitives import (
    CURVE,
    CURVE_NAME,
    CryptoError,
    InvalidKeyFormat,
    generate_ecdh_keypair,
    serialize_public_key,
    sha256,
    int_to_b64url,
    b64url_to_int,
    constant_time_compare,
)

logger = logging.getLogger(__name__)

KEYS_STORE = "keys"
FINGERPRINT_BYTES = 8


@dataclass
class KeyPair:
    """
    A user's long-term ECDH key pair.

    Attributes:
        private_key: P-256 private key (never leaves the device)
        public_key: Matching public key
    """
    private_key: ec.EllipticCurvePrivateKey
    public_key: ec.EllipticCurvePublicKey


@dataclass(frozen=True)
class ExportedPublicKey:
    """
    Portable form of a public key.

    Attributes:
        x: base64url-encoded X coordinate
        y: base64url-encoded Y coordinate
    """
    x: str
    y: str

    def to_dict(self) -> Dict[str, str]:
        """Convert to dictionary for serialization"""
        return {'x': self.x, 'y': self.y}

    @classmethod
    def from_dict(cls, data: Any) -> 'ExportedPublicKey':
        """
        Create from dictionary.

        Raises:
            InvalidKeyFormat: If the coordinates are missing or not strings
        """
        if not isinstance(data, dict):
            raise InvalidKeyFormat("Public key must be an object with x and y")
        x, y = data.get('x'), data.get('y')
        if not isinstance(x, str) or not isinstance(y, str) or not x or not y:
            raise InvalidKeyFormat("Public key is missing x or y coordinate")
        return cls(x=x, y=y)


def generate_key_pair() -> KeyPair:
    """Generate a new ECDH key pair for the user"""
    private_key, public_key = generate_ecdh_keypair()
    return KeyPair(private_key=private_key, public_key=public_key)


def _require_p256_public(public_key: Any) -> ec.EllipticCurvePublicKey:
    if not isinstance(public_key, ec.EllipticCurvePublicKey) or public_key.curve.name != CURVE.name:
        raise InvalidKeyFormat("Invalid public key format")
    return public_key


def export_public_key(public_key: ec.EllipticCurvePublicKey) -> ExportedPublicKey:
    """
    Export a public key to its shareable form.

    Raises:
        InvalidKeyFormat: If the key does not carry P-256 coordinates
    """
    numbers = _require_p256_public(public_key).public_numbers()
    return ExportedPublicKey(x=int_to_b64url(numbers.x), y=int_to_b64url(numbers.y))


def import_public_key(exported: Union[ExportedPublicKey, Dict[str, Any]]) -> ec.EllipticCurvePublicKey:
    """
    Import a public key from its exported form.

    Input is untrusted: coordinates must decode to 32 bytes each and describe
    a point on P-256.

    Raises:
        InvalidKeyFormat: On malformed or off-curve coordinates
    """
    if not isinstance(exported, ExportedPublicKey):
        exported = ExportedPublicKey.from_dict(exported)

    try:
        x = b64url_to_int(exported.x)
        y = b64url_to_int(exported.y)
        return ec.EllipticCurvePublicNumbers(x, y, CURVE).public_key()
    except ValueError as e:
        raise InvalidKeyFormat(f"Invalid public key: {e}")


def export_private_key(private_key: ec.EllipticCurvePrivateKey) -> Dict[str, Any]:
    """
    Export a private key as a JWK for local storage.

    The result contains the raw private scalar and must be treated as secret.
    """
    if not isinstance(private_key, ec.EllipticCurvePrivateKey) or private_key.curve.name != CURVE.name:
        raise InvalidKeyFormat("Invalid private key format")

    numbers = private_key.private_numbers()
    public_numbers = numbers.public_numbers
    return {
        'kty': 'EC',
        'crv': CURVE_NAME,
        'x': int_to_b64url(public_numbers.x),
        'y': int_to_b64url(public_numbers.y),
        'd': int_to_b64url(numbers.private_value),
        'ext': True,
        'key_ops': ['deriveBits', 'deriveKey'],
    }


def import_private_key(jwk: Dict[str, Any]) -> ec.EllipticCurvePrivateKey:
    """
    Import a private key from a stored JWK.

    Raises:
        InvalidKeyFormat: If the JWK is not a P-256 EC key, the scalar is
            invalid, or x/y do not belong to the scalar
    """
    if not isinstance(jwk, dict):
        raise InvalidKeyFormat("Private key must be a JWK object")
    if jwk.get('kty') != 'EC' or jwk.get('crv') != CURVE_NAME:
        raise InvalidKeyFormat("Private key is not a P-256 EC key")

    try:
        d = b64url_to_int(jwk.get('d'))
        private_key = ec.derive_private_key(d, CURVE)
    except ValueError as e:
        raise InvalidKeyFormat(f"Invalid private key: {e}")

    if 'x' in jwk or 'y' in jwk:
        expected = export_public_key(private_key.public_key())
        if jwk.get('x') != expected.x or jwk.get('y') != expected.y:
            raise InvalidKeyFormat("Private key does not match its public coordinates")

    return private_key


def get_key_fingerprint(public_key: ec.EllipticCurvePublicKey) -> str:
    """
    Generate a fingerprint for a public key (for verification).

    SHA-256 over the uncompressed point, first 8 bytes as uppercase hex
    pairs joined by colons.
    """
    digest = sha256(serialize_public_key(_require_p256_public(public_key)))
    return ':'.join(f'{b:02X}' for b in digest[:FINGERPRINT_BYTES])


def fingerprints_match(expected: str, actual: str) -> bool:
    """Compare two fingerprints read out-of-band (case and whitespace insensitive)"""
    a = ''.join(expected.split()).upper().encode()
    b = ''.join(actual.split()).upper().encode()
    return constant_time_compare(a, b)


class KeyStoreError(Exception):
    """A key store could not be read or written"""
    pass


class KeyStore(ABC):
    """
    Durable per-device key-value store for key pair records.

    Records are dictionaries keyed by their ``id`` field (the user identity).
    """

    name = KEYS_STORE

    @abstractmethod
    async def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        """Return the record for ``record_id`` or None"""

    @abstractmethod
    async def put(self, record: Dict[str, Any]) -> None:
        """Insert or replace a record"""

    @abstractmethod
    async def delete(self, record_id: str) -> None:
        """Remove a record (no error if absent)"""


class MemoryKeyStore(KeyStore):
    """In-process key store, lost when the process exits"""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}

    async def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(record_id)
        return dict(record) if record is not None else None

    async def put(self, record: Dict[str, Any]) -> None:
        self._records[record['id']] = dict(record)

    async def delete(self, record_id: str) -> None:
        self._records.pop(record_id, None)


class KeyPairManager:
    """
    Persists one long-term key pair per local user identity.
    """

    def __init__(self, store: KeyStore):
        """
        Args:
            store: Key store the records are written to
        """
        self.store = store

    async def store_key_pair(self, user_id: str, key_pair: KeyPair) -> None:
        """
        Store a user's key pair locally.

        Storage failures propagate.
        """
        await self.store.put({
            'id': user_id,
            'privateKey': export_private_key(key_pair.private_key),
            'publicKey': export_public_key(key_pair.public_key).to_dict(),
            'createdAt': int(time.time() * 1000),
        })

    async def get_stored_key_pair(self, user_id: str) -> Optional[KeyPair]:
        """
        Retrieve a user's key pair from local storage.

        Returns:
            KeyPair, or None if absent, unreadable or corrupt
        """
        try:
            record = await self.store.get(user_id)
        except KeyStoreError as e:
            logger.warning("Could not read stored keys for %s: %s", user_id, e)
            return None

        if not record:
            return None

        try:
            private_key = import_private_key(record['privateKey'])
            public_key = import_public_key(record['publicKey'])
        except (CryptoError, KeyError, TypeError) as e:
            logger.warning("Error importing stored keys for %s: %s", user_id, e)
            return None

        return KeyPair(private_key=private_key, public_key=public_key)

    async def has_stored_keys(self, user_id: str) -> bool:
        """Check if user has usable stored keys"""
        return await self.get_stored_key_pair(user_id) is not None

    async def delete_stored_keys(self, user_id: str) -> None:
        """Delete stored keys (for key rotation or logout)"""
        await self.store.delete(user_id)

    async def get_or_create_key_pair(self, user_id: str) -> KeyPair:
        """
        Load the user's key pair, generating and storing one on first use.

        Raises:
            KeyStoreError: If a record exists but cannot be loaded (for
                example a wrong passphrase); it is never overwritten here
        """
        key_pair = await self.get_stored_key_pair(user_id)
        if key_pair is not None:
            return key_pair

        try:
            existing = await self.store.get(user_id)
        except KeyStoreError:
            existing = True
        if existing:
            raise KeyStoreError(
                f"Stored keys for {user_id} could not be loaded; delete them to generate new ones"
            )

        logger.info("Generating new key pair for %s", user_id)
        key_pair = generate_key_pair()
        await self.store_key_pair(user_id, key_pair)
        return key_pair
