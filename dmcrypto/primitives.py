"""
Cryptographic Primitives for End-to-End Encryption

This module is the crypto provider for the direct-messaging key system. Every
other module goes through these functions rather than touching the
``cryptography`` backend directly:

- ECDH key agreement on NIST P-256
- AES-256-GCM authenticated encryption
- SHA-256, secure random bytes and the base64 codecs used on the wire
"""

import os
import re
import hmac
import base64
import binascii
import hashlib
from typing import Tuple
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


CURVE = ec.SECP256R1()
CURVE_NAME = "P-256"
COORDINATE_SIZE = 32  # bytes per P-256 field element
IV_SIZE = 12  # 96-bit GCM nonce
AES_KEY_SIZE = 32

_B64URL_RE = re.compile(r"[A-Za-z0-9_-]*=*")


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class InvalidKeyFormat(CryptoError):
    """Key material is structurally invalid or not a point on the curve"""
    pass


class DecryptionError(CryptoError):
    """A message could not be authenticated or decoded"""
    pass


def generate_ecdh_keypair() -> Tuple[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]:
    """
    Generate a P-256 keypair for ECDH key agreement.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = ec.generate_private_key(CURVE)
    public_key = private_key.public_key()
    return private_key, public_key


def derive_aes_key(private_key: ec.EllipticCurvePrivateKey,
                   public_key: ec.EllipticCurvePublicKey) -> AESGCM:
    """
    Derive an AES-256-GCM key from an ECDH exchange.

    The 256-bit shared secret is used directly as the AES key. Only the
    AESGCM object is returned so the raw key bytes never leave this function.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        AESGCM instance bound to the shared key

    Raises:
        InvalidKeyFormat: If either key is not a P-256 key
    """
    if not isinstance(public_key, ec.EllipticCurvePublicKey) or public_key.curve.name != CURVE.name:
        raise InvalidKeyFormat("Public key is not a P-256 key")
    if not isinstance(private_key, ec.EllipticCurvePrivateKey) or private_key.curve.name != CURVE.name:
        raise InvalidKeyFormat("Private key is not a P-256 key")

    shared_secret = private_key.exchange(ec.ECDH(), public_key)
    return AESGCM(shared_secret[:AES_KEY_SIZE])


def aes_gcm_encrypt(key: AESGCM, iv: bytes, plaintext: bytes) -> bytes:
    """
    Encrypt with AES-GCM.

    Returns:
        ciphertext + tag (16 bytes)
    """
    return key.encrypt(iv, plaintext, None)


def aes_gcm_decrypt(key: AESGCM, iv: bytes, ciphertext: bytes) -> bytes:
    """
    Decrypt with AES-GCM.

    Args:
        key: AESGCM instance
        iv: Nonce used for encryption
        ciphertext: Encrypted message + tag

    Returns:
        Decrypted plaintext

    Raises:
        DecryptionError: If the tag does not verify or the IV is unusable
    """
    try:
        return key.decrypt(iv, ciphertext, None)
    except InvalidTag:
        raise DecryptionError("Decryption failed: authentication tag mismatch")
    except ValueError as e:
        raise DecryptionError(f"Decryption failed: {e}")


def sha256(data: bytes) -> bytes:
    """Compute SHA-256 digest"""
    return hashlib.sha256(data).digest()


def random_bytes(length: int) -> bytes:
    """Cryptographically secure random bytes"""
    return os.urandom(length)


def serialize_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
    """Serialize a P-256 public key to its uncompressed point (65 bytes)"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint
    )


def b64encode(data: bytes) -> str:
    """Standard base64 with padding"""
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    """
    Strict standard base64 decoding.

    Raises:
        ValueError: If the input is not valid base64
    """
    if not isinstance(data, str):
        raise ValueError("base64 input must be a string")
    try:
        return base64.b64decode(data, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64: {e}")


def b64url_encode(data: bytes) -> str:
    """Unpadded base64url, as used by JWK coordinates"""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """
    Decode unpadded (or padded) base64url.

    Raises:
        ValueError: If the input is not valid base64url
    """
    if not isinstance(data, str):
        raise ValueError("base64url input must be a string")
    if not _B64URL_RE.fullmatch(data):
        raise ValueError("Invalid base64url: unexpected characters")
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64url: {e}")


def int_to_b64url(value: int, length: int = COORDINATE_SIZE) -> str:
    """Encode a field element as fixed-width big-endian base64url"""
    return b64url_encode(value.to_bytes(length, "big"))


def b64url_to_int(data: str, length: int = COORDINATE_SIZE) -> int:
    """
    Decode a fixed-width big-endian base64url field element.

    Raises:
        ValueError: If the decoded value is not exactly ``length`` bytes
    """
    raw = b64url_decode(data)
    if len(raw) != length:
        raise ValueError(f"Expected {length} bytes, got {len(raw)}")
    return int.from_bytes(raw, "big")


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)
