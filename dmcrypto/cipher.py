"""
Message Encryption

Static-key authenticated encryption between two long-term key pairs:
ECDH(P-256) derives an AES-256 key shared by sender and recipient, and each
message is sealed with AES-GCM under a fresh random IV. The sender's public
key rides along so the recipient can derive the same key without a lookup.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict
from cryptography.hazmat.primitives.asymmetric import ec

from .keys import ExportedPublicKey, export_public_key, import_public_key
from .primitives import (
    IV_SIZE,
    DecryptionError,
    InvalidKeyFormat,
    derive_aes_key,
    aes_gcm_encrypt,
    aes_gcm_decrypt,
    random_bytes,
    b64encode,
    b64decode,
)


@dataclass(frozen=True)
class EncryptedMessage:
    """
    One encrypted message unit.

    Attributes:
        ciphertext: base64 AES-GCM output (ciphertext + 16-byte tag)
        iv: base64 12-byte nonce, unique per message
        sender_public_key: Sender's exported public key
    """
    ciphertext: str
    iv: str
    sender_public_key: ExportedPublicKey

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'ciphertext': self.ciphertext,
            'iv': self.iv,
            'senderPublicKey': self.sender_public_key.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'EncryptedMessage':
        """
        Create from dictionary.

        Raises:
            DecryptionError: If the message structure is malformed
        """
        if not isinstance(data, dict):
            raise DecryptionError("Encrypted message must be an object")
        ciphertext, iv = data.get('ciphertext'), data.get('iv')
        if not isinstance(ciphertext, str) or not isinstance(iv, str):
            raise DecryptionError("Encrypted message is missing ciphertext or iv")
        try:
            sender = ExportedPublicKey.from_dict(data.get('senderPublicKey'))
        except InvalidKeyFormat as e:
            raise DecryptionError(f"Encrypted message has no usable sender key: {e}")
        return cls(ciphertext=ciphertext, iv=iv, sender_public_key=sender)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, payload: str) -> 'EncryptedMessage':
        try:
            data = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise DecryptionError(f"Encrypted message is not valid JSON: {e}")
        return cls.from_dict(data)


def encrypt_message(
    plaintext: str,
    sender_private_key: ec.EllipticCurvePrivateKey,
    sender_public_key: ec.EllipticCurvePublicKey,
    recipient_public_key: ec.EllipticCurvePublicKey,
) -> EncryptedMessage:
    """
    Encrypt a message for a recipient.

    Args:
        plaintext: Message text
        sender_private_key: Our private key
        sender_public_key: Our public key (embedded in the result)
        recipient_public_key: Recipient's public key

    Returns:
        EncryptedMessage with a freshly generated IV
    """
    shared_key = derive_aes_key(sender_private_key, recipient_public_key)

    # Never reuse: a repeated (key, iv) pair breaks GCM entirely
    iv = random_bytes(IV_SIZE)
    ciphertext = aes_gcm_encrypt(shared_key, iv, plaintext.encode('utf-8'))

    return EncryptedMessage(
        ciphertext=b64encode(ciphertext),
        iv=b64encode(iv),
        sender_public_key=export_public_key(sender_public_key),
    )


def decrypt_message(encrypted: EncryptedMessage,
                    recipient_private_key: ec.EllipticCurvePrivateKey) -> str:
    """
    Decrypt a message from a sender.

    Args:
        encrypted: Message as produced by encrypt_message
        recipient_private_key: Our private key

    Returns:
        Decrypted plaintext

    Raises:
        InvalidKeyFormat: If the embedded sender key is not a valid P-256 point
        DecryptionError: If the message was not encrypted for this key, was
            tampered with, or is malformed
    """
    if not isinstance(encrypted, EncryptedMessage):
        encrypted = EncryptedMessage.from_dict(encrypted)

    sender_public_key = import_public_key(encrypted.sender_public_key)
    shared_key = derive_aes_key(recipient_private_key, sender_public_key)

    try:
        ciphertext = b64decode(encrypted.ciphertext)
        iv = b64decode(encrypted.iv)
    except ValueError as e:
        raise DecryptionError(f"Malformed message encoding: {e}")

    plaintext = aes_gcm_decrypt(shared_key, iv, ciphertext)

    try:
        return plaintext.decode('utf-8')
    except UnicodeDecodeError as e:
        raise DecryptionError(f"Decrypted payload is not UTF-8: {e}")
