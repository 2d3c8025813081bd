"""
Cryptographic core for end-to-end encrypted direct messages.

Provides:
- Long-term P-256 key pairs with export/import and local persistence
- Fingerprints for out-of-band key verification
- ECDH + AES-256-GCM message encryption
"""

from .primitives import (
    CryptoError,
    InvalidKeyFormat,
    DecryptionError,
)
from .keys import (
    KeyPair,
    ExportedPublicKey,
    KeyStore,
    KeyStoreError,
    MemoryKeyStore,
    KeyPairManager,
    generate_key_pair,
    export_public_key,
    import_public_key,
    export_private_key,
    import_private_key,
    get_key_fingerprint,
    fingerprints_match,
)
from .cipher import (
    EncryptedMessage,
    encrypt_message,
    decrypt_message,
)

__all__ = [
    'CryptoError',
    'InvalidKeyFormat',
    'DecryptionError',
    'KeyPair',
    'ExportedPublicKey',
    'KeyStore',
    'KeyStoreError',
    'MemoryKeyStore',
    'KeyPairManager',
    'generate_key_pair',
    'export_public_key',
    'import_public_key',
    'export_private_key',
    'import_private_key',
    'get_key_fingerprint',
    'fingerprints_match',
    'EncryptedMessage',
    'encrypt_message',
    'decrypt_message',
]
