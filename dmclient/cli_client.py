#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Direct Messages

Provides a command-line interface for:
- Loading or generating the local long-term key pair
- Publishing the public key and recording it in the profile directory
- Looking up and verifying other users' keys
- Encrypting and decrypting individual messages
"""

import os
import sys
import asyncio
import getpass
import logging
from pathlib import Path
from typing import Optional
import httpx
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from dmcrypto.keys import (
    KeyPair,
    KeyPairManager,
    export_public_key,
    import_public_key,
    get_key_fingerprint,
    fingerprints_match,
    KeyStoreError,
)
from dmcrypto.cipher import EncryptedMessage, encrypt_message, decrypt_message
from dmcrypto.primitives import CryptoError
from dmclient.cache import FileCache
from dmclient.content_store import HTTPContentStore, ContentStoreError
from dmclient.directory import HTTPProfileDirectory, DirectoryError
from dmclient.registry import PublicKeyRegistry
from dmclient.storage import SQLKeyStore

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://localhost:8000"
DEFAULT_DATA_DIR = "client_data"

HELP_TEXT = """Commands:
  /publish - Publish your public key
  /lookup <address> - Show a user's public key fingerprint
  /fingerprint [address] - Show your (or a user's) key fingerprint
  /verify <address> <fingerprint> - Compare a user's key with a fingerprint you trust
  /encrypt <address> <message> - Encrypt a message for a user
  /decrypt <json> - Decrypt a message addressed to you
  /clear-cache - Forget cached public keys
  /logout - Delete your local keys and cached keys
  /quit - Quit application"""


class KeyClient:
    """
    Interactive client for the direct-messaging key system.
    """

    def __init__(self, server_url: str = DEFAULT_SERVER_URL, data_dir: str = DEFAULT_DATA_DIR,
                 passphrase: Optional[str] = None):
        """
        Initialize the client.

        Args:
            server_url: Base URL of the content store / directory server
            data_dir: Directory for the key database and cache
            passphrase: Optional passphrase protecting stored keys
        """
        self.server_url = server_url
        data_path = Path(data_dir)
        self.http_client = httpx.AsyncClient()
        self.key_store = SQLKeyStore(f"sqlite+aiosqlite:///{data_path / 'keys.db'}", passphrase=passphrase)
        self.keys = KeyPairManager(self.key_store)
        self.directory = HTTPProfileDirectory(server_url, client=self.http_client)
        self.registry = PublicKeyRegistry(
            HTTPContentStore(server_url, client=self.http_client),
            FileCache(str(data_path / "cache.json")),
            directory=self.directory,
        )
        self.address: Optional[str] = None
        self.key_pair: Optional[KeyPair] = None
        self.running = False

    async def login(self, address: str) -> bool:
        """
        Load (or create) the key pair for an address.

        Returns:
            True if a key pair is available
        """
        self.address = address.lower()
        existed = await self.keys.has_stored_keys(self.address)
        try:
            self.key_pair = await self.keys.get_or_create_key_pair(self.address)
        except (CryptoError, KeyStoreError) as e:
            print(f"Key setup failed: {e}")
            return False

        status = "Loaded" if existed else "Generated"
        print(f"{status} key pair for {self.address}")
        print(f"Your fingerprint: {get_key_fingerprint(self.key_pair.public_key)}")
        return True

    async def publish(self):
        """Publish our public key and point our profile at it"""
        exported = export_public_key(self.key_pair.public_key)
        try:
            cid = await self.registry.publish_public_key(self.address, exported)
            await self.directory.save_profile(self.address, public_key_cid=cid)
        except (ContentStoreError, DirectoryError) as e:
            print(f"Failed to publish key: {e}")
            return
        print(f"Public key published: {cid}")

    async def _resolve(self, address: str):
        exported = await self.registry.lookup_public_key_by_address(address)
        if exported is None:
            print(f"No public key found for {address}")
            return None
        try:
            return import_public_key(exported)
        except CryptoError as e:
            print(f"Public key for {address} is unusable: {e}")
            return None

    async def lookup(self, address: str):
        """Show a user's public key fingerprint"""
        public_key = await self._resolve(address)
        if public_key is not None:
            cid = self.registry.get_cached_key_cid(address)
            print(f"{address}: {get_key_fingerprint(public_key)} ({cid})")

    async def fingerprint(self, address: Optional[str] = None):
        """Show our fingerprint, or a user's"""
        if not address:
            print(f"Your fingerprint: {get_key_fingerprint(self.key_pair.public_key)}")
            return
        await self.lookup(address)

    async def verify(self, address: str, expected: str):
        """Compare a user's live key with a fingerprint obtained out-of-band"""
        public_key = await self._resolve(address)
        if public_key is None:
            return
        actual = get_key_fingerprint(public_key)
        if fingerprints_match(expected, actual):
            print(f"Fingerprint verified for {address}")
        else:
            print(f"WARNING: fingerprint mismatch for {address} (got {actual})")

    async def encrypt(self, address: str, message: str):
        """Encrypt a message for a user and print it as JSON"""
        public_key = await self._resolve(address)
        if public_key is None:
            return
        encrypted = encrypt_message(
            message,
            self.key_pair.private_key,
            self.key_pair.public_key,
            public_key,
        )
        print(encrypted.to_json())

    def decrypt(self, payload: str):
        """Decrypt a JSON message addressed to us"""
        try:
            encrypted = EncryptedMessage.from_json(payload)
            plaintext = decrypt_message(encrypted, self.key_pair.private_key)
        except CryptoError as e:
            logger.debug("Decryption failed: %s", e)
            print("[Message could not be decrypted]")
            return

        sender = import_public_key(encrypted.sender_public_key)
        print(f"[{get_key_fingerprint(sender)}] {plaintext}")

    async def logout(self):
        """Delete our local keys, our published-key pointer and the public key cache"""
        await self.keys.delete_stored_keys(self.address)
        self.registry.forget_own_key_cid(self.address)
        self.registry.clear_public_key_cache()
        self.key_pair = None
        self.running = False
        print("Local keys deleted")

    async def run_interactive(self):
        """Run interactive session"""
        self.running = True
        session = PromptSession()

        print()
        print(HELP_TEXT)
        print()

        try:
            while self.running:
                try:
                    with patch_stdout():
                        user_input = await session.prompt_async(f"[{self.address}] > ")

                    if not user_input:
                        continue

                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    else:
                        print("Unknown input. Type /help for help.")

                except KeyboardInterrupt:
                    break
                except EOFError:
                    break

        finally:
            self.running = False
            await self.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()
        args = parts[1] if len(parts) == 2 else ""

        if cmd == "/publish":
            await self.publish()
        elif cmd == "/lookup" and args:
            await self.lookup(args.strip())
        elif cmd == "/fingerprint":
            await self.fingerprint(args.strip() or None)
        elif cmd == "/verify" and len(args.split(maxsplit=1)) == 2:
            address, expected = args.split(maxsplit=1)
            await self.verify(address, expected)
        elif cmd == "/encrypt" and len(args.split(maxsplit=1)) == 2:
            address, message = args.split(maxsplit=1)
            await self.encrypt(address, message)
        elif cmd == "/decrypt" and args:
            self.decrypt(args)
        elif cmd == "/clear-cache":
            self.registry.clear_public_key_cache()
            print("Public key cache cleared")
        elif cmd == "/logout":
            await self.logout()
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")

    async def close(self):
        """Release network and database resources"""
        await self.http_client.aclose()
        await self.key_store.close()


async def main():
    """Main entry point"""
    print("=" * 50)
    print("End-to-End Encrypted Messaging Keys")
    print("=" * 50)
    print()

    address = input("Address: ").strip()
    if not address:
        print("An address is required")
        return
    passphrase = getpass.getpass("Key store passphrase (empty for none): ") or None

    client = KeyClient(
        server_url=os.environ.get("DM_SERVER_URL", DEFAULT_SERVER_URL),
        data_dir=os.environ.get("DM_DATA_DIR", DEFAULT_DATA_DIR),
        passphrase=passphrase,
    )

    if await client.login(address):
        await client.run_interactive()
    else:
        await client.close()

    print("\nGoodbye!")


def run():
    """Console script entry point"""
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
