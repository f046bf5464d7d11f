"""
Encrypted local storage for the chat client.

Stores the identity key pair, the current refresh token and message history
encrypted on disk.
"""

import os
import json
import sqlite3
from typing import Optional, List, Dict
from pathlib import Path
from datetime import datetime, timezone
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from crypto.primitives import seal, open_sealed, AuthenticationError

_VERIFIER = b"quickpic-storage-v1"


class EncryptedStorage:
    """
    Manages encrypted local storage for chat data.

    All values are sealed with a key derived from the user's password.
    """

    def __init__(self, username: str, storage_dir: str = "client_data"):
        """
        Initialize encrypted storage.

        Args:
            username: Username for this storage
            storage_dir: Directory to store encrypted data
        """
        self.username = username.lower()
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.db_path = self.storage_dir / f"{self.username}.db"
        self.encryption_key: Optional[bytes] = None
        self.db: Optional[sqlite3.Connection] = None

    def derive_key(self, password: str, salt: bytes) -> bytes:
        """
        Derive encryption key from password using PBKDF2.

        Args:
            password: User's password
            salt: Salt for key derivation

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return kdf.derive(password.encode())

    def unlock(self, password: str) -> bool:
        """
        Unlock storage with password, creating it on first use.

        Args:
            password: User's password

        Returns:
            True if unlocked, False if the password is wrong
        """
        salt_file = self.storage_dir / f"{self.username}.salt"
        is_new = not salt_file.exists()

        if is_new:
            salt = os.urandom(16)
            salt_file.write_bytes(salt)
        else:
            salt = salt_file.read_bytes()

        self.encryption_key = self.derive_key(password, salt)
        self._init_database()

        if is_new:
            self._set_metadata("verifier", _VERIFIER)
            return True

        try:
            if self._get_metadata("verifier") == _VERIFIER:
                return True
        except AuthenticationError:
            pass
        self.close()
        self.encryption_key = None
        return False

    def _init_database(self):
        """Initialize SQLite database"""
        self.db = sqlite3.connect(str(self.db_path))
        cursor = self.db.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                peer_username TEXT NOT NULL,
                direction TEXT NOT NULL,
                encrypted_content BLOB NOT NULL,
                timestamp TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                encrypted_value BLOB NOT NULL
            )
        """)

        self.db.commit()

    def _encrypt(self, data: bytes) -> bytes:
        if not self.encryption_key:
            raise ValueError("Storage not unlocked")
        return seal(self.encryption_key, data)

    def _decrypt(self, encrypted_data: bytes) -> bytes:
        if not self.encryption_key:
            raise ValueError("Storage not unlocked")
        return open_sealed(self.encryption_key, encrypted_data)

    def save_message(self, peer: str, message: str, direction: str):
        """
        Save a message to history.

        Args:
            peer: Username of the peer
            message: Message content
            direction: 'sent' or 'received'
        """
        if not self.db:
            return

        encrypted = self._encrypt(message.encode())
        timestamp = datetime.now(timezone.utc).isoformat()

        self.db.execute(
            "INSERT INTO messages (peer_username, direction, encrypted_content, timestamp) VALUES (?, ?, ?, ?)",
            (peer.lower(), direction, encrypted, timestamp)
        )
        self.db.commit()

    def get_messages(self, peer: str, limit: int = 50) -> List[Dict]:
        """
        Get message history with a peer, oldest first.

        Args:
            peer: Username of the peer
            limit: Maximum number of messages to retrieve
        """
        if not self.db:
            return []

        cursor = self.db.execute(
            "SELECT direction, encrypted_content, timestamp FROM messages WHERE peer_username = ? ORDER BY id DESC LIMIT ?",
            (peer.lower(), limit)
        )

        messages = [
            {
                'direction': direction,
                'content': self._decrypt(encrypted).decode(),
                'timestamp': timestamp
            }
            for direction, encrypted, timestamp in cursor.fetchall()
        ]
        return list(reversed(messages))

    def save_keys(self, key_data: dict):
        """Save the identity key pair (IdentityKeyPair.to_dict())"""
        self._set_metadata("identity", json.dumps(key_data).encode())

    def load_keys(self) -> Optional[dict]:
        value = self._get_metadata("identity")
        return json.loads(value) if value else None

    def save_refresh_token(self, token: Optional[str]):
        if token is None:
            self._delete_metadata("refresh_token")
        else:
            self._set_metadata("refresh_token", token.encode())

    def load_refresh_token(self) -> Optional[str]:
        value = self._get_metadata("refresh_token")
        return value.decode() if value else None

    def _set_metadata(self, key: str, value: bytes):
        if not self.db:
            return
        self.db.execute(
            "INSERT OR REPLACE INTO metadata (key, encrypted_value) VALUES (?, ?)",
            (key, self._encrypt(value))
        )
        self.db.commit()

    def _get_metadata(self, key: str) -> Optional[bytes]:
        """Get metadata value"""
        if not self.db:
            return None

        cursor = self.db.execute("SELECT encrypted_value FROM metadata WHERE key = ?", (key,))
        result = cursor.fetchone()
        return self._decrypt(result[0]) if result else None

    def _delete_metadata(self, key: str):
        if not self.db:
            return
        self.db.execute("DELETE FROM metadata WHERE key = ?", (key,))
        self.db.commit()

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None

    def list_conversations(self) -> List[str]:
        """
        List all users we have conversations with.

        Returns:
            List of usernames
        """
        if not self.db:
            return []

        cursor = self.db.execute("SELECT DISTINCT peer_username FROM messages")
        return [row[0] for row in cursor.fetchall()]
