"""
Encrypted local storage for the messenger client.

One SQLite database holds every local account, their ratchet sessions, the
peer routing cache and message history. Key material, session state and
message bodies are encrypted on disk with a key derived from a passphrase.
"""

import os
import json
import logging
import sqlite3
from contextlib import contextmanager
from typing import Optional, List, Dict, Tuple
from pathlib import Path
from datetime import datetime, timezone
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import CorruptState, StorageLocked

logger = logging.getLogger(__name__)

CHECK_VALUE = b"ratchet-messenger-store"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class LocalStore:
    """
    Manages encrypted local storage for chat data.

    Sensitive columns are encrypted with a key derived from the passphrase.
    """

    def __init__(self, db_path: Path, iterations: int = 100000):
        """
        Initialize encrypted storage.

        Args:
            db_path: SQLite database file
            iterations: PBKDF2 iteration count
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.iterations = iterations
        self.encryption_key: Optional[bytes] = None
        self.db: Optional[sqlite3.Connection] = None
        self._in_transaction = False

    def derive_key(self, passphrase: str, salt: bytes) -> bytes:
        """
        Derive encryption key from passphrase using PBKDF2.

        Args:
            passphrase: User's passphrase
            salt: Salt for key derivation

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(passphrase.encode())

    def unlock(self, passphrase: str):
        """
        Open the database and derive the storage key.

        A new database adopts the passphrase; an existing one must match it.

        Raises:
            StorageLocked: If the passphrase does not match
        """
        self._init_database()

        salt = self._get_metadata("salt")
        if salt is None:
            salt = os.urandom(16)
            self.encryption_key = self.derive_key(passphrase, salt)
            self._set_metadata("salt", salt)
            self._set_metadata("check", self._encrypt(CHECK_VALUE))
            return

        self.encryption_key = self.derive_key(passphrase, salt)
        try:
            check = self._decrypt(self._get_metadata("check") or b"")
        except (InvalidTag, ValueError):
            check = None
        if check != CHECK_VALUE:
            self.encryption_key = None
            raise StorageLocked("Wrong passphrase for local storage")

    def _init_database(self):
        """Initialize SQLite database"""
        if self.db:
            return
        self.db = sqlite3.connect(str(self.db_path))
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("PRAGMA busy_timeout=5000")
        cursor = self.db.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                value BLOB NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                username TEXT PRIMARY KEY,
                user_id INTEGER NOT NULL,
                device_id INTEGER NOT NULL,
                identity_public_key BLOB NOT NULL,
                encrypted_keys BLOB NOT NULL,
                server_url TEXT NOT NULL,
                created_at TEXT NOT NULL,
                last_login TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                session_key TEXT PRIMARY KEY,
                ratchet_state_blob BLOB NOT NULL,
                last_updated TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS peer_devices (
                username TEXT PRIMARY KEY,
                user_id INTEGER NOT NULL,
                device_id INTEGER NOT NULL,
                last_updated TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner TEXT NOT NULL,
                conversation_with TEXT NOT NULL,
                sender TEXT NOT NULL,
                recipient TEXT NOT NULL,
                encrypted_content BLOB NOT NULL,
                timestamp TEXT NOT NULL,
                is_outgoing INTEGER NOT NULL,
                is_read INTEGER NOT NULL DEFAULT 0
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_conversation
            ON messages(owner, conversation_with)
        """)

        self.db.commit()

    def _require_db(self) -> sqlite3.Connection:
        if not self.db or not self.encryption_key:
            raise StorageLocked("Storage not unlocked")
        return self.db

    def _commit(self):
        if not self._in_transaction:
            self.db.commit()

    @contextmanager
    def transaction(self):
        """
        Run a block of reads and writes as one exclusive transaction.

        BEGIN IMMEDIATE takes the database write lock up front, so another
        connection to the same file waits (up to busy_timeout) instead of
        interleaving its own read-modify-write. Commits issued by this
        store's methods inside the block are deferred to its end; an
        exception rolls the whole block back. Nested use joins the outer
        transaction.
        """
        db = self._require_db()
        if self._in_transaction:
            yield
            return

        db.execute("BEGIN IMMEDIATE")
        self._in_transaction = True
        try:
            yield
        except BaseException:
            db.rollback()
            raise
        else:
            db.commit()
        finally:
            self._in_transaction = False

    def _encrypt(self, data: bytes) -> bytes:
        """Encrypt data with storage key"""
        if not self.encryption_key:
            raise StorageLocked("Storage not unlocked")

        nonce = os.urandom(12)
        aesgcm = AESGCM(self.encryption_key)
        ciphertext = aesgcm.encrypt(nonce, data, None)
        return nonce + ciphertext

    def _decrypt(self, encrypted_data: bytes) -> bytes:
        """Decrypt data with storage key"""
        if not self.encryption_key:
            raise StorageLocked("Storage not unlocked")
        if len(encrypted_data) < 28:
            raise ValueError("Encrypted value too short")

        nonce = encrypted_data[:12]
        ciphertext = encrypted_data[12:]

        aesgcm = AESGCM(self.encryption_key)
        return aesgcm.decrypt(nonce, ciphertext, None)

    def _get_metadata(self, key: str) -> Optional[bytes]:
        cursor = self.db.cursor()
        cursor.execute("SELECT value FROM metadata WHERE key = ?", (key,))
        result = cursor.fetchone()
        return result[0] if result else None

    def _set_metadata(self, key: str, value: bytes):
        self.db.execute("INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)", (key, value))
        self._commit()

    # Config

    def get_config(self, key: str) -> Optional[str]:
        cursor = self._require_db().cursor()
        cursor.execute("SELECT value FROM config WHERE key = ?", (key,))
        result = cursor.fetchone()
        return result[0] if result else None

    def set_config(self, key: str, value: str):
        db = self._require_db()
        db.execute("INSERT OR REPLACE INTO config (key, value) VALUES (?, ?)", (key, value))
        self._commit()

    def delete_config(self, key: str):
        db = self._require_db()
        db.execute("DELETE FROM config WHERE key = ?", (key,))
        self._commit()

    # Accounts

    def save_account(self, username: str, user_id: int, device_id: int, identity_public_key: bytes,
                     key_material: Dict, server_url: str):
        """
        Save a new local account.

        Raises:
            sqlite3.IntegrityError: If the username already exists
        """
        db = self._require_db()
        db.execute(
            """INSERT INTO accounts (username, user_id, device_id, identity_public_key,
                                     encrypted_keys, server_url, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (username, user_id, device_id, identity_public_key,
             self._encrypt(json.dumps(key_material).encode()), server_url, _now())
        )
        self._commit()

    def update_account_keys(self, username: str, key_material: Dict):
        db = self._require_db()
        db.execute(
            "UPDATE accounts SET encrypted_keys = ? WHERE username = ?",
            (self._encrypt(json.dumps(key_material).encode()), username)
        )
        self._commit()

    def load_account(self, username: str) -> Optional[Dict]:
        """
        Load an account row with its decrypted key material.

        Returns:
            Dictionary of account fields or None
        """
        cursor = self._require_db().cursor()
        cursor.execute(
            """SELECT user_id, device_id, identity_public_key, encrypted_keys, server_url,
                      created_at, last_login
               FROM accounts WHERE username = ?""",
            (username,)
        )
        result = cursor.fetchone()
        if not result:
            return None

        user_id, device_id, identity_public_key, encrypted_keys, server_url, created_at, last_login = result
        return {
            'username': username,
            'user_id': user_id,
            'device_id': device_id,
            'identity_public_key': identity_public_key,
            'keys': json.loads(self._decrypt(encrypted_keys).decode()),
            'server_url': server_url,
            'created_at': created_at,
            'last_login': last_login
        }

    def touch_login(self, username: str):
        db = self._require_db()
        db.execute("UPDATE accounts SET last_login = ? WHERE username = ?", (_now(), username))
        self._commit()

    def delete_account(self, username: str):
        """Remove an account together with its sessions and history"""
        db = self._require_db()
        prefix = username + ":"
        db.execute("DELETE FROM accounts WHERE username = ?", (username,))
        db.execute("DELETE FROM sessions WHERE substr(session_key, 1, ?) = ?", (len(prefix), prefix))
        db.execute("DELETE FROM messages WHERE owner = ?", (username,))
        self._commit()

    # Sessions

    def save_session(self, session_key: str, session_state: bytes):
        """
        Save serialized session state (last writer wins).

        Args:
            session_key: owner:peer
            session_state: Serialized session record
        """
        db = self._require_db()
        db.execute(
            "INSERT OR REPLACE INTO sessions (session_key, ratchet_state_blob, last_updated) VALUES (?, ?, ?)",
            (session_key, self._encrypt(session_state), _now())
        )
        self._commit()

    def load_session(self, session_key: str) -> Optional[bytes]:
        """
        Load serialized session state.

        Returns:
            Decrypted session record bytes, or None if there is no session

        Raises:
            CorruptState: If the stored blob cannot be decrypted
        """
        cursor = self._require_db().cursor()
        cursor.execute("SELECT ratchet_state_blob FROM sessions WHERE session_key = ?", (session_key,))
        result = cursor.fetchone()
        if not result:
            return None

        try:
            return self._decrypt(result[0])
        except (InvalidTag, ValueError) as e:
            raise CorruptState(session_key, f"cannot decrypt stored state ({type(e).__name__})")

    def list_sessions(self, owner: str) -> List[str]:
        """Peers the owner has a session with"""
        prefix = owner + ":"
        cursor = self._require_db().cursor()
        cursor.execute(
            "SELECT session_key FROM sessions WHERE substr(session_key, 1, ?) = ? ORDER BY session_key",
            (len(prefix), prefix)
        )
        return [row[0][len(prefix):] for row in cursor.fetchall()]

    # Peer routing cache

    def save_peer_device(self, username: str, user_id: int, device_id: int):
        db = self._require_db()
        db.execute(
            "INSERT OR REPLACE INTO peer_devices (username, user_id, device_id, last_updated) VALUES (?, ?, ?, ?)",
            (username, user_id, device_id, _now())
        )
        self._commit()

    def get_peer_device(self, username: str) -> Optional[Tuple[int, int]]:
        cursor = self._require_db().cursor()
        cursor.execute("SELECT user_id, device_id FROM peer_devices WHERE username = ?", (username,))
        result = cursor.fetchone()
        return (result[0], result[1]) if result else None

    # Message history

    def save_message(self, owner: str, conversation_with: str, sender: str, recipient: str,
                     content: str, is_outgoing: bool):
        """
        Save a message to history.

        Args:
            owner: Local account the history belongs to
            conversation_with: Username of the peer
            sender: Username of the author
            recipient: Username of the addressee
            content: Message content
            is_outgoing: True for messages we sent
        """
        db = self._require_db()
        db.execute(
            """INSERT INTO messages (owner, conversation_with, sender, recipient, encrypted_content,
                                     timestamp, is_outgoing, is_read)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (owner, conversation_with, sender, recipient, self._encrypt(content.encode()),
             _now(), int(is_outgoing), int(is_outgoing))
        )
        self._commit()

    def get_messages(self, owner: str, peer: str, limit: int = 50) -> List[Dict]:
        """
        Get message history with a peer, oldest first.

        Args:
            owner: Local account
            peer: Username of the peer
            limit: Maximum number of (most recent) messages to retrieve

        Returns:
            List of message dictionaries
        """
        cursor = self._require_db().cursor()
        cursor.execute(
            """SELECT sender, recipient, encrypted_content, timestamp, is_outgoing, is_read
               FROM messages WHERE owner = ? AND conversation_with = ?
               ORDER BY id DESC LIMIT ?""",
            (owner, peer, limit)
        )

        messages = []
        for sender, recipient, encrypted, timestamp, is_outgoing, is_read in cursor.fetchall():
            try:
                content = self._decrypt(encrypted).decode()
            except (InvalidTag, ValueError):
                logger.warning("Skipping unreadable history entry for %s/%s", owner, peer)
                continue
            messages.append({
                'sender': sender,
                'recipient': recipient,
                'content': content,
                'timestamp': timestamp,
                'is_outgoing': bool(is_outgoing),
                'is_read': bool(is_read)
            })

        return list(reversed(messages))

    def list_conversations(self, owner: str) -> List[Dict]:
        """
        Conversations of an account, most recent first.

        Returns:
            List of dictionaries with peer, last_timestamp, last_message and unread
        """
        cursor = self._require_db().cursor()
        cursor.execute(
            """SELECT conversation_with, MAX(id),
                      SUM(CASE WHEN is_read = 0 AND is_outgoing = 0 THEN 1 ELSE 0 END)
               FROM messages WHERE owner = ?
               GROUP BY conversation_with
               ORDER BY MAX(id) DESC""",
            (owner,)
        )
        conversations = []
        for peer, last_id, unread in cursor.fetchall():
            cursor.execute("SELECT encrypted_content, timestamp FROM messages WHERE id = ?", (last_id,))
            encrypted, timestamp = cursor.fetchone()
            try:
                last_message = self._decrypt(encrypted).decode()
            except (InvalidTag, ValueError):
                last_message = ""
            conversations.append({
                'peer': peer,
                'last_timestamp': timestamp,
                'last_message': last_message,
                'unread': unread or 0
            })
        return conversations

    def mark_read(self, owner: str, peer: str):
        db = self._require_db()
        db.execute(
            "UPDATE messages SET is_read = 1 WHERE owner = ? AND conversation_with = ? AND is_outgoing = 0",
            (owner, peer)
        )
        self._commit()

    def count_messages(self, owner: str) -> int:
        cursor = self._require_db().cursor()
        cursor.execute("SELECT COUNT(*) FROM messages WHERE owner = ?", (owner,))
        return cursor.fetchone()[0]

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None
