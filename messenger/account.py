"""
Local accounts: the explicit identity value threaded through the pipeline.
"""

import re
import json
import sqlite3
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from ratchet.primitives import CryptoError, b64encode
from ratchet.x3dh import X3DHKeyExchange

from .errors import AccountError
from .storage import LocalStore

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,32}$")
EXPORT_VERSION = "1.0"
CURRENT_USER_KEY = "current_user"


@dataclass
class Account:
    """
    A registered local identity.

    Attributes:
        username: Username on the relay
        user_id: Relay account id
        device_id: Relay device id of this installation
        keys: Long-term key material
        server_url: Relay the account is registered with
    """
    username: str
    user_id: int
    device_id: int
    keys: X3DHKeyExchange
    server_url: str

    @property
    def identity_public(self) -> bytes:
        return self.keys.identity_public


def validate_username(username: str) -> str:
    if not USERNAME_PATTERN.match(username or ""):
        raise AccountError("Usernames are 1-32 characters of letters, digits, '.', '_' or '-'")
    return username


class AccountManager:
    """
    Registration, login bookkeeping and key backup for local accounts.
    """

    def __init__(self, store: LocalStore):
        self.store = store

    async def register(self, username: str, relay, server_url: str, num_one_time_keys: int = 10) -> Account:
        """
        Generate keys, register them with the relay and persist the account.

        Args:
            username: Desired username
            relay: RelayClient for the target relay
            server_url: Relay URL to remember for this account
            num_one_time_keys: One-time pre-keys to publish

        Raises:
            AccountError: If the username is invalid or already registered locally
            TransportFailure: If the relay rejects the registration
        """
        validate_username(username)
        if self.store.load_account(username) is not None:
            raise AccountError(f"Account '{username}' already exists locally")

        keys = X3DHKeyExchange.generate(num_one_time_keys=num_one_time_keys)
        result = await relay.register(username, keys.public_bundle())

        account = Account(
            username=username,
            user_id=int(result["user_id"]),
            device_id=int(result["device_id"]),
            keys=keys,
            server_url=server_url
        )
        self.store.save_account(username, account.user_id, account.device_id,
                                keys.identity_public, keys.export_private(), server_url)
        logger.info("Registered %s as user %d device %d", username, account.user_id, account.device_id)
        return account

    def load(self, username: str) -> Account:
        """
        Load a local account.

        Raises:
            AccountError: If the account does not exist or its keys are unreadable
        """
        row = self.store.load_account(username)
        if row is None:
            raise AccountError(f"Account '{username}' not found. Please register first.")
        try:
            keys = X3DHKeyExchange.from_private(row['keys'])
        except CryptoError as e:
            raise AccountError(f"Key material for '{username}' is unreadable: {e}")
        return Account(
            username=username,
            user_id=row['user_id'],
            device_id=row['device_id'],
            keys=keys,
            server_url=row['server_url']
        )

    def login(self, username: str) -> Account:
        account = self.load(username)
        self.store.set_config(CURRENT_USER_KEY, username)
        self.store.touch_login(username)
        return account

    def logout(self):
        self.store.delete_config(CURRENT_USER_KEY)

    def current(self) -> Account:
        """
        The remembered logged-in account.

        Raises:
            AccountError: If nobody is logged in
        """
        username = self.store.get_config(CURRENT_USER_KEY)
        if not username:
            raise AccountError("Not logged in. Please run 'login' first.")
        return self.load(username)

    def retire_one_time_pre_key(self, account: Account, key_id: int):
        """Forget a consumed one-time pre-key so it can never be used twice"""
        if account.keys.remove_one_time_pre_key(key_id):
            self.store.update_account_keys(account.username, account.keys.export_private())
            logger.debug("Retired one-time pre-key %d of %s", key_id, account.username)

    def delete(self, username: str):
        """Remove an account, its sessions and its history"""
        self.store.delete_account(username)
        if self.store.get_config(CURRENT_USER_KEY) == username:
            self.logout()

    def export_keys(self, username: str, output_path: Path) -> Dict:
        """
        Write a plaintext JSON backup of an account's keys.

        Returns:
            The exported document
        """
        account = self.load(username)
        export_data = {
            'username': username,
            'user_id': account.user_id,
            'device_id': account.device_id,
            'server_url': account.server_url,
            'keys': account.keys.export_private(),
            'version': EXPORT_VERSION,
            'exported_at': datetime.now(timezone.utc).isoformat()
        }
        Path(output_path).write_text(json.dumps(export_data, indent=2))
        return export_data

    def import_keys(self, input_path: Path) -> Account:
        """
        Restore an account from export_keys output.

        Raises:
            AccountError: If the file is missing or invalid, or the account exists
        """
        path = Path(input_path)
        if not path.exists():
            raise AccountError(f"File not found: {path}")
        try:
            data = json.loads(path.read_text())
            username = validate_username(data['username'])
            keys = X3DHKeyExchange.from_private(data['keys'])
            user_id, device_id = int(data['user_id']), int(data['device_id'])
            server_url = data['server_url']
        except (ValueError, KeyError, TypeError, CryptoError) as e:
            raise AccountError(f"Invalid export file: {e}")

        try:
            self.store.save_account(username, user_id, device_id, keys.identity_public,
                                    keys.export_private(), server_url)
        except sqlite3.IntegrityError:
            raise AccountError(f"Account '{username}' already exists. Please delete it first.")

        logger.info("Imported account %s (identity %s)", username, b64encode(keys.identity_public)[:12])
        return Account(username=username, user_id=user_id, device_id=device_id,
                       keys=keys, server_url=server_url)
