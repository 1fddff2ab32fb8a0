"""
Shared fixtures: temporary stores and an in-memory relay.
"""

import asyncio
import itertools
from typing import Dict, List

import pytest

from ratchet.primitives import b64encode
from messenger.account import AccountManager
from messenger.errors import TransportFailure
from messenger.pipeline import MessagePipeline
from messenger.storage import LocalStore

TEST_SERVER_URL = "http://relay.test"
TEST_ITERATIONS = 1000


class MemoryRelay:
    """
    Relay double with the RelayClient interface.

    Queued envelopes live in `queues[device_id]` so tests can reorder,
    duplicate or drop them before the recipient fetches. Search advertises
    `users[name]['devices']`, which tests may edit. Network calls yield
    to the event loop once so concurrent callers interleave.
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self.users: Dict[str, Dict] = {}
        self.devices: Dict[int, Dict] = {}
        self.queues: Dict[int, List[Dict]] = {}
        self.fail_sends = False
        self.bundle_fetches = 0

    async def register(self, username: str, bundle: Dict) -> Dict:
        if username in self.users:
            raise TransportFailure("Failed to register: HTTP 409 Username taken")
        user_id, device_id = next(self._ids), next(self._ids)
        self.users[username] = {'id': user_id, 'device_id': device_id, 'devices': [device_id]}
        self.devices[device_id] = {
            'username': username,
            'user_id': user_id,
            'bundle': dict(bundle),
            'one_time_pre_keys': list(bundle['one_time_pre_keys'])
        }
        self.queues[device_id] = []
        return {'user_id': user_id, 'device_id': device_id}

    async def search(self, username: str) -> List[Dict]:
        await asyncio.sleep(0)
        return [
            {'id': user['id'], 'username': name, 'devices': [{'id': d} for d in user['devices']]}
            for name, user in self.users.items() if username in name
        ]

    async def fetch_key_bundle(self, user_id: int) -> List[Dict]:
        await asyncio.sleep(0)
        self.bundle_fetches += 1
        bundles = []
        for device_id, device in self.devices.items():
            if device['user_id'] != user_id:
                continue
            one_time = device['one_time_pre_keys'].pop(0) if device['one_time_pre_keys'] else None
            bundle = device['bundle']
            bundles.append({
                'device_id': device_id,
                'key_bundle': {
                    'identity_key': bundle['identity_key'],
                    'signing_key': bundle['signing_key'],
                    'signed_pre_key': bundle['signed_pre_key'],
                    'signed_pre_key_signature': bundle['signed_pre_key_signature'],
                    'one_time_pre_key': one_time['key'] if one_time else None,
                    'one_time_pre_key_id': one_time['id'] if one_time else None
                }
            })
        return bundles

    def _device_for(self, keys) -> int:
        signing_key = b64encode(keys.signing_public)
        for device_id, device in self.devices.items():
            if device['bundle']['signing_key'] == signing_key:
                return device_id
        raise TransportFailure("Failed to authenticate: HTTP 401 Unknown device")

    async def send(self, keys, recipient_device_id: int, envelope):
        await asyncio.sleep(0)
        sender_device = self._device_for(keys)
        if self.fail_sends:
            raise TransportFailure("Failed to send message: connection refused")
        message = {
            'id': next(self._ids),
            'sender': self.devices[sender_device]['username'],
            'sent_at': None
        }
        message.update(envelope.to_wire())
        self.queues[recipient_device_id].append(message)

    async def fetch(self, keys) -> List[Dict]:
        device_id = self._device_for(keys)
        messages, self.queues[device_id] = self.queues[device_id], []
        return messages

    def queue_for(self, username: str) -> List[Dict]:
        return self.queues[self.users[username]['device_id']]


class Party:
    """One registered device: its store, account and pipeline"""

    def __init__(self, store: LocalStore, account, pipeline: MessagePipeline):
        self.store = store
        self.account = account
        self.pipeline = pipeline

    @property
    def username(self) -> str:
        return self.account.username

    async def send(self, peer: str, text: str):
        return await self.pipeline.send(self.account, peer, text)

    async def fetch(self):
        return await self.pipeline.fetch(self.account)

    def session(self, peer: str):
        return self.pipeline.sessions.load(self.username, peer)

    def session_blob(self, peer: str):
        return self.store.load_session(f"{self.username}:{peer}")


def open_store(path) -> LocalStore:
    store = LocalStore(path, iterations=TEST_ITERATIONS)
    store.unlock("correct horse battery staple")
    return store


@pytest.fixture
def store(tmp_path):
    """Unlocked LocalStore in a temporary directory"""
    local_store = open_store(tmp_path / "messenger.db")
    yield local_store
    local_store.close()


@pytest.fixture
def relay():
    return MemoryRelay()


@pytest.fixture
def make_party(tmp_path, relay):
    """Factory registering a user with its own store on the shared relay"""
    stores = []

    async def factory(username: str, num_one_time_keys: int = 5) -> Party:
        local_store = open_store(tmp_path / f"{username}.db")
        stores.append(local_store)
        accounts = AccountManager(local_store)
        account = await accounts.register(username, relay, TEST_SERVER_URL,
                                          num_one_time_keys=num_one_time_keys)
        return Party(local_store, account, MessagePipeline(local_store, relay, accounts=accounts))

    yield factory
    for local_store in stores:
        local_store.close()
