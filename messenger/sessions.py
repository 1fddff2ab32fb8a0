"""
Session Directory: durable mapping from (owner, peer) to one ratchet session.
"""

import json
import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from ratchet.primitives import CryptoError, b64encode, b64decode
from ratchet.double_ratchet import DoubleRatchet

from .errors import CorruptState
from .storage import LocalStore

logger = logging.getLogger(__name__)

RECORD_VERSION = 1
MAX_HANDSHAKE_KEYS = 16


def session_key(owner: str, peer: str) -> str:
    return f"{owner}:{peer}"


@dataclass
class SessionRecord:
    """
    One conversation's session as seen by a local account.

    Attributes:
        owner: Local username
        peer: Remote username
        peer_identity: Peer's long-term X25519 identity key
        associated_data: 32 bytes authenticated with every envelope
        ratchet: Double Ratchet holding the RatchetState
        created_at: ISO timestamp of establishment
        handshake_keys: Initiator ratchet keys of every handshake this session accepted
    """
    owner: str
    peer: str
    peer_identity: bytes
    associated_data: bytes
    ratchet: DoubleRatchet
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    handshake_keys: List[bytes] = field(default_factory=list)

    @property
    def key(self) -> str:
        return session_key(self.owner, self.peer)

    def knows_remote_key(self, remote_public: bytes) -> bool:
        """True if remote_public is a ratchet key of the peer this session has seen"""
        state = self.ratchet.state
        return remote_public == state.dh_remote_public or remote_public in state.retired_remote_keys

    def remember_handshake(self, initiator_key: bytes, earlier: List[bytes] = ()):
        """Record an accepted handshake so a replay of it is recognised"""
        keys = [key for key in earlier if key != initiator_key] + [initiator_key]
        self.handshake_keys = keys[-MAX_HANDSHAKE_KEYS:]

    def awaiting_reply(self) -> bool:
        """True for an initiator session that has not received anything yet"""
        return self.ratchet.state.receiving_chain_key is None

    def serialize(self) -> bytes:
        return json.dumps({
            'version': RECORD_VERSION,
            'peer_identity': b64encode(self.peer_identity),
            'associated_data': b64encode(self.associated_data),
            'created_at': self.created_at,
            'handshake_keys': [b64encode(key) for key in self.handshake_keys],
            'ratchet': self.ratchet.export_state()
        }).encode()

    @classmethod
    def deserialize(cls, owner: str, peer: str, blob: bytes,
                    max_skipped: Optional[int] = None) -> 'SessionRecord':
        """
        Rebuild a record from serialize() output.

        Args:
            max_skipped: Skipped-key cache capacity overriding the persisted one

        Raises:
            CorruptState: If the blob is unreadable or of an unknown version
        """
        key = session_key(owner, peer)
        try:
            data = json.loads(blob.decode())
        except (UnicodeDecodeError, ValueError) as e:
            raise CorruptState(key, f"invalid JSON ({e})")
        if not isinstance(data, dict) or data.get('version') != RECORD_VERSION:
            raise CorruptState(key, "unsupported record version")

        try:
            return cls(
                owner=owner,
                peer=peer,
                peer_identity=b64decode(data['peer_identity']),
                associated_data=b64decode(data['associated_data']),
                ratchet=DoubleRatchet.import_state(data['ratchet'], max_skipped),
                created_at=data['created_at'],
                handshake_keys=[b64decode(key) for key in data['handshake_keys']]
            )
        except (KeyError, TypeError, CryptoError) as e:
            raise CorruptState(key, str(e))


class SessionDirectory:
    """
    Loads and stores SessionRecords and hands out the per-(owner, peer) lock.

    Callers hold lock(owner, peer) around load -> transform -> store, and
    run the synchronous part of it inside transaction() so another process
    on the same database cannot interleave.
    """

    def __init__(self, store: LocalStore, max_cached_keys: Optional[int] = None):
        self.local_store = store
        self.max_cached_keys = max_cached_keys
        # Entries vanish once no task holds or waits on the lock
        self._locks: 'weakref.WeakValueDictionary[str, asyncio.Lock]' = weakref.WeakValueDictionary()

    def lock(self, owner: str, peer: str) -> asyncio.Lock:
        key = session_key(owner, peer)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def transaction(self):
        return self.local_store.transaction()

    def load(self, owner: str, peer: str) -> Optional[SessionRecord]:
        """
        Load the session for (owner, peer).

        Returns:
            A fresh SessionRecord, or None if no session exists

        Raises:
            CorruptState: If the stored session is unreadable
        """
        blob = self.local_store.load_session(session_key(owner, peer))
        if blob is None:
            return None
        return SessionRecord.deserialize(owner, peer, blob, self.max_cached_keys)

    def store(self, record: SessionRecord):
        """Persist a record, overwriting any previous one for the same pair"""
        self.local_store.save_session(record.key, record.serialize())
        state = record.ratchet.state
        logger.debug("Stored session %s (Ns=%d Nr=%d skipped=%d)",
                     record.key, state.send_count, state.recv_count, len(state.skipped))

    def peers(self, owner: str):
        return self.local_store.list_sessions(owner)
