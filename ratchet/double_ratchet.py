"""
Double Ratchet Algorithm

Implements the Double Ratchet algorithm for end-to-end encrypted messaging with
forward secrecy and break-in recovery. This algorithm combines a DH ratchet for
forward secrecy with a symmetric key ratchet for immediate key updates.

All state lives in RatchetState, which serializes to a versioned dictionary so
sessions survive process restarts.
"""

import json
from collections import OrderedDict
from typing import Dict, Iterator, List, Optional, Tuple
from dataclasses import dataclass, field

from .primitives import (
    KEY_SIZE,
    CryptoError,
    generate_dh_keypair,
    dh_exchange,
    kdf_root,
    kdf_chain,
    encrypt_message,
    decrypt_message,
    serialize_public_key,
    serialize_private_key,
    deserialize_public_key,
    deserialize_private_key,
    b64encode,
    b64decode,
)
from .x3dh import HandshakeMetadata

STATE_VERSION = 1
MAX_RETIRED_KEYS = 100

ROLE_SENDER = "sender"
ROLE_RECEIVER = "receiver"


class MalformedHeader(CryptoError):
    """A message header could not be parsed"""
    pass


class StateFormatError(CryptoError):
    """Persisted ratchet state is unreadable or of an unknown version"""
    pass


class TooManySkippedMessages(CryptoError):
    """A header asks us to derive more skipped keys than allowed"""
    pass


@dataclass
class MessageHeader:
    """
    Ratchet header sent in the clear (but authenticated) with each message.

    Attributes:
        dh_public: Sender's current ratchet public key
        n: Message number in the sending chain
        pn: Length of the sender's previous sending chain
        x3dh_init: Handshake metadata, only on the first message of a session
    """
    dh_public: bytes
    n: int
    pn: int
    x3dh_init: Optional[HandshakeMetadata] = None

    def encode(self) -> bytes:
        """Canonical JSON encoding; the same header always yields the same bytes"""
        data = {
            'dh': b64encode(self.dh_public),
            'n': self.n,
            'pn': self.pn
        }
        if self.x3dh_init is not None:
            data['x3dh_init'] = self.x3dh_init.to_dict()
        return json.dumps(data, sort_keys=True, separators=(',', ':')).encode()

    @classmethod
    def decode(cls, raw: bytes) -> 'MessageHeader':
        """
        Parse an encoded header.

        Raises:
            MalformedHeader: If any field is missing or has the wrong type
        """
        try:
            data = json.loads(raw.decode())
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedHeader(f"Header is not valid JSON: {e}")
        if not isinstance(data, dict):
            raise MalformedHeader("Header must be a JSON object")

        n, pn = data.get('n'), data.get('pn')
        for name, value in (('n', n), ('pn', pn)):
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise MalformedHeader(f"Header field {name} must be a non-negative integer")

        try:
            dh_public = b64decode(data.get('dh') or '')
            x3dh_init = HandshakeMetadata.from_dict(data['x3dh_init']) if 'x3dh_init' in data else None
        except CryptoError as e:
            raise MalformedHeader(str(e))
        if len(dh_public) != KEY_SIZE:
            raise MalformedHeader("Header ratchet key has wrong length")

        return cls(dh_public=dh_public, n=n, pn=pn, x3dh_init=x3dh_init)


class SkippedKeyCache:
    """
    Message keys derived for messages that have not arrived yet.

    Keyed by (remote ratchet public key, message number). Bounded: once
    max_entries is reached the oldest entries are evicted first.
    """

    DEFAULT_MAX_ENTRIES = 2000

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.max_entries = max_entries
        self._keys: 'OrderedDict[Tuple[bytes, int], bytes]' = OrderedDict()
        self.evicted = 0

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: Tuple[bytes, int]) -> bool:
        return key in self._keys

    def __iter__(self) -> Iterator[Tuple[bytes, int]]:
        return iter(self._keys)

    def put(self, remote_public: bytes, n: int, message_key: bytes):
        key = (remote_public, n)
        if key in self._keys:
            # Never hold two keys for the same counter
            del self._keys[key]
        self._keys[key] = message_key
        while len(self._keys) > self.max_entries:
            self._keys.popitem(last=False)
            self.evicted += 1

    def pop(self, remote_public: bytes, n: int) -> Optional[bytes]:
        """Remove and return the key for (remote_public, n), if cached"""
        return self._keys.pop((remote_public, n), None)

    def to_dict(self) -> Dict:
        return {
            'max_entries': self.max_entries,
            'entries': [
                [b64encode(pub), n, b64encode(message_key)]
                for (pub, n), message_key in self._keys.items()
            ]
        }

    @classmethod
    def from_dict(cls, data: Dict, max_entries: Optional[int] = None) -> 'SkippedKeyCache':
        """
        Restore a cache written by to_dict.

        Args:
            data: Serialized cache
            max_entries: Capacity to apply instead of the persisted one; the
                oldest entries are evicted if the cache is over it
        """
        cache = cls(max_entries=max_entries or int(data['max_entries']))
        for pub, n, message_key in data['entries']:
            cache.put(b64decode(pub), int(n), b64decode(message_key))
        return cache


def _b64_or_none(value: Optional[bytes]) -> Optional[str]:
    return b64encode(value) if value is not None else None


def _bytes_or_none(value: Optional[str]) -> Optional[bytes]:
    return b64decode(value) if value is not None else None


@dataclass
class RatchetState:
    """
    State of the Double Ratchet algorithm.

    Attributes:
        root_key: Root key for DH ratchet
        role: "sender" if we initiated the session, "receiver" otherwise
        dh_private: Our current DH ratchet private key (raw bytes)
        dh_public: Our current DH ratchet public key
        dh_remote_public: Remote party's current DH ratchet public key
        previous_remote_public: Remote party's ratchet key before the last DH step
        retired_remote_keys: Every remote ratchet key stepped past, oldest first (bounded)
        sending_chain_key: Current sending chain key
        receiving_chain_key: Current receiving chain key
        send_count: Number of messages sent in current chain (Ns)
        recv_count: Number of messages received in current chain (Nr)
        prev_send_count: Messages sent in previous chain (Pn)
        skipped: Cache of skipped message keys for out-of-order messages
    """
    root_key: bytes
    role: str
    dh_private: Optional[bytes] = None
    dh_public: Optional[bytes] = None
    dh_remote_public: Optional[bytes] = None
    previous_remote_public: Optional[bytes] = None
    retired_remote_keys: List[bytes] = field(default_factory=list)
    sending_chain_key: Optional[bytes] = None
    receiving_chain_key: Optional[bytes] = None
    send_count: int = 0
    recv_count: int = 0
    prev_send_count: int = 0
    skipped: SkippedKeyCache = field(default_factory=SkippedKeyCache)

    def to_dict(self) -> Dict:
        return {
            'version': STATE_VERSION,
            'role': self.role,
            'root_key': b64encode(self.root_key),
            'dh_private': _b64_or_none(self.dh_private),
            'dh_public': _b64_or_none(self.dh_public),
            'dh_remote_public': _b64_or_none(self.dh_remote_public),
            'previous_remote_public': _b64_or_none(self.previous_remote_public),
            'retired_remote_keys': [b64encode(key) for key in self.retired_remote_keys],
            'sending_chain_key': _b64_or_none(self.sending_chain_key),
            'receiving_chain_key': _b64_or_none(self.receiving_chain_key),
            'send_count': self.send_count,
            'recv_count': self.recv_count,
            'prev_send_count': self.prev_send_count,
            'skipped': self.skipped.to_dict()
        }

    @classmethod
    def from_dict(cls, data: Dict, max_skipped: Optional[int] = None) -> 'RatchetState':
        """
        Restore state written by to_dict.

        Args:
            data: Serialized state
            max_skipped: Skipped-key cache capacity overriding the persisted one

        Raises:
            StateFormatError: On unknown version or malformed fields
        """
        if not isinstance(data, dict):
            raise StateFormatError("Ratchet state must be an object")
        version = data.get('version')
        if version != STATE_VERSION:
            raise StateFormatError(f"Unsupported ratchet state version: {version!r}")
        if data.get('role') not in (ROLE_SENDER, ROLE_RECEIVER):
            raise StateFormatError(f"Unknown ratchet role: {data.get('role')!r}")

        try:
            return cls(
                root_key=b64decode(data['root_key']),
                role=data['role'],
                dh_private=_bytes_or_none(data['dh_private']),
                dh_public=_bytes_or_none(data['dh_public']),
                dh_remote_public=_bytes_or_none(data['dh_remote_public']),
                previous_remote_public=_bytes_or_none(data['previous_remote_public']),
                retired_remote_keys=[b64decode(key) for key in data['retired_remote_keys']],
                sending_chain_key=_bytes_or_none(data['sending_chain_key']),
                receiving_chain_key=_bytes_or_none(data['receiving_chain_key']),
                send_count=int(data['send_count']),
                recv_count=int(data['recv_count']),
                prev_send_count=int(data['prev_send_count']),
                skipped=SkippedKeyCache.from_dict(data['skipped'], max_skipped)
            )
        except (KeyError, TypeError, ValueError, CryptoError) as e:
            raise StateFormatError(f"Malformed ratchet state: {e}")


class DoubleRatchet:
    """
    Double Ratchet session for encrypted messaging.

    Provides forward secrecy and break-in recovery through:
    - DH ratchet: Updates DH keypair with each message exchange
    - Symmetric ratchet: Derives new chain keys for each message
    """

    MAX_SKIP = 1000  # Maximum number of message keys we'll derive for one gap

    def __init__(self, state: RatchetState):
        self.state = state

    @classmethod
    def init_sender(cls, shared_key: bytes, dh_private: bytes, remote_public: bytes,
                    max_skipped: int = SkippedKeyCache.DEFAULT_MAX_ENTRIES) -> 'DoubleRatchet':
        """
        Initialize as the session initiator.

        Args:
            shared_key: Shared secret from X3DH
            dh_private: Our first ratchet private key (the X3DH ephemeral key)
            remote_public: Responder's first ratchet public key (its signed pre-key)
            max_skipped: Capacity of the skipped-key cache
        """
        private_key = deserialize_private_key(dh_private)
        root_key, sending_chain_key = kdf_root(
            shared_key, dh_exchange(private_key, deserialize_public_key(remote_public))
        )
        return cls(RatchetState(
            root_key=root_key,
            role=ROLE_SENDER,
            dh_private=dh_private,
            dh_public=serialize_public_key(private_key.public_key()),
            dh_remote_public=remote_public,
            sending_chain_key=sending_chain_key,
            skipped=SkippedKeyCache(max_skipped)
        ))

    @classmethod
    def init_receiver(cls, shared_key: bytes, dh_private: bytes, dh_public: bytes,
                      max_skipped: int = SkippedKeyCache.DEFAULT_MAX_ENTRIES) -> 'DoubleRatchet':
        """
        Initialize as the session responder; no chains exist until the first DH step.

        Args:
            shared_key: Shared secret from X3DH
            dh_private: Our signed pre-key private half
            dh_public: Our signed pre-key
            max_skipped: Capacity of the skipped-key cache
        """
        return cls(RatchetState(
            root_key=shared_key,
            role=ROLE_RECEIVER,
            dh_private=dh_private,
            dh_public=dh_public,
            skipped=SkippedKeyCache(max_skipped)
        ))

    def _dh_ratchet_step(self, remote_public: bytes):
        """
        Perform a DH ratchet step.

        Args:
            remote_public: Remote party's new public DH key
        """
        if self.state.dh_remote_public is not None:
            self.state.retired_remote_keys.append(self.state.dh_remote_public)
            del self.state.retired_remote_keys[:-MAX_RETIRED_KEYS]
        self.state.previous_remote_public = self.state.dh_remote_public
        self.state.dh_remote_public = remote_public
        self.state.prev_send_count = self.state.send_count
        self.state.send_count = 0
        self.state.recv_count = 0

        remote_public_key = deserialize_public_key(remote_public)

        # Receiving chain from our current private key
        private_key = deserialize_private_key(self.state.dh_private)
        self.state.root_key, self.state.receiving_chain_key = kdf_root(
            self.state.root_key, dh_exchange(private_key, remote_public_key)
        )

        # Fresh keypair for the sending chain
        new_private, new_public = generate_dh_keypair()
        self.state.dh_private = serialize_private_key(new_private)
        self.state.dh_public = serialize_public_key(new_public)
        self.state.root_key, self.state.sending_chain_key = kdf_root(
            self.state.root_key, dh_exchange(new_private, remote_public_key)
        )

    def encrypt(self, plaintext: bytes, associated_data: bytes = b"",
                handshake: Optional[HandshakeMetadata] = None) -> Tuple[MessageHeader, bytes]:
        """
        Encrypt a message.

        Args:
            plaintext: Message to encrypt
            associated_data: Session associated data; the encoded header is appended to it
            handshake: X3DH metadata to embed, for the first message of a session only

        Returns:
            Tuple of (header, ciphertext)
        """
        if self.state.sending_chain_key is None:
            raise CryptoError("Cannot encrypt before a sending chain exists")

        header = MessageHeader(
            dh_public=self.state.dh_public,
            n=self.state.send_count,
            pn=self.state.prev_send_count,
            x3dh_init=handshake
        )

        self.state.sending_chain_key, message_key = kdf_chain(self.state.sending_chain_key)
        ciphertext = encrypt_message(message_key, plaintext, associated_data + header.encode())
        self.state.send_count += 1

        return header, ciphertext

    def decrypt(self, header: MessageHeader, ciphertext: bytes, associated_data: bytes = b"",
                header_bytes: Optional[bytes] = None) -> bytes:
        """
        Decrypt a message.

        The state is mutated before authentication completes; callers that
        must not keep a failed attempt should discard this instance on error.

        Args:
            header: Parsed message header
            ciphertext: nonce + encrypted message + tag
            associated_data: Session associated data
            header_bytes: Header exactly as received; defaults to header.encode()

        Returns:
            Decrypted plaintext

        Raises:
            TooManySkippedMessages: If the header implies too large a gap
            CryptoError: If decryption fails
        """
        aad = associated_data + (header_bytes if header_bytes is not None else header.encode())

        # Check if we've already skipped and stored this message key
        message_key = self.state.skipped.pop(header.dh_public, header.n)
        if message_key is not None:
            return decrypt_message(message_key, ciphertext, aad)

        if self.state.dh_remote_public != header.dh_public:
            self._skip_message_keys(header.pn)
            self._dh_ratchet_step(header.dh_public)

        self._skip_message_keys(header.n)

        if self.state.receiving_chain_key is None:
            raise CryptoError("Receiving chain not initialized")

        self.state.receiving_chain_key, message_key = kdf_chain(self.state.receiving_chain_key)
        self.state.recv_count += 1

        return decrypt_message(message_key, ciphertext, aad)

    def _skip_message_keys(self, until: int):
        """
        Skip and store message keys for out-of-order messages.

        Args:
            until: Message number to skip until (exclusive)
        """
        if self.state.receiving_chain_key is None:
            return

        if self.state.recv_count + self.MAX_SKIP < until:
            raise TooManySkippedMessages(f"Too many skipped messages: {until - self.state.recv_count}")

        while self.state.recv_count < until:
            self.state.receiving_chain_key, message_key = kdf_chain(self.state.receiving_chain_key)
            self.state.skipped.put(self.state.dh_remote_public, self.state.recv_count, message_key)
            self.state.recv_count += 1

    def export_state(self) -> Dict:
        """
        Export ratchet state for persistence.

        Returns:
            Versioned dictionary of the serialized state
        """
        return self.state.to_dict()

    @classmethod
    def import_state(cls, state_dict: Dict, max_skipped: Optional[int] = None) -> 'DoubleRatchet':
        """
        Import ratchet state from persistence.

        Args:
            state_dict: Output of export_state
            max_skipped: Skipped-key cache capacity overriding the persisted one

        Raises:
            StateFormatError: If the state cannot be restored
        """
        return cls(RatchetState.from_dict(state_dict, max_skipped))
