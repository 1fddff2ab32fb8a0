"""
Message Pipeline: the entry point for sending and receiving.

Every read-modify-write of a session happens under the per-(owner, peer) lock
and inside one store transaction, and works on a freshly loaded record, so a
failed transform never reaches storage and another process on the same
database cannot interleave.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ratchet.primitives import CryptoError, constant_time_compare
from ratchet.double_ratchet import TooManySkippedMessages

from .account import Account, AccountManager
from .envelope import Envelope, InboundMessage
from .errors import (
    DecryptionFailed,
    InvalidEnvelope,
    MessengerError,
    MissingHandshake,
    SendFailed,
    StaleMessage,
    TransportFailure,
)
from .establishment import SessionEstablishment
from .guard import Verdict, classify
from .peers import PeerDirectory
from .sessions import SessionDirectory, SessionRecord
from .storage import LocalStore

logger = logging.getLogger(__name__)


@dataclass
class ReceivedMessage:
    sender: str
    content: str
    relay_id: Optional[int] = None
    sent_at: Optional[str] = None


@dataclass
class FetchReport:
    """Outcome of processing one batch from the relay"""
    received: List[ReceivedMessage] = field(default_factory=list)
    stale: int = 0
    failed: List[Tuple[Optional[str], MessengerError]] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.received) + self.stale + len(self.failed)


class MessagePipeline:
    """
    Orchestrates establishment, encryption, decryption and persistence.
    """

    def __init__(self, store: LocalStore, relay, sessions: Optional[SessionDirectory] = None,
                 peers: Optional[PeerDirectory] = None,
                 establishment: Optional[SessionEstablishment] = None,
                 accounts: Optional[AccountManager] = None):
        self.store = store
        self.relay = relay
        self.sessions = sessions or SessionDirectory(store)
        self.peers = peers or PeerDirectory(relay, store)
        self.establishment = establishment or SessionEstablishment(relay)
        self.accounts = accounts or AccountManager(store)

    async def encrypt_for(self, account: Account, peer_username: str, plaintext: str) -> Tuple[int, Envelope]:
        """
        Resolve the peer and produce the next envelope, persisting the advanced session.

        Returns:
            Tuple of (recipient device id, envelope)
        """
        peer = await self.peers.resolve(peer_username)

        async with self.sessions.lock(account.username, peer_username):
            with self.sessions.transaction():
                record = self.sessions.load(account.username, peer_username)
                if record is not None:
                    return peer.device_id, self._seal(record, plaintext)

            # Held across the bundle fetch so two first sends cannot fork the session
            started, handshake = await self.establishment.initiate(account, peer)

            with self.sessions.transaction():
                record = self.sessions.load(account.username, peer_username)
                if record is None:
                    return peer.device_id, self._seal(started, plaintext, handshake)
                # Another process on this database started the session first
                logger.info("Discarding new session with %s; %s already exists",
                            peer_username, record.key)
                return peer.device_id, self._seal(record, plaintext)

    def _seal(self, record: SessionRecord, plaintext: str, handshake=None) -> Envelope:
        """Encrypt the next message on record and persist the advanced session"""
        header, ciphertext = record.ratchet.encrypt(
            plaintext.encode(), record.associated_data, handshake
        )
        self.sessions.store(record)
        logger.debug("Encrypted message %d for %s%s", header.n, record.key,
                     " with handshake" if handshake else "")
        return Envelope(
            associated_data=record.associated_data,
            header=header,
            ciphertext=ciphertext
        )

    async def send(self, account: Account, peer_username: str, plaintext: str) -> Envelope:
        """
        Encrypt and deliver a message, then record it in history.

        Raises:
            PeerNotFound: If the peer cannot be resolved
            InvalidKeyBundle: If a new session cannot be established
            SendFailed: If delivery fails; the session has already advanced
        """
        device_id, envelope = await self.encrypt_for(account, peer_username, plaintext)

        try:
            await self.relay.send(account.keys, device_id, envelope)
        except TransportFailure as e:
            logger.warning("Delivery to %s failed after message %d was encrypted: %s",
                           peer_username, envelope.header.n, e)
            raise SendFailed(str(e)) from e

        self.store.save_message(account.username, peer_username, account.username,
                                peer_username, plaintext, is_outgoing=True)
        return envelope

    async def receive(self, account: Account, message: InboundMessage) -> Optional[ReceivedMessage]:
        """
        Decrypt one inbound envelope and persist the session.

        Returns:
            The decrypted message, or None if the envelope was stale

        Raises:
            MissingHandshake / InvalidEnvelope: Protocol violations; the envelope is dropped
            DecryptionFailed: Authentication failed; nothing was persisted
            CorruptState: The stored session for this sender is unreadable
        """
        try:
            plaintext = await self._decrypt(account, message)
        except StaleMessage as e:
            logger.info("Dropped stale envelope from %s: %s", message.sender, e)
            return None

        content = plaintext.decode("utf-8", errors="replace")
        self.store.save_message(account.username, message.sender, message.sender,
                                account.username, content, is_outgoing=False)
        return ReceivedMessage(
            sender=message.sender,
            content=content,
            relay_id=message.relay_id,
            sent_at=message.sent_at
        )

    async def _decrypt(self, account: Account, message: InboundMessage) -> bytes:
        owner, sender = account.username, message.sender
        envelope = message.envelope
        header = envelope.header

        async with self.sessions.lock(owner, sender):
            with self.sessions.transaction():
                record = self.sessions.load(owner, sender)
                retired_pre_key = None

                if record is not None:
                    verdict = classify(record.ratchet.state, header, record.handshake_keys)
                    if verdict is Verdict.STALE:
                        raise StaleMessage(f"message {header.n} is behind the receiving chain")
                    if (verdict is Verdict.FRESH and header.x3dh_init is not None
                            and not record.knows_remote_key(header.dh_public)):
                        record = self._replace_on_handshake(account, record, envelope)
                        retired_pre_key = header.x3dh_init.one_time_pre_key_id
                elif header.x3dh_init is None:
                    raise MissingHandshake(f"No session with {sender} and no handshake in envelope")
                else:
                    record = self.establishment.respond(account, sender, header)
                    retired_pre_key = header.x3dh_init.one_time_pre_key_id

                if not constant_time_compare(envelope.associated_data, record.associated_data):
                    raise InvalidEnvelope(f"Associated data does not match session {record.key}")

                try:
                    plaintext = record.ratchet.decrypt(
                        header, envelope.ciphertext, envelope.associated_data, envelope.header_bytes
                    )
                except TooManySkippedMessages as e:
                    raise InvalidEnvelope(str(e))
                except CryptoError as e:
                    raise DecryptionFailed(f"Message {header.n} from {sender}: {e}")

                self.sessions.store(record)
                if retired_pre_key is not None:
                    self.accounts.retire_one_time_pre_key(account, retired_pre_key)

        return plaintext

    def _replace_on_handshake(self, account: Account, record: SessionRecord, envelope: Envelope) -> SessionRecord:
        """
        Handle a new handshake from a peer we already have a session with.

        When both sides initiated at once, the session started by the party
        with the lower identity key survives on both ends. Otherwise the peer
        has started over and its new session replaces ours, but only once the
        envelope decrypts.
        """
        handshake = envelope.header.x3dh_init
        if not constant_time_compare(handshake.sender_identity, record.peer_identity):
            raise InvalidEnvelope(f"Handshake from {record.peer} uses a different identity key")

        if record.awaiting_reply() and account.identity_public < record.peer_identity:
            raise InvalidEnvelope(
                f"Simultaneous session start with {record.peer}; keeping the local session"
            )

        logger.info("Peer %s started a new session; replacing %s", record.peer, record.key)
        replacement = self.establishment.respond(account, record.peer, envelope.header)
        replacement.remember_handshake(envelope.header.dh_public, record.handshake_keys)
        return replacement

    async def fetch(self, account: Account) -> FetchReport:
        """
        Fetch a batch from the relay and process every envelope in it.

        Per-message failures are logged and reported; they never stop the batch.

        Raises:
            TransportFailure: If the relay cannot be reached
        """
        report = FetchReport()
        for item in await self.relay.fetch(account.keys):
            sender = item.get("sender") if isinstance(item, dict) else None
            try:
                received = await self.receive(account, InboundMessage.from_relay(item))
            except MessengerError as e:
                logger.warning("Failed to process message from %s: %s", sender or "unknown", e)
                report.failed.append((sender, e))
                continue
            if received is None:
                report.stale += 1
            else:
                report.received.append(received)
        return report
