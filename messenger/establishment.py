"""
Session Establishment Protocol.

Builds the first RatchetState of a conversation, either by initiating X3DH
against the peer's published bundle or by answering the handshake embedded
in an inbound envelope.
"""

import logging
from typing import Tuple

from ratchet.primitives import CryptoError
from ratchet.x3dh import HandshakeMetadata, InvalidBundle, PreKeyBundle, UnknownPreKey
from ratchet.double_ratchet import DoubleRatchet, MessageHeader, SkippedKeyCache

from .account import Account
from .errors import InvalidEnvelope, InvalidKeyBundle, MissingHandshake, NoDevicesForPeer
from .peers import PeerDevice
from .sessions import SessionRecord

logger = logging.getLogger(__name__)


class SessionEstablishment:
    """
    Initiator and responder paths of session setup.

    Neither path persists anything; the pipeline stores the record once the
    first message has been encrypted or decrypted.
    """

    def __init__(self, relay, max_cached_keys: int = SkippedKeyCache.DEFAULT_MAX_ENTRIES):
        self.relay = relay
        self.max_cached_keys = max_cached_keys

    async def fetch_bundle(self, peer: PeerDevice) -> PreKeyBundle:
        """
        Fetch and validate the bundle of the peer's addressed device.

        Raises:
            NoDevicesForPeer: If the relay has no bundle for the device
            InvalidKeyBundle: If the bundle fails validation
        """
        devices = await self.relay.fetch_key_bundle(peer.user_id)
        entry = next((d for d in devices if isinstance(d, dict) and d.get("device_id") == peer.device_id), None)
        if entry is None:
            raise NoDevicesForPeer(f"No key bundle published for {peer.username} device {peer.device_id}")

        try:
            bundle = PreKeyBundle.from_dict(entry.get("key_bundle") or {})
            bundle.validate()
        except InvalidBundle as e:
            raise InvalidKeyBundle(f"Key bundle of {peer.username} rejected: {e}")
        return bundle

    async def initiate(self, account: Account, peer: PeerDevice) -> Tuple[SessionRecord, HandshakeMetadata]:
        """
        Start a new session as the sender.

        Returns:
            Tuple of (new session record, handshake metadata for the first envelope)
        """
        bundle = await self.fetch_bundle(peer)
        result = account.keys.initiate_session(bundle)

        ratchet = DoubleRatchet.init_sender(
            result.shared_key,
            result.ratchet_private,
            result.remote_ratchet_public,
            max_skipped=self.max_cached_keys
        )
        record = SessionRecord(
            owner=account.username,
            peer=peer.username,
            peer_identity=bundle.identity_key,
            associated_data=result.associated_data,
            ratchet=ratchet
        )
        logger.info("Initiated session %s (one-time pre-key %s)",
                    record.key, result.handshake.one_time_pre_key_id)
        return record, result.handshake

    def respond(self, account: Account, sender: str, header: MessageHeader) -> SessionRecord:
        """
        Build a receiver session from a first envelope's handshake.

        Raises:
            MissingHandshake: If the header carries no handshake metadata
            InvalidEnvelope: If the handshake references unknown key material
        """
        handshake = header.x3dh_init
        if handshake is None:
            raise MissingHandshake(f"No session with {sender} and no handshake in envelope")

        try:
            response = account.keys.complete_session(handshake, header.dh_public)
        except UnknownPreKey as e:
            raise InvalidEnvelope(str(e))
        except CryptoError as e:
            raise InvalidEnvelope(f"Handshake from {sender} is unusable: {e}")

        ratchet = DoubleRatchet.init_receiver(
            response.shared_key,
            response.ratchet_private,
            response.ratchet_public,
            max_skipped=self.max_cached_keys
        )
        return SessionRecord(
            owner=account.username,
            peer=sender,
            peer_identity=handshake.sender_identity,
            associated_data=response.associated_data,
            ratchet=ratchet,
            handshake_keys=[header.dh_public]
        )
