"""
X3DH (Extended Triple Diffie-Hellman) Key Agreement Protocol

This module implements the X3DH handshake used to bootstrap a Double Ratchet
session between two parties who have not communicated before. The initiator's
ephemeral key doubles as its first ratchet key, and the responder's signed
pre-key doubles as the responder's first ratchet key, so the first envelope
carries everything the responder needs.
"""

from typing import Dict, Optional
from dataclasses import dataclass
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .primitives import (
    KEY_SIZE,
    SIGNATURE_SIZE,
    CryptoError,
    generate_dh_keypair,
    generate_identity_keypair,
    generate_challenge,
    dh_exchange,
    kdf_x3dh,
    sha256,
    sign,
    verify_signature,
    serialize_public_key,
    deserialize_public_key,
    serialize_private_key,
    deserialize_private_key,
    serialize_identity_public_key,
    b64encode,
    b64decode,
)

KEYS_VERSION = 1


class InvalidBundle(CryptoError):
    """A peer's published key bundle failed validation"""
    pass


class UnknownPreKey(CryptoError):
    """A handshake referenced a one-time pre-key we do not hold"""
    pass


def session_associated_data(initiator_identity: bytes, responder_identity: bytes) -> bytes:
    """32 bytes binding a session to both parties' identity keys."""
    return sha256(initiator_identity + responder_identity)


@dataclass
class HandshakeMetadata:
    """
    Data carried in the first envelope of a session.

    Attributes:
        sender_identity: Initiator's long-term X25519 identity public key
        one_time_pre_key_id: Id of the responder's one-time pre-key that was consumed
    """
    sender_identity: bytes
    one_time_pre_key_id: Optional[int] = None

    def to_dict(self) -> Dict:
        return {
            'sender_identity': b64encode(self.sender_identity),
            'one_time_pre_key': self.one_time_pre_key_id
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'HandshakeMetadata':
        if not isinstance(data, dict) or not isinstance(data.get('sender_identity'), str):
            raise CryptoError("Handshake metadata missing sender_identity")
        sender_identity = b64decode(data['sender_identity'])
        if len(sender_identity) != KEY_SIZE:
            raise CryptoError("Handshake sender identity has wrong length")
        key_id = data.get('one_time_pre_key')
        if key_id is not None and (not isinstance(key_id, int) or isinstance(key_id, bool)):
            raise CryptoError("Handshake one-time pre-key id must be an integer")
        return cls(sender_identity=sender_identity, one_time_pre_key_id=key_id)


@dataclass
class PreKeyBundle:
    """
    Public key bundle published on the relay for one device.

    Attributes:
        identity_key: Long-term X25519 identity public key
        signing_key: Long-term Ed25519 public key that signs the pre-key
        signed_pre_key: Medium-term X25519 public key
        signed_pre_key_signature: Ed25519 signature over identity_key || signed_pre_key
        one_time_pre_key: Single-use X25519 public key (optional)
        one_time_pre_key_id: Id of the single-use key (optional)
    """
    identity_key: bytes
    signing_key: bytes
    signed_pre_key: bytes
    signed_pre_key_signature: bytes
    one_time_pre_key: Optional[bytes] = None
    one_time_pre_key_id: Optional[int] = None

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        return {
            'identity_key': b64encode(self.identity_key),
            'signing_key': b64encode(self.signing_key),
            'signed_pre_key': b64encode(self.signed_pre_key),
            'signed_pre_key_signature': b64encode(self.signed_pre_key_signature),
            'one_time_pre_key': b64encode(self.one_time_pre_key) if self.one_time_pre_key else None,
            'one_time_pre_key_id': self.one_time_pre_key_id
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'PreKeyBundle':
        """Create from dictionary"""
        try:
            return cls(
                identity_key=b64decode(data['identity_key']),
                signing_key=b64decode(data['signing_key']),
                signed_pre_key=b64decode(data['signed_pre_key']),
                signed_pre_key_signature=b64decode(data['signed_pre_key_signature']),
                one_time_pre_key=b64decode(data['one_time_pre_key']) if data.get('one_time_pre_key') else None,
                one_time_pre_key_id=data.get('one_time_pre_key_id')
            )
        except (KeyError, TypeError, CryptoError) as e:
            raise InvalidBundle(f"Malformed key bundle: {e}")

    def validate(self):
        """
        Check key lengths and the pre-key signature.

        Raises:
            InvalidBundle: If any check fails
        """
        for name in ('identity_key', 'signing_key', 'signed_pre_key'):
            if len(getattr(self, name)) != KEY_SIZE:
                raise InvalidBundle(f"Invalid {name} length")
        if len(self.signed_pre_key_signature) != SIGNATURE_SIZE:
            raise InvalidBundle("Invalid signature length")
        if (self.one_time_pre_key is None) != (self.one_time_pre_key_id is None):
            raise InvalidBundle("One-time pre-key and its id must come together")
        if self.one_time_pre_key is not None and len(self.one_time_pre_key) != KEY_SIZE:
            raise InvalidBundle("Invalid one_time_pre_key length")
        if not verify_signature(self.signing_key, self.signed_pre_key_signature,
                                self.identity_key + self.signed_pre_key):
            raise InvalidBundle("Signed pre-key signature does not verify")


@dataclass
class X3DHResult:
    """
    Result of X3DH key agreement on the initiating side.

    Attributes:
        shared_key: The derived shared secret (32 bytes)
        associated_data: 32 bytes authenticated with every message of the session
        ratchet_private: Our ephemeral key, reused as our first ratchet key
        ratchet_public: Public half of ratchet_private
        remote_ratchet_public: Responder's signed pre-key, its first ratchet key
        handshake: Metadata to embed in the first envelope
    """
    shared_key: bytes
    associated_data: bytes
    ratchet_private: bytes
    ratchet_public: bytes
    remote_ratchet_public: bytes
    handshake: HandshakeMetadata


@dataclass
class X3DHResponse:
    """
    Result of X3DH key agreement on the responding side.

    Attributes:
        shared_key: The derived shared secret (32 bytes)
        associated_data: 32 bytes authenticated with every message of the session
        ratchet_private: Our signed pre-key private half, our first ratchet key
        ratchet_public: Our signed pre-key
    """
    shared_key: bytes
    associated_data: bytes
    ratchet_private: bytes
    ratchet_public: bytes


class X3DHKeyExchange:
    """
    Holds one device's long-term key material and runs X3DH with it.
    """

    def __init__(self):
        """Initialize an empty key holder; use generate() or from_private()"""
        self.identity_private: Optional[X25519PrivateKey] = None
        self.signing_private: Optional[Ed25519PrivateKey] = None
        self.signed_pre_key_private: Optional[X25519PrivateKey] = None
        self.signed_pre_key_signature: Optional[bytes] = None
        self.one_time_pre_keys: Dict[int, X25519PrivateKey] = {}

    @classmethod
    def generate(cls, num_one_time_keys: int = 10) -> 'X3DHKeyExchange':
        """
        Generate a complete set of keys for a new device.

        Args:
            num_one_time_keys: Number of one-time prekeys to generate

        Returns:
            Populated X3DHKeyExchange
        """
        keys = cls()
        keys.identity_private, _ = generate_dh_keypair()
        keys.signing_private, _ = generate_identity_keypair()
        keys.signed_pre_key_private, _ = generate_dh_keypair()
        keys.signed_pre_key_signature = sign(
            keys.signing_private, keys.identity_public + keys.signed_pre_key_public
        )
        for key_id in range(1, num_one_time_keys + 1):
            keys.one_time_pre_keys[key_id], _ = generate_dh_keypair()
        return keys

    @property
    def identity_public(self) -> bytes:
        return serialize_public_key(self.identity_private.public_key())

    @property
    def signing_public(self) -> bytes:
        return serialize_identity_public_key(self.signing_private.public_key())

    @property
    def signed_pre_key_public(self) -> bytes:
        return serialize_public_key(self.signed_pre_key_private.public_key())

    def public_bundle(self) -> Dict:
        """
        Public material uploaded to the relay at registration.

        Returns:
            Dictionary with identity, signing and signed pre-keys plus every one-time pre-key
        """
        return {
            'identity_key': b64encode(self.identity_public),
            'signing_key': b64encode(self.signing_public),
            'signed_pre_key': b64encode(self.signed_pre_key_public),
            'signed_pre_key_signature': b64encode(self.signed_pre_key_signature),
            'one_time_pre_keys': [
                {'id': key_id, 'key': b64encode(serialize_public_key(private.public_key()))}
                for key_id, private in self.one_time_pre_keys.items()
            ]
        }

    def export_private(self) -> Dict:
        """Serialize private key material for local (encrypted) storage"""
        return {
            'version': KEYS_VERSION,
            'identity_key': b64encode(serialize_private_key(self.identity_private)),
            'signing_key': b64encode(self.signing_private.private_bytes_raw()),
            'signed_pre_key': b64encode(serialize_private_key(self.signed_pre_key_private)),
            'signed_pre_key_signature': b64encode(self.signed_pre_key_signature),
            'one_time_pre_keys': {
                str(key_id): b64encode(serialize_private_key(private))
                for key_id, private in self.one_time_pre_keys.items()
            }
        }

    @classmethod
    def from_private(cls, data: Dict) -> 'X3DHKeyExchange':
        """
        Restore key material produced by export_private.

        Raises:
            CryptoError: If the data is malformed or of an unknown version
        """
        if not isinstance(data, dict) or data.get('version') != KEYS_VERSION:
            raise CryptoError("Unsupported key material version")
        keys = cls()
        try:
            keys.identity_private = deserialize_private_key(b64decode(data['identity_key']))
            keys.signing_private = Ed25519PrivateKey.from_private_bytes(b64decode(data['signing_key']))
            keys.signed_pre_key_private = deserialize_private_key(b64decode(data['signed_pre_key']))
            keys.signed_pre_key_signature = b64decode(data['signed_pre_key_signature'])
            keys.one_time_pre_keys = {
                int(key_id): deserialize_private_key(b64decode(value))
                for key_id, value in data['one_time_pre_keys'].items()
            }
        except (KeyError, TypeError, ValueError) as e:
            raise CryptoError(f"Malformed key material: {e}")
        return keys

    def generate_challenge(self) -> bytes:
        """Single-use relay authentication token signed by our signing key"""
        return generate_challenge(self.signing_private)

    def initiate_session(self, recipient_bundle: PreKeyBundle) -> X3DHResult:
        """
        Initiate a session by performing X3DH with recipient's prekey bundle.

        The bundle must already have been validated.

        Args:
            recipient_bundle: Recipient's public key bundle

        Returns:
            X3DHResult containing shared key, associated data and handshake metadata
        """
        ephemeral_private, ephemeral_public = generate_dh_keypair()

        recipient_identity = deserialize_public_key(recipient_bundle.identity_key)
        recipient_signed_pre = deserialize_public_key(recipient_bundle.signed_pre_key)

        # DH1 = DH(IK_A, SPK_B), DH2 = DH(EK_A, IK_B), DH3 = DH(EK_A, SPK_B)
        dh_concat = (
            dh_exchange(self.identity_private, recipient_signed_pre)
            + dh_exchange(ephemeral_private, recipient_identity)
            + dh_exchange(ephemeral_private, recipient_signed_pre)
        )

        # DH4 = DH(EK_A, OPK_B) if available
        if recipient_bundle.one_time_pre_key:
            recipient_one_time = deserialize_public_key(recipient_bundle.one_time_pre_key)
            dh_concat += dh_exchange(ephemeral_private, recipient_one_time)

        return X3DHResult(
            shared_key=kdf_x3dh(dh_concat),
            associated_data=session_associated_data(self.identity_public, recipient_bundle.identity_key),
            ratchet_private=serialize_private_key(ephemeral_private),
            ratchet_public=serialize_public_key(ephemeral_public),
            remote_ratchet_public=recipient_bundle.signed_pre_key,
            handshake=HandshakeMetadata(
                sender_identity=self.identity_public,
                one_time_pre_key_id=recipient_bundle.one_time_pre_key_id
            )
        )

    def complete_session(self, handshake: HandshakeMetadata, ephemeral_public_bytes: bytes) -> X3DHResponse:
        """
        Complete a session from the handshake embedded in a first envelope.

        The one-time pre-key is not deleted here; the caller retires it once
        the first message has decrypted.

        Args:
            handshake: Metadata from the envelope header
            ephemeral_public_bytes: Sender's ratchet public key from the envelope header

        Returns:
            X3DHResponse containing shared key and our initial ratchet key pair

        Raises:
            UnknownPreKey: If the referenced one-time pre-key is not held
        """
        ephemeral_public = deserialize_public_key(ephemeral_public_bytes)
        sender_identity = deserialize_public_key(handshake.sender_identity)

        dh_concat = (
            dh_exchange(self.signed_pre_key_private, sender_identity)
            + dh_exchange(self.identity_private, ephemeral_public)
            + dh_exchange(self.signed_pre_key_private, ephemeral_public)
        )

        if handshake.one_time_pre_key_id is not None:
            one_time_private = self.one_time_pre_keys.get(handshake.one_time_pre_key_id)
            if one_time_private is None:
                raise UnknownPreKey(f"Unknown one-time pre-key {handshake.one_time_pre_key_id}")
            dh_concat += dh_exchange(one_time_private, ephemeral_public)

        return X3DHResponse(
            shared_key=kdf_x3dh(dh_concat),
            associated_data=session_associated_data(handshake.sender_identity, self.identity_public),
            ratchet_private=serialize_private_key(self.signed_pre_key_private),
            ratchet_public=self.signed_pre_key_public
        )

    def remove_one_time_pre_key(self, key_id: int) -> bool:
        """
        Forget a consumed one-time pre-key.

        Returns:
            True if the key was held
        """
        return self.one_time_pre_keys.pop(key_id, None) is not None
