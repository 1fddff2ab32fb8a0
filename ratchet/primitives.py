"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational cryptographic operations used by the
X3DH handshake and the Double Ratchet. Everything here is stateless.
"""

import os
import hmac
import time
import base64
import hashlib
from typing import Tuple
from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


KEY_SIZE = 32
SIGNATURE_SIZE = 64
NONCE_SIZE = 12
TAG_SIZE = 16

CHALLENGE_CONTEXT = b"ratchet-messenger-auth"
CHALLENGE_NONCE_SIZE = 16


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


def generate_dh_keypair() -> Tuple[X25519PrivateKey, X25519PublicKey]:
    """
    Generate a Curve25519 Diffie-Hellman keypair for key exchange.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = X25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def generate_identity_keypair() -> Tuple[Ed25519PrivateKey, Ed25519PublicKey]:
    """
    Generate an Ed25519 keypair for digital signatures.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = Ed25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def dh_exchange(private_key: X25519PrivateKey, public_key: X25519PublicKey) -> bytes:
    """
    Perform Diffie-Hellman key exchange.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        32-byte shared secret
    """
    return private_key.exchange(public_key)


def kdf_chain(chain_key: bytes) -> Tuple[bytes, bytes]:
    """
    Symmetric-key ratchet step.

    Args:
        chain_key: Current chain key

    Returns:
        Tuple of (next_chain_key, message_key)
    """
    message_key = hmac_sha256(chain_key, b"\x01")
    next_chain_key = hmac_sha256(chain_key, b"\x02")
    return next_chain_key, message_key


def kdf_root(root_key: bytes, dh_output: bytes) -> Tuple[bytes, bytes]:
    """
    Root KDF for DH ratchet step.

    Args:
        root_key: Current root key
        dh_output: DH exchange output

    Returns:
        Tuple of (new_root_key, new_chain_key)
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=64,
        salt=root_key,
        info=b"DoubleRatchet"
    )
    output = hkdf.derive(dh_output)
    return output[:32], output[32:]


def kdf_x3dh(dh_concat: bytes) -> bytes:
    """Derive the X3DH shared secret from the concatenated DH outputs."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=b"\x00" * KEY_SIZE,
        info=b"X3DH"
    )
    # 32 0xFF bytes prefix domain-separates X25519 from other curves
    return hkdf.derive(b"\xff" * KEY_SIZE + dh_concat)


def encrypt_message(key: bytes, plaintext: bytes, associated_data: bytes = b"") -> bytes:
    """
    Encrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        plaintext: Message to encrypt
        associated_data: Additional authenticated data

    Returns:
        nonce (12 bytes) + ciphertext + tag (16 bytes)
    """
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext, associated_data)
    return nonce + ciphertext


def decrypt_message(key: bytes, ciphertext: bytes, associated_data: bytes = b"") -> bytes:
    """
    Decrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        ciphertext: nonce + encrypted message + tag
        associated_data: Additional authenticated data

    Returns:
        Decrypted plaintext

    Raises:
        CryptoError: If decryption fails
    """
    if len(ciphertext) < NONCE_SIZE + TAG_SIZE:
        raise CryptoError("Ciphertext too short")

    nonce = ciphertext[:NONCE_SIZE]
    actual_ciphertext = ciphertext[NONCE_SIZE:]

    aesgcm = AESGCM(key)
    try:
        return aesgcm.decrypt(nonce, actual_ciphertext, associated_data)
    except InvalidTag:
        raise CryptoError("Decryption failed: authentication tag mismatch")


def hmac_sha256(key: bytes, data: bytes) -> bytes:
    """
    Compute HMAC-SHA256.

    Args:
        key: HMAC key
        data: Data to authenticate

    Returns:
        32-byte HMAC tag
    """
    return hmac.new(key, data, hashlib.sha256).digest()


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sign(private_key: Ed25519PrivateKey, data: bytes) -> bytes:
    """Sign data with an Ed25519 key (64-byte signature)."""
    return private_key.sign(data)


def verify_signature(public_key: bytes, signature: bytes, data: bytes) -> bool:
    """
    Verify an Ed25519 signature over raw public key bytes.

    Returns:
        True if the signature is valid, False otherwise
    """
    if len(public_key) != KEY_SIZE or len(signature) != SIGNATURE_SIZE:
        return False
    try:
        deserialize_identity_public_key(public_key).verify(signature, data)
    except InvalidSignature:
        return False
    return True


def serialize_public_key(public_key: X25519PublicKey) -> bytes:
    """Serialize X25519 public key to bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def deserialize_public_key(key_bytes: bytes) -> X25519PublicKey:
    """Deserialize bytes to X25519 public key"""
    if len(key_bytes) != KEY_SIZE:
        raise CryptoError(f"Invalid X25519 public key length: {len(key_bytes)}")
    return X25519PublicKey.from_public_bytes(key_bytes)


def serialize_private_key(private_key: X25519PrivateKey) -> bytes:
    return private_key.private_bytes_raw()


def deserialize_private_key(key_bytes: bytes) -> X25519PrivateKey:
    if len(key_bytes) != KEY_SIZE:
        raise CryptoError(f"Invalid X25519 private key length: {len(key_bytes)}")
    return X25519PrivateKey.from_private_bytes(key_bytes)


def serialize_identity_public_key(public_key: Ed25519PublicKey) -> bytes:
    """Serialize Ed25519 public key to bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def deserialize_identity_public_key(key_bytes: bytes) -> Ed25519PublicKey:
    """Deserialize bytes to Ed25519 public key"""
    if len(key_bytes) != KEY_SIZE:
        raise CryptoError(f"Invalid Ed25519 public key length: {len(key_bytes)}")
    return Ed25519PublicKey.from_public_bytes(key_bytes)


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    """Strict base64 decoding; raises CryptoError on malformed input."""
    try:
        return base64.b64decode(data, validate=True)
    except (ValueError, TypeError) as e:
        raise CryptoError(f"Invalid base64 data: {e}")


def generate_challenge(signing_key: Ed25519PrivateKey) -> bytes:
    """
    Create a single-use authentication token for the relay.

    Layout: timestamp (8 bytes, ms, big-endian) || nonce (16 bytes) || signature (64 bytes)

    Args:
        signing_key: Our Ed25519 identity signing key

    Returns:
        Raw token bytes
    """
    timestamp = int(time.time() * 1000).to_bytes(8, "big")
    nonce = os.urandom(CHALLENGE_NONCE_SIZE)
    signature = sign(signing_key, CHALLENGE_CONTEXT + timestamp + nonce)
    return timestamp + nonce + signature


def verify_challenge(token: bytes, signing_public: bytes, max_age: float = 300.0) -> bytes:
    """
    Verify a token produced by generate_challenge.

    Args:
        token: Raw token bytes
        signing_public: Claimed Ed25519 public key of the caller
        max_age: Accepted clock skew in seconds, in either direction

    Returns:
        The token nonce, so the caller can reject replays

    Raises:
        CryptoError: If the token is malformed, expired or badly signed
    """
    if len(token) != 8 + CHALLENGE_NONCE_SIZE + SIGNATURE_SIZE:
        raise CryptoError("Malformed challenge token")

    timestamp = token[:8]
    nonce = token[8:8 + CHALLENGE_NONCE_SIZE]
    signature = token[8 + CHALLENGE_NONCE_SIZE:]

    issued = int.from_bytes(timestamp, "big") / 1000.0
    if abs(time.time() - issued) > max_age:
        raise CryptoError("Challenge token expired")

    if not verify_signature(signing_public, signature, CHALLENGE_CONTEXT + timestamp + nonce):
        raise CryptoError("Challenge token signature invalid")

    return nonce
