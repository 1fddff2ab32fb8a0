"""
Cryptographic module for end-to-end encrypted messaging.

Implements Signal Protocol-inspired encryption with:
- X3DH (Extended Triple Diffie-Hellman) key agreement
- Double Ratchet algorithm for forward secrecy
"""

from .primitives import (
    generate_dh_keypair,
    generate_identity_keypair,
    dh_exchange,
    encrypt_message,
    decrypt_message,
    CryptoError
)
from .x3dh import X3DHKeyExchange, PreKeyBundle, HandshakeMetadata
from .double_ratchet import DoubleRatchet, MessageHeader, RatchetState, SkippedKeyCache

__all__ = [
    'generate_dh_keypair',
    'generate_identity_keypair',
    'dh_exchange',
    'encrypt_message',
    'decrypt_message',
    'CryptoError',
    'X3DHKeyExchange',
    'PreKeyBundle',
    'HandshakeMetadata',
    'DoubleRatchet',
    'MessageHeader',
    'RatchetState',
    'SkippedKeyCache'
]
