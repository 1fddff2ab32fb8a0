"""
Envelope wire format.

On the wire an envelope is two base64 strings: `header`, which is the 32 bytes
of session associated data followed by the encoded ratchet header, and
`ciphertext`.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from ratchet.primitives import CryptoError, b64encode, b64decode
from ratchet.double_ratchet import MessageHeader

from .errors import InvalidEnvelope

ASSOCIATED_DATA_SIZE = 32


@dataclass
class Envelope:
    """
    One encrypted message.

    Attributes:
        associated_data: 32 bytes identifying the session's two parties
        header: Parsed ratchet header
        ciphertext: AEAD output (nonce + ciphertext + tag)
        header_bytes: Header exactly as encoded by the sender
    """
    associated_data: bytes
    header: MessageHeader
    ciphertext: bytes
    header_bytes: bytes = b""

    def __post_init__(self):
        if not self.header_bytes:
            self.header_bytes = self.header.encode()

    def to_wire(self) -> Dict[str, str]:
        return {
            'header': b64encode(self.associated_data + self.header_bytes),
            'ciphertext': b64encode(self.ciphertext)
        }

    @classmethod
    def from_wire(cls, header: str, ciphertext: str) -> 'Envelope':
        """
        Decode an envelope received from the relay.

        Raises:
            InvalidEnvelope: If either field is malformed
        """
        if not isinstance(header, str) or not isinstance(ciphertext, str):
            raise InvalidEnvelope("Envelope fields must be base64 strings")
        try:
            full_header = b64decode(header)
            raw_ciphertext = b64decode(ciphertext)
        except CryptoError as e:
            raise InvalidEnvelope(str(e))

        if len(full_header) <= ASSOCIATED_DATA_SIZE:
            raise InvalidEnvelope("Header too short")

        associated_data = full_header[:ASSOCIATED_DATA_SIZE]
        header_bytes = full_header[ASSOCIATED_DATA_SIZE:]
        try:
            parsed = MessageHeader.decode(header_bytes)
        except CryptoError as e:
            raise InvalidEnvelope(f"Malformed header: {e}")

        return cls(
            associated_data=associated_data,
            header=parsed,
            ciphertext=raw_ciphertext,
            header_bytes=header_bytes
        )


@dataclass
class InboundMessage:
    """An envelope as delivered by the relay, with its claimed sender"""
    sender: str
    envelope: Envelope
    relay_id: Optional[int] = None
    sent_at: Optional[str] = None

    @classmethod
    def from_relay(cls, data: Dict) -> 'InboundMessage':
        """
        Build from one item of the relay's fetch response.

        Raises:
            InvalidEnvelope: If the item is malformed
        """
        if not isinstance(data, dict):
            raise InvalidEnvelope("Message must be an object")
        sender = data.get('sender')
        if not isinstance(sender, str) or not sender:
            raise InvalidEnvelope("Message has no sender")
        return cls(
            sender=sender,
            envelope=Envelope.from_wire(data.get('header'), data.get('ciphertext')),
            relay_id=data.get('id'),
            sent_at=data.get('sent_at')
        )
