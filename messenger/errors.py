"""
Error taxonomy for the messaging engine.

Every error is scoped to one message or one session; none of them is meant to
abort processing of unrelated peers.
"""


class MessengerError(Exception):
    """Base exception for messenger errors"""
    pass


class PeerNotFound(MessengerError):
    """No account on the relay matches the requested username"""
    pass


class NoDevicesForPeer(PeerNotFound):
    """The peer exists but advertises no devices"""
    pass


class InvalidKeyBundle(MessengerError):
    """The peer's published key bundle failed validation"""
    pass


class ProtocolViolation(MessengerError):
    """An inbound envelope broke the protocol; it is dropped and not retried"""
    pass


class MissingHandshake(ProtocolViolation):
    """No session exists and the envelope carries no handshake metadata"""
    pass


class InvalidEnvelope(ProtocolViolation):
    """The envelope is malformed or does not belong to the session"""
    pass


class DecryptionFailed(MessengerError):
    """Authentication failed; session state was left untouched"""
    pass


class StaleMessage(MessengerError):
    """Duplicate or already-superseded envelope"""
    pass


class CorruptState(MessengerError):
    """A persisted session could not be read"""

    def __init__(self, session_key: str, reason: str):
        super().__init__(f"Session {session_key} is unreadable: {reason}")
        self.session_key = session_key


class TransportFailure(MessengerError):
    """The relay could not be reached or rejected the request; retryable"""
    pass


class SendFailed(TransportFailure):
    """An encrypted envelope was produced but could not be delivered"""
    pass


class AccountError(MessengerError):
    """Unknown or duplicate account, or no account logged in"""
    pass


class StorageLocked(MessengerError):
    """The local store could not be unlocked with the given passphrase"""
    pass
