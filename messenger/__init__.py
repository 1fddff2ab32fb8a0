"""
Client-side secure messaging engine.

Session establishment, ratchet session persistence, envelope processing and
replay defense on top of the `ratchet` primitives.
"""

from .account import Account, AccountManager
from .envelope import Envelope, InboundMessage
from .pipeline import FetchReport, MessagePipeline, ReceivedMessage
from .sessions import SessionDirectory, SessionRecord
from .storage import LocalStore

__all__ = [
    'Account',
    'AccountManager',
    'Envelope',
    'InboundMessage',
    'FetchReport',
    'MessagePipeline',
    'ReceivedMessage',
    'SessionDirectory',
    'SessionRecord',
    'LocalStore'
]
