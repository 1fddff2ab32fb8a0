"""
Duplicate/Replay Guard.

Classifies an inbound header against the current session before anything is
mutated.
"""

from enum import Enum
from typing import Collection

from ratchet.double_ratchet import MessageHeader, RatchetState


class Verdict(Enum):
    FRESH = "fresh"
    SKIP_HIT = "skip-hit"
    STALE = "stale"


def classify(state: RatchetState, header: MessageHeader, handshake_keys: Collection[bytes] = ()) -> Verdict:
    """
    Decide how an envelope relates to the session.

    A cached (key, counter) pair is a skip-hit even when the counter is
    below Nr, so out-of-order envelopes are not mistaken for duplicates.
    Anything else at or behind the receiving chain position is stale, as is
    a handshake the session has already accepted.

    Args:
        state: Ratchet state of the stored session
        header: Parsed header of the inbound envelope
        handshake_keys: Initiator ratchet keys of handshakes already accepted
    """
    if (header.dh_public, header.n) in state.skipped:
        return Verdict.SKIP_HIT

    if header.x3dh_init is not None and header.dh_public in handshake_keys:
        return Verdict.STALE

    if header.dh_public == state.dh_remote_public and header.n < state.recv_count:
        return Verdict.STALE

    # Every key of a chain we stepped past was either consumed or cached when we stepped
    if header.dh_public in state.retired_remote_keys:
        return Verdict.STALE

    return Verdict.FRESH
