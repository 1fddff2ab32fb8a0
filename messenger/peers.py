"""
Peer Directory: resolves usernames to relay routing ids.

Only one device per peer is addressed: the first device the relay advertises.
"""

import logging
from dataclasses import dataclass

from .errors import NoDevicesForPeer, PeerNotFound
from .storage import LocalStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeerDevice:
    username: str
    user_id: int
    device_id: int


class PeerDirectory:
    """
    Resolves a username through the relay's search and caches the result.
    """

    def __init__(self, relay, store: LocalStore):
        self.relay = relay
        self.store = store

    async def resolve(self, username: str) -> PeerDevice:
        """
        Look up a peer's routing ids and refresh the cache.

        Args:
            username: Exact username of the peer

        Returns:
            PeerDevice for the first advertised device

        Raises:
            PeerNotFound: If no account matches exactly
            NoDevicesForPeer: If the account has no devices
            TransportFailure: If the relay cannot be reached
        """
        results = await self.relay.search(username)

        user = next((u for u in results if isinstance(u, dict) and u.get("username") == username), None)
        if user is None or not isinstance(user.get("id"), int):
            raise PeerNotFound(f"User '{username}' not found")

        devices = user.get("devices") or []
        if not devices:
            raise NoDevicesForPeer(f"User '{username}' has no devices")

        device_id = devices[0].get("id") if isinstance(devices[0], dict) else None
        if not isinstance(device_id, int):
            raise NoDevicesForPeer(f"User '{username}' advertises a device without an id")

        peer = PeerDevice(username=username, user_id=user["id"], device_id=device_id)
        self.store.save_peer_device(username, peer.user_id, peer.device_id)
        if len(devices) > 1:
            logger.info("%s has %d devices; addressing only device %d", username, len(devices), device_id)
        return peer
