"""
HTTP client for the relay.

The relay only ever sees public key bundles, routing ids and envelopes.
"""

import logging
from typing import Dict, List, Optional

import httpx

from ratchet.primitives import b64encode
from ratchet.x3dh import X3DHKeyExchange

from .envelope import Envelope
from .errors import TransportFailure

logger = logging.getLogger(__name__)


class RelayClient:
    """
    Async request/response client for the relay endpoints.
    """

    def __init__(self, server_url: str, http_client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 30.0):
        """
        Args:
            server_url: Base URL of the relay
            http_client: Pre-built client (tests inject an ASGI transport here)
            timeout: Request timeout in seconds when building our own client
        """
        self.server_url = server_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self):
        await self.http_client.aclose()

    def _auth_headers(self, keys: X3DHKeyExchange) -> Dict[str, str]:
        """Fresh single-use token plus the identity it claims"""
        return {
            "Authorization": f"Bearer {b64encode(keys.generate_challenge())}",
            "identity": b64encode(keys.signing_public)
        }

    async def _request(self, method: str, path: str, action: str, **kwargs):
        try:
            response = await self.http_client.request(method, f"{self.server_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise TransportFailure(f"Failed to {action}: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise TransportFailure(f"Failed to {action}: HTTP {response.status_code} {detail}")

        try:
            return response.json()
        except ValueError as e:
            raise TransportFailure(f"Failed to {action}: invalid JSON response") from e

    async def register(self, username: str, bundle: Dict) -> Dict:
        """
        Register a device with its public key bundle.

        Returns:
            Dictionary with user_id and device_id
        """
        return await self._request(
            "POST", "/account/register", "register",
            json={"username": username, "bundle": bundle}
        )

    async def search(self, username: str) -> List[Dict]:
        """
        Search accounts by username.

        Returns:
            List of {id, username, devices: [{id}]}; matching may be fuzzy
        """
        result = await self._request(
            "GET", "/account/search", "search for user", params={"username": username}
        )
        if not isinstance(result, list):
            raise TransportFailure("Failed to search for user: expected a list")
        return result

    async def fetch_key_bundle(self, user_id: int) -> List[Dict]:
        """
        Fetch the public key bundles of every device of a user.

        Returns:
            List of {device_id, key_bundle}
        """
        result = await self._request(
            "GET", "/account/key-bundle", "fetch key bundle", params={"user_id": user_id}
        )
        if not isinstance(result, list):
            raise TransportFailure("Failed to fetch key bundle: expected a list")
        return result

    async def send(self, keys: X3DHKeyExchange, recipient_device_id: int, envelope: Envelope):
        """Deliver one envelope to a device"""
        message = {"recipient_device_id": recipient_device_id}
        message.update(envelope.to_wire())
        await self._request(
            "POST", "/message/send", "send message",
            json={"messages": [message]},
            headers=self._auth_headers(keys)
        )

    async def fetch(self, keys: X3DHKeyExchange) -> List[Dict]:
        """
        Fetch (and dequeue) envelopes addressed to our device.

        Returns:
            List of {id, sender, ciphertext, header, sent_at}
        """
        result = await self._request(
            "POST", "/message/fetch", "fetch messages", headers=self._auth_headers(keys)
        )
        if not isinstance(result, list):
            raise TransportFailure("Failed to fetch messages: expected a list")
        logger.debug("Fetched %d envelope(s)", len(result))
        return result
