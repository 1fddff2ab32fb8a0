"""
Authentication for relay endpoints.

Clients authenticate each request with a fresh token signed by their device's
Ed25519 identity key, and name that key in the `identity` header. A token
is accepted once.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request

from ratchet.primitives import CryptoError, b64decode, b64encode, verify_challenge

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_MAX_AGE = 300.0


def token_max_age() -> float:
    """Accepted token age in seconds (RELAY_TOKEN_MAX_AGE)"""
    return float(os.getenv("RELAY_TOKEN_MAX_AGE", DEFAULT_TOKEN_MAX_AGE))


@dataclass
class AuthenticatedDevice:
    """Device that signed the current request"""
    device_id: int
    username: str


async def authenticated_device(request: Request,
                               authorization: Optional[str] = Header(None),
                               identity: Optional[str] = Header(None)) -> AuthenticatedDevice:
    """
    FastAPI dependency verifying the request token.

    Raises:
        HTTPException: 401 if the token is missing, invalid, expired or reused
    """
    if not authorization or not authorization.startswith("Bearer ") or not identity:
        raise HTTPException(status_code=401, detail="Authentication required")

    try:
        token = b64decode(authorization[len("Bearer "):])
        signing_public = b64decode(identity)
        nonce = verify_challenge(token, signing_public, max_age=request.app.state.token_max_age)
    except CryptoError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {e}")

    db = request.app.state.db
    device = await db.get_device_by_signing_key(identity)
    if device is None:
        raise HTTPException(status_code=401, detail="Unknown device")

    if not await db.consume_challenge(b64encode(nonce)):
        logger.warning("Rejected replayed token for device %d", device[0])
        raise HTTPException(status_code=401, detail="Token already used")

    return AuthenticatedDevice(device_id=device[0], username=device[1])
