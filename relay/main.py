"""
FastAPI relay for the end-to-end encrypted messenger.

This server:
- Registers accounts and stores their public key bundles
- Hands out key bundles (one one-time pre-key per request) for session setup
- Queues encrypted envelopes until the recipient device fetches them
- Never sees plaintext or private keys
"""

import os
import logging
from typing import List, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from pydantic import BaseModel, Field

from ratchet.primitives import CryptoError, KEY_SIZE, b64decode
from ratchet.x3dh import PreKeyBundle

from .database import Database, bundle_summary
from .auth import AuthenticatedDevice, authenticated_device, token_max_age

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./relay.db"
MAX_BATCH = 100


# Pydantic models for API
class OneTimePreKeyUpload(BaseModel):
    id: int
    key: str


class BundleUpload(BaseModel):
    identity_key: str
    signing_key: str
    signed_pre_key: str
    signed_pre_key_signature: str
    one_time_pre_keys: List[OneTimePreKeyUpload] = []


class RegisterRequest(BaseModel):
    username: str = Field(..., pattern=r"^[A-Za-z0-9_.-]{1,32}$")
    bundle: BundleUpload


class OutgoingMessage(BaseModel):
    recipient_device_id: int
    ciphertext: str
    header: str


class SendRequest(BaseModel):
    messages: List[OutgoingMessage] = Field(..., min_length=1, max_length=MAX_BATCH)


def check_bundle(bundle: BundleUpload):
    """
    Reject bundles a peer could not start a session with.

    Raises:
        HTTPException: 400 on bad key lengths or a bad pre-key signature
    """
    try:
        PreKeyBundle.from_dict(bundle.model_dump(exclude={'one_time_pre_keys'})).validate()
        for one_time in bundle.one_time_pre_keys:
            if len(b64decode(one_time.key)) != KEY_SIZE:
                raise CryptoError(f"Invalid one-time pre-key {one_time.id}")
    except CryptoError as e:
        raise HTTPException(status_code=400, detail=str(e))

    key_ids = [one_time.id for one_time in bundle.one_time_pre_keys]
    if len(set(key_ids)) != len(key_ids):
        raise HTTPException(status_code=400, detail="Duplicate one-time pre-key id")


def create_app(database_url: Optional[str] = None) -> FastAPI:
    """
    Build the relay application.

    Args:
        database_url: SQLAlchemy URL; defaults to RELAY_DATABASE_URL or ./relay.db
    """
    db = Database(database_url or os.getenv("RELAY_DATABASE_URL", DEFAULT_DATABASE_URL))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await db.create_tables()
        logger.info("Database initialized")
        yield
        await db.dispose()
        logger.info("Relay shutting down")

    app = FastAPI(
        title="Ratchet Messenger Relay",
        description="Store-and-forward relay for end-to-end encrypted envelopes",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.db = db
    app.state.token_max_age = token_max_age()

    @app.post("/account/register")
    async def register(payload: RegisterRequest):
        """
        Register a new account and its first device.

        The client generates every key locally and uploads only public keys.
        """
        check_bundle(payload.bundle)

        created = await db.create_user(payload.username, payload.bundle.model_dump())
        if not created:
            raise HTTPException(status_code=409, detail="Username or identity already registered")

        user, device = created
        logger.info("Registered %s (device %d): %s", user.username, device.id,
                    bundle_summary(payload.bundle.model_dump()))
        return {"user_id": user.id, "device_id": device.id}

    @app.get("/account/search")
    async def search(username: str = Query(..., min_length=1)):
        """Accounts whose username contains the query"""
        return await db.search_users(username)

    @app.get("/account/key-bundle")
    async def key_bundle(user_id: int):
        """
        Key bundles for every device of a user.

        This is public - anyone can request a bundle to start a conversation.
        """
        return await db.get_key_bundles(user_id)

    @app.post("/message/send")
    async def send(payload: SendRequest, device: AuthenticatedDevice = Depends(authenticated_device)):
        """Queue envelopes for their recipients"""
        try:
            count = await db.enqueue_messages(
                device.username, [message.model_dump() for message in payload.messages]
            )
        except LookupError as e:
            raise HTTPException(status_code=404, detail=str(e))

        logger.debug("Queued %d envelope(s) from %s", count, device.username)
        return {"queued": count}

    @app.post("/message/fetch")
    async def fetch(device: AuthenticatedDevice = Depends(authenticated_device)):
        """Deliver, and forget, everything queued for the calling device"""
        messages = await db.dequeue_messages(device.device_id)
        logger.debug("Delivered %d envelope(s) to device %d", len(messages), device.device_id)
        return messages

    return app


app = create_app()


def run():
    import uvicorn
    logging.basicConfig(level=os.getenv("RELAY_LOG_LEVEL", "INFO").upper())
    uvicorn.run(app, host=os.getenv("RELAY_HOST", "0.0.0.0"), port=int(os.getenv("RELAY_PORT", "8000")))


if __name__ == "__main__":
    run()
