"""
Database models and operations for the relay.

Uses SQLAlchemy with SQLite for storing accounts, device key bundles and
queued envelopes. The relay never sees plaintext; queued envelopes are
deleted as soon as they are fetched.
"""

import json
from datetime import datetime, timezone
from typing import Optional, List, Dict, Tuple
from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """User account model"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    created_at = Column(DateTime, default=_utcnow)


class Device(Base):
    """One registered installation and its published key bundle"""
    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    signing_key = Column(String(64), unique=True, index=True, nullable=False)  # Ed25519 public key (base64)
    identity_key = Column(String(64), nullable=False)  # X25519 public key (base64)
    signed_pre_key = Column(String(64), nullable=False)
    signed_pre_key_signature = Column(String(128), nullable=False)
    created_at = Column(DateTime, default=_utcnow)


class OneTimePreKey(Base):
    """Single-use pre-key; handed out at most once"""
    __tablename__ = "one_time_pre_keys"

    id = Column(Integer, primary_key=True)
    device_id = Column(Integer, ForeignKey("devices.id"), index=True, nullable=False)
    key_id = Column(Integer, nullable=False)
    public_key = Column(String(64), nullable=False)


class QueuedMessage(Base):
    """Envelope waiting for its recipient device to fetch it"""
    __tablename__ = "queued_messages"

    id = Column(Integer, primary_key=True, index=True)
    recipient_device_id = Column(Integer, ForeignKey("devices.id"), index=True, nullable=False)
    sender_username = Column(String(50), nullable=False)
    header = Column(Text, nullable=False)
    ciphertext = Column(Text, nullable=False)
    sent_at = Column(DateTime, default=_utcnow)


class UsedChallenge(Base):
    """Nonces of authentication tokens already presented"""
    __tablename__ = "used_challenges"

    nonce = Column(String(32), primary_key=True)
    used_at = Column(DateTime, default=_utcnow)


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./relay.db"):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def create_user(self, username: str, bundle: Dict) -> Optional[Tuple[User, Device]]:
        """
        Create a new account with its first device.

        Args:
            username: Unique username
            bundle: Validated public bundle (base64 fields plus one_time_pre_keys)

        Returns:
            (User, Device) or None if the username or signing key is taken
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            if result.scalar_one_or_none():
                return None

            try:
                user = User(username=username)
                session.add(user)
                await session.flush()

                device = Device(
                    user_id=user.id,
                    signing_key=bundle['signing_key'],
                    identity_key=bundle['identity_key'],
                    signed_pre_key=bundle['signed_pre_key'],
                    signed_pre_key_signature=bundle['signed_pre_key_signature']
                )
                session.add(device)
                await session.flush()

                for one_time in bundle.get('one_time_pre_keys', []):
                    session.add(OneTimePreKey(
                        device_id=device.id, key_id=one_time['id'], public_key=one_time['key']
                    ))
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return None
            return user, device

    async def search_users(self, query: str, limit: int = 20) -> List[Dict]:
        """
        Find accounts whose username contains query.

        Returns:
            List of {id, username, devices: [{id}]}
        """
        async with self.async_session() as session:
            result = await session.execute(
                select(User).where(User.username.contains(query)).order_by(User.id).limit(limit)
            )
            users = result.scalars().all()

            found = []
            for user in users:
                devices = await session.execute(
                    select(Device.id).where(Device.user_id == user.id).order_by(Device.id)
                )
                found.append({
                    'id': user.id,
                    'username': user.username,
                    'devices': [{'id': device_id} for device_id in devices.scalars().all()]
                })
            return found

    async def get_key_bundles(self, user_id: int) -> List[Dict]:
        """
        Get the key bundle of every device of a user.

        Each call hands out, and removes, one one-time pre-key per device.

        Returns:
            List of {device_id, key_bundle}
        """
        async with self.async_session() as session:
            result = await session.execute(
                select(Device).where(Device.user_id == user_id).order_by(Device.id)
            )
            bundles = []
            for device in result.scalars().all():
                one_time = await session.execute(
                    select(OneTimePreKey).where(OneTimePreKey.device_id == device.id)
                    .order_by(OneTimePreKey.id).limit(1)
                )
                one_time_key = one_time.scalar_one_or_none()
                if one_time_key:
                    await session.delete(one_time_key)

                bundles.append({
                    'device_id': device.id,
                    'key_bundle': {
                        'identity_key': device.identity_key,
                        'signing_key': device.signing_key,
                        'signed_pre_key': device.signed_pre_key,
                        'signed_pre_key_signature': device.signed_pre_key_signature,
                        'one_time_pre_key': one_time_key.public_key if one_time_key else None,
                        'one_time_pre_key_id': one_time_key.key_id if one_time_key else None
                    }
                })
            await session.commit()
            return bundles

    async def get_device_by_signing_key(self, signing_key: str) -> Optional[Tuple[int, str]]:
        """
        Returns:
            (device_id, username) of the device owning signing_key, or None
        """
        async with self.async_session() as session:
            result = await session.execute(
                select(Device.id, User.username)
                .join(User, User.id == Device.user_id)
                .where(Device.signing_key == signing_key)
            )
            row = result.first()
            return (row[0], row[1]) if row else None

    async def consume_challenge(self, nonce: str) -> bool:
        """
        Record a token nonce.

        Returns:
            False if the nonce was already used
        """
        async with self.async_session() as session:
            session.add(UsedChallenge(nonce=nonce))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def enqueue_messages(self, sender_username: str, messages: List[Dict]) -> int:
        """
        Queue envelopes for their recipient devices.

        Returns:
            Number of envelopes queued

        Raises:
            LookupError: If a recipient device does not exist (nothing is queued)
        """
        async with self.async_session() as session:
            for message in messages:
                device = await session.get(Device, message['recipient_device_id'])
                if device is None:
                    raise LookupError(f"Unknown device {message['recipient_device_id']}")
                session.add(QueuedMessage(
                    recipient_device_id=device.id,
                    sender_username=sender_username,
                    header=message['header'],
                    ciphertext=message['ciphertext']
                ))
            await session.commit()
            return len(messages)

    async def dequeue_messages(self, device_id: int) -> List[Dict]:
        """
        Remove and return every envelope queued for a device, oldest first.
        """
        async with self.async_session() as session:
            result = await session.execute(
                select(QueuedMessage).where(QueuedMessage.recipient_device_id == device_id)
                .order_by(QueuedMessage.id)
            )
            queued = result.scalars().all()
            messages = [
                {
                    'id': message.id,
                    'sender': message.sender_username,
                    'header': message.header,
                    'ciphertext': message.ciphertext,
                    'sent_at': message.sent_at.isoformat() if message.sent_at else None
                }
                for message in queued
            ]
            if queued:
                await session.execute(
                    delete(QueuedMessage).where(QueuedMessage.id.in_([m.id for m in queued]))
                )
                await session.commit()
            return messages


def bundle_summary(bundle: Dict) -> str:
    """Short log-friendly description of an uploaded bundle"""
    return json.dumps({
        'signing_key': bundle.get('signing_key', '')[:12],
        'one_time_pre_keys': len(bundle.get('one_time_pre_keys', []))
    })
