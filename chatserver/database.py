"""
Database models and operations for the chat server.

Uses SQLAlchemy with SQLite for storing user accounts and ciphertext messages.
Key material and message contents are opaque text produced by clients; the
server never sees a password or a plaintext.
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """User account model"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    username = Column(String(50), unique=True, index=True, nullable=False)
    display_name = Column(String(100), nullable=False)
    public_key = Column(Text, nullable=False)  # base64 SPKI
    encrypted_private_key = Column(Text, nullable=False)  # base64 salt + nonce + ciphertext
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    def to_dict(self, include_keys: bool = True) -> dict:
        data = {
            'id': self.id,
            'username': self.username,
            'display_name': self.display_name,
        }
        if include_keys:
            data['public_key'] = self.public_key
            data['encrypted_private_key'] = self.encrypted_private_key
        return data


class Message(Base):
    """A ciphertext addressed to one recipient"""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sender_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    recipient_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    encrypted_content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'sender_id': self.sender_id,
            'recipient_id': self.recipient_id,
            'encrypted_content': self.encrypted_content,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./chat.db"):
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

    async def create_user(self, username: str, display_name: str, public_key: str,
                          encrypted_private_key: str) -> Optional[User]:
        """
        Create a new user account.

        Returns:
            Created User object or None if username exists
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            if result.scalar_one_or_none():
                return None

            user = User(
                username=username,
                display_name=display_name,
                public_key=public_key,
                encrypted_private_key=encrypted_private_key,
            )
            session.add(user)
            try:
                await session.commit()
            except IntegrityError:
                # Lost a race with a concurrent registration
                await session.rollback()
                return None
            await session.refresh(user)
            return user

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self.async_session() as session:
            return await session.get(User, user_id)

    async def get_user_by_username(self, username: str) -> Optional[User]:
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def search_users(self, query: str = "", exclude_id: Optional[str] = None) -> List[User]:
        """
        List users ordered by username.

        Args:
            query: Case-insensitive substring of username or display name
            exclude_id: User to leave out, usually the caller
        """
        statement = select(User).order_by(User.username)
        if exclude_id:
            statement = statement.where(User.id != exclude_id)
        if query:
            pattern = f"%{query.lower()}%"
            statement = statement.where(or_(
                func.lower(User.username).like(pattern),
                func.lower(User.display_name).like(pattern),
            ))
        async with self.async_session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def insert_message(self, sender_id: str, recipient_id: str,
                             encrypted_content: str) -> Message:
        async with self.async_session() as session:
            message = Message(
                sender_id=sender_id,
                recipient_id=recipient_id,
                encrypted_content=encrypted_content,
            )
            session.add(message)
            await session.commit()
            await session.refresh(message)
            return message

    async def list_messages(self, user_a: str, user_b: str) -> List[Message]:
        """Messages exchanged between two users, oldest first"""
        statement = (
            select(Message)
            .where(or_(
                and_(Message.sender_id == user_a, Message.recipient_id == user_b),
                and_(Message.sender_id == user_b, Message.recipient_id == user_a),
            ))
            .order_by(Message.created_at, Message.id)
        )
        async with self.async_session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())
