"""
Database module for the balance ledger.

Uses SQLAlchemy for async database operations with SQLite by default.
"""

from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    event,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from credit_batcher.config import BatcherConfig, get_config
from credit_batcher.errors import LedgerImmutabilityError
from credit_batcher.ledger.entry import Account, LedgerEntry, LedgerEntryKind

logger = structlog.get_logger(__name__)

Base = declarative_base()


class AccountRecord(Base):
    """Database model for accounts."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
    )

    account_id = Column(String(100), primary_key=True)
    balance = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_account(self) -> Account:
        return Account(
            account_id=self.account_id,
            balance=self.balance,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class LedgerEntryRecord(Base):
    """Database model for ledger entries. Rows are never updated or deleted."""

    __tablename__ = "ledger_entries"

    sequence = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(String(36), nullable=False, unique=True)
    account_id = Column(
        String(100),
        ForeignKey("accounts.account_id"),
        nullable=False,
        index=True,
    )
    amount = Column(Integer, nullable=False)
    kind = Column(String(32), nullable=False)
    description = Column(Text, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    def to_entry(self) -> LedgerEntry:
        return LedgerEntry(
            entry_id=self.entry_id,
            account_id=self.account_id,
            amount=self.amount,
            kind=LedgerEntryKind(self.kind),
            description=self.description,
            created_at=self.created_at,
        )


@event.listens_for(LedgerEntryRecord, "before_update")
def _reject_entry_update(mapper, connection, target):
    raise LedgerImmutabilityError(
        f"Ledger entry {target.entry_id} is immutable and cannot be updated"
    )


@event.listens_for(LedgerEntryRecord, "before_delete")
def _reject_entry_delete(mapper, connection, target):
    raise LedgerImmutabilityError(
        f"Ledger entry {target.entry_id} is immutable and cannot be deleted"
    )


class Database:
    """
    Async database interface for the balance ledger.

    Owns the engine and session factory; the ledger opens its own
    transactions through ``session()``.
    """

    def __init__(self, config: Optional[BatcherConfig] = None):
        """
        Initialize database connection settings.

        Args:
            config: Batcher configuration
        """
        self.config = config or get_config()
        self._engine = None
        self._session_factory = None

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    async def connect(self) -> None:
        """Initialize database connection and create tables."""
        if self._engine is not None:
            return

        self._engine = create_async_engine(
            self.config.database_url,
            echo=False,
        )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        # Create tables
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("database_connected", url=self.config.database_url.split("///")[0])

    async def disconnect(self) -> None:
        """Close database connection."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("database_disconnected")

    def session(self) -> AsyncSession:
        """Get a new database session."""
        if not self._session_factory:
            raise RuntimeError("Database not connected")
        return self._session_factory()


async def init_database(config: Optional[BatcherConfig] = None) -> Database:
    """
    Initialize and connect to the database.

    Args:
        config: Batcher configuration

    Returns:
        Connected Database instance
    """
    db = Database(config)
    await db.connect()
    return db
