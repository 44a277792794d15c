"""
Balance Ledger - owns account balances and their append-only history.

Every mutation is one database transaction: a conditional UPDATE that only
applies when the balance covers it, followed by one appended ledger entry.
Cached reads are served for a short TTL and refreshed on every local write.
"""

import asyncio
import uuid
from typing import Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from credit_batcher.config import BatcherConfig, get_config
from credit_batcher.errors import (
    AccountNotFoundError,
    InsufficientCreditsError,
    InvalidAmountError,
    LedgerError,
)
from credit_batcher.ledger.cache import BalanceCache
from credit_batcher.ledger.database import AccountRecord, Database, LedgerEntryRecord
from credit_batcher.ledger.entry import (
    Account,
    BalanceValidation,
    LedgerEntry,
    LedgerEntryKind,
    TransactionResult,
)

logger = structlog.get_logger(__name__)


class BalanceLedger:
    """
    Atomic credit ledger.

    Usage:
        ```python
        ledger = BalanceLedger(database)
        await ledger.open_account("acct-1", initial_balance=100)
        validation = await ledger.validate("acct-1", 30)
        result = await ledger.deduct("acct-1", 30, "Batch of 10 items")
        ```
    """

    def __init__(
        self,
        database: Database,
        cache: Optional[BalanceCache] = None,
        config: Optional[BatcherConfig] = None,
    ):
        """
        Initialize the ledger.

        Args:
            database: Connected database holding accounts and entries
            cache: Balance cache (created from config TTL if not provided)
            config: Batcher configuration
        """
        self.config = config or get_config()
        self.database = database
        self.cache = cache or BalanceCache(ttl_seconds=self.config.balance_cache_ttl_seconds)

    # Reads

    async def get_balance(self, account_id: str, force_refresh: bool = False) -> int:
        """
        Get the account balance, from cache when fresh.

        Args:
            account_id: Account to read
            force_refresh: Bypass the cache and reload from the store

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        if not force_refresh:
            cached = self.cache.get(account_id)
            if cached is not None:
                return cached

        try:
            async with self.database.session() as session:
                balance = await session.scalar(
                    select(AccountRecord.balance).where(AccountRecord.account_id == account_id)
                )
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to fetch balance: {e}") from e

        if balance is None:
            raise AccountNotFoundError(account_id)

        self.cache.set(account_id, balance)
        return balance

    async def get_account(self, account_id: str) -> Account:
        """Load an account record."""
        try:
            async with self.database.session() as session:
                record = await session.get(AccountRecord, account_id)
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to fetch account: {e}") from e

        if record is None:
            raise AccountNotFoundError(account_id)
        return record.to_account()

    async def validate(self, account_id: str, amount: int) -> BalanceValidation:
        """
        Check whether the account can cover ``amount``.

        Read-only; a shortfall is reported, not raised.
        """
        available = await self.get_balance(account_id)
        return BalanceValidation.check(available=available, required=amount)

    async def can_afford(self, account_id: str, amount: int) -> bool:
        validation = await self.validate(account_id, amount)
        return validation.is_valid

    async def validate_many(self, requirements: Dict[str, int]) -> Dict[str, BalanceValidation]:
        """
        Check several accounts at once.

        Args:
            requirements: Required credits keyed by account id

        Returns:
            One validation per account, keyed by account id

        Raises:
            AccountNotFoundError: If any of the accounts does not exist
        """
        validations = await asyncio.gather(
            *(self.validate(account_id, amount) for account_id, amount in requirements.items())
        )
        return dict(zip(requirements, validations))

    async def get_history(self, account_id: str, limit: int = 50) -> List[LedgerEntry]:
        """Most recent ledger entries for an account, newest first."""
        try:
            async with self.database.session() as session:
                result = await session.execute(
                    select(LedgerEntryRecord)
                    .where(LedgerEntryRecord.account_id == account_id)
                    .order_by(LedgerEntryRecord.sequence.desc())
                    .limit(limit)
                )
                records = result.scalars().all()
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to fetch transaction history: {e}") from e

        return [r.to_entry() for r in records]

    async def verify_balance(self, account_id: str) -> bool:
        """Check that the stored balance equals the sum of the account's entries."""
        try:
            async with self.database.session() as session:
                balance = await session.scalar(
                    select(AccountRecord.balance).where(AccountRecord.account_id == account_id)
                )
                total = await session.scalar(
                    select(func.coalesce(func.sum(LedgerEntryRecord.amount), 0))
                    .where(LedgerEntryRecord.account_id == account_id)
                )
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to verify balance: {e}") from e

        if balance is None:
            raise AccountNotFoundError(account_id)

        consistent = balance == total
        if not consistent:
            logger.error(
                "ledger_balance_mismatch",
                account_id=account_id,
                balance=balance,
                ledger_total=total,
            )
        return consistent

    # Mutations

    async def open_account(self, account_id: str, initial_balance: int = 0) -> Account:
        """
        Create an account.

        A positive opening balance is written as an admin adjustment so the
        balance always equals the sum of the account's entries.
        """
        if initial_balance < 0:
            raise InvalidAmountError(initial_balance)

        try:
            async with self.database.session() as session:
                async with session.begin():
                    session.add(AccountRecord(account_id=account_id, balance=0))
        except IntegrityError as e:
            raise LedgerError(f"Account {account_id} already exists") from e
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to open account: {e}") from e

        logger.info("account_opened", account_id=account_id)

        if initial_balance > 0:
            await self.add(
                account_id,
                initial_balance,
                description="Opening balance",
                kind=LedgerEntryKind.ADMIN_ADJUSTMENT,
            )
        else:
            self.cache.set(account_id, 0)

        return await self.get_account(account_id)

    async def deduct(
        self,
        account_id: str,
        amount: int,
        description: Optional[str] = None,
        kind: LedgerEntryKind = LedgerEntryKind.CONSUMPTION,
    ) -> TransactionResult:
        """
        Atomically deduct credits.

        Raises:
            InvalidAmountError: If amount is not positive
            AccountNotFoundError: If the account does not exist
            InsufficientCreditsError: If the freshly read balance is too low
        """
        return await self._apply(
            account_id,
            amount,
            description or f"Deducted {amount} credit(s)",
            kind,
            debit=True,
        )

    async def add(
        self,
        account_id: str,
        amount: int,
        description: Optional[str] = None,
        kind: LedgerEntryKind = LedgerEntryKind.ADMIN_ADJUSTMENT,
    ) -> TransactionResult:
        """
        Atomically add credits.

        Raises:
            InvalidAmountError: If amount is not positive
            AccountNotFoundError: If the account does not exist
        """
        return await self._apply(
            account_id,
            amount,
            description or f"Added {amount} credit(s)",
            kind,
            debit=False,
        )

    async def _apply(
        self,
        account_id: str,
        amount: int,
        description: str,
        kind: LedgerEntryKind,
        debit: bool,
    ) -> TransactionResult:
        """Write a balance change and its ledger entry as one transaction."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(amount)

        delta = -amount if debit else amount

        entry_id = str(uuid.uuid4())

        # The balance check is part of the UPDATE. It must stay the first
        # statement of the transaction so SQLite takes its write lock before
        # any read.
        statement = (
            update(AccountRecord)
            .where(AccountRecord.account_id == account_id)
            .values(balance=AccountRecord.balance + delta)
            .execution_options(synchronize_session=False)
        )
        if debit:
            statement = statement.where(AccountRecord.balance >= amount)

        try:
            async with self.database.session() as session:
                async with session.begin():
                    result = await session.execute(statement)
                    new_balance = await session.scalar(
                        select(AccountRecord.balance).where(AccountRecord.account_id == account_id)
                    )

                    if result.rowcount == 0:
                        if new_balance is None:
                            raise AccountNotFoundError(account_id)
                        raise InsufficientCreditsError(amount, new_balance)

                    session.add(LedgerEntryRecord(
                        entry_id=entry_id,
                        account_id=account_id,
                        amount=delta,
                        kind=kind.value,
                        description=description,
                    ))
        except LedgerError:
            raise
        except SQLAlchemyError as e:
            logger.error(
                "ledger_write_failed",
                account_id=account_id,
                amount=delta,
                error=str(e),
            )
            raise LedgerError(f"Credit transaction failed: {e}") from e

        self.cache.set(account_id, new_balance)

        logger.info(
            "credits_deducted" if delta < 0 else "credits_added",
            account_id=account_id,
            amount=amount,
            kind=kind.value,
            new_balance=new_balance,
            transaction_id=entry_id,
        )

        return TransactionResult(new_balance=new_balance, transaction_id=entry_id)

    def clear_cache(self, account_id: Optional[str] = None) -> None:
        """Forget cached balances, e.g. after changes made by another process."""
        self.cache.invalidate(account_id)
