"""Points ledger repository.

Provides atomic balance mutations for the per-user points ledger. Every mutation
is a single conditional statement so concurrent submissions for the same user
serialize on the ``user_points`` row instead of racing a read-then-write.
"""

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from genqueue.core.timezone import utcnow
from genqueue.models.points import LedgerEntryKind, PointsLedgerEntry, UserPoints


class DuplicateReservation(Exception):
    """Raised when a job id already holds a reservation."""

    pass


class PointsRepository:
    """Repository for UserPoints balances and their ledger entries.

    Rows are created lazily with balance 0 on first reserve/refund.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_balance(self, user_id: int) -> int:
        """Return the user's current balance (0 if the user has no ledger row)."""
        result = await self.session.execute(
            select(UserPoints.balance).where(
                UserPoints.user_id == user_id  # type: ignore[arg-type]
            )
        )
        balance = result.scalar_one_or_none()
        return balance if balance is not None else 0

    async def has_enough(self, user_id: int, amount: int) -> bool:
        """True iff current balance >= amount. Advisory only; ``reserve`` is authoritative."""
        return await self.get_balance(user_id) >= amount

    async def _ensure_account(self, user_id: int) -> None:
        stmt = (
            insert(UserPoints)
            .values(user_id=user_id, balance=0, created_at=utcnow(), updated_at=utcnow())
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        await self.session.execute(stmt)

    async def reserve(self, user_id: int, amount: int, job_id: UUID) -> int | None:
        """Atomically debit ``amount`` for ``job_id``.

        Query explanation:
        - INSERT ... ON CONFLICT DO NOTHING: lazily create the balance row
        - UPDATE ... WHERE balance >= :amount RETURNING balance: conditional debit,
          no row returned means insufficient funds and nothing was changed
        - INSERT ledger entry (job_id, 'reserve'): audit trail, unique per job

        Args:
            user_id: Owner of the balance
            amount: Points to debit (non-negative)
            job_id: Job the reservation belongs to

        Returns:
            New balance, or None if the balance could not cover ``amount``

        Raises:
            ValueError: If amount is negative
            DuplicateReservation: If ``job_id`` already has a reservation (caller must
                roll back the surrounding transaction)
        """
        if amount < 0:
            raise ValueError("amount must be non-negative")

        await self._ensure_account(user_id)

        result = await self.session.execute(
            update(UserPoints)
            .where(UserPoints.user_id == user_id)  # type: ignore[arg-type]
            .where(UserPoints.balance >= amount)  # type: ignore[arg-type]
            .values(balance=UserPoints.balance - amount, updated_at=utcnow())
            .returning(UserPoints.balance)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            return None

        inserted = await self._record_entry(job_id, user_id, LedgerEntryKind.RESERVE, amount)
        if not inserted:
            raise DuplicateReservation(f"Job {job_id} already holds a reservation")

        await self.session.flush()
        return new_balance

    async def refund(self, user_id: int, amount: int) -> int:
        """Atomically credit ``amount`` to the user. Always succeeds.

        Idempotency is the caller's responsibility; use ``refund_for_job`` for
        job settlement.

        Returns:
            New balance
        """
        if amount < 0:
            raise ValueError("amount must be non-negative")

        await self._ensure_account(user_id)

        result = await self.session.execute(
            update(UserPoints)
            .where(UserPoints.user_id == user_id)  # type: ignore[arg-type]
            .values(balance=UserPoints.balance + amount, updated_at=utcnow())
            .returning(UserPoints.balance)
        )
        new_balance = result.scalar_one()
        await self.session.flush()
        return new_balance

    async def refund_for_job(self, user_id: int, job_id: UUID, amount: int) -> int | None:
        """Credit a job's reservation back at most once.

        The refund ledger entry is inserted first with ON CONFLICT DO NOTHING;
        only the caller that inserted it applies the credit.

        Returns:
            New balance, or None if this job was already refunded
        """
        inserted = await self._record_entry(job_id, user_id, LedgerEntryKind.REFUND, amount)
        if not inserted:
            return None
        return await self.refund(user_id, amount)

    async def get_entries_for_job(self, job_id: UUID) -> list[PointsLedgerEntry]:
        """Ledger entries for a job, oldest first."""
        result = await self.session.execute(
            select(PointsLedgerEntry)
            .where(PointsLedgerEntry.job_id == job_id)  # type: ignore[arg-type]
            .order_by(PointsLedgerEntry.id.asc())  # type: ignore[union-attr]
        )
        return list(result.scalars().all())

    async def _record_entry(
        self, job_id: UUID, user_id: int, kind: LedgerEntryKind, amount: int
    ) -> bool:
        stmt = (
            insert(PointsLedgerEntry)
            .values(job_id=job_id, user_id=user_id, kind=kind, amount=amount, created_at=utcnow())
            .on_conflict_do_nothing(constraint="uq_points_ledger_job_kind")
            .returning(PointsLedgerEntry.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None
