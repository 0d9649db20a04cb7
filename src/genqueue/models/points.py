"""Points ledger entities - per-user balance and the reserve/refund audit trail."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy import CheckConstraint, UniqueConstraint
from sqlmodel import Field, SQLModel

from genqueue.core.timezone import utcnow


class UserPoints(SQLModel, table=True):
    """UserPoints holds one user's non-negative integer balance."""

    __tablename__ = "user_points"  # type: ignore[assignment]
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_user_points_balance_non_negative"),)

    user_id: int = Field(primary_key=True)
    balance: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class LedgerEntryKind(str, Enum):
    """Kind of balance movement recorded for a job."""

    RESERVE = "reserve"
    REFUND = "refund"


class PointsLedgerEntry(SQLModel, table=True):
    """One balance movement keyed by job id.

    The (job_id, kind) uniqueness makes refunds idempotent: a second refund for
    the same job conflicts and is skipped.
    """

    __tablename__ = "points_ledger_entries"  # type: ignore[assignment]
    __table_args__ = (UniqueConstraint("job_id", "kind", name="uq_points_ledger_job_kind"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: UUID = Field(index=True)
    user_id: int = Field(index=True)
    kind: LedgerEntryKind = Field()
    amount: int = Field(ge=0)
    created_at: datetime = Field(default_factory=utcnow)
