"""Points balance API endpoint."""

from fastapi import APIRouter
from pydantic import BaseModel

from genqueue.api.dependencies import CurrentUserId, Orchestrator

router = APIRouter(prefix="/api/points", tags=["points"])


class PointsBalanceResponse(BaseModel):
    balance: int


@router.get("", response_model=PointsBalanceResponse)
async def get_points_balance(
    user_id: CurrentUserId,
    orchestrator: Orchestrator,
) -> PointsBalanceResponse:
    """Caller's current points balance (0 for users without a ledger row)."""
    return PointsBalanceResponse(balance=await orchestrator.get_balance(user_id))
