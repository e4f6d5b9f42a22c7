"""
Admin operations on the seat ledger.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.core.logging import get_logger
from booking_engine.core.security import CurrentUser, require_admin
from booking_engine.db.session import get_db
from booking_engine.schemas.payment import SweepResponse
from booking_engine.services.seat_lock import release_expired_locks

logger = get_logger(__name__)
router = APIRouter(prefix="/admin", tags=["Admin"])


@router.post("/seat-locks/release", response_model=SweepResponse)
async def release_seat_locks(
    admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Run one unscoped expiry sweep now instead of waiting for the timer."""
    result = await release_expired_locks(db, trigger="admin")
    await db.commit()
    logger.info("admin_sweep_completed", admin_id=admin.id, **vars(result))
    return SweepResponse(
        released_bookings=result.released_bookings,
        released_seats=result.released_seats,
    )
