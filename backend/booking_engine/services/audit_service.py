"""
Audit log and daily analytics, kept in Redis.

SIDE CHANNEL SEMANTICS
======================

Writes here happen after the booking transaction has committed and are
best-effort: a disabled, slow or broken Redis is logged and counted, never
raised. Losing an audit line is acceptable; failing a paid booking because
the audit store is down is not.

Layout:
  - "audit:log"           LIST, newest first, trimmed to AUDIT_LOG_MAX_ENTRIES
  - "analytics:{date}"    HASH with total_bookings (seats) and total_revenue
"""

import json
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional, Union

from booking_engine.core.config import get_settings
from booking_engine.core.logging import get_logger
from booking_engine.core.metrics import record_side_effect_failure
from booking_engine.infrastructure.redis_client import get_redis

logger = get_logger(__name__)

AUDIT_LOG_KEY = "audit:log"


def _analytics_key(day: date) -> str:
    return f"analytics:{day.isoformat()}"


async def log_action(action: str, user_id: Optional[int], details: str) -> None:
    client = await get_redis()
    if not client:
        return

    entry = json.dumps(
        {
            "action": action,
            "user_id": user_id,
            "details": details,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )
    try:
        await client.lpush(AUDIT_LOG_KEY, entry)
        await client.ltrim(AUDIT_LOG_KEY, 0, get_settings().AUDIT_LOG_MAX_ENTRIES - 1)
    except Exception as e:
        record_side_effect_failure("audit")
        logger.error("audit_log_write_failed", action=action, error=str(e))


async def record_booking_analytics(
    seats: int,
    revenue: Union[Decimal, float],
    day: Optional[date] = None,
) -> None:
    client = await get_redis()
    if not client:
        return

    key = _analytics_key(day or datetime.now(timezone.utc).date())
    try:
        await client.hincrby(key, "total_bookings", seats)
        await client.hincrbyfloat(key, "total_revenue", float(revenue))
    except Exception as e:
        record_side_effect_failure("analytics")
        logger.error("analytics_write_failed", key=key, error=str(e))
