import math
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from wa_gateway.dependencies import Gateway, get_gateway

router = APIRouter(prefix="/debug", tags=["debug"])


def fmt_ms(ms: int) -> str:
    """Render a duration as ``45s``, ``2m 5s`` or ``1h 3m`` (zero parts omitted)."""
    seconds = max(0, math.ceil(ms / 1000))
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if mins else f"{hours}h"


@router.get("/outbox")
async def debug_outbox(gateway: Gateway = Depends(get_gateway)):
    return gateway.outbox.snapshot()


@router.get("/dead-letters")
async def debug_dead_letters(gateway: Gateway = Depends(get_gateway)):
    return gateway.outbox.dead_letter_snapshot()


@router.get("/cooldowns")
async def debug_cooldowns(gateway: Gateway = Depends(get_gateway)):
    now = gateway.sessions.now()
    entries = [
        {
            "key": entry.key,
            "reason": entry.reason,
            "strikes": entry.strike_count,
            "remaining_ms": entry.active_until - now,
            "remaining_pretty": fmt_ms(entry.active_until - now),
            "last_set_at": datetime.fromtimestamp(entry.last_set_at / 1000, tz=timezone.utc).isoformat(),
        }
        for entry in gateway.cooldowns.active(now)
    ]
    return sorted(entries, key=lambda item: item["remaining_ms"], reverse=True)
