"""
Auto-approval counter — per tenant, per calendar day.

Counts are keyed by ``(tenant_id, date)`` so a new day starts from zero
without a reset. ``try_acquire`` is a single increment-and-compare step.
"""

import asyncio
from datetime import date, datetime
from typing import Callable, Dict, Optional, Tuple


def _utc_today() -> date:
    return datetime.utcnow().date()


class AutoApprovalCounter:
    """
    In-process counter store.
    Swap for a shared store (Redis INCR with a cap check) to run several
    orchestrator processes against one budget.
    """

    def __init__(self, today: Callable[[], date] = _utc_today):
        self._today = today
        self._counts: Dict[Tuple[str, date], int] = {}
        self._lock = asyncio.Lock()

    async def try_acquire(self, tenant_id: str, cap: int) -> bool:
        """Take one auto-approval from today's budget if any is left."""
        async with self._lock:
            day = self._today()
            key = (tenant_id, day)
            used = self._counts.get(key, 0)
            if used >= cap:
                return False
            self._counts[key] = used + 1
            self._prune(day)
            return True

    async def release(self, tenant_id: str) -> None:
        """Return one unit taken by ``try_acquire`` when the approval did not happen."""
        async with self._lock:
            key = (tenant_id, self._today())
            if self._counts.get(key, 0) > 0:
                self._counts[key] -= 1

    async def get(self, tenant_id: str, day: Optional[date] = None) -> int:
        return self._counts.get((tenant_id, day or self._today()), 0)

    async def reset(self, tenant_id: Optional[str] = None) -> None:
        """Clear counts, for all tenants or one. Called by the daily scheduler."""
        async with self._lock:
            if tenant_id is None:
                self._counts.clear()
            else:
                for key in [k for k in self._counts if k[0] == tenant_id]:
                    del self._counts[key]

    def _prune(self, today: date) -> None:
        for key in [k for k in self._counts if k[1] < today]:
            del self._counts[key]
