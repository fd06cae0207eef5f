from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Callable, Protocol

from lexybrain.core.errors import CostCapReached


logger = logging.getLogger(__name__)


class SpendSource(Protocol):
    async def fresh_cost_since(self, since: datetime) -> int:
        ...


class CostCapGuard:
    def __init__(
        self,
        source: SpendSource,
        *,
        cap_cents: int | None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._source = source
        self._cap_cents = cap_cents
        self._time_provider = time_provider or _utc_now

    @property
    def enabled(self) -> bool:
        return self._cap_cents is not None and self._cap_cents > 0

    async def is_reached(self) -> bool:
        # Compare today's fresh spend against the cap; read failures fail open.
        if not self.enabled:
            return False
        since = day_start(self._time_provider())
        try:
            spent = await self._source.fresh_cost_since(since)
        except Exception as exc:  # noqa: BLE001 - the cap fails open on read errors
            logger.warning("cost_cap_check_failed cap_cents=%s", self._cap_cents, exc_info=exc)
            return False
        if spent >= self._cap_cents:
            logger.warning("cost_cap_reached spent_cents=%s cap_cents=%s", spent, self._cap_cents)
            return True
        return False

    async def ensure_available(self) -> None:
        # Raise when the cap has been reached.
        if await self.is_reached():
            raise CostCapReached("Daily AI budget reached. Please try again tomorrow.")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def day_start(now: datetime) -> datetime:
    # Spend resets at 00:00 UTC.
    now = now.astimezone(timezone.utc) if now.tzinfo is not None else now.replace(tzinfo=timezone.utc)
    return datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
