"""Cached health tracking for the remote backend."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from hybrid_storage.lib.hooks import REMOTE_AVAILABILITY_CHANGED, HookRegistry, hooks

logger = logging.getLogger(__name__)


class AvailabilityState(str, Enum):
    UNKNOWN = "unknown"
    CHECKING = "checking"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


@dataclass
class AvailabilityRecord:
    is_available: bool = False
    last_checked_at: float | None = None
    last_checked_wall: datetime | None = None


class AvailabilityMonitor:
    """Serve a cached remote availability flag, re-probing once it goes stale.

    The cached value starts as unavailable. A probe runs when no check has
    happened within ``check_interval`` seconds; a probe that raises counts
    as unavailable. Whenever a probe flips the cached value the
    ``remote_availability_changed`` action fires.
    """

    def __init__(
        self,
        probe: Callable[[], Awaitable[bool]] | None,
        check_interval: float = 60.0,
        *,
        hook_registry: HookRegistry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._probe = probe
        self.check_interval = check_interval
        self._hooks = hook_registry if hook_registry is not None else hooks
        self._clock = clock
        self._record = AvailabilityRecord()
        self._state = AvailabilityState.UNKNOWN

    @property
    def record(self) -> AvailabilityRecord:
        return self._record

    @property
    def state(self) -> AvailabilityState:
        return self._state

    @property
    def cached(self) -> bool:
        """Last known availability, without probing."""
        return self._record.is_available

    def is_fresh(self) -> bool:
        checked = self._record.last_checked_at
        return checked is not None and self._clock() - checked < self.check_interval

    async def is_available(self) -> bool:
        if self.is_fresh():
            return self._record.is_available
        return await self._check()

    async def force_refresh(self) -> bool:
        self._record.last_checked_at = None
        return await self._check()

    async def _check(self) -> bool:
        previous = self._record.is_available
        self._state = AvailabilityState.CHECKING
        started = self._clock()

        if self._probe is None:
            available = False
        else:
            try:
                available = bool(await self._probe())
            except Exception as exc:
                logger.warning("Remote availability probe raised: %s", exc)
                available = False

        now = self._clock()
        response_time = now - started
        self._record = AvailabilityRecord(
            is_available=available,
            last_checked_at=now,
            last_checked_wall=datetime.now(UTC),
        )
        self._state = AvailabilityState.AVAILABLE if available else AvailabilityState.UNAVAILABLE
        logger.debug(
            "Remote availability check: %s (%.3fs, previously %s)",
            available,
            response_time,
            previous,
        )

        if available != previous:
            log = logger.info if available else logger.warning
            log("Remote storage became %s", "available" if available else "unavailable")
            await self._notify(available, previous, response_time)

        return available

    async def _notify(self, available: bool, previous: bool, response_time: float) -> None:
        try:
            await self._hooks.do_action(
                REMOTE_AVAILABILITY_CHANGED,
                is_available=available,
                previous=previous,
                response_time=response_time,
            )
        except Exception:
            logger.exception("Availability change handler failed")
