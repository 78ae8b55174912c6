"""
Verification scheduler: runs :class:`verifier.cycle.RoleVerifier` on a
fixed interval and on demand.

Timer ticks and manual triggers feed the same loop, so two cycles never
run at the same time.  Triggers that arrive while a cycle is running are
coalesced into a single follow-up run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from shared.audit import AuditLogger
from verifier.cycle import RoleVerifier, VerificationStats

logger = logging.getLogger("verifier.scheduler")


class VerificationScheduler:
    """Single-loop driver for verification cycles.

    Args:
        verifier: The cycle implementation.
        interval_seconds: Time between scheduled cycles.
        run_on_startup: Run a cycle as soon as :meth:`run` starts.
        audit: Optional audit trail for failed cycles.
    """

    def __init__(
        self,
        verifier: RoleVerifier,
        interval_seconds: float,
        run_on_startup: bool = False,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._verifier = verifier
        self._interval = interval_seconds
        self._run_on_startup = run_on_startup
        self._audit = audit
        self._triggers: asyncio.Queue[bool] = asyncio.Queue()
        self._stopping = False
        self.cycles_run = 0
        self.last_stats: Optional[VerificationStats] = None

    def trigger(self) -> None:
        """Request an out-of-schedule cycle without waiting for it."""
        if self._stopping:
            logger.warning("Scheduler stopping; ignoring manual trigger")
            return
        if self._triggers.empty():
            self._triggers.put_nowait(True)
        else:
            logger.debug("Cycle already requested; coalescing trigger")

    def stop(self) -> None:
        self._stopping = True
        self._triggers.put_nowait(False)

    async def _wait_for_next(self, deadline: float) -> bool:
        """Block until the interval elapses or a trigger arrives.

        Returns ``False`` when the scheduler was stopped.
        """
        remaining = max(0.0, deadline - time.monotonic())
        try:
            run = await asyncio.wait_for(self._triggers.get(), timeout=remaining)
        except asyncio.TimeoutError:
            logger.info("Verification interval elapsed")
            return True
        if run:
            logger.info("Manual verification trigger received")
        return run

    async def run_once(self) -> Optional[VerificationStats]:
        """Run one cycle; failures are logged and audited, never raised."""
        try:
            stats = await self._verifier.run_cycle()
        except Exception as exc:
            logger.exception("Verification cycle failed")
            if self._audit is not None:
                self._audit.record(
                    "verifier",
                    "verification_cycle",
                    {"error": f"{type(exc).__name__}: {exc}"},
                    success=False,
                )
            return None
        finally:
            self.cycles_run += 1
        self.last_stats = stats
        return stats

    async def run(self) -> None:
        """Loop until :meth:`stop` is called."""
        logger.info(
            "Verification scheduler started (interval=%ss, run_on_startup=%s)",
            self._interval,
            self._run_on_startup,
        )
        if self._run_on_startup and not self._stopping:
            await self.run_once()

        deadline = time.monotonic() + self._interval
        while not self._stopping:
            if not await self._wait_for_next(deadline):
                break
            if self._stopping:
                break
            await self.run_once()
            deadline = time.monotonic() + self._interval

        logger.info("Verification scheduler stopped after %d cycle(s)", self.cycles_run)
