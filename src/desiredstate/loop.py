"""Control loop: one reconciliation pass per tick, never two at once.

Ticks are aligned to a fixed interval from the loop's start. When a pass
overruns, the ticks it swallowed are skipped rather than queued: the next
pass starts on the next tick boundary after the overrun.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import Callable, Optional

from .errors import ReconcileCancelled
from .models import ReconcileReport
from .reconciler import Reconciler

logger = logging.getLogger("desiredstate.loop")

ReportHook = Callable[[ReconcileReport], None]
ErrorHook = Callable[[Exception], None]


class ControlLoop:
    """Schedules reconciler passes on a fixed interval.

    Args:
        reconciler: The reconciler to drive.
        interval: Seconds between ticks.
        stop_event: Shutdown signal; shared with the reconciler so an
            in-flight pass can abort early.
        on_report: Called with the report of every completed pass.
        on_error: Called with the exception of every failed pass.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        interval: float = 3.0,
        stop_event: Optional[threading.Event] = None,
        on_report: Optional[ReportHook] = None,
        on_error: Optional[ErrorHook] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.reconciler = reconciler
        self.interval = interval
        self.stop_event = stop_event or reconciler.cancel_event
        self._on_report = on_report
        self._on_error = on_error
        self._clock = clock
        self.passes = 0
        self.skipped_ticks = 0

    def run_once(self) -> Optional[ReconcileReport]:
        """Run exactly one pass; errors are logged, not raised.

        Returns:
            The pass report, or None if the pass failed or was cancelled.
        """
        self.passes += 1
        try:
            report = self.reconciler.reconcile()
        except ReconcileCancelled:
            logger.info("Reconciliation pass cancelled")
            return None
        except Exception as exc:
            logger.error("Reconciliation pass failed: %s", exc)
            if self._on_error:
                self._on_error(exc)
            return None

        if self._on_report:
            self._on_report(report)
        for outcome in report.failed:
            logger.warning(
                "%s: not reconciled this pass (%s: %s)",
                outcome.name, outcome.operation, outcome.error,
            )
        return report

    def _next_deadline(self, origin: float, now: float) -> float:
        """First tick boundary strictly after now."""
        ticks = math.floor((now - origin) / self.interval) + 1
        return origin + ticks * self.interval

    def run_forever(self) -> None:
        """Tick until the stop event is set.

        The first pass runs immediately.
        """
        logger.info("Control loop started (interval %.1fs)", self.interval)
        origin = self._clock()
        deadline = origin
        while not self.stop_event.is_set():
            now = self._clock()
            if now < deadline:
                self.stop_event.wait(timeout=deadline - now)
                continue

            self.run_once()

            after = self._clock()
            next_deadline = self._next_deadline(origin, after)
            missed = int(round((next_deadline - deadline) / self.interval)) - 1
            if missed > 0:
                self.skipped_ticks += missed
                logger.debug("Pass overran, skipping %d tick(s)", missed)
            deadline = next_deadline
        logger.info("Control loop stopped after %d pass(es)", self.passes)
