"""Trailing-edge debounce for insight reconcile passes.

Ingestion calls ``trigger(reason)`` after every import batch. Each call
cancels the armed timer (if it has not fired yet) and arms a new one, so a
burst of triggers collapses into a single run that starts one quiet period
after the last trigger. Runs execute on the timer threads, one at a time.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_SCHEDULED = "scheduled"
STATE_RUNNING = "running"

DEFAULT_QUIET_PERIOD_SECONDS = float(os.getenv("INSIGHT_DEBOUNCE_SECONDS", "1.5"))


class CoalescingScheduler:
    def __init__(
        self,
        run: Callable[[], object],
        *,
        quiet_period_seconds: float = DEFAULT_QUIET_PERIOD_SECONDS,
        name: str = "insight-refresh",
    ) -> None:
        if quiet_period_seconds < 0:
            raise ValueError("quiet_period_seconds must be >= 0")
        self._run = run
        self._quiet_period = float(quiet_period_seconds)
        self._name = name
        # guards every mutable field below except the run lock
        self._lock = threading.Lock()
        # held for the length of a run so runs never overlap
        self._run_lock = threading.Lock()
        self._generation = 0
        self._timer: threading.Timer | None = None
        # generation whose timer fired but which has not started running yet
        self._pending: int | None = None
        self._running = False
        self._closed = False
        self._runs_completed = 0

    @property
    def quiet_period_seconds(self) -> float:
        return self._quiet_period

    @property
    def state(self) -> str:
        with self._lock:
            if self._running:
                return STATE_RUNNING
            if self._timer is not None or self._pending is not None:
                return STATE_SCHEDULED
            return STATE_IDLE

    @property
    def runs_completed(self) -> int:
        with self._lock:
            return self._runs_completed

    def trigger(self, reason: str) -> None:
        """Request a run after the quiet period. Never blocks, never raises."""
        try:
            with self._lock:
                if self._closed:
                    logger.debug("Ignoring trigger after shutdown", extra={"reason": reason})
                    return
                self._generation += 1
                generation = self._generation
                if self._timer is not None:
                    self._timer.cancel()
                timer = threading.Timer(self._quiet_period, self._fire, args=(generation, reason))
                timer.daemon = True
                timer.name = f"{self._name}-{generation}"
                self._timer = timer
                timer.start()
        except Exception:
            logger.exception("Failed to arm insight refresh", extra={"reason": reason})
            return
        logger.debug(
            "Insight refresh scheduled",
            extra={"reason": reason, "generation": generation, "quiet_period_s": self._quiet_period},
        )

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and not self._closed

    def _fire(self, generation: int, reason: str) -> None:
        with self._lock:
            if not self._is_current(generation):
                logger.debug("Superseded insight refresh skipped", extra={"generation": generation})
                return
            self._timer = None
            self._pending = generation

        with self._run_lock:
            # a newer trigger may have landed while a previous run held the lock;
            # the newest generation always gets its own run
            with self._lock:
                if self._pending == generation:
                    self._pending = None
                if not self._is_current(generation):
                    logger.debug("Superseded insight refresh skipped", extra={"generation": generation})
                    return
                self._running = True

            started = time.monotonic()
            try:
                self._run()
            except Exception:
                logger.exception(
                    "Insight refresh failed",
                    extra={"reason": reason, "generation": generation},
                )
            finally:
                with self._lock:
                    self._running = False
                    self._runs_completed += 1
            logger.info(
                "Insight refresh finished",
                extra={
                    "reason": reason,
                    "generation": generation,
                    "duration_ms": round((time.monotonic() - started) * 1000.0, 1),
                },
            )

    def shutdown(self, *, wait: bool = True, timeout: float | None = None) -> bool:
        """Cancel any armed timer and refuse new triggers.

        An in-flight run is allowed to finish; with ``wait`` the call blocks
        until it does (or ``timeout`` expires) and returns whether it did.
        """
        with self._lock:
            self._closed = True
            self._pending = None
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if not wait:
            return True
        acquired = self._run_lock.acquire(timeout=-1 if timeout is None else timeout)
        if acquired:
            self._run_lock.release()
        return acquired
