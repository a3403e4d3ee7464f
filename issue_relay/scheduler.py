"""
Re-runs a monitoring session's poll cycle on a fixed delay until it terminates.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Hashable, List, Optional

from .models import MalformedState, MonitoringState
from .progress import Continue, CycleOutcome, Terminate, TerminationReason


log = logging.getLogger("red.issue_relay.scheduler")

StepFn = Callable[[MonitoringState], Awaitable[CycleOutcome]]
ContinueHook = Callable[[MonitoringState], Awaitable[None]]
TerminateHook = Callable[[MonitoringState, Terminate], Awaitable[None]]


class PollScheduler:
    """
    One asyncio task per session key. A key with a live task cannot be started again,
    so a session never has two cycles in flight.
    """

    def __init__(self) -> None:
        self._tasks: Dict[Hashable, asyncio.Task] = {}
        self._states: Dict[Hashable, MonitoringState] = {}

    def is_running(self, key: Hashable) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def active(self) -> Dict[Hashable, MonitoringState]:
        return {key: state for key, state in self._states.items() if self.is_running(key)}

    def start(
        self,
        key: Hashable,
        state: MonitoringState,
        step: StepFn,
        *,
        delay: float,
        interval: float,
        on_continue: Optional[ContinueHook] = None,
        on_terminate: Optional[TerminateHook] = None,
    ) -> bool:
        if self.is_running(key):
            log.debug("Session %s already has a running poll task", key)
            return False
        self._states[key] = state
        task = asyncio.create_task(
            self._run(key, state, step, delay, interval, on_continue, on_terminate),
            name=f"issue_relay:{key}",
        )
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        log.info("Monitoring started for session %s (first check in %ss)", key, delay)
        return True

    def _forget(self, key: Hashable, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            self._tasks.pop(key, None)
            self._states.pop(key, None)

    async def _run(
        self,
        key: Hashable,
        state: MonitoringState,
        step: StepFn,
        delay: float,
        interval: float,
        on_continue: Optional[ContinueHook],
        on_terminate: Optional[TerminateHook],
    ) -> None:
        while True:
            await asyncio.sleep(delay)
            delay = interval
            try:
                outcome = await step(state)
            except MalformedState:
                log.exception("Aborting session %s: malformed monitoring state", key)
                outcome = Terminate(TerminationReason.STOPPED, "malformed state")
            except Exception:
                log.exception("Progress check crashed for session %s, stopping it", key)
                outcome = Terminate(TerminationReason.STOPPED, "unexpected error")

            if isinstance(outcome, Continue):
                state = outcome.state
                self._states[key] = state
                if on_continue is not None:
                    try:
                        await on_continue(state)
                    except Exception:
                        log.exception("Failed to persist state for session %s", key)
                continue

            log.info("Monitoring stopped for session %s: %s %s", key, outcome.reason.value, outcome.detail)
            if on_terminate is not None:
                try:
                    await on_terminate(state, outcome)
                except Exception:
                    log.exception("Terminate hook failed for session %s", key)
            return

    def stop(self, key: Hashable) -> Optional[MonitoringState]:
        """Cancel a session's task; returns its last known state."""
        state = self._states.get(key)
        task = self._tasks.get(key)
        if task is None or task.done():
            return None
        task.cancel()
        return state

    async def shutdown(self) -> None:
        tasks: List[asyncio.Task] = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._states.clear()
