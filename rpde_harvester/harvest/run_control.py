"""Shared run state for feed workers.

One RunControl is shared by every worker of a scheduler. Workers call
``checkpoint()`` before each page-level step and wrap the step in ``step()``;
``pause()`` only returns once every in-flight step has finished, so a reader
that pauses the harvest sees snapshots and cursors that belong together.
"""

import asyncio
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator

from rpde_harvester.logging_config import get_logger

logger = get_logger(__name__)


class RunState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


class RunControl:
    """Cooperative stop/pause/resume switch read by all workers."""

    def __init__(self) -> None:
        self._state = RunState.STOPPED
        self._resumed = asyncio.Event()
        self._stopped = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._stopped.set()
        self._active_steps = 0

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def active_steps(self) -> int:
        return self._active_steps

    def start(self) -> None:
        self._set_state(RunState.RUNNING)
        self._stopped.clear()
        self._resumed.set()

    async def pause(self) -> None:
        """Request a pause and wait for in-flight page steps to finish."""
        if self._state is RunState.RUNNING:
            self._set_state(RunState.PAUSED)
            self._resumed.clear()
        await self._idle.wait()

    def resume(self) -> None:
        if self._state is RunState.PAUSED:
            self._set_state(RunState.RUNNING)
            self._resumed.set()

    def stop(self) -> None:
        """Ask workers to exit after their current step."""
        self._set_state(RunState.STOPPED)
        self._stopped.set()
        # Wake paused workers so they can see the stop
        self._resumed.set()

    async def checkpoint(self) -> bool:
        """Block while paused.

        Returns:
            True if the caller may start another step, False once stopped
        """
        while self._state is RunState.PAUSED:
            await self._resumed.wait()
        return self._state is RunState.RUNNING

    @asynccontextmanager
    async def step(self) -> AsyncIterator[None]:
        """Mark a page-level step as in flight.

        Must be entered right after a successful checkpoint() with no await in
        between, otherwise a pause could slip through.
        """
        self._active_steps += 1
        self._idle.clear()
        try:
            yield
        finally:
            self._active_steps -= 1
            if self._active_steps == 0:
                self._idle.set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep unless stopped first.

        Returns:
            True if the sleep was cut short by stop()
        """
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    def _set_state(self, state: RunState) -> None:
        if state is not self._state:
            logger.info(f"Harvest state: {self._state.value} -> {state.value}")
            self._state = state
