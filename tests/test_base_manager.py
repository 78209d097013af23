"""
Tests for the manager lifecycle shared by the runtime components.
"""

import asyncio
from typing import Any, Dict

import pytest

from prodrun.managers.base import (
    BaseManager,
    ManagerAlreadyRunningError,
    ManagerConfig,
    ManagerError,
    ManagerState,
)


class TickingManager(BaseManager):
    """Minimal manager with one background task."""

    def __init__(self, fail_start: bool = False, **kwargs):
        super().__init__(ManagerConfig(name="ticking", **kwargs))
        self.fail_start = fail_start
        self.ticks = 0
        self.stopped = False

    async def _start(self) -> None:
        if self.fail_start:
            raise RuntimeError("cannot start")
        self._tasks.append(asyncio.create_task(self._tick()))

    async def _tick(self) -> None:
        while True:
            self.ticks += 1
            await asyncio.sleep(0.01)

    async def _stop(self) -> None:
        self.stopped = True

    async def _health_check(self) -> Dict[str, Any]:
        return {"ticks": self.ticks}


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_initializes(self):
        manager = TickingManager()
        await manager.start()
        try:
            assert manager.state == ManagerState.RUNNING
            assert manager.is_ready
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_tasks(self, wait_for):
        manager = TickingManager()
        await manager.start()
        assert await wait_for(lambda: manager.ticks > 0)

        await manager.stop()
        ticks = manager.ticks
        await asyncio.sleep(0.03)

        assert manager.ticks == ticks
        assert manager.stopped
        assert manager.state == ManagerState.STOPPED

    @pytest.mark.asyncio
    async def test_restart_after_stop(self):
        manager = TickingManager()
        await manager.start()
        await manager.stop()
        await manager.start()
        assert manager.is_running
        await manager.stop()

    @pytest.mark.asyncio
    async def test_double_start(self):
        manager = TickingManager()
        await manager.start()
        try:
            with pytest.raises(ManagerAlreadyRunningError):
                await manager.start()
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_start_failure(self):
        manager = TickingManager(fail_start=True)
        with pytest.raises(ManagerError):
            await manager.start()
        assert manager.state == ManagerState.ERROR

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self):
        manager = TickingManager()
        await manager.stop()
        assert manager.state == ManagerState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_health(self):
        manager = TickingManager()
        status = await manager.health_check()
        assert not status.healthy
        assert status.details["state"] == "uninitialized"
