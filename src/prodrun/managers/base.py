"""
Base manager abstract class for prodrun components.

This module provides the foundation for the long-lived runtime components
(request registry, resource watchdog) with:
- Common initialization patterns
- Lifecycle management (initialize/start/stop)
- Health checking
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ..utils.logging import get_logger


class ManagerState(Enum):
    """Manager lifecycle states."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class ManagerError(Exception):
    """Base exception for manager errors."""
    pass


class ManagerNotReadyError(ManagerError):
    """Raised when a manager operation is called before it is running."""
    pass


class ManagerAlreadyRunningError(ManagerError):
    """Raised when trying to start an already running manager."""
    pass


@dataclass
class ManagerConfig:
    """Base configuration for all managers."""
    name: str


@dataclass
class HealthStatus:
    """Health status information."""
    healthy: bool
    last_check: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class BaseManager(ABC):
    """
    Abstract base class for runtime components.

    Subclasses register their background tasks in ``self._tasks``; ``stop``
    cancels and awaits them before calling ``_stop``.
    """

    def __init__(self, config: ManagerConfig):
        """Initialize base manager."""
        self.manager_config = config
        self.logger = get_logger(f"prodrun.managers.{config.name}")
        self.state = ManagerState.UNINITIALIZED
        self._health_status = HealthStatus(healthy=True, last_check=datetime.now(timezone.utc))
        self._tasks: List[asyncio.Task] = []

    @property
    def name(self) -> str:
        return self.manager_config.name

    @property
    def is_ready(self) -> bool:
        """Check if manager is ready for operations."""
        return self.state in (ManagerState.READY, ManagerState.RUNNING)

    @property
    def is_running(self) -> bool:
        """Check if manager is actively running."""
        return self.state == ManagerState.RUNNING

    def _ensure_running(self) -> None:
        if not self.is_running:
            raise ManagerNotReadyError(f"Manager {self.name} not running (state={self.state.value})")

    async def initialize(self) -> None:
        """Run component setup and transition to READY."""
        if self.state not in (ManagerState.UNINITIALIZED, ManagerState.STOPPED):
            raise ManagerError(f"Cannot initialize from state: {self.state}")

        self.state = ManagerState.INITIALIZING
        self.logger.info("initializing_manager", manager=self.name)

        try:
            await self._initialize()

            self.state = ManagerState.READY
            self.logger.info("manager_initialized", manager=self.name)

        except Exception as e:
            self.state = ManagerState.ERROR
            self.logger.error("initialization_failed", manager=self.name, error=str(e), exc_info=True)
            raise ManagerError(f"Failed to initialize {self.name}: {e}") from e

    async def start(self) -> None:
        """
        Start the manager.

        Initializes first when needed, then begins active operations.
        """
        if self.state in (ManagerState.UNINITIALIZED, ManagerState.STOPPED):
            await self.initialize()

        if self.is_running:
            raise ManagerAlreadyRunningError(f"Manager {self.name} already running")

        if not self.is_ready:
            raise ManagerNotReadyError(f"Manager {self.name} not ready")

        self.state = ManagerState.STARTING
        self.logger.info("starting_manager", manager=self.name)

        try:
            await self._start()

            self.state = ManagerState.RUNNING
            self.logger.info("manager_started", manager=self.name)

        except Exception as e:
            self.state = ManagerState.ERROR
            self.logger.error("start_failed", manager=self.name, error=str(e), exc_info=True)
            raise ManagerError(f"Failed to start {self.name}: {e}") from e

    async def stop(self) -> None:
        """
        Stop the manager gracefully.

        Cancels background tasks and cleans up resources.
        """
        if not self.is_running:
            self.logger.warning("stop_called_when_not_running", manager=self.name, state=self.state.value)
            return

        self.state = ManagerState.STOPPING
        self.logger.info("stopping_manager", manager=self.name)

        try:
            for task in self._tasks:
                if not task.done():
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass
            self._tasks.clear()

            await self._stop()

            self.state = ManagerState.STOPPED
            self.logger.info("manager_stopped", manager=self.name)

        except Exception as e:
            self.state = ManagerState.ERROR
            self.logger.error("stop_failed", manager=self.name, error=str(e), exc_info=True)
            raise ManagerError(f"Failed to stop {self.name}: {e}") from e

    async def health_check(self) -> HealthStatus:
        """Return the current health status of the manager."""
        try:
            details = await self._health_check()
            details.setdefault("state", self.state.value)

            self._health_status = HealthStatus(
                healthy=self.is_running,
                last_check=datetime.now(timezone.utc),
                details=details
            )

        except Exception as e:
            self._health_status = HealthStatus(
                healthy=False,
                last_check=datetime.now(timezone.utc),
                error=str(e)
            )
            self.logger.error("health_check_failed", manager=self.name, error=str(e))

        return self._health_status

    # Abstract methods to be implemented by subclasses

    async def _initialize(self) -> None:
        """Component-specific initialization logic."""
        pass

    @abstractmethod
    async def _start(self) -> None:
        """Component-specific start logic."""
        pass

    async def _stop(self) -> None:
        """Component-specific stop logic."""
        pass

    @abstractmethod
    async def _health_check(self) -> Dict[str, Any]:
        """Component-specific health check logic."""
        pass


__all__ = [
    'BaseManager',
    'ManagerConfig',
    'ManagerState',
    'ManagerError',
    'ManagerNotReadyError',
    'ManagerAlreadyRunningError',
    'HealthStatus',
]
