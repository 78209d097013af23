"""
Runtime managers: request registry, resource watchdog, restart coordinator.
"""

from .base import BaseManager, ManagerConfig, ManagerState, HealthStatus, ManagerNotReadyError
from .registry import RequestRegistry, RequestHandle, RequestOutcome, InFlightRequest, AppStats
from .watchdog import ResourceWatchdog, ResourceSampler, ResourceSample, GcPauseTracker
from .restart import RestartCoordinator, RestartPhase, RestartMode, RestartState

__all__ = [
    # Base
    'BaseManager',
    'ManagerConfig',
    'ManagerState',
    'HealthStatus',
    'ManagerNotReadyError',

    # Registry
    'RequestRegistry',
    'RequestHandle',
    'RequestOutcome',
    'InFlightRequest',
    'AppStats',

    # Watchdog
    'ResourceWatchdog',
    'ResourceSampler',
    'ResourceSample',
    'GcPauseTracker',

    # Restart
    'RestartCoordinator',
    'RestartPhase',
    'RestartMode',
    'RestartState',
]
