"""
Process supervisor for prodrun services.
"""

from .pidfile import PidFile, pid_is_alive
from .supervisor import ProcessSupervisor, SupervisorState, forwardable_signals

__all__ = [
    'PidFile',
    'pid_is_alive',
    'ProcessSupervisor',
    'SupervisorState',
    'forwardable_signals',
]
