"""
Supervisor Module
=================

Starts the development processes in order and forwards stop signals.

Main Components:
- ManagedProcess: A child process and its exit status
- ProcessLauncher: Spawns children with inherited standard streams
- ProcessSupervisor: Update check, then watcher + server, then shutdown

Usage:
    from devloop.supervisor import ProcessSupervisor

    supervisor = ProcessSupervisor.from_config(config)
    await supervisor.run()
"""

from devloop.supervisor.process import (
    ManagedProcess,
    ProcessExit,
    ProcessHandle,
    ProcessLauncher,
    SpawnError,
)
from devloop.supervisor.supervisor import ProcessSupervisor, SupervisorState

__all__ = [
    'ManagedProcess',
    'ProcessExit',
    'ProcessHandle',
    'ProcessLauncher',
    'SpawnError',
    'ProcessSupervisor',
    'SupervisorState',
]
