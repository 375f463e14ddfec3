"""
Managed Processes
=================

Spawn primitive and bookkeeping for the supervisor's child processes.

Children inherit the supervisor's stdin/stdout/stderr so their logs
interleave live on the operator's terminal.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Protocol
import asyncio
import logging
import os
import signal as signal_module

logger = logging.getLogger(__name__)


class SpawnError(Exception):
    """Raised when a child process cannot be started."""

    def __init__(self, command: str, args: List[str], cause: OSError):
        super().__init__(f"Error starting process \"{' '.join([command, *args])}\": {cause}")
        self.command = command
        self.arguments = args
        self.cause = cause


class ProcessHandle(Protocol):
    """The parts of asyncio.subprocess.Process the supervisor relies on."""

    pid: int
    returncode: Optional[int]

    async def wait(self) -> int: ...

    def send_signal(self, sig: int) -> None: ...

    def kill(self) -> None: ...


def signal_name(sig: Optional[int]) -> Optional[str]:
    if sig is None:
        return None
    try:
        return signal_module.Signals(sig).name
    except ValueError:
        return str(sig)


@dataclass
class ProcessExit:
    """
    Decoded exit status of a managed process.

    Attributes:
        name: Process name
        code: Exit code, or None if terminated by a signal
        signal: Signal number that terminated the process, if any
    """
    name: str
    code: Optional[int]
    signal: Optional[int] = None

    @classmethod
    def from_returncode(cls, name: str, returncode: int) -> "ProcessExit":
        # asyncio reports death by signal N as returncode -N
        if returncode < 0:
            return cls(name=name, code=None, signal=-returncode)
        return cls(name=name, code=returncode)

    @property
    def unexpected(self) -> bool:
        return self.signal is not None or self.code != 0

    def describe(self) -> str:
        return f"exited with code {self.code} and signal {signal_name(self.signal)}"


@dataclass
class ManagedProcess:
    """
    A child process owned by the supervisor.

    Attributes:
        name: Label used in logs (update-check, watcher, server)
        command: Executable to run
        args: Arguments after the executable
        working_directory: cwd for the child (None = supervisor's cwd)
        env: Variables set on top of the supervisor's environment
        handle: Live process handle, None before spawn and after exit
        exit: Exit status once the process has ended
        started_at: When the process was spawned
    """
    name: str
    command: str
    args: List[str] = field(default_factory=list)
    working_directory: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    handle: Optional[ProcessHandle] = None
    exit: Optional[ProcessExit] = None
    started_at: Optional[datetime] = None

    @property
    def command_line(self) -> str:
        return " ".join([self.command, *self.args])

    @property
    def is_alive(self) -> bool:
        return self.handle is not None and self.handle.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self.handle.pid if self.handle is not None else None

    def mark_exited(self, returncode: int) -> ProcessExit:
        self.exit = ProcessExit.from_returncode(self.name, returncode)
        self.handle = None
        return self.exit


class ProcessLauncher:
    """Starts managed processes with inherited standard streams."""

    async def spawn(self, process: ManagedProcess) -> ProcessHandle:
        """
        Start process and return its handle.

        Raises:
            SpawnError: If the executable cannot be started
        """
        env = {**os.environ, **process.env} if process.env else None
        try:
            return await asyncio.create_subprocess_exec(
                process.command,
                *process.args,
                cwd=process.working_directory,
                env=env,
                stdin=None,
                stdout=None,
                stderr=None
            )
        except OSError as e:
            raise SpawnError(process.command, process.args, e) from e
