"""
Process Supervisor
==================

Sequences the development processes and forwards stop signals to them.

State machine: IDLE -> RUNNING_UPDATE -> RUNNING_SERVICES -> SHUTTING_DOWN -> TERMINATED

Key Features:
- Update check runs alone and must exit before anything else starts
- Watcher and server are started together and never restarted
- Unexpected exits and spawn failures are logged, never fatal
- SIGINT/SIGTERM are forwarded to every live child, then the supervisor
  exits without waiting for them (optional bounded grace period)
"""

from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
import asyncio
import logging
import os
import signal

from devloop.config import DevLoopConfig, ProcessCommand
from devloop.supervisor.process import (
    ManagedProcess,
    ProcessHandle,
    ProcessLauncher,
    SpawnError,
    signal_name,
)

logger = logging.getLogger(__name__)

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class SupervisorState(Enum):
    """Lifecycle of the supervisor, in order."""
    IDLE = "idle"
    RUNNING_UPDATE = "running_update"
    RUNNING_SERVICES = "running_services"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


def hard_exit(code: int) -> None:
    """Flush logs and leave without interpreter teardown."""
    logging.shutdown()
    # Normal teardown would close the subprocess transports, which SIGKILLs live children
    os._exit(code)


class ProcessSupervisor:
    """
    Owns the update-check, watcher and server processes.

    Only the supervisor holds process handles and only it signals them.
    """

    def __init__(
        self,
        update_check: ManagedProcess,
        services: List[ManagedProcess],
        launcher: Optional[ProcessLauncher] = None,
        grace_seconds: float = 0.0,
        exit_func: Callable[[int], None] = hard_exit
    ):
        """
        Initialize supervisor.

        Args:
            update_check: One-shot process run before the services
            services: Long-lived processes started after the update check
            launcher: Spawn primitive (defaults to asyncio subprocesses)
            grace_seconds: Wait this long for children before SIGKILL on
                shutdown (0 = do not wait)
            exit_func: Called with the exit status once shutdown is done
        """
        self.update_check = update_check
        self.services = services
        self.launcher = launcher or ProcessLauncher()
        self.grace_seconds = grace_seconds
        self._exit = exit_func

        self.state = SupervisorState.IDLE
        self.processes: List[ManagedProcess] = []
        self.terminated = asyncio.Event()
        self._monitors: List[asyncio.Task] = []
        self._grace_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config: DevLoopConfig, **kwargs) -> "ProcessSupervisor":
        def managed(name: str, cmd: ProcessCommand, env: Optional[Dict[str, str]] = None) -> ManagedProcess:
            return ManagedProcess(
                name=name,
                command=cmd.command,
                args=list(cmd.args),
                working_directory=cmd.cwd,
                env=env or {}
            )

        procs = config.processes
        return cls(
            update_check=managed("update-check", procs.update_check),
            services=[
                # The watcher loads its own settings and must see exactly ours
                managed("watcher", procs.watcher, config.to_environment()),
                managed("server", procs.server),
            ],
            grace_seconds=config.shutdown_grace_seconds,
            **kwargs
        )

    def live_processes(self) -> List[ManagedProcess]:
        return [p for p in self.processes if p.is_alive]

    async def run(self) -> None:
        """Start everything, then wait until a stop signal has been handled."""
        self.install_signal_handlers()
        await self.start()
        await self.terminated.wait()

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in STOP_SIGNALS:
            loop.add_signal_handler(sig, self.shutdown, sig)

    async def start(self) -> None:
        """Run the update check to completion, then start the services."""
        if self.state is not SupervisorState.IDLE:
            raise RuntimeError(f"Supervisor already started (state={self.state.value})")

        self._transition(SupervisorState.RUNNING_UPDATE)
        logger.info("Running update check...")
        update = await self._spawn(self.update_check)
        if update is not None:
            returncode = await update.handle.wait()
            result = update.mark_exited(returncode)
            if result.unexpected:
                logger.warning(f"Update check \"{update.command_line}\" {result.describe()}; continuing startup")
            else:
                logger.info("Update check finished")

        if self.state is not SupervisorState.RUNNING_UPDATE:
            # Stopped while the update check was running
            return

        self._transition(SupervisorState.RUNNING_SERVICES)
        started = await asyncio.gather(*(self._spawn(p) for p in self.services))
        for process in started:
            if process is not None:
                self._monitors.append(asyncio.create_task(self._monitor(process)))

        if not self.live_processes():
            logger.warning("No managed processes are running; waiting for a stop signal")

    def shutdown(self, sig: int = signal.SIGTERM) -> List[ManagedProcess]:
        """
        Forward sig to every live child and exit.

        Does not wait for children unless a grace period is configured, in
        which case the exit happens from a background task.

        Returns:
            Processes the signal was delivered to
        """
        if self.state in (SupervisorState.SHUTTING_DOWN, SupervisorState.TERMINATED):
            logger.debug(f"Ignoring {signal_name(sig)}, already shutting down")
            return []

        self._transition(SupervisorState.SHUTTING_DOWN)
        logger.info(f"Received {signal_name(sig)}, shutting down services...")

        signalled = []
        for process in self.live_processes():
            try:
                process.handle.send_signal(sig)
            except ProcessLookupError:
                logger.debug(f"Process {process.name} already gone")
                continue
            logger.info(f"Sent {signal_name(sig)} to {process.name} (pid {process.pid})")
            signalled.append(process)

        if self.grace_seconds > 0 and signalled:
            handles = [(p, p.handle) for p in signalled]
            self._grace_task = asyncio.get_running_loop().create_task(
                self._terminate_after_grace(handles)
            )
        else:
            self._terminate()
        return signalled

    async def _terminate_after_grace(self, handles: List[Tuple[ManagedProcess, ProcessHandle]]) -> None:
        waiters = [asyncio.ensure_future(h.wait()) for _, h in handles]
        if waiters:
            _, pending = await asyncio.wait(waiters, timeout=self.grace_seconds)
            for waiter in pending:
                waiter.cancel()
        for process, handle in handles:
            if handle.returncode is None:
                logger.warning(f"{process.name} still running after {self.grace_seconds}s, killing")
                try:
                    handle.kill()
                except ProcessLookupError:
                    pass
        self._terminate()

    def _terminate(self) -> None:
        self._transition(SupervisorState.TERMINATED)
        self.terminated.set()
        self._exit(0)

    async def _spawn(self, process: ManagedProcess) -> Optional[ManagedProcess]:
        try:
            handle = await self.launcher.spawn(process)
        except SpawnError as e:
            logger.error(f"{e} (cwd={process.working_directory or os.getcwd()})")
            return None

        process.handle = handle
        process.exit = None
        process.started_at = datetime.now()
        self.processes.append(process)
        logger.info(f"Started {process.name} (pid {process.pid}): {process.command_line}")
        return process

    async def _monitor(self, process: ManagedProcess) -> None:
        returncode = await process.handle.wait()
        result = process.mark_exited(returncode)

        if self.state is not SupervisorState.RUNNING_SERVICES:
            return
        if result.unexpected:
            logger.error(f"Process {process.name} \"{process.command_line}\" {result.describe()}")
        else:
            logger.info(f"Process {process.name} exited cleanly")
        if not self.live_processes():
            logger.warning("No managed processes are running; waiting for a stop signal")

    def _transition(self, new_state: SupervisorState) -> None:
        logger.debug(f"Supervisor state: {self.state.value} -> {new_state.value}")
        self.state = new_state
