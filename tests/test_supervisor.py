"""
Unit tests for ProcessSupervisor

Tests use an in-memory launcher and fake process handles so exit codes,
signals and spawn failures can be scripted without real children.
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from unittest.mock import Mock

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from devloop.config import load_config
from devloop.supervisor.process import ManagedProcess, SpawnError
from devloop.supervisor.supervisor import ProcessSupervisor, SupervisorState


class FakeHandle:
    """Stand-in for asyncio.subprocess.Process."""

    def __init__(self, pid, events, name, exit_on_signal=True):
        self.pid = pid
        self.returncode = None
        self.signals = []
        self.killed = False
        self._events = events
        self._name = name
        self._exit_on_signal = exit_on_signal
        self._done = asyncio.Event()

    async def wait(self):
        await self._done.wait()
        return self.returncode

    def finish(self, returncode):
        self.returncode = returncode
        self._events.append(("exit", self._name))
        self._done.set()

    def send_signal(self, sig):
        self.signals.append(sig)
        if self._exit_on_signal:
            self.finish(-sig)

    def kill(self):
        self.killed = True
        self.finish(-signal.SIGKILL)


class FakeLauncher:
    """Records spawn order; can be told to fail specific process names."""

    def __init__(self, fail=(), exit_on_signal=True):
        self.events = []
        self.handles = {}
        self.fail = set(fail)
        self.exit_on_signal = exit_on_signal

    @property
    def spawned(self):
        return [name for kind, name in self.events if kind == "spawn"]

    async def spawn(self, process):
        if process.name in self.fail:
            raise SpawnError(process.command, process.args, FileNotFoundError(2, "No such file or directory"))
        handle = FakeHandle(1000 + len(self.handles), self.events, process.name, self.exit_on_signal)
        self.handles[process.name] = handle
        self.events.append(("spawn", process.name))
        return handle


def make_supervisor(launcher, grace_seconds=0.0):
    exit_func = Mock()
    supervisor = ProcessSupervisor(
        update_check=ManagedProcess(name="update-check", command="node", args=["updates"]),
        services=[
            ManagedProcess(name="watcher", command="python", args=["-m", "devloop.watch"]),
            ManagedProcess(name="server", command="node", args=["index.js"]),
        ],
        launcher=launcher,
        grace_seconds=grace_seconds,
        exit_func=exit_func,
    )
    return supervisor, exit_func


async def wait_until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0)


def exited(supervisor, name):
    return any(p.name == name and p.exit is not None for p in supervisor.processes)


async def start_services(supervisor, launcher, update_code=0):
    task = asyncio.create_task(supervisor.start())
    await wait_until(lambda: "update-check" in launcher.handles)
    launcher.handles["update-check"].finish(update_code)
    await task


class TestStartupOrdering:

    @pytest.mark.parametrize("update_code", [0, 1, -signal.SIGKILL])
    async def test_services_start_only_after_update_exit(self, update_code):
        launcher = FakeLauncher()
        supervisor, _ = make_supervisor(launcher)

        task = asyncio.create_task(supervisor.start())
        await wait_until(lambda: "update-check" in launcher.handles)
        for _ in range(5):
            await asyncio.sleep(0)

        assert launcher.spawned == ["update-check"]
        assert supervisor.state is SupervisorState.RUNNING_UPDATE

        launcher.handles["update-check"].finish(update_code)
        await task

        assert launcher.events[:2] == [("spawn", "update-check"), ("exit", "update-check")]
        assert sorted(launcher.spawned[1:]) == ["server", "watcher"]
        assert supervisor.state is SupervisorState.RUNNING_SERVICES

    async def test_failed_update_check_is_logged(self, caplog):
        caplog.set_level(logging.INFO)
        launcher = FakeLauncher()
        supervisor, _ = make_supervisor(launcher)

        await start_services(supervisor, launcher, update_code=1)

        assert "exited with code 1" in caplog.text
        assert "continuing startup" in caplog.text
        assert {p.name for p in supervisor.live_processes()} == {"watcher", "server"}

    async def test_update_check_spawn_failure_does_not_block_services(self, caplog):
        launcher = FakeLauncher(fail={"update-check"})
        supervisor, _ = make_supervisor(launcher)

        await supervisor.start()

        assert "Error starting process \"node updates\"" in caplog.text
        assert sorted(launcher.spawned) == ["server", "watcher"]

    async def test_start_twice_is_an_error(self):
        launcher = FakeLauncher()
        supervisor, _ = make_supervisor(launcher)
        await start_services(supervisor, launcher)

        with pytest.raises(RuntimeError):
            await supervisor.start()


class TestServiceExits:

    async def test_spawn_failure_leaves_sibling_running(self, caplog):
        launcher = FakeLauncher(fail={"server"})
        supervisor, _ = make_supervisor(launcher)

        await start_services(supervisor, launcher)

        assert "Error starting process \"node index.js\"" in caplog.text
        assert [p.name for p in supervisor.live_processes()] == ["watcher"]
        assert supervisor.state is SupervisorState.RUNNING_SERVICES

    async def test_unexpected_exit_is_logged_and_not_restarted(self, caplog):
        launcher = FakeLauncher()
        supervisor, exit_func = make_supervisor(launcher)
        await start_services(supervisor, launcher)

        launcher.handles["watcher"].finish(1)
        await wait_until(lambda: exited(supervisor, "watcher"))

        assert "Process watcher" in caplog.text
        assert "exited with code 1 and signal None" in caplog.text
        assert launcher.spawned.count("watcher") == 1
        assert [p.name for p in supervisor.live_processes()] == ["server"]
        assert supervisor.state is SupervisorState.RUNNING_SERVICES
        exit_func.assert_not_called()

    async def test_exit_by_signal_is_logged(self, caplog):
        launcher = FakeLauncher()
        supervisor, _ = make_supervisor(launcher)
        await start_services(supervisor, launcher)

        launcher.handles["server"].finish(-signal.SIGSEGV)
        await wait_until(lambda: exited(supervisor, "server"))

        assert "exited with code None and signal SIGSEGV" in caplog.text

    async def test_all_services_gone_keeps_waiting(self, caplog):
        launcher = FakeLauncher()
        supervisor, exit_func = make_supervisor(launcher)
        await start_services(supervisor, launcher)

        launcher.handles["watcher"].finish(0)
        launcher.handles["server"].finish(0)
        await wait_until(lambda: exited(supervisor, "watcher") and exited(supervisor, "server"))

        assert "waiting for a stop signal" in caplog.text
        assert supervisor.state is SupervisorState.RUNNING_SERVICES
        exit_func.assert_not_called()


class TestShutdown:

    @pytest.mark.parametrize("sig", [signal.SIGINT, signal.SIGTERM])
    async def test_signal_forwarded_to_live_services(self, sig):
        launcher = FakeLauncher(exit_on_signal=False)
        supervisor, exit_func = make_supervisor(launcher)
        await start_services(supervisor, launcher)

        signalled = supervisor.shutdown(sig)

        assert {p.name for p in signalled} == {"watcher", "server"}
        assert launcher.handles["watcher"].signals == [sig]
        assert launcher.handles["server"].signals == [sig]
        # Children have not exited, yet the supervisor is done
        assert launcher.handles["watcher"].returncode is None
        assert supervisor.state is SupervisorState.TERMINATED
        assert supervisor.terminated.is_set()
        exit_func.assert_called_once_with(0)

    async def test_exited_process_is_not_signalled(self):
        launcher = FakeLauncher()
        supervisor, _ = make_supervisor(launcher)
        await start_services(supervisor, launcher)
        launcher.handles["watcher"].finish(1)
        await wait_until(lambda: len(supervisor.live_processes()) == 1)

        signalled = supervisor.shutdown(signal.SIGTERM)

        assert [p.name for p in signalled] == ["server"]
        assert launcher.handles["watcher"].signals == []

    async def test_vanished_process_is_skipped(self):
        launcher = FakeLauncher()
        supervisor, exit_func = make_supervisor(launcher)
        await start_services(supervisor, launcher)
        launcher.handles["server"].send_signal = Mock(side_effect=ProcessLookupError)

        signalled = supervisor.shutdown(signal.SIGTERM)

        assert [p.name for p in signalled] == ["watcher"]
        exit_func.assert_called_once_with(0)

    async def test_second_signal_is_ignored(self):
        launcher = FakeLauncher(exit_on_signal=False)
        supervisor, exit_func = make_supervisor(launcher)
        await start_services(supervisor, launcher)

        supervisor.shutdown(signal.SIGINT)
        assert supervisor.shutdown(signal.SIGTERM) == []

        assert launcher.handles["server"].signals == [signal.SIGINT]
        exit_func.assert_called_once_with(0)

    async def test_shutdown_during_update_check(self):
        launcher = FakeLauncher()
        supervisor, exit_func = make_supervisor(launcher)

        task = asyncio.create_task(supervisor.start())
        await wait_until(lambda: "update-check" in launcher.handles)

        signalled = supervisor.shutdown(signal.SIGINT)
        await task

        assert [p.name for p in signalled] == ["update-check"]
        assert launcher.spawned == ["update-check"]
        exit_func.assert_called_once_with(0)

    async def test_grace_period_kills_stragglers(self):
        launcher = FakeLauncher(exit_on_signal=False)
        supervisor, exit_func = make_supervisor(launcher, grace_seconds=0.05)
        await start_services(supervisor, launcher)
        launcher.handles["watcher"]._exit_on_signal = True

        supervisor.shutdown(signal.SIGTERM)
        assert supervisor.state is SupervisorState.SHUTTING_DOWN
        exit_func.assert_not_called()

        await asyncio.wait_for(supervisor.terminated.wait(), timeout=1)

        assert launcher.handles["watcher"].killed is False
        assert launcher.handles["server"].killed is True
        exit_func.assert_called_once_with(0)

    async def test_run_returns_after_shutdown(self):
        launcher = FakeLauncher()
        supervisor, exit_func = make_supervisor(launcher)
        supervisor.install_signal_handlers = Mock()

        run_task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: "update-check" in launcher.handles)
        launcher.handles["update-check"].finish(0)
        await wait_until(lambda: supervisor.state is SupervisorState.RUNNING_SERVICES)
        await wait_until(lambda: len(supervisor.live_processes()) == 2)

        supervisor.shutdown(signal.SIGTERM)
        await asyncio.wait_for(run_task, timeout=1)

        supervisor.install_signal_handlers.assert_called_once()
        exit_func.assert_called_once_with(0)

    def test_install_signal_handlers(self):
        supervisor, _ = make_supervisor(FakeLauncher())
        loop = Mock()

        supervisor.install_signal_handlers(loop)

        registered = [call.args[0] for call in loop.add_signal_handler.call_args_list]
        assert registered == [signal.SIGINT, signal.SIGTERM]


class TestFromConfig:

    def test_builds_processes_from_config(self, tmp_path):
        config = load_config(environ={
            "DEVLOOP_PROJECT_DIR": str(tmp_path),
            "DEVLOOP_UPDATE_COMMAND": "node updates --quiet",
            "DEVLOOP_SERVER_COMMAND": "node index.js",
            "DEVLOOP_SHUTDOWN_GRACE_SECONDS": "2.5",
        })

        supervisor = ProcessSupervisor.from_config(config, exit_func=Mock())

        assert supervisor.update_check.name == "update-check"
        assert supervisor.update_check.command_line == "node updates --quiet"
        assert [p.name for p in supervisor.services] == ["watcher", "server"]
        assert supervisor.services[1].working_directory == str(tmp_path.resolve())
        assert supervisor.services[0].args == ["-m", "devloop.watch"]
        assert supervisor.grace_seconds == 2.5

    def test_watcher_child_loads_the_same_configuration(self, tmp_path, monkeypatch):
        """Relative project dir, env file and log level override all reach the watcher."""
        (tmp_path / "web").mkdir()
        env_file = tmp_path / "dev.env"
        env_file.write_text(
            "DEVLOOP_PROJECT_DIR=web\n"
            "DEVLOOP_SOURCE_DIR=client\n"
            "DEVLOOP_POLL_INTERVAL_MS=250\n"
            "DEVLOOP_MINIFY=true\n"
            "DEVLOOP_BUNDLE_EXTRA_ARGS=--define:DEBUG=true\n"
        )
        monkeypatch.chdir(tmp_path)
        config = load_config(env_file=str(env_file), environ={})
        config.log_level = "DEBUG"

        watcher = ProcessSupervisor.from_config(config, exit_func=Mock()).services[0]

        # What the child sees: its own cwd plus the forwarded variables, no env file
        monkeypatch.chdir(watcher.working_directory)
        child = load_config(environ=watcher.env)

        assert config.source_dir == tmp_path.resolve() / "web" / "client"
        assert child.source_dir == config.source_dir
        assert child.output_dir == config.output_dir
        assert child.watch.poll_interval_ms == 250
        assert child.log_level == "DEBUG"
        assert child.model_dump() == config.model_dump()

    def test_only_the_watcher_gets_forwarded_settings(self, tmp_path):
        config = load_config(environ={"DEVLOOP_PROJECT_DIR": str(tmp_path)})

        supervisor = ProcessSupervisor.from_config(config, exit_func=Mock())

        assert supervisor.services[0].env["DEVLOOP_PROJECT_DIR"] == str(tmp_path.resolve())
        assert supervisor.services[1].env == {}
        assert supervisor.update_check.env == {}
