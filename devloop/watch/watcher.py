"""
Watcher
=======

Polling rebuild loop run inside the "watcher" managed process.

Startup sequence:
1. Refresh the remote payload (if configured)
2. Capture the entry-point listing (never re-scanned)
3. Record a baseline poll and run one unconditional build
4. Poll every interval and rebuild the full entry set on change
"""

from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Union
import asyncio
import logging
import signal

from devloop.config import DevLoopConfig, PayloadConfig
from devloop.watch.build_trigger import BuildResult, BuildTrigger
from devloop.watch.bundler import EsbuildBundler
from devloop.watch.change_detector import ChangeDetector, discover_entry_points
from devloop.watch.payload import refresh_payload

logger = logging.getLogger(__name__)


class Watcher:
    """
    Drives ChangeDetector and BuildTrigger on a fixed poll interval.

    Ticks never overlap: a tick suspends until its build (and any build
    queued behind it) completes.
    """

    def __init__(
        self,
        source_dir: Union[str, Path],
        trigger: BuildTrigger,
        entry_suffix: str = ".jsx",
        poll_interval: float = 1.0,
        detector: Optional[ChangeDetector] = None,
        payload: Optional[PayloadConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.source_dir = Path(source_dir)
        self.trigger = trigger
        self.entry_suffix = entry_suffix
        self.poll_interval = poll_interval
        self.detector = detector or ChangeDetector()
        self.payload = payload or PayloadConfig()
        self.entry_points: List[str] = []
        self.stop_event = asyncio.Event()
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: DevLoopConfig) -> "Watcher":
        bundler = EsbuildBundler(config.bundle, cwd=config.project_dir)
        trigger = BuildTrigger(bundler, config.output_dir)
        return cls(
            source_dir=config.source_dir,
            trigger=trigger,
            entry_suffix=config.watch.entry_suffix,
            poll_interval=config.watch.poll_interval,
            payload=config.payload
        )

    async def start(self) -> Optional[BuildResult]:
        """
        Prepare the watcher and run the initial build.

        Returns:
            Result of the initial build, or None when there are no entry points
        """
        await refresh_payload(self.payload)

        Path(self.trigger.output_dir).mkdir(parents=True, exist_ok=True)
        self.entry_points = discover_entry_points(self.source_dir, self.entry_suffix)

        if not self.entry_points:
            logger.warning(f"No {self.entry_suffix} entry points in {self.source_dir}; nothing to build")
            return None

        logger.info(f"[ESBuild] Entry points loaded: {len(self.entry_points)} files")
        self.detector.poll(self.entry_points)
        return await self.trigger.build(self.entry_points)

    async def tick(self) -> Optional[BuildResult]:
        """Poll once and rebuild the whole entry set if anything changed."""
        changed = self.detector.poll(self.entry_points)
        if not changed:
            return None
        logger.info(f"Change detected: {', '.join(Path(p).name for p in sorted(changed))}")
        return await self.trigger.build(self.entry_points)

    async def run(self) -> None:
        """Run start() then poll until stop() is called."""
        await self.start()
        logger.info(f"Watching {self.source_dir} every {self.poll_interval:.2f}s")
        while not self.stop_event.is_set():
            await self._sleep(self.poll_interval)
            if self.stop_event.is_set():
                break
            await self.tick()
        logger.info("Watcher stopped")

    def stop(self) -> None:
        self.stop_event.set()

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Stop after the current tick on SIGINT/SIGTERM."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _on_signal(self, sig: int) -> None:
        logger.info(f"Received {signal.Signals(sig).name}, stopping after current build")
        self.stop()


async def run_watcher(config: DevLoopConfig) -> None:
    watcher = Watcher.from_config(config)
    watcher.install_signal_handlers()
    await watcher.run()
