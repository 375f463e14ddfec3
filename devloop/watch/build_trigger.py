"""
Build Trigger
=============

Runs the bundler whenever a change is detected, one build at a time.

Key Features:
- At most one bundler invocation in flight
- Requests arriving during a build collapse into one pending request
  (union of entry points); equivalent requests are dropped
- Build failures are logged and swallowed
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Iterable, Optional, Union
import logging
import time

from devloop.watch.bundler import BuildError, Bundler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildRequest:
    """Entry points for one bundling attempt."""
    entry_points: FrozenSet[str]

    def covers(self, other: "BuildRequest") -> bool:
        return other.entry_points <= self.entry_points

    def merge(self, other: "BuildRequest") -> "BuildRequest":
        return BuildRequest(self.entry_points | other.entry_points)


@dataclass
class BuildResult:
    """
    Outcome of a build() call.

    Attributes:
        entry_points: Entry points of the request
        success: Whether the bundle completed. None when coalesced: the
            request only joined the queue, and its build reports on its own
        duration: Bundler time in seconds
        error: Error message if the bundle failed
        coalesced: Request was folded into the pending request instead of
            running immediately
    """
    entry_points: FrozenSet[str]
    success: Optional[bool]
    duration: float = 0.0
    error: Optional[str] = None
    coalesced: bool = False


@dataclass
class BuildStats:
    builds_started: int = 0
    builds_failed: int = 0
    requests_coalesced: int = 0
    requests_dropped: int = 0
    last_error: Optional[str] = field(default=None)


class BuildTrigger:
    """Serializes bundler invocations and coalesces overlapping requests."""

    def __init__(self, bundler: Bundler, output_dir: Union[str, Path]):
        self.bundler = bundler
        self.output_dir = output_dir
        self.stats = BuildStats()
        self._in_flight = False
        self._pending: Optional[BuildRequest] = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def pending(self) -> Optional[BuildRequest]:
        return self._pending

    async def build(self, entry_points: Iterable[str]) -> BuildResult:
        """
        Bundle entry points, or queue them behind the build in flight.

        The caller that starts a build also drains whatever was queued while
        it ran, so queued work never waits for another change.

        Args:
            entry_points: Files to bundle

        Returns:
            BuildResult of this caller's own request
        """
        request = BuildRequest(frozenset(entry_points))

        if not request.entry_points:
            logger.debug("No entry points, skipping build")
            return BuildResult(entry_points=request.entry_points, success=True)

        if self._in_flight:
            self._enqueue(request)
            return BuildResult(entry_points=request.entry_points, success=None, coalesced=True)

        self._in_flight = True
        try:
            result = await self._run(request)
            while self._pending is not None:
                queued, self._pending = self._pending, None
                logger.info(f"Running queued build ({len(queued.entry_points)} entry points)")
                await self._run(queued)
        finally:
            self._in_flight = False
        return result

    def _enqueue(self, request: BuildRequest) -> None:
        if self._pending is not None and self._pending.covers(request):
            self.stats.requests_dropped += 1
            logger.debug("Build already queued for these entry points, dropping request")
            return
        self._pending = request if self._pending is None else self._pending.merge(request)
        self.stats.requests_coalesced += 1
        logger.debug("Build in progress, request queued")

    async def _run(self, request: BuildRequest) -> BuildResult:
        self.stats.builds_started += 1
        start = time.monotonic()
        try:
            await self.bundler.bundle(sorted(request.entry_points), self.output_dir)
        except BuildError as e:
            return self._failed(request, start, f"{e}\n{e.output}".strip())
        except Exception as e:
            logger.exception("Unexpected bundler failure")
            return self._failed(request, start, str(e))

        duration = time.monotonic() - start
        logger.info(f"Build completed in {duration:.2f}s ({len(request.entry_points)} entry points)")
        return BuildResult(entry_points=request.entry_points, success=True, duration=duration)

    def _failed(self, request: BuildRequest, start: float, message: str) -> BuildResult:
        duration = time.monotonic() - start
        self.stats.builds_failed += 1
        self.stats.last_error = message
        logger.error(f"Build failed after {duration:.2f}s: {message}")
        return BuildResult(
            entry_points=request.entry_points,
            success=False,
            duration=duration,
            error=message
        )
