"""
Watch Module
============

Polling rebuild loop for the bundling watcher process.

Main Components:
- ChangeDetector: Reports entry files whose mtime moved forward
- BuildTrigger: Serializes and coalesces bundler runs
- EsbuildBundler: Runs the esbuild CLI
- Watcher: Startup build plus the polling loop

Usage:
    from devloop.watch import Watcher

    watcher = Watcher.from_config(config)
    await watcher.run()
"""

from devloop.watch.change_detector import ChangeDetector, WatchedFile, discover_entry_points
from devloop.watch.bundler import BuildError, Bundler, EsbuildBundler
from devloop.watch.build_trigger import BuildRequest, BuildResult, BuildTrigger
from devloop.watch.watcher import Watcher

__all__ = [
    'ChangeDetector',
    'WatchedFile',
    'discover_entry_points',
    'BuildError',
    'Bundler',
    'EsbuildBundler',
    'BuildRequest',
    'BuildResult',
    'BuildTrigger',
    'Watcher',
]
