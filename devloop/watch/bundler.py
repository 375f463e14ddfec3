"""
Bundler
=======

Runs the esbuild CLI over a set of entry points.

The compilation itself is esbuild's business; this module only turns the
deployment's fixed options into a command line, runs it, and reports
failure as a BuildError.
"""

from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Union
import asyncio
import logging

from devloop.config import BundleConfig

logger = logging.getLogger(__name__)

# Lines of esbuild output kept in a BuildError
OUTPUT_TAIL_LINES = 20


class BuildError(Exception):
    """Raised when a single bundling attempt fails."""

    def __init__(self, message: str, returncode: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class Bundler(Protocol):
    """Interface the build trigger expects from a bundler."""

    async def bundle(self, entry_points: Iterable[str], output_dir: Union[str, Path]) -> None: ...


class EsbuildBundler:
    """Bundler backed by the esbuild command line tool."""

    def __init__(self, options: Optional[BundleConfig] = None, cwd: Optional[str] = None):
        self.options = options or BundleConfig()
        self.cwd = cwd

    def build_command(self, entry_points: Iterable[str], output_dir: Union[str, Path]) -> List[str]:
        opts = self.options
        cmd = [
            opts.esbuild,
            *sorted(entry_points),
            "--bundle",
            f"--outdir={output_dir}",
            f"--format={opts.format}",
            f"--tree-shaking={'true' if opts.tree_shaking else 'false'}",
            f"--log-level={opts.log_level}",
            f"--jsx={opts.jsx}",
        ]
        if opts.jsx_import_source:
            cmd.append(f"--jsx-import-source={opts.jsx_import_source}")
        if opts.sourcemap:
            cmd.append("--sourcemap")
        if opts.minify:
            cmd.append("--minify")
        if opts.splitting:
            cmd.append("--splitting")
        cmd.extend(opts.extra_args)
        return cmd

    async def bundle(self, entry_points: Iterable[str], output_dir: Union[str, Path]) -> None:
        """
        Bundle entry points into output_dir.

        Raises:
            BuildError: If esbuild cannot be started or exits non-zero
        """
        Path(output_dir).mkdir(parents=True, exist_ok=True)
        cmd = self.build_command(entry_points, output_dir)
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=self.cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise BuildError(f"Could not start {cmd[0]}: {e}") from e

        stdout, stderr = await proc.communicate()

        if proc.returncode != 0:
            output = (stderr.decode(errors="replace") or stdout.decode(errors="replace")).strip()
            tail = "\n".join(output.splitlines()[-OUTPUT_TAIL_LINES:])
            raise BuildError(
                f"esbuild exited with code {proc.returncode}",
                returncode=proc.returncode,
                output=tail
            )
