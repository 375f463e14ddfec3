"""
Configuration
=============

Runtime settings for the supervisor and the bundling watcher.

Settings are read from ``DEVLOOP_*`` environment variables, optionally
seeded from a ``.env`` file. Values already present in the real environment
win over the file.
"""

from pathlib import Path
from typing import Dict, List, Mapping, Optional
import os
import shlex
import sys

from dotenv import dotenv_values
from pydantic import BaseModel, Field, ValidationError


ENV_PREFIX = "DEVLOOP_"

DEFAULT_UPDATE_COMMAND = ["node", "updates"]
DEFAULT_SERVER_COMMAND = [
    "node", "--trace-warnings", "--async-stack-traces",
    "-r", "ts-node/register", "index.js",
]

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(Exception):
    """Raised when an environment variable holds an invalid value."""
    pass


class WatchConfig(BaseModel):
    """Where entry points live and how often they are polled."""
    source_dir: str = "public"
    output_dir: str = "public/src"
    entry_suffix: str = ".jsx"
    poll_interval_ms: int = Field(1000, gt=0, description="Delay between polls")

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000.0


class BundleConfig(BaseModel):
    """Fixed esbuild options for this deployment."""
    esbuild: str = "esbuild"
    format: str = Field("esm", pattern="^(esm|cjs|iife)$")
    sourcemap: bool = True
    minify: bool = False
    splitting: bool = False
    tree_shaking: bool = True
    log_level: str = Field("silent", pattern="^(verbose|debug|info|warning|error|silent)$")
    jsx: str = "automatic"
    jsx_import_source: Optional[str] = "solid-js"
    extra_args: List[str] = Field(default_factory=list)


class ProcessCommand(BaseModel):
    """Command line and working directory of one managed process."""
    argv: List[str] = Field(..., min_length=1)
    cwd: Optional[str] = None

    @property
    def command(self) -> str:
        return self.argv[0]

    @property
    def args(self) -> List[str]:
        return self.argv[1:]


class ProcessesConfig(BaseModel):
    update_check: ProcessCommand
    watcher: ProcessCommand
    server: ProcessCommand


class PayloadConfig(BaseModel):
    """Optional remote file refreshed before the first build."""
    url: Optional[str] = None
    path: Optional[str] = None
    timeout_seconds: float = Field(15.0, gt=0)

    @property
    def enabled(self) -> bool:
        return bool(self.url and self.path)


class DevLoopConfig(BaseModel):
    project_dir: str
    watch: WatchConfig = Field(default_factory=WatchConfig)
    bundle: BundleConfig = Field(default_factory=BundleConfig)
    processes: ProcessesConfig
    payload: PayloadConfig = Field(default_factory=PayloadConfig)
    shutdown_grace_seconds: float = Field(0.0, ge=0)
    log_level: str = Field("INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_file: Optional[str] = None

    def resolve(self, path: str) -> Path:
        """Resolve a configured path against the project directory."""
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return Path(self.project_dir) / candidate

    @property
    def source_dir(self) -> Path:
        return self.resolve(self.watch.source_dir)

    @property
    def output_dir(self) -> Path:
        return self.resolve(self.watch.output_dir)

    def to_environment(self) -> Dict[str, str]:
        """
        Render these settings back into ``DEVLOOP_*`` variables.

        A child that runs load_config() on the result, in any working
        directory, gets the same configuration. The project directory is
        already absolute, so it is not resolved a second time.
        """
        def flag(value: bool) -> str:
            return "true" if value else "false"

        procs = self.processes
        values = {
            "PROJECT_DIR": self.project_dir,
            "SOURCE_DIR": self.watch.source_dir,
            "OUTPUT_DIR": self.watch.output_dir,
            "ENTRY_SUFFIX": self.watch.entry_suffix,
            "POLL_INTERVAL_MS": str(self.watch.poll_interval_ms),
            "ESBUILD": self.bundle.esbuild,
            "BUNDLE_FORMAT": self.bundle.format,
            "SOURCEMAP": flag(self.bundle.sourcemap),
            "MINIFY": flag(self.bundle.minify),
            "SPLITTING": flag(self.bundle.splitting),
            "TREE_SHAKING": flag(self.bundle.tree_shaking),
            "BUNDLE_LOG_LEVEL": self.bundle.log_level,
            "JSX": self.bundle.jsx,
            "JSX_IMPORT_SOURCE": self.bundle.jsx_import_source or "",
            "BUNDLE_EXTRA_ARGS": shlex.join(self.bundle.extra_args),
            "UPDATE_COMMAND": shlex.join(procs.update_check.argv),
            "WATCHER_COMMAND": shlex.join(procs.watcher.argv),
            "SERVER_COMMAND": shlex.join(procs.server.argv),
            "PAYLOAD_URL": self.payload.url or "",
            "PAYLOAD_PATH": self.payload.path or "",
            "SHUTDOWN_GRACE_SECONDS": str(self.shutdown_grace_seconds),
            "LOG_LEVEL": self.log_level,
            "LOG_FILE": self.log_file or "",
        }
        return {f"{ENV_PREFIX}{key}": value for key, value in values.items()}


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigError(f"{ENV_PREFIX}{name} must be a boolean, got {value!r}")


def _split_args(name: str, value: str) -> List[str]:
    try:
        return shlex.split(value)
    except ValueError as e:
        raise ConfigError(f"{ENV_PREFIX}{name} is not a valid command line: {e}") from e


def _parse_command(name: str, value: str) -> List[str]:
    argv = _split_args(name, value)
    if not argv:
        raise ConfigError(f"{ENV_PREFIX}{name} must not be empty")
    return argv


def _collect_env(env_file: Optional[str], environ: Optional[Mapping[str, str]]) -> Dict[str, str]:
    values: Dict[str, str] = {}
    if env_file is None and environ is None and Path(".env").is_file():
        env_file = ".env"
    if env_file:
        if not Path(env_file).is_file():
            raise ConfigError(f"Env file not found: {env_file}")
        values.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
    values.update(os.environ if environ is None else environ)
    return {
        key[len(ENV_PREFIX):]: value
        for key, value in values.items()
        if key.startswith(ENV_PREFIX)
    }


def load_config(
    env_file: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None
) -> DevLoopConfig:
    """
    Build the configuration from the environment.

    Args:
        env_file: Path to a .env file (defaults to ./.env when present)
        environ: Mapping to read instead of os.environ (used by tests)

    Returns:
        Validated DevLoopConfig

    Raises:
        ConfigError: If a variable is malformed or fails validation
    """
    env = _collect_env(env_file, environ)
    project_dir = str(Path(env.get("PROJECT_DIR", ".")).resolve())

    watch: Dict[str, object] = {}
    for key, field_name in (
        ("SOURCE_DIR", "source_dir"),
        ("OUTPUT_DIR", "output_dir"),
        ("ENTRY_SUFFIX", "entry_suffix"),
        ("POLL_INTERVAL_MS", "poll_interval_ms"),
    ):
        if key in env:
            watch[field_name] = env[key]

    bundle: Dict[str, object] = {}
    for key, field_name in (
        ("ESBUILD", "esbuild"),
        ("BUNDLE_FORMAT", "format"),
        ("BUNDLE_LOG_LEVEL", "log_level"),
        ("JSX", "jsx"),
    ):
        if key in env:
            bundle[field_name] = env[key]
    for key, field_name in (
        ("SOURCEMAP", "sourcemap"),
        ("MINIFY", "minify"),
        ("SPLITTING", "splitting"),
        ("TREE_SHAKING", "tree_shaking"),
    ):
        if key in env:
            bundle[field_name] = _parse_bool(key, env[key])
    if "JSX_IMPORT_SOURCE" in env:
        bundle["jsx_import_source"] = env["JSX_IMPORT_SOURCE"] or None
    if "BUNDLE_EXTRA_ARGS" in env:
        bundle["extra_args"] = _split_args("BUNDLE_EXTRA_ARGS", env["BUNDLE_EXTRA_ARGS"])

    processes = {
        "update_check": {
            "argv": _parse_command("UPDATE_COMMAND", env["UPDATE_COMMAND"])
            if "UPDATE_COMMAND" in env else list(DEFAULT_UPDATE_COMMAND),
            "cwd": project_dir,
        },
        "watcher": {
            "argv": _parse_command("WATCHER_COMMAND", env["WATCHER_COMMAND"])
            if "WATCHER_COMMAND" in env else [sys.executable, "-m", "devloop.watch"],
            "cwd": project_dir,
        },
        "server": {
            "argv": _parse_command("SERVER_COMMAND", env["SERVER_COMMAND"])
            if "SERVER_COMMAND" in env else list(DEFAULT_SERVER_COMMAND),
            "cwd": project_dir,
        },
    }

    payload = {
        "url": env.get("PAYLOAD_URL") or None,
        "path": env.get("PAYLOAD_PATH") or None,
    }

    raw = {
        "project_dir": project_dir,
        "watch": watch,
        "bundle": bundle,
        "processes": processes,
        "payload": payload,
        "log_level": env.get("LOG_LEVEL", "INFO").upper(),
        "log_file": env.get("LOG_FILE") or None,
    }
    if "SHUTDOWN_GRACE_SECONDS" in env:
        raw["shutdown_grace_seconds"] = env["SHUTDOWN_GRACE_SECONDS"]

    try:
        return DevLoopConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
