"""Refresh a local file from a remote URL before the first build."""

from pathlib import Path
import asyncio
import logging

import requests

from devloop.config import PayloadConfig

logger = logging.getLogger(__name__)


class PayloadFetchError(Exception):
    """Raised when the remote payload cannot be downloaded or written."""
    pass


def fetch_payload(url: str, path: str, timeout: float = 15.0) -> int:
    """
    Download url and write the body to path.

    Returns:
        Number of bytes written

    Raises:
        PayloadFetchError: On HTTP or filesystem errors
    """
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise PayloadFetchError(f"Failed to fetch {url}: {e}") from e

    target = Path(path)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(response.content)
    except OSError as e:
        raise PayloadFetchError(f"Failed to write {target}: {e}") from e
    return len(response.content)


async def refresh_payload(config: PayloadConfig) -> bool:
    """Best-effort payload refresh; failures are logged, never raised."""
    if not config.enabled:
        return False
    try:
        size = await asyncio.to_thread(fetch_payload, config.url, config.path, config.timeout_seconds)
    except PayloadFetchError as e:
        logger.error(f"[Download] {e}")
        return False
    logger.info(f"[Download] {config.path} updated ({size} bytes)")
    return True
