"""
Tests for the pre-build payload refresh.

HTTP calls are mocked; nothing leaves the machine.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from devloop.config import PayloadConfig
from devloop.watch.payload import PayloadFetchError, fetch_payload, refresh_payload


def make_response(content=b"console.log('hi');\n", status_error=None):
    response = MagicMock()
    response.content = content
    response.raise_for_status.side_effect = status_error
    return response


class TestFetchPayload:

    def test_writes_body(self, tmp_path):
        target = tmp_path / "nested" / "main.js"

        with patch("devloop.watch.payload.requests.get", return_value=make_response()) as mock_get:
            size = fetch_payload("https://example.com/main.js", str(target), timeout=3)

        assert target.read_bytes() == b"console.log('hi');\n"
        assert size == len(b"console.log('hi');\n")
        mock_get.assert_called_once_with("https://example.com/main.js", timeout=3)

    def test_http_error(self, tmp_path):
        response = make_response(status_error=requests.HTTPError("404 Not Found"))

        with patch("devloop.watch.payload.requests.get", return_value=response):
            with pytest.raises(PayloadFetchError):
                fetch_payload("https://example.com/main.js", str(tmp_path / "main.js"))

        assert not (tmp_path / "main.js").exists()

    def test_connection_error(self, tmp_path):
        with patch("devloop.watch.payload.requests.get", side_effect=requests.ConnectionError("offline")):
            with pytest.raises(PayloadFetchError):
                fetch_payload("https://example.com/main.js", str(tmp_path / "main.js"))


class TestRefreshPayload:

    async def test_disabled_does_nothing(self):
        with patch("devloop.watch.payload.requests.get") as mock_get:
            assert await refresh_payload(PayloadConfig()) is False
        mock_get.assert_not_called()

    async def test_failure_is_logged_not_raised(self, tmp_path, caplog):
        config = PayloadConfig(url="https://example.com/main.js", path=str(tmp_path / "main.js"))

        with patch("devloop.watch.payload.requests.get", side_effect=requests.Timeout("slow")):
            assert await refresh_payload(config) is False

        assert "[Download]" in caplog.text

    async def test_success(self, tmp_path):
        config = PayloadConfig(url="https://example.com/main.js", path=str(tmp_path / "main.js"))

        with patch("devloop.watch.payload.requests.get", return_value=make_response()):
            assert await refresh_payload(config) is True

        assert (tmp_path / "main.js").exists()
