"""Tests for the HTTP download primitive."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from savecrate.config import DistributionConfig
from savecrate.download import download_file, fetch_json, http_session
from savecrate.errors import DownloadError, NetworkUnreachableError


def _response(chunks: list[bytes], status: int = 200, length: str | None = None) -> MagicMock:
    response = MagicMock()
    response.ok = 200 <= status < 300
    response.status_code = status
    response.headers = {} if length is None else {"Content-Length": length}
    response.iter_content.return_value = iter(chunks)
    response.__enter__.return_value = response
    return response


class TestHttpSession:
    def test_user_agent(self) -> None:
        session = http_session(DistributionConfig(user_agent="savecrate-test/1.0"))
        assert session.headers["User-Agent"] == "savecrate-test/1.0"


class TestFetchJson:
    def test_decodes_body(self) -> None:
        session = MagicMock()
        session.get.return_value = _response([])
        session.get.return_value.json.return_value = {"tag_name": "v1"}

        assert fetch_json(session, "https://api.example.test/x") == {"tag_name": "v1"}
        _, kwargs = session.get.call_args
        assert kwargs["timeout"] == (30.0, 600.0)

    def test_bad_json(self) -> None:
        session = MagicMock()
        session.get.return_value = _response([])
        session.get.return_value.json.side_effect = ValueError("Expecting value")
        with pytest.raises(DownloadError, match="Failed to parse"):
            fetch_json(session, "https://api.example.test/x", what="Releases list")

    def test_timeout_is_unreachable(self) -> None:
        session = MagicMock()
        session.get.side_effect = requests.Timeout("slow")
        with pytest.raises(NetworkUnreachableError):
            fetch_json(session, "https://api.example.test/x")

    def test_other_request_errors(self) -> None:
        session = MagicMock()
        session.get.side_effect = requests.TooManyRedirects("loop")
        with pytest.raises(DownloadError) as excinfo:
            fetch_json(session, "https://api.example.test/x")
        assert not isinstance(excinfo.value, NetworkUnreachableError)


class TestDownloadFile:
    """Streaming download to disk."""

    def test_streams_with_progress(self, tmp_path: Path) -> None:
        session = MagicMock()
        session.get.return_value = _response([b"abc", b"", b"defg"], length="7")
        calls: list[tuple[int, int | None]] = []

        written = download_file(
            session, "https://dl.example.test/f.zip", tmp_path / "cache" / "f.zip",
            on_progress=lambda done, total: calls.append((done, total)),
        )

        assert written == 7
        assert (tmp_path / "cache" / "f.zip").read_bytes() == b"abcdefg"
        assert calls == [(0, 7), (3, 7), (7, 7)]
        assert session.get.call_args.kwargs["stream"] is True

    def test_unknown_length(self, tmp_path: Path) -> None:
        session = MagicMock()
        session.get.return_value = _response([b"x"])
        calls: list[tuple[int, int | None]] = []
        download_file(session, "u", tmp_path / "f", on_progress=lambda d, t: calls.append((d, t)))
        assert calls[-1] == (1, None)

    def test_progress_is_throttled_for_many_chunks(self, tmp_path: Path) -> None:
        session = MagicMock()
        session.get.return_value = _response([b"0123456789"] * 1000, length="10000")
        calls: list[tuple[int, int | None]] = []

        download_file(session, "u", tmp_path / "f", on_progress=lambda d, t: calls.append((d, t)))

        assert len(calls) < 200
        assert calls[0] == (0, 10000)
        assert calls[-1] == (10000, 10000)
        assert [done for done, _ in calls] == sorted(done for done, _ in calls)

    def test_unknown_length_reports_final_count(self, tmp_path: Path) -> None:
        session = MagicMock()
        session.get.return_value = _response([b"0123456789"] * 1000)
        calls: list[tuple[int, int | None]] = []

        download_file(session, "u", tmp_path / "f", on_progress=lambda d, t: calls.append((d, t)))

        assert len(calls) < 200
        assert calls[0] == (0, None)
        assert calls[-1] == (10000, None)

    def test_bad_status(self, tmp_path: Path) -> None:
        session = MagicMock()
        session.get.return_value = _response([], status=503)
        with pytest.raises(DownloadError, match="status 503"):
            download_file(session, "https://dl.example.test/f.zip", tmp_path / "f.zip")
        assert not (tmp_path / "f.zip").exists()

    def test_stream_failure_removes_partial_file(self, tmp_path: Path) -> None:
        def broken_stream():
            yield b"partial"
            raise requests.ConnectionError("reset by peer")

        session = MagicMock()
        response = _response([])
        response.iter_content.return_value = broken_stream()
        session.get.return_value = response

        with pytest.raises(NetworkUnreachableError):
            download_file(session, "https://dl.example.test/f.zip", tmp_path / "f.zip")
        assert not (tmp_path / "f.zip").exists()
