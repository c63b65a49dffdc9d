"""HTTP download primitive used by the install pipeline."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Optional

import requests

from .config import DistributionConfig
from .errors import ArchiveIOError, DownloadError, NetworkUnreachableError
from .fsutil import ensure_dir
from .progress import ProgressThrottle

logger = logging.getLogger("savecrate.download")

CHUNK_SIZE = 64 * 1024

# (bytes downloaded, total bytes if the server sent Content-Length)
DownloadProgress = Callable[[int, Optional[int]], None]


def http_session(config: DistributionConfig) -> requests.Session:
    """Session carrying the launcher user agent."""
    session = requests.Session()
    session.headers["User-Agent"] = config.user_agent
    return session


def _timeouts(config: Optional[DistributionConfig]) -> tuple[float, float]:
    config = config or DistributionConfig()
    return config.connect_timeout, config.read_timeout


def _get(session: requests.Session, url: str, what: str, **kwargs: Any) -> requests.Response:
    try:
        response = session.get(url, **kwargs)
    except (requests.ConnectionError, requests.Timeout) as exc:
        raise NetworkUnreachableError(f"Failed to reach {url} for {what}: {exc}") from exc
    except requests.RequestException as exc:
        raise DownloadError(f"{what} request failed: {exc}") from exc

    if not response.ok:
        response.close()
        raise DownloadError(f"{what} failed with status {response.status_code}: {url}")
    return response


def fetch_json(
    session: requests.Session,
    url: str,
    config: Optional[DistributionConfig] = None,
    what: str = "Request",
) -> Any:
    """GET ``url`` and decode its JSON body.

    Raises:
        NetworkUnreachableError: Connection refused, DNS failure, or timeout.
        DownloadError: Non-2xx status or an undecodable body.
    """
    response = _get(session, url, what, timeout=_timeouts(config))
    try:
        return response.json()
    except ValueError as exc:
        raise DownloadError(f"Failed to parse {what.lower()} response: {exc}") from exc


def download_file(
    session: requests.Session,
    url: str,
    destination: Path,
    on_progress: Optional[DownloadProgress] = None,
    config: Optional[DistributionConfig] = None,
) -> int:
    """Stream ``url`` into ``destination``.

    Progress is reported once before the first chunk, then throttled
    (every percent of a known length, otherwise every
    ``min_interval``), and always once with the final byte count. A
    partially written file is removed on failure.

    Returns:
        int: Bytes written.
    """
    response = _get(session, url, "Download", stream=True, timeout=_timeouts(config))
    ensure_dir(destination.parent)

    total = response.headers.get("Content-Length")
    total_size = int(total) if total and total.isdigit() else None
    downloaded = 0
    throttle = ProgressThrottle(total_size)
    if on_progress:
        on_progress(downloaded, total_size)

    try:
        with response, open(destination, "wb") as handle:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if not chunk:
                    continue
                handle.write(chunk)
                downloaded += len(chunk)
                if on_progress and throttle.should_emit(downloaded):
                    on_progress(downloaded, total_size)
    except (requests.ConnectionError, requests.Timeout) as exc:
        destination.unlink(missing_ok=True)
        raise NetworkUnreachableError(f"Download stream failed: {exc}") from exc
    except requests.RequestException as exc:
        destination.unlink(missing_ok=True)
        raise DownloadError(f"Download stream failed: {exc}") from exc
    except OSError as exc:
        destination.unlink(missing_ok=True)
        raise ArchiveIOError(
            f"Failed to write download file '{destination}': {exc}", destination
        ) from exc

    if on_progress and downloaded and throttle.last_reported != downloaded:
        on_progress(downloaded, total_size)

    logger.info("Downloaded %s (%d bytes) to %s", url, downloaded, destination)
    return downloaded
