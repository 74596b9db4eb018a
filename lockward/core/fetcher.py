"""Fetch boundary — raw bytes for a source URL.

Fetchers are untrusted collaborators. Two fetches of the same URL may return
different bytes; nothing here is believed until the integrity verifier
passes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import unquote, urlparse

import httpx

from lockward.core.errors import FetchFailed, NotFound

logger = logging.getLogger(__name__)


@runtime_checkable
class Fetcher(Protocol):
    """Anything with ``fetch(url) -> bytes``."""

    def fetch(self, url: str) -> bytes:
        """Return the complete body at *url*.

        Raises ``NotFound`` when the source has nothing there and
        ``FetchFailed`` for any other transport problem.
        """
        ...


class HttpFetcher:
    """Fetches ``http(s)://`` URLs with httpx and ``file://`` URLs from disk.

    Parameters
    ----------
    timeout_s:
        Per-request timeout.
    max_bytes:
        Refuse bodies larger than this.
    client:
        Optional preconfigured ``httpx.Client`` (tests pass one built on a
        ``MockTransport``).
    """

    def __init__(
        self,
        timeout_s: float = 30.0,
        max_bytes: int = 512 * 1024 * 1024,
        client: httpx.Client | None = None,
    ) -> None:
        self._max_bytes = max_bytes
        self._client = client or httpx.Client(
            timeout=timeout_s,
            follow_redirects=True,
            headers={"User-Agent": "lockward"},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HttpFetcher":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def fetch(self, url: str) -> bytes:
        scheme = urlparse(url).scheme
        if scheme == "file":
            return self._fetch_file(url)
        if scheme not in ("http", "https"):
            raise FetchFailed(f"Unsupported URL scheme {scheme!r} in {url}")

        try:
            with self._client.stream("GET", url) as response:
                if response.status_code == 404:
                    raise NotFound(f"{url} returned 404")
                if response.status_code >= 400:
                    raise FetchFailed(f"{url} returned HTTP {response.status_code}")
                chunks: list[bytes] = []
                received = 0
                for chunk in response.iter_bytes():
                    received += len(chunk)
                    if received > self._max_bytes:
                        raise FetchFailed(f"{url} exceeds {self._max_bytes} bytes")
                    chunks.append(chunk)
        except httpx.HTTPError as exc:
            raise FetchFailed(f"{url}: {exc}") from exc

        logger.debug("Fetched %s (%d bytes)", url, received)
        return b"".join(chunks)

    def _fetch_file(self, url: str) -> bytes:
        path = Path(unquote(urlparse(url).path))
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise NotFound(f"{path} does not exist") from None
        except OSError as exc:
            raise FetchFailed(f"{path}: {exc}") from exc
        if len(data) > self._max_bytes:
            raise FetchFailed(f"{path} exceeds {self._max_bytes} bytes")
        return data


class StaticFetcher:
    """Serves bytes from an in-memory mapping of URL to content.

    Values may be callables, evaluated per fetch, to model a source whose
    answer changes between requests. Every request is recorded in ``calls``.
    """

    def __init__(self, content: Mapping[str, bytes | Callable[[], bytes]]) -> None:
        self._content = dict(content)
        self.calls: list[str] = []

    def fetch(self, url: str) -> bytes:
        self.calls.append(url)
        if url not in self._content:
            raise NotFound(f"{url} is not served")
        value = self._content[url]
        return value() if callable(value) else value
