from __future__ import annotations

from dataclasses import dataclass

import httpx

from ._version import __version__

DEFAULT_TIMEOUT_S = 30.0
DEFAULT_USER_AGENT = f"channelpin/{__version__}"


class ChannelpinError(RuntimeError):
    pass


@dataclass(frozen=True)
class ArchiveHTTPError(ChannelpinError):
    status_code: int
    body: str

    def __str__(self) -> str:  # pragma: no cover
        return f"HTTP {self.status_code}: {self.body}"


def join_archive_url(base_url: str, filename: str) -> str:
    return f"{base_url.rstrip('/')}/{filename}"


class ArchiveClient:
    """
    Downloads package files from a package archive. Metadata is never fetched here.
    """

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.timeout_s = timeout_s
        self.user_agent = user_agent
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "ArchiveClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def download(self, url: str) -> bytes:
        try:
            resp = self._http.get(url, headers={"User-Agent": self.user_agent})
        except httpx.HTTPError as e:
            raise ChannelpinError(f"Request failed: {e}") from e

        if resp.status_code >= 400:
            raise ArchiveHTTPError(resp.status_code, resp.text)
        return resp.content
