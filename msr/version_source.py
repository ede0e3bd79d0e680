from __future__ import annotations

from typing import Any

import httpx

from .catalog import Catalog


class VersionCheckError(RuntimeError):
    pass


class HttpVersionSource:
    """Fetch ``{identity: {"currentVersion": ..., "latestVersion": ...}}`` from a JSON feed."""

    def __init__(self, url: str, timeout_s: float = 5.0, transport: httpx.BaseTransport | None = None):
        self.url = url
        self.timeout_s = timeout_s
        self._transport = transport

    def check_versions(self) -> dict[str, Any]:
        try:
            with httpx.Client(timeout=self.timeout_s, follow_redirects=False, transport=self._transport) as client:
                resp = client.get(self.url)
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise VersionCheckError(f"No response from version feed: {type(e).__name__}") from e
        if resp.status_code != 200:
            raise VersionCheckError(f"Version feed returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise VersionCheckError("Version feed returned invalid JSON") from e
        if not isinstance(data, dict):
            raise VersionCheckError(f"Version feed returned {type(data).__name__}, expected an object")
        return data


class StaticVersionSource:
    """Reports the catalog's baseline versions; used when no feed is configured."""

    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    def check_versions(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            d.identity: {"currentVersion": d.current_version, "latestVersion": d.latest_version} for d in self.catalog
        }
        p = self.catalog.platform
        out[p.identity] = {"currentVersion": p.current_version, "latestVersion": p.latest_version}
        return out
