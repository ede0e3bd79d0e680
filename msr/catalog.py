from __future__ import annotations

import json
import os
import re
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Iterator

IDENTITY_RE = re.compile(r"^[a-z][a-z0-9_\-]{0,62}$")


class UnknownService(KeyError):
    """Raised when an identity is not part of the catalog."""

    def __init__(self, identity: str):
        super().__init__(identity)
        self.identity = identity

    def __str__(self) -> str:
        return f"Unknown service '{self.identity}'"


class Category(str, Enum):
    MEDIA = "media"
    INDEXER = "indexer"
    DOWNLOADER = "downloader"
    SERVER = "server"
    REQUEST = "request"
    NETWORK = "network"
    MANAGEMENT = "management"
    UTILITY = "utility"


@dataclass(frozen=True)
class VolumeMapping:
    host_path: str
    container_path: str


@dataclass(frozen=True)
class ServiceDescriptor:
    identity: str
    name: str
    category: Category
    port: int
    volume_mappings: tuple[VolumeMapping, ...] = ()
    current_version: str = "latest"
    latest_version: str = "latest"
    container_name: str = ""
    description: str = ""

    def __post_init__(self) -> None:
        validate_identity(self.identity)
        if not 1 <= int(self.port) <= 65535:
            raise ValueError(f"Invalid port {self.port} for '{self.identity}'.")
        if not self.container_name:
            object.__setattr__(self, "container_name", self.identity)


@dataclass(frozen=True)
class PlatformRecord:
    """Version record of the management platform itself."""

    identity: str
    container_name: str
    current_version: str
    latest_version: str


def validate_identity(identity: str) -> None:
    if not IDENTITY_RE.match(identity):
        raise ValueError(
            "Invalid service identity. Use lowercase letters/numbers, '_' and '-', starting with a letter (max 63 chars)."
        )


class Catalog:
    """Immutable, ordered collection of service descriptors."""

    def __init__(self, services: Iterable[ServiceDescriptor], platform: PlatformRecord):
        by_id: OrderedDict[str, ServiceDescriptor] = OrderedDict()
        for svc in services:
            if svc.identity in by_id:
                raise ValueError(f"Duplicate service identity '{svc.identity}'.")
            by_id[svc.identity] = svc
        self._services = by_id
        self.platform = platform

    def __iter__(self) -> Iterator[ServiceDescriptor]:
        return iter(self._services.values())

    def __len__(self) -> int:
        return len(self._services)

    def __contains__(self, identity: object) -> bool:
        return identity in self._services

    def identities(self) -> list[str]:
        return list(self._services)

    def get(self, identity: str) -> ServiceDescriptor:
        try:
            return self._services[identity]
        except KeyError:
            raise UnknownService(identity) from None


def _port(identity: str, default: int) -> int:
    # Same override convention as the compose file: RADARR_PORT=17878 etc.
    raw = os.getenv(f"{identity.upper()}_PORT")
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _svc(
    identity: str,
    name: str,
    category: Category,
    port: int,
    version: str,
    description: str,
    mappings: list[tuple[str, str]] | None = None,
    container_name: str = "",
) -> ServiceDescriptor:
    return ServiceDescriptor(
        identity=identity,
        name=name,
        category=category,
        port=_port(identity, port),
        volume_mappings=tuple(VolumeMapping(h, c) for h, c in (mappings or [])),
        current_version=version,
        latest_version=version,
        container_name=container_name,
        description=description,
    )


def default_catalog(platform_container: str = "arrmematey") -> Catalog:
    services = [
        _svc("radarr", "Radarr", Category.MEDIA, 7878, "5.3.6.8587", "Movie management",
             [("/root/Media/Movies", "/movies")]),
        _svc("sonarr", "Sonarr", Category.MEDIA, 8989, "4.0.2.2315", "TV show management",
             [("/root/Media/TV", "/tv")]),
        _svc("lidarr", "Lidarr", Category.MEDIA, 8686, "2.4.3.8568", "Music management",
             [("/root/Media/Music", "/music")]),
        _svc("prowlarr", "Prowlarr", Category.INDEXER, 9696, "1.8.0.3821", "Indexer manager"),
        _svc("sabnzbd", "SABnzbd", Category.DOWNLOADER, 8080, "4.3.3", "Usenet downloader",
             [("/root/Downloads/usenet", "/downloads")]),
        _svc("qbittorrent", "qBittorrent", Category.DOWNLOADER, 8081, "4.6.5", "Torrent downloader",
             [("/root/Downloads/torrents", "/downloads")]),
        _svc("emby", "Emby", Category.SERVER, 8096, "4.8.0.40", "Media server",
             [
                 ("/root/Media/Movies", "/data/movies"),
                 ("/root/Media/TV", "/data/tvshows"),
                 ("/root/Media/Music", "/data/music"),
             ]),
        _svc("jellyseerr", "Jellyseerr", Category.REQUEST, 5055, "1.8.5", "Media request system"),
        _svc("gluetun", "Gluetun VPN", Category.NETWORK, 8000, "latest", "VPN protection"),
        _svc("arrstack_ui", "Arrmematey UI", Category.MANAGEMENT, 8787, "2.20.10", "Management interface",
             container_name="arrstack-ui"),
        _svc("recyclarr", "Recyclarr", Category.UTILITY, 8789, "5.0", "Download cleanup"),
        _svc("flaresolverr", "FlareSolverr", Category.UTILITY, 8191, "3.3.21", "Cloudflare bypass"),
    ]
    platform = PlatformRecord(
        identity="arrmematey",
        container_name=platform_container,
        current_version="2.20.10",
        latest_version="2.20.10",
    )
    return Catalog(services, platform)


def _descriptor_from_dict(identity: str, raw: dict[str, Any]) -> ServiceDescriptor:
    version = str(raw.get("currentVersion", "latest"))
    return ServiceDescriptor(
        identity=identity,
        name=str(raw.get("name", identity)),
        category=Category(raw.get("category", "utility")),
        port=_port(identity, int(raw["port"])),
        volume_mappings=tuple(
            VolumeMapping(str(m["hostPath"]), str(m["containerPath"])) for m in raw.get("volumeMappings", [])
        ),
        current_version=version,
        latest_version=str(raw.get("latestVersion", version)),
        container_name=str(raw.get("containerName", "")),
        description=str(raw.get("description", "")),
    )


def load_catalog(path: str, platform_container: str = "arrmematey") -> Catalog:
    """Load a catalog from a JSON file.

    Expected shape (same keys as the UI's service config)::

        {
          "services": {"radarr": {"name": "Radarr", "port": 7878, "category": "media",
                                  "volumeMappings": [{"hostPath": "...", "containerPath": "/movies"}]}},
          "platform": {"version": "2.20.10", "latestVersion": "2.20.10"}
        }
    """
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    services = [_descriptor_from_dict(k, v) for k, v in data.get("services", {}).items()]
    plat = data.get("platform", {})
    platform = PlatformRecord(
        identity=str(plat.get("identity", "arrmematey")),
        container_name=str(plat.get("containerName", platform_container)),
        current_version=str(plat.get("version", "latest")),
        latest_version=str(plat.get("latestVersion", plat.get("version", "latest"))),
    )
    return Catalog(services, platform)
