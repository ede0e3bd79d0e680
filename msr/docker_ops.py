from __future__ import annotations

from typing import Any, Callable, Mapping, Protocol

import docker
from docker.errors import DockerException, NotFound

from . import db
from .catalog import Catalog, ServiceDescriptor, UnknownService
from .models import ActionResult, LifecycleState, Mount, RuntimeFact, UpgradeAction


class RuntimeUnavailable(RuntimeError):
    """The container engine could not be reached or refused the call."""


class ContainerRuntime(Protocol):
    """What the core needs from a container engine client."""

    def fetch_runtime_state(self, identity: str) -> RuntimeFact | None: ...

    def fetch_all_runtime_states(self) -> dict[str, RuntimeFact]: ...

    def start_container(self, identity: str) -> None: ...

    def stop_container(self, identity: str, grace_period_s: int = 10) -> None: ...

    def restart_container(self, identity: str) -> None: ...

    def fetch_logs(self, identity: str, tail_lines: int = 100) -> str: ...

    def upgrade_platform(self, action: UpgradeAction) -> ActionResult: ...

    def upgrade_service(self, identity: str, action: UpgradeAction) -> ActionResult: ...

    def restart_all_services(self) -> ActionResult: ...

    def system_info(self) -> dict[str, Any]: ...


def lifecycle_from_state(state: Mapping[str, Any]) -> LifecycleState:
    """Map a docker inspect ``State`` block onto the fleet lifecycle."""
    status = str(state.get("Status", "")).lower()
    health = str((state.get("Health") or {}).get("Status", "")).lower()
    if status == "running":
        if health == "unhealthy":
            return LifecycleState.UNHEALTHY
        if health == "starting":
            return LifecycleState.STARTING
        return LifecycleState.RUNNING
    if status in {"created", "restarting"}:
        return LifecycleState.STARTING
    if status == "removing":
        return LifecycleState.STOPPING
    if status in {"exited", "dead", "paused"}:
        return LifecycleState.STOPPED
    return LifecycleState.UNKNOWN


def fact_from_attrs(attrs: Mapping[str, Any]) -> RuntimeFact:
    state = attrs.get("State") or {}
    health = (state.get("Health") or {}).get("Status") or state.get("Status") or "unknown"
    raw_mounts = attrs.get("Mounts")
    mounts: tuple[Mount, ...] | None
    if raw_mounts is None:
        mounts = None
    else:
        mounts = tuple(
            Mount(
                source=str(m.get("Source", "")),
                destination=str(m.get("Destination", "")),
                type=str(m.get("Type", "")),
                read_write=bool(m.get("RW", False)),
            )
            for m in raw_mounts
        )
    return RuntimeFact(
        state=lifecycle_from_state(state),
        health=str(health),
        image=str((attrs.get("Config") or {}).get("Image", "")),
        mounts=mounts,
    )


def _port_bindings(host_config: Mapping[str, Any]) -> dict[str, Any]:
    ports: dict[str, Any] = {}
    for container_port, bindings in (host_config.get("PortBindings") or {}).items():
        if not bindings:
            continue
        host_ports = [int(b["HostPort"]) for b in bindings if b and b.get("HostPort")]
        if len(host_ports) == 1:
            ports[container_port] = host_ports[0]
        elif host_ports:
            ports[container_port] = host_ports
    return ports


def _network_kwargs(host_config: Mapping[str, Any]) -> dict[str, Any]:
    """Translate inspect ``HostConfig.NetworkMode`` into ``containers.run`` kwargs."""
    mode = str(host_config.get("NetworkMode") or "")
    if mode in {"", "default", "bridge"}:
        return {"ports": _port_bindings(host_config)}
    if mode in {"host", "none"} or mode.startswith("container:"):
        # Ports cannot be published when sharing another network stack.
        return {"network_mode": mode}
    return {"network": mode, "ports": _port_bindings(host_config)}


class DockerRuntime:
    """Runtime State Fetcher backed by the Docker engine.

    Containers are found by exact name (``ServiceDescriptor.container_name``).
    The client is created per call so a daemon restart does not leave us with
    a dead connection.
    """

    def __init__(
        self,
        catalog: Catalog,
        client_factory: Callable[[], docker.DockerClient] = docker.from_env,
        stop_grace_s: int = 10,
    ):
        self.catalog = catalog
        self._client_factory = client_factory
        self.stop_grace_s = stop_grace_s

    def _client(self) -> docker.DockerClient:
        try:
            return self._client_factory()
        except DockerException as e:
            raise RuntimeUnavailable(f"Docker is not available: {e}") from e

    def system_info(self) -> dict[str, Any]:
        """Engine version, container/image counts and which catalog services have a container."""
        client = self._client()
        try:
            info = client.info()
            containers = client.containers.list(all=True)
            images = client.images.list()
        except DockerException as e:
            raise RuntimeUnavailable(str(e)) from e
        names = {c.name for c in containers}
        return {
            "docker": {
                "version": info.get("ServerVersion"),
                "containers": len(containers),
                "running": sum(1 for c in containers if c.status == "running"),
                "images": len(images),
            },
            "services": [d.identity for d in self.catalog if d.container_name in names],
        }

    def _get(self, client: docker.DockerClient, desc: ServiceDescriptor):
        return client.containers.get(desc.container_name)

    def _container(self, identity: str):
        desc = self.catalog.get(identity)
        try:
            return self._get(self._client(), desc)
        except NotFound as e:
            raise RuntimeUnavailable(f"Container '{desc.container_name}' not found") from e
        except DockerException as e:
            raise RuntimeUnavailable(str(e)) from e

    # --- read side ---

    def fetch_runtime_state(self, identity: str) -> RuntimeFact | None:
        desc = self.catalog.get(identity)
        try:
            cont = self._get(self._client(), desc)
        except NotFound:
            return None
        except DockerException as e:
            raise RuntimeUnavailable(str(e)) from e
        return fact_from_attrs(cont.attrs)

    def fetch_all_runtime_states(self) -> dict[str, RuntimeFact]:
        try:
            containers = self._client().containers.list(all=True)
        except DockerException as e:
            raise RuntimeUnavailable(str(e)) from e
        by_name = {c.name: c for c in containers}
        out: dict[str, RuntimeFact] = {}
        for desc in self.catalog:
            cont = by_name.get(desc.container_name)
            if cont is not None:
                out[desc.identity] = fact_from_attrs(cont.attrs)
        return out

    def fetch_logs(self, identity: str, tail_lines: int = 100) -> str:
        cont = self._container(identity)
        try:
            raw = cont.logs(stdout=True, stderr=True, timestamps=True, tail=int(tail_lines))
        except DockerException as e:
            raise RuntimeUnavailable(str(e)) from e
        return raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)

    # --- lifecycle ---

    def start_container(self, identity: str) -> None:
        cont = self._container(identity)
        try:
            cont.start()
        except DockerException as e:
            raise RuntimeUnavailable(str(e)) from e

    def stop_container(self, identity: str, grace_period_s: int | None = None) -> None:
        cont = self._container(identity)
        timeout = self.stop_grace_s if grace_period_s is None else int(grace_period_s)
        try:
            cont.stop(timeout=timeout)
        except DockerException as e:
            raise RuntimeUnavailable(str(e)) from e

    def restart_container(self, identity: str) -> None:
        cont = self._container(identity)
        try:
            cont.restart()
        except DockerException as e:
            raise RuntimeUnavailable(str(e)) from e

    # --- upgrades ---

    def _pull(self, client: docker.DockerClient, image_ref: str) -> str:
        image = client.images.pull(image_ref)
        return image.id

    def _recreate(self, client: docker.DockerClient, cont: Any, image_ref: str) -> str:
        """Replace ``cont`` with a fresh container from ``image_ref``.

        The old container is stopped and parked under a backup name until the
        new one is running, and put back if anything goes wrong.
        """
        attrs = cont.attrs
        cfg = attrs.get("Config") or {}
        host = attrs.get("HostConfig") or {}
        name = cont.name
        backup = f"{name}-msr-previous"
        cont.stop(timeout=self.stop_grace_s)
        try:
            cont.rename(backup)
        except DockerException:
            cont.start()
            raise
        try:
            new = client.containers.run(
                image_ref,
                detach=True,
                name=name,
                environment=cfg.get("Env") or [],
                labels=cfg.get("Labels") or {},
                volumes=host.get("Binds") or [],
                restart_policy=host.get("RestartPolicy") or {"Name": "unless-stopped"},
                **_network_kwargs(host),
            )
        except DockerException:
            self._restore(client, cont, name)
            raise
        cont.remove()
        return new.id

    def _restore(self, client: docker.DockerClient, old: Any, name: str) -> None:
        # run() may have created the container before failing to start it
        try:
            client.containers.get(name).remove(force=True)
        except NotFound:
            pass
        old.rename(name)
        old.start()
        db.log_event("WARN", f"Rebuild failed, restored previous container '{name}'")

    def _upgrade_container(self, client: docker.DockerClient, container_name: str, action: UpgradeAction) -> ActionResult:
        try:
            cont = client.containers.get(container_name)
        except NotFound:
            return ActionResult.failed(f"Container '{container_name}' not found")
        image_ref = (cont.attrs.get("Config") or {}).get("Image", "")
        try:
            if action == UpgradeAction.RESTART_SERVICE:
                cont.restart()
                return ActionResult.ok(action=action.value)
            if not image_ref:
                return ActionResult.failed(f"Container '{container_name}' has no image reference")
            image_id = self._pull(client, image_ref)
            if action == UpgradeAction.REBUILD_CONTAINER:
                container_id = self._recreate(client, cont, image_ref)
                return ActionResult.ok(action=action.value, image=image_ref, imageId=image_id, containerId=container_id)
            return ActionResult.ok(action=action.value, image=image_ref, imageId=image_id)
        except DockerException as e:
            return ActionResult.failed(str(e))

    def upgrade_service(self, identity: str, action: UpgradeAction) -> ActionResult:
        desc = self.catalog.get(identity)
        try:
            return self._upgrade_container(self._client(), desc.container_name, UpgradeAction(action))
        except DockerException as e:
            raise RuntimeUnavailable(str(e)) from e

    def upgrade_platform(self, action: UpgradeAction) -> ActionResult:
        # The platform only ever pulls; the restart phase of the global
        # workflow picks the new image up.
        try:
            return self._upgrade_container(
                self._client(), self.catalog.platform.container_name, UpgradeAction.PULL_IMAGE
            )
        except DockerException as e:
            raise RuntimeUnavailable(str(e)) from e

    def restart_all_services(self) -> ActionResult:
        client = self._client()
        restarted: list[str] = []
        failed: dict[str, str] = {}
        for desc in self.catalog:
            try:
                client.containers.get(desc.container_name).restart()
                restarted.append(desc.identity)
            except NotFound:
                failed[desc.identity] = "container not found"
            except DockerException as e:
                failed[desc.identity] = str(e)
        if failed:
            summary = ", ".join(f"{k}: {v}" for k, v in failed.items())
            return ActionResult.failed(f"Restart failed for {summary}", restarted=restarted, failed=failed)
        return ActionResult.ok(restarted=restarted)


__all__ = [
    "ContainerRuntime",
    "DockerRuntime",
    "RuntimeUnavailable",
    "UnknownService",
    "fact_from_attrs",
    "lifecycle_from_state",
]
