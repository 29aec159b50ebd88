from dataclasses import dataclass
from dataclasses import field
from json import dumps
from logging import getLogger
from typing import Any, Optional

from docker import DockerClient
from docker.errors import DockerException
from requests.exceptions import RequestException
from urllib3.exceptions import HTTPError as TransportError

from .errors import RuntimeClientError
from .utils import safe_get
from .utils import short_id

LOG = getLogger(__name__)

# Pull progress is read straight off the urllib3 response, so its errors surface unwrapped.
RUNTIME_ERRORS = (DockerException, RequestException, TransportError)

# Endpoint fields that are user intent rather than state assigned by the daemon.
_ENDPOINT_KEYS = ("IPAMConfig", "Links", "Aliases", "DriverOpts", "MacAddress", "GwPriority")


@dataclass(frozen=True)
class ContainerDescriptor:
    id: str
    image: str
    image_id: str
    labels: dict = field(default_factory=dict)
    names: tuple = ()
    host_config: dict = field(default_factory=dict)
    network_settings: dict = field(default_factory=dict)

    @classmethod
    def from_listing(cls, entry: dict) -> "ContainerDescriptor":
        return cls(
            id=entry.get("Id", ""),
            image=entry.get("Image", ""),
            image_id=entry.get("ImageID", ""),
            labels=dict(entry.get("Labels") or {}),
            names=tuple(entry.get("Names") or ()),
            host_config=dict(entry.get("HostConfig") or {}),
            network_settings=dict(entry.get("NetworkSettings") or {}),
        )

    @classmethod
    def from_inspect(cls, attrs: dict) -> "ContainerDescriptor":
        config = attrs.get("Config") or {}
        host_config = attrs.get("HostConfig") or {}
        name = attrs.get("Name")
        return cls(
            id=attrs.get("Id", ""),
            image=config.get("Image", ""),
            image_id=attrs.get("Image", ""),
            labels=dict(config.get("Labels") or {}),
            names=(name,) if name else (),
            host_config={"NetworkMode": host_config.get("NetworkMode")} if host_config.get("NetworkMode") else {},
            network_settings={"Networks": safe_get(attrs.get("NetworkSettings"), "Networks", {})},
        )

    @property
    def name(self) -> Optional[str]:
        if not self.names:
            return None
        return self.names[0].lstrip("/") or None

    @property
    def display_name(self) -> str:
        return self.name or short_id(self.id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "Id": self.id,
            "Names": list(self.names),
            "Image": self.image,
            "ImageID": self.image_id,
            "Labels": dict(self.labels),
            "HostConfig": dict(self.host_config),
            "NetworkSettings": dict(self.network_settings),
        }


@dataclass(frozen=True)
class Snapshot:
    """What it takes to recreate an equivalent container."""

    config: dict
    host_config: dict
    endpoints: dict

    @classmethod
    def from_inspect(cls, attrs: dict) -> "Snapshot":
        container_id = attrs.get("Id") or ""
        networks = safe_get(attrs.get("NetworkSettings"), "Networks", {}) or {}
        endpoints: dict[str, dict] = {}
        for network_name, network_cfg in networks.items():
            endpoint = {key: network_cfg[key] for key in _ENDPOINT_KEYS if network_cfg.get(key)}
            aliases = endpoint.get("Aliases")
            if aliases:
                # The daemon adds the short container id as an alias; it would go stale.
                kept = [alias for alias in aliases if alias != container_id[:12]]
                if kept:
                    endpoint["Aliases"] = kept
                else:
                    endpoint.pop("Aliases")
            endpoints[network_name] = endpoint
        return cls(
            config=dict(attrs.get("Config") or {}),
            host_config=dict(attrs.get("HostConfig") or {}),
            endpoints=endpoints,
        )

    @property
    def image(self) -> Optional[str]:
        return self.config.get("Image")

    @property
    def auto_remove(self) -> bool:
        return bool(self.host_config.get("AutoRemove"))

    def create_payload(self) -> dict:
        payload = dict(self.config)
        payload["HostConfig"] = dict(self.host_config)
        if self.endpoints:
            payload["NetworkingConfig"] = {"EndpointsConfig": dict(self.endpoints)}
        return payload


class DockerRuntime:
    """Adapter over the Engine API; every failure surfaces as RuntimeClientError."""

    def __init__(self, client: DockerClient):
        self.client = client
        self.api = client.api

    def ping(self) -> None:
        try:
            self.api.ping()
        except RUNTIME_ERRORS as error:
            raise RuntimeClientError(f"Docker daemon unreachable: {error}") from error

    def list_by_label_key(self, label_key: str) -> list[ContainerDescriptor]:
        try:
            entries = self.api.containers(filters={"label": label_key})
        except RUNTIME_ERRORS as error:
            raise RuntimeClientError(f"Failed to list containers with label {label_key}: {error}") from error
        return [ContainerDescriptor.from_listing(entry) for entry in entries or []]

    def inspect(self, container_id: str) -> Snapshot:
        return Snapshot.from_inspect(self._inspect(container_id))

    def describe(self, container_id: str) -> ContainerDescriptor:
        return ContainerDescriptor.from_inspect(self._inspect(container_id))

    def pull(self, image_ref: str, auth_config: Optional[dict] = None) -> str:
        lines: list[str] = []
        try:
            for event in self.api.pull(image_ref, stream=True, decode=True, auth_config=auth_config):
                if isinstance(event, dict) and event.get("error"):
                    raise RuntimeClientError(f"Failed to pull {image_ref}: {event['error']}")
                lines.append(dumps(event) if isinstance(event, dict) else str(event))
        except RUNTIME_ERRORS as error:
            raise RuntimeClientError(f"Failed to pull {image_ref}: {error}") from error
        return "\n".join(lines)

    def stop(self, container_id: str, grace_seconds: int) -> None:
        try:
            self.api.stop(container_id, timeout=grace_seconds)
        except RUNTIME_ERRORS as error:
            raise RuntimeClientError(f"Failed to stop {short_id(container_id)}: {error}") from error

    def remove(self, container_id: str) -> None:
        try:
            self.api.remove_container(container_id)
        except RUNTIME_ERRORS as error:
            raise RuntimeClientError(f"Failed to remove {short_id(container_id)}: {error}") from error

    def create(self, snapshot: Snapshot, name: Optional[str] = None) -> str:
        try:
            created = self.api.create_container_from_config(snapshot.create_payload(), name=name or None)
        except RUNTIME_ERRORS as error:
            raise RuntimeClientError(f"Failed to create container from {snapshot.image}: {error}") from error
        new_id = (created or {}).get("Id")
        if not new_id:
            raise RuntimeClientError("create_container returned no Id")
        for warning in created.get("Warnings") or []:
            LOG.warning("Docker warning creating %s: %s", name or short_id(new_id), warning)
        return new_id

    def start(self, container_id: str) -> None:
        try:
            self.api.start(container_id)
        except RUNTIME_ERRORS as error:
            raise RuntimeClientError(f"Failed to start {short_id(container_id)}: {error}") from error

    def remove_image(self, image_id: str) -> None:
        try:
            self.api.remove_image(image_id)
        except RUNTIME_ERRORS as error:
            raise RuntimeClientError(f"Failed to remove image {short_id(image_id)}: {error}") from error

    def close(self) -> None:
        try:
            self.client.close()
        except RUNTIME_ERRORS as error:
            LOG.debug("Error closing Docker client: %s", error)

    def _inspect(self, container_id: str) -> dict:
        try:
            return self.api.inspect_container(container_id)
        except RUNTIME_ERRORS as error:
            raise RuntimeClientError(f"Failed to inspect {short_id(container_id)}: {error}") from error
