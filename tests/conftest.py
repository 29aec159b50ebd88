from itertools import count
from typing import Callable, Optional

import pytest

from yadwh.config import CredentialStore
from yadwh.config import GroupCredential
from yadwh.config import Settings
from yadwh.errors import RuntimeClientError
from yadwh.orchestrator import ContainerOrchestrator
from yadwh.runtime import ContainerDescriptor
from yadwh.runtime import Snapshot

LABEL = "io.d2a.yadwh.ug"
SECRET = "abcdefghijkl"


class FakeRuntime:
    """In-memory stand-in for DockerRuntime that behaves like a small daemon."""

    def __init__(self):
        self.containers: dict[str, dict] = {}
        self.images: dict[str, str] = {}
        self.removed_images: list[str] = []
        self.calls: list[tuple] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self.pull_logs: dict[str, str] = {}
        self.list_error: Optional[Exception] = None
        self.describe_error: Optional[Exception] = None
        self._ids = count(1)

    def add_container(
        self,
        name: Optional[str],
        labels: Optional[dict] = None,
        image: str = "repo/app:latest",
        image_id: str = "sha256:old",
        auto_remove: bool = False,
    ) -> ContainerDescriptor:
        container_id = self._new_id()
        self.containers[container_id] = {
            "name": name,
            "labels": dict(labels or {}),
            "image": image,
            "image_id": image_id,
            "auto_remove": auto_remove,
            "running": True,
        }
        self.images.setdefault(image, image_id)
        return self._descriptor(container_id)

    def fail(self, method: str, target: str, error: Optional[Exception] = None) -> None:
        self.failures[(method, target)] = error or RuntimeClientError(f"{method} {target} boom")

    def running(self) -> list[dict]:
        return [record for record in self.containers.values() if record["running"]]

    def by_name(self, name: str) -> Optional[str]:
        for container_id, record in self.containers.items():
            if record["name"] == name:
                return container_id
        return None

    def methods(self) -> list[str]:
        return [call[0] for call in self.calls]

    def list_by_label_key(self, label_key: str) -> list[ContainerDescriptor]:
        self.calls.append(("list", label_key))
        if self.list_error is not None:
            raise self.list_error
        return [
            self._descriptor(container_id)
            for container_id, record in self.containers.items()
            if record["running"] and label_key in record["labels"]
        ]

    def inspect(self, container_id: str) -> Snapshot:
        self.calls.append(("inspect", container_id))
        record = self._record("inspect", container_id)
        return Snapshot(
            config={"Image": record["image"], "Labels": dict(record["labels"]), "Env": ["A=1"]},
            host_config={"AutoRemove": record["auto_remove"], "NetworkMode": "bridge"},
            endpoints={"bridge": {"Aliases": ["app"]}},
        )

    def describe(self, container_id: str) -> ContainerDescriptor:
        self.calls.append(("describe", container_id))
        if self.describe_error is not None:
            raise self.describe_error
        self._record("describe", container_id)
        return self._descriptor(container_id)

    def pull(self, image_ref: str, auth_config: Optional[dict] = None) -> str:
        self.calls.append(("pull", image_ref, auth_config))
        self._maybe_fail("pull", image_ref)
        default = f'{{"status": "Status: Downloaded newer image for {image_ref}"}}'
        return self.pull_logs.get(image_ref, default)

    def stop(self, container_id: str, grace_seconds: int) -> None:
        self.calls.append(("stop", container_id, grace_seconds))
        record = self._record("stop", container_id)
        record["running"] = False
        if record["auto_remove"]:
            del self.containers[container_id]

    def remove(self, container_id: str) -> None:
        self.calls.append(("remove", container_id))
        self._record("remove", container_id)
        del self.containers[container_id]

    def create(self, snapshot: Snapshot, name: Optional[str] = None) -> str:
        self.calls.append(("create", snapshot, name))
        self._maybe_fail("create", name or "")
        if name is not None and self.by_name(name) is not None:
            raise RuntimeClientError(f"Conflict. The container name {name} is already in use")
        container_id = self._new_id()
        image = snapshot.config["Image"]
        self.containers[container_id] = {
            "name": name,
            "labels": dict(snapshot.config.get("Labels") or {}),
            "image": image,
            "image_id": self.images.get(image, "sha256:unknown"),
            "auto_remove": bool(snapshot.host_config.get("AutoRemove")),
            "running": False,
        }
        return container_id

    def start(self, container_id: str) -> None:
        self.calls.append(("start", container_id))
        self._record("start", container_id)["running"] = True

    def remove_image(self, image_id: str) -> None:
        self.calls.append(("remove_image", image_id))
        self._maybe_fail("remove_image", image_id)
        if any(record["image_id"] == image_id for record in self.containers.values()):
            raise RuntimeClientError(f"conflict: unable to delete {image_id} (image is being used)")
        self.removed_images.append(image_id)

    def _new_id(self) -> str:
        return f"{next(self._ids):012x}" + "f" * 52

    def _record(self, method: str, container_id: str) -> dict:
        record = self.containers.get(container_id)
        if record is None:
            raise RuntimeClientError(f"No such container: {container_id}")
        self._maybe_fail(method, record["name"] or container_id)
        return record

    def _maybe_fail(self, method: str, target: str) -> None:
        error = self.failures.get((method, target))
        if error is not None:
            raise error

    def _descriptor(self, container_id: str) -> ContainerDescriptor:
        record = self.containers[container_id]
        return ContainerDescriptor(
            id=container_id,
            image=record["image"],
            image_id=record["image_id"],
            labels=dict(record["labels"]),
            names=(f"/{record['name']}",) if record["name"] else (),
            host_config={"NetworkMode": "bridge"},
            network_settings={"Networks": {"bridge": {}}},
        )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        docker_host="unix://test",
        label_key=LABEL,
        listen_host="127.0.0.1",
        listen_port=0,
        stop_timeout_seconds=60,
        idle_timeout_seconds=5,
        workers=2,
        docker_timeout_seconds=120,
        docker_connect_retries=3,
        docker_connect_backoff_seconds=2,
        log_level="INFO",
    )


@pytest.fixture
def credential() -> GroupCredential:
    return GroupCredential(name="BACKEND_PROD", secret=SECRET)


@pytest.fixture
def make_store() -> Callable[..., CredentialStore]:
    def _make(*credentials: GroupCredential) -> CredentialStore:
        return CredentialStore({item.name: item for item in credentials})
    return _make


@pytest.fixture
def store(make_store, credential: GroupCredential) -> CredentialStore:
    return make_store(credential, GroupCredential(name="staging", secret="staging-secret-1"))


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def orchestrator(runtime: FakeRuntime, store: CredentialStore) -> ContainerOrchestrator:
    return ContainerOrchestrator(runtime, store, label_key=LABEL, stop_timeout_seconds=60)
