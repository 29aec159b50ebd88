"""Group discovery and the per-container update pipeline.

A webhook call for a group pulls, stops, recreates and starts every container
whose group label lists that group. Containers are handled one at a time, and
each ends with exactly one ``UpdateOutcome`` whatever happens to its siblings.

There is no rollback: once the old container has been stopped and removed, a
failure to create or start its replacement leaves the container gone. Callers
retry by invoking the webhook again.
"""

from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from enum import Enum
from hmac import compare_digest
from logging import getLogger
from typing import Callable, Iterator, Optional

from .config import DEFAULT_LABEL_KEY
from .config import DEFAULT_STOP_TIMEOUT_SECONDS
from .config import CredentialStore
from .config import GroupCredential
from .config import normalize_group
from .errors import AuthenticationError
from .errors import AuthFailure
from .errors import DiscoveryError
from .errors import PurgeError
from .errors import RuntimeClientError
from .errors import StageError
from .runtime import ContainerDescriptor
from .utils import short_id
from .utils import split_groups

LOG = getLogger(__name__)


class Stage(Enum):
    PULL = "pull"
    INSPECT = "inspect"
    STOP = "stop"
    REMOVE = "remove"
    CREATE = "create"
    START = "start"


class OutcomeStatus(Enum):
    SUCCEEDED = "succeeded"
    SKIPPED_NOT_MONITORED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class UpdateOutcome:
    descriptor: ContainerDescriptor
    status: OutcomeStatus
    new_descriptor: Optional[ContainerDescriptor] = None
    stage: Optional[Stage] = None
    cause: Optional[BaseException] = None

    @classmethod
    def succeeded(cls, descriptor: ContainerDescriptor, new_descriptor: ContainerDescriptor) -> "UpdateOutcome":
        return cls(descriptor, OutcomeStatus.SUCCEEDED, new_descriptor=new_descriptor)

    @classmethod
    def skipped(cls, descriptor: ContainerDescriptor) -> "UpdateOutcome":
        return cls(descriptor, OutcomeStatus.SKIPPED_NOT_MONITORED)

    @classmethod
    def failed(cls, descriptor: ContainerDescriptor, stage: Stage, cause: BaseException) -> "UpdateOutcome":
        return cls(descriptor, OutcomeStatus.FAILED, stage=stage, cause=cause)

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCEEDED


@dataclass(frozen=True)
class ProcessResult:
    group: str
    outcomes: tuple = field(default_factory=tuple)

    def __iter__(self) -> Iterator[UpdateOutcome]:
        return iter(self.outcomes)

    def __len__(self) -> int:
        return len(self.outcomes)

    @property
    def updated(self) -> list[ContainerDescriptor]:
        return [outcome.new_descriptor for outcome in self.outcomes if outcome.ok]

    @property
    def failed(self) -> list[UpdateOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status is OutcomeStatus.FAILED]

    @property
    def matched(self) -> list[UpdateOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status is not OutcomeStatus.SKIPPED_NOT_MONITORED]


def is_monitored(label_value: Optional[str], group: str) -> bool:
    wanted = normalize_group(group)
    return any(normalize_group(token) == wanted for token in split_groups(label_value))


def pull_log_mentions_image(pull_log: str, image_id: str) -> bool:
    """Guess whether a pull was a no-op: the log mentions the image we already had.

    This is a string match on daemon output and misfires easily; it only ever
    decides whether to *skip* a purge.
    """
    if not image_id:
        return False
    return image_id.lower() in pull_log.lower()


class ContainerOrchestrator:
    def __init__(
        self,
        runtime,
        credentials: CredentialStore,
        label_key: str = DEFAULT_LABEL_KEY,
        stop_timeout_seconds: int = DEFAULT_STOP_TIMEOUT_SECONDS,
        pull_was_noop: Callable[[str, str], bool] = pull_log_mentions_image,
    ):
        self.runtime = runtime
        self.credentials = credentials
        self.label_key = label_key
        self.stop_timeout_seconds = stop_timeout_seconds
        self.pull_was_noop = pull_was_noop

    def authenticate(self, group: str, secret: str) -> GroupCredential:
        group = group.strip()
        credential = self.credentials.lookup(group)
        if credential is None:
            raise AuthenticationError(AuthFailure.NOT_FOUND, group)
        if not compare_digest(secret.strip().encode("utf-8"), credential.secret.encode("utf-8")):
            raise AuthenticationError(AuthFailure.MISMATCH, group)
        return credential

    def process(self, group: str, secret: str) -> ProcessResult:
        return self.update_group(self.authenticate(group, secret))

    def discover(self) -> list[ContainerDescriptor]:
        try:
            return self.runtime.list_by_label_key(self.label_key)
        except RuntimeClientError as error:
            LOG.error("Failed to list containers with label %s: %s", self.label_key, error)
            raise DiscoveryError(str(error)) from error

    def update_group(self, credential: GroupCredential) -> ProcessResult:
        candidates = self.discover()
        LOG.info("Finding and restarting containers with label %s=%s", self.label_key, credential.name)
        outcomes: list[UpdateOutcome] = []
        for descriptor in candidates:
            if not is_monitored(descriptor.labels.get(self.label_key), credential.name):
                LOG.debug("Skipping %s; not monitored by %s", descriptor.display_name, credential.name)
                outcomes.append(UpdateOutcome.skipped(descriptor))
                continue
            outcomes.append(self.update_container(descriptor, credential))
        result = ProcessResult(group=credential.name, outcomes=tuple(outcomes))
        LOG.info(
            "Webhook %s done: %s matched, %s updated, %s failed",
            credential.name,
            len(result.matched),
            len(result.updated),
            len(result.failed),
        )
        return result

    def update_container(self, descriptor: ContainerDescriptor, credential: GroupCredential) -> UpdateOutcome:
        try:
            new_descriptor = self._run_pipeline(descriptor, credential)
        except StageError as error:
            LOG.warning("Cannot update %s at %s stage: %s", descriptor.display_name, error.stage.value, error.cause)
            return UpdateOutcome.failed(descriptor, error.stage, error.cause)
        LOG.info("Done! Container %s with image %s updated", descriptor.display_name, descriptor.image)
        return UpdateOutcome.succeeded(descriptor, new_descriptor)

    def _run_pipeline(self, descriptor: ContainerDescriptor, credential: GroupCredential) -> ContainerDescriptor:
        runtime = self.runtime
        label = f"{short_id(descriptor.id)}@{descriptor.image}"

        LOG.info("Pulling image for container %s", label)
        pull_log = _stage(Stage.PULL, runtime.pull, descriptor.image, credential.registry_auth)
        LOG.debug("Pull output for %s:\n%s", descriptor.image, pull_log)

        snapshot = _stage(Stage.INSPECT, runtime.inspect, descriptor.id)

        LOG.info("Stopping container %s (%s)", label, short_id(descriptor.image_id))
        _stage(Stage.STOP, runtime.stop, descriptor.id, self.stop_timeout_seconds)

        if snapshot.auto_remove:
            LOG.info("No need to remove container %s; auto-remove is enabled", label)
        else:
            LOG.info("Removing container %s", label)
            _stage(Stage.REMOVE, runtime.remove, descriptor.id)

        LOG.info("Re-creating container %s with image %s", descriptor.name or "(anonymous)", snapshot.image)
        new_id = _stage(Stage.CREATE, runtime.create, snapshot, descriptor.name)

        LOG.info("Starting container %s", short_id(new_id))
        _stage(Stage.START, runtime.start, new_id)

        new_descriptor = self._read_back(descriptor, new_id)
        if credential.purge_old_image:
            try:
                self._purge_old_image(descriptor, new_descriptor, pull_log)
            except PurgeError as error:
                LOG.warning("Cannot remove old image %s: %s", short_id(descriptor.image_id), error)
        return new_descriptor

    def _read_back(self, descriptor: ContainerDescriptor, new_id: str) -> ContainerDescriptor:
        try:
            return self.runtime.describe(new_id)
        except RuntimeClientError as error:
            LOG.warning("Could not inspect new container %s: %s", short_id(new_id), error)
            # Image id unknown, so a purge will be skipped.
            return replace(descriptor, id=new_id, image_id="")

    def _purge_old_image(
        self,
        descriptor: ContainerDescriptor,
        new_descriptor: ContainerDescriptor,
        pull_log: str,
    ) -> None:
        old_image_id = descriptor.image_id
        if not old_image_id:
            return
        if not new_descriptor.image_id or new_descriptor.image_id == old_image_id:
            LOG.info("New container still uses image %s; skipped removing", short_id(old_image_id))
            return
        if self.pull_was_noop(pull_log, old_image_id):
            LOG.info("It looks like the old image was pulled again; skipped removing")
            return
        LOG.info("Deleting image %s", short_id(old_image_id))
        try:
            self.runtime.remove_image(old_image_id)
        except RuntimeClientError as error:
            raise PurgeError(str(error)) from error


def _stage(stage: Stage, call: Callable, *args):
    try:
        return call(*args)
    except RuntimeClientError as error:
        raise StageError(stage, error) from error
