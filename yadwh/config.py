from base64 import b64decode
from binascii import Error as Base64Error
from dataclasses import dataclass
from json import JSONDecodeError
from json import loads
from logging import getLogger
from os import environ as process_environ
from os import getenv
from types import MappingProxyType
from typing import Mapping, Optional

LOG = getLogger(__name__)

DEFAULT_LABEL_KEY = "io.d2a.yadwh.ug"
DEFAULT_DOCKER_HOST = "unix://var/run/docker.sock"
DEFAULT_LISTEN_HOST = "0.0.0.0"
DEFAULT_LISTEN_PORT = 80
DEFAULT_STOP_TIMEOUT_SECONDS = 60
DEFAULT_IDLE_TIMEOUT_SECONDS = 5
DEFAULT_WORKERS = 4
DEFAULT_DOCKER_TIMEOUT_SECONDS = 120
DEFAULT_DOCKER_CONNECT_RETRIES = 3
DEFAULT_DOCKER_CONNECT_BACKOFF_SECONDS = 2
DEFAULT_LOG_LEVEL = "INFO"

ENV_SECRET_PREFIX = "WH_SECRET_"
ENV_AUTH_PREFIX = "WH_AUTH_"
ENV_REMOVE_PREFIX = "WH_REMOVE_"
MIN_SECRET_LENGTH = 12


@dataclass(frozen=True)
class Settings:
    docker_host: str
    label_key: str
    listen_host: str
    listen_port: int
    stop_timeout_seconds: int
    idle_timeout_seconds: int
    workers: int
    docker_timeout_seconds: int
    docker_connect_retries: int
    docker_connect_backoff_seconds: int
    log_level: str


@dataclass(frozen=True)
class GroupCredential:
    name: str
    secret: str
    registry_auth: Optional[dict] = None
    purge_old_image: bool = False

    def __repr__(self) -> str:
        return (
            f"GroupCredential(name={self.name!r}, secret='***', "
            f"registry_auth={'***' if self.registry_auth else None}, "
            f"purge_old_image={self.purge_old_image})"
        )


def normalize_group(name: str) -> str:
    return name.strip().casefold()


class CredentialStore:
    """Read-only mapping of group name to credential, keyed case-insensitively."""

    def __init__(self, credentials: Mapping[str, GroupCredential]):
        entries: dict[str, GroupCredential] = {}
        for name, credential in credentials.items():
            key = normalize_group(name)
            if key in entries:
                LOG.warning("Ignoring duplicate webhook %s; %s already configured", name, entries[key].name)
                continue
            entries[key] = credential
        self._entries = MappingProxyType(entries)

    def lookup(self, name: str) -> Optional[GroupCredential]:
        return self._entries.get(normalize_group(name))

    def names(self) -> list[str]:
        return sorted(credential.name for credential in self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)


def load_settings() -> Settings:
    return Settings(
        docker_host=getenv("DOCKER_HOST", DEFAULT_DOCKER_HOST),
        label_key=getenv("YADWH_LABEL", DEFAULT_LABEL_KEY).strip() or DEFAULT_LABEL_KEY,
        listen_host=getenv("YADWH_HOST", DEFAULT_LISTEN_HOST),
        listen_port=_env_int("YADWH_PORT", DEFAULT_LISTEN_PORT),
        stop_timeout_seconds=_env_int("YADWH_STOP_TIMEOUT", DEFAULT_STOP_TIMEOUT_SECONDS),
        idle_timeout_seconds=_env_int("YADWH_IDLE_TIMEOUT", DEFAULT_IDLE_TIMEOUT_SECONDS),
        workers=_env_int("YADWH_WORKERS", DEFAULT_WORKERS),
        docker_timeout_seconds=_env_int("YADWH_DOCKER_TIMEOUT", DEFAULT_DOCKER_TIMEOUT_SECONDS),
        docker_connect_retries=_env_int("YADWH_DOCKER_RETRIES", DEFAULT_DOCKER_CONNECT_RETRIES, minimum=0),
        docker_connect_backoff_seconds=_env_int(
            "YADWH_DOCKER_BACKOFF", DEFAULT_DOCKER_CONNECT_BACKOFF_SECONDS, minimum=0
        ),
        log_level=getenv("YADWH_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
    )


def decode_registry_auth(value: str) -> dict:
    """Turn a base64 ``user:password`` (or base64 auth JSON) into an SDK auth_config."""
    try:
        decoded = b64decode(value.strip(), validate=True).decode("utf-8")
    except (Base64Error, UnicodeDecodeError, ValueError) as error:
        raise ValueError(f"registry auth is not valid base64: {error}") from error
    if decoded.lstrip().startswith("{"):
        try:
            auth = loads(decoded)
        except JSONDecodeError as error:
            raise ValueError(f"registry auth JSON is malformed: {error}") from error
        if not isinstance(auth, dict):
            raise ValueError("registry auth JSON must be an object")
        return auth
    username, separator, password = decoded.partition(":")
    if not separator or not username:
        raise ValueError("registry auth must encode user:password")
    return {"username": username, "password": password}


def load_credentials(environ: Optional[Mapping[str, str]] = None) -> CredentialStore:
    env = process_environ if environ is None else environ
    credentials: dict[str, GroupCredential] = {}
    for key in sorted(env):
        if not key.startswith(ENV_SECRET_PREFIX):
            continue
        name = key[len(ENV_SECRET_PREFIX):]
        if not name.strip():
            LOG.warning("Empty secret name: %s", key)
            continue

        secret = env[key].strip()
        if len(secret) < MIN_SECRET_LENGTH:
            LOG.warning("Secrets are required to be at least %s chars long; ignoring webhook %s", MIN_SECRET_LENGTH, name)
            continue
        LOG.info("Found secret for %s = %s", name, "*" * len(secret))

        registry_auth = None
        raw_auth = env.get(ENV_AUTH_PREFIX + name, "").strip()
        if raw_auth:
            try:
                registry_auth = decode_registry_auth(raw_auth)
            except ValueError as error:
                LOG.warning("Ignoring webhook %s; invalid %s%s: %s", name, ENV_AUTH_PREFIX, name, error)
                continue
            LOG.info("Registry auth for %s = %s", name, "*" * len(raw_auth))

        purge = _env_bool(env, ENV_REMOVE_PREFIX + name, False)
        if purge:
            LOG.warning("Purge mode enabled for %s; old images will be deleted after updates", name)

        credentials[name] = GroupCredential(
            name=name,
            secret=secret,
            registry_auth=registry_auth,
            purge_old_image=purge,
        )
    return CredentialStore(credentials)


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    value = getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        LOG.warning("Ignoring %s=%r; not an integer", name, value)
        return default
    if parsed < minimum:
        LOG.warning("Ignoring %s=%s; must be at least %s", name, parsed, minimum)
        return default
    return parsed
