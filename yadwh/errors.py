from enum import Enum
from typing import Optional


class YadwhError(Exception):
    """Base class for everything the webhook raises on purpose."""


class AuthFailure(Enum):
    NOT_FOUND = 404
    MISMATCH = 401

    @property
    def http_status(self) -> int:
        return self.value


class AuthenticationError(YadwhError):
    def __init__(self, kind: AuthFailure, group: str, message: Optional[str] = None):
        if message is None:
            message = "webhook not found" if kind is AuthFailure.NOT_FOUND else "secret mismatch"
        super().__init__(message)
        self.kind = kind
        self.group = group

    @property
    def http_status(self) -> int:
        return self.kind.http_status


class DiscoveryError(YadwhError):
    http_status = 500


class RuntimeClientError(YadwhError):
    """A call against the container runtime failed."""


class StageError(YadwhError):
    def __init__(self, stage, cause: BaseException):
        super().__init__(f"{stage.value} failed: {cause}")
        self.stage = stage
        self.cause = cause


class PurgeError(YadwhError):
    pass
