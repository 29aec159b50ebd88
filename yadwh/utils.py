from logging import basicConfig
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def configure_logging(level: str) -> None:
    basicConfig(format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT, level=level)


def short_id(identifier: Optional[str]) -> str:
    if not identifier:
        return "unknown"
    return identifier.split(":")[-1][:12]


def safe_get(mapping: Optional[dict], key: str, default=None):
    if mapping is None:
        return default
    value = mapping.get(key)
    return value if value is not None else default


def split_groups(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [token.strip() for token in value.split(",") if token.strip()]
