"""Static registry of the city databases this process can reach."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Iterable

from .config import AppConfig, ShardConfig
from .models import ShardDescriptor, ShardError, TlsOptions

LOG = logging.getLogger(__name__)

ALL_SCOPE = "ALL"

_REQUIRED_FIELDS = ("host", "user", "password", "database")


class UnknownShard(ShardError):
    """Raised when a scope names a city code that is not configured."""


def normalize_code(code: str) -> str:
    return code.strip().upper()


def is_all_scope(scope: str | None) -> bool:
    """True when ``scope`` targets every configured shard."""

    return scope is None or normalize_code(scope) in ("", ALL_SCOPE)


class ShardRegistry:
    """Immutable mapping from city code to connection parameters."""

    def __init__(self, shards: Iterable[ShardDescriptor]) -> None:
        ordered: dict[str, ShardDescriptor] = {}
        for shard in shards:
            code = normalize_code(shard.code)
            if code in ordered:
                raise ValueError(f"Duplicate shard code '{code}'")
            if code == ALL_SCOPE:
                raise ValueError(f"'{ALL_SCOPE}' is reserved for the all-shards scope")
            if shard.code != code:
                shard = replace(shard, code=code)
            ordered[code] = shard
        self._shards = ordered

    @classmethod
    def from_config(cls, config: AppConfig) -> ShardRegistry:
        """Build the registry, leaving out shards with incomplete settings."""

        descriptors: list[ShardDescriptor] = []
        for entry in config.shards:
            missing = _missing_fields(entry)
            if missing:
                LOG.warning(
                    "Shard %s (%s) excluded: missing %s",
                    entry.code,
                    entry.name,
                    ", ".join(missing),
                )
                continue
            descriptors.append(_descriptor_from_config(entry))
        return cls(descriptors)

    def list_shard_codes(self) -> tuple[str, ...]:
        """All configured codes in declaration order."""

        return tuple(self._shards)

    def describe(self, code: str) -> ShardDescriptor:
        try:
            return self._shards[normalize_code(code)]
        except KeyError:
            raise UnknownShard(f"Unknown shard '{code}'", shard_code=code) from None

    def resolve(self, scope: str | None) -> tuple[str, ...]:
        """Expand a scope into the shard codes it covers."""

        if is_all_scope(scope):
            return self.list_shard_codes()
        return (self.describe(scope).code,)

    def cities(self) -> list[dict[str, str]]:
        """City listing in the shape the dashboard exposes."""

        return [
            {"id_ciudad": code, "ciu_descripcion": shard.name}
            for code, shard in self._shards.items()
        ]

    def __contains__(self, code: object) -> bool:
        return isinstance(code, str) and normalize_code(code) in self._shards

    def __len__(self) -> int:
        return len(self._shards)


def _missing_fields(entry: ShardConfig) -> list[str]:
    if entry.dsn:
        return []
    return [name for name in _REQUIRED_FIELDS if not getattr(entry, name)]


def _descriptor_from_config(entry: ShardConfig) -> ShardDescriptor:
    return ShardDescriptor(
        code=normalize_code(entry.code),
        name=entry.name,
        host=entry.host,
        port=entry.port,
        user=entry.user,
        password=entry.password,
        database=entry.database,
        dsn=entry.dsn,
        tls=TlsOptions(
            encrypt=entry.tls.encrypt,
            trust_server_certificate=entry.tls.trust_server_certificate,
        ),
    )


__all__ = [
    "ALL_SCOPE",
    "ShardRegistry",
    "UnknownShard",
    "is_all_scope",
    "normalize_code",
]
