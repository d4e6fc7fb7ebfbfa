"""App configuration loading helpers."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

import tomllib

from pydantic import BaseModel, Field

CONFIG_FILE = Path.home() / ".config" / "citybooks" / "config.toml"

ENV_PREFIX = "CITYBOOKS_"


class TlsConfig(BaseModel):
    """TLS flags for a shard connection."""

    encrypt: bool = True
    trust_server_certificate: bool = True


class ShardConfig(BaseModel):
    """One city database as stored in config.toml."""

    code: str
    name: str
    dsn: str | None = None
    host: str | None = None
    port: int | None = None
    database: str | None = None
    user: str | None = None
    password: str | None = None
    tls: TlsConfig = Field(default_factory=TlsConfig)

    def env_database_key(self) -> str:
        """Name of the variable holding this city's database, e.g. ``DB_NAME_QUITO``."""

        return "DB_NAME_" + "_".join(self.name.upper().split())


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    shards: list[ShardConfig] = Field(default_factory=lambda: list(_default_shards()))
    query_timeout: float = 15.0
    connect_timeout: float = 5.0
    pool_min_size: int = 1
    pool_max_size: int = 5
    log_level: str = "INFO"

    def shard(self, code: str) -> ShardConfig | None:
        """Return the shard entry for ``code`` if present."""

        wanted = code.strip().upper()
        for entry in self.shards:
            if entry.code.upper() == wanted:
                return entry
        return None

    def with_environment(self, environ: Mapping[str, str]) -> AppConfig:
        """Return a copy with unset values filled from environment variables."""

        shards = [_overlay_shard(entry, environ) for entry in self.shards]
        updates: dict[str, object] = {"shards": shards}
        timeout = environ.get(f"{ENV_PREFIX}QUERY_TIMEOUT")
        if timeout:
            try:
                updates["query_timeout"] = float(timeout)
            except ValueError:
                pass
        level = environ.get(f"{ENV_PREFIX}LOG_LEVEL")
        if level:
            updates["log_level"] = level.upper()
        return self.model_copy(update=updates)


def load_config(environ: Mapping[str, str] | None = None) -> AppConfig:
    """Load configuration from disk, then apply the environment overlay."""

    env = os.environ if environ is None else environ
    try:
        data = _read_config_file()
    except FileNotFoundError:
        return AppConfig().with_environment(env)
    except (tomllib.TOMLDecodeError, OSError):
        return AppConfig().with_environment(env)

    shards_data = data.get("shards")
    shards: list[ShardConfig] | None = None
    if isinstance(shards_data, list):
        shards = [ShardConfig(**entry) for entry in shards_data if isinstance(entry, dict)]

    defaults = AppConfig.model_fields
    config = AppConfig(
        shards=shards if shards is not None else list(_default_shards()),
        query_timeout=data.get("query_timeout", defaults["query_timeout"].default),
        connect_timeout=data.get("connect_timeout", defaults["connect_timeout"].default),
        pool_min_size=data.get("pool_min_size", defaults["pool_min_size"].default),
        pool_max_size=data.get("pool_max_size", defaults["pool_max_size"].default),
        log_level=data.get("log_level", defaults["log_level"].default),
    )
    return config.with_environment(env)


def save_config(config: AppConfig) -> None:
    """Persist configuration to disk (passwords are left to the environment)."""

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = [
        f"query_timeout = {config.query_timeout}",
        f"connect_timeout = {config.connect_timeout}",
        f"pool_min_size = {config.pool_min_size}",
        f"pool_max_size = {config.pool_max_size}",
        f'log_level = "{config.log_level}"',
    ]
    for shard in config.shards:
        lines.append("")
        lines.append("[[shards]]")
        lines.append(f'code = "{shard.code}"')
        lines.append(f'name = "{shard.name}"')
        if shard.dsn:
            lines.append(f'dsn = "{shard.dsn}"')
        if shard.host:
            lines.append(f'host = "{shard.host}"')
        if shard.port is not None:
            lines.append(f"port = {shard.port}")
        if shard.database:
            lines.append(f'database = "{shard.database}"')
        if shard.user:
            lines.append(f'user = "{shard.user}"')
        lines.append("")
        lines.append("[shards.tls]")
        lines.append(f"encrypt = {str(shard.tls.encrypt).lower()}")
        lines.append(f"trust_server_certificate = {str(shard.tls.trust_server_certificate).lower()}")
    CONFIG_FILE.write_text("\n".join(lines) + "\n")


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    if not isinstance(raw, dict):
        return data
    for key in ("query_timeout", "connect_timeout"):
        value = raw.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            data[key] = float(value)
    for key in ("pool_min_size", "pool_max_size"):
        value = raw.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            data[key] = value
    level = raw.get("log_level")
    if isinstance(level, str):
        data["log_level"] = level.upper()
    shards = raw.get("shards")
    if isinstance(shards, list):
        parsed_shards: list[dict[str, object]] = []
        for shard in shards:
            if not isinstance(shard, dict):
                continue
            parsed: dict[str, object] = {}
            for key in ("code", "name", "dsn", "host", "database", "user", "password"):
                value = shard.get(key)
                if isinstance(value, str):
                    parsed[key] = value
            port = shard.get("port")
            if isinstance(port, int):
                parsed["port"] = port
            tls = shard.get("tls")
            if isinstance(tls, dict):
                parsed["tls"] = TlsConfig(
                    **{key: bool(value) for key, value in tls.items() if key in TlsConfig.model_fields}
                )
            code = parsed.get("code")
            if code:
                parsed["code"] = str(code).upper()
                parsed.setdefault("name", parsed["code"])
                parsed_shards.append(parsed)
        if parsed_shards:
            data["shards"] = parsed_shards
    return data


def _overlay_shard(shard: ShardConfig, environ: Mapping[str, str]) -> ShardConfig:
    updates: dict[str, object] = {}
    if shard.host is None and environ.get("DB_SERVER"):
        updates["host"] = environ["DB_SERVER"]
    if shard.port is None and environ.get("DB_PORT"):
        try:
            updates["port"] = int(environ["DB_PORT"])
        except ValueError:
            pass
    if shard.user is None and environ.get("DB_USER"):
        updates["user"] = environ["DB_USER"]
    if shard.password is None and environ.get("DB_PASSWORD"):
        updates["password"] = environ["DB_PASSWORD"]
    database_key = shard.env_database_key()
    if shard.database is None and environ.get(database_key):
        updates["database"] = environ[database_key]
    if not updates:
        return shard
    return shard.model_copy(update=updates)


def _default_shards() -> tuple[ShardConfig, ...]:
    """Cities served out of the box; connection details come from the environment."""

    return (
        ShardConfig(code="QUI", name="Quito"),
        ShardConfig(code="GYE", name="Guayaquil"),
        ShardConfig(code="CUE", name="Cuenca"),
        ShardConfig(code="MAN", name="Manta"),
    )


__all__ = [
    "AppConfig",
    "CONFIG_FILE",
    "ShardConfig",
    "TlsConfig",
    "load_config",
    "save_config",
]
