"""Configuration loading and Pydantic models for gridstream."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from gridstream.models import DEFAULT_BUCKET_NAME, DEFAULT_CHUNK_SIZE


class ServerConfig(BaseModel):
    """Server binding and runtime configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    log_format: str = "text"
    shutdown_timeout: int = 30


class StorageConfig(BaseModel):
    """Chunked store configuration.

    ``url`` selects connection-string mode. The ``memory`` backend needs no
    connection and keeps every file in process memory.
    """

    backend: str = "gridfs"
    url: str | None = "mongodb://localhost:27017/gridstream"
    database: str = ""
    options: dict[str, Any] = Field(default_factory=dict)
    bucket_name: str = DEFAULT_BUCKET_NAME
    chunk_size_bytes: int = Field(default=DEFAULT_CHUNK_SIZE, gt=0)
    rollback_on_failure: bool = False


class UploadConfig(BaseModel):
    """Multipart acceptance rules for the HTTP surface."""

    field_name: str = ""
    max_count: int = Field(default=0, ge=0)


class ObservabilityConfig(BaseModel):
    """Metrics and health check configuration."""

    metrics: bool = True
    health_check: bool = True


class GridStreamConfig(BaseModel):
    """Top-level gridstream configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    upload: UploadConfig = Field(default_factory=UploadConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def _parse_server(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the server section from YAML data into a dict for Pydantic."""
    if data is None:
        return {}
    return {
        "host": data.get("host", "0.0.0.0"),
        "port": data.get("port", 8000),
        "log_level": data.get("log_level", "INFO"),
        "log_format": data.get("log_format", "text"),
        "shutdown_timeout": data.get("shutdown_timeout", 30),
    }


def _parse_storage(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the storage section from YAML data.

    Accepts ``url``, ``database`` and ``options`` either directly under
    ``storage`` or nested as storage.gridfs.url etc. The nested form wins
    when both are given.
    """
    if data is None:
        return {}

    result: dict[str, Any] = {"backend": data.get("backend", "gridfs")}

    for key in ("url", "database", "options"):
        if key in data:
            result[key] = data[key]

    gridfs_section = data.get("gridfs")
    if isinstance(gridfs_section, dict):
        for key in ("url", "database", "options"):
            if key in gridfs_section:
                result[key] = gridfs_section[key]

    # Empty YAML keys load as None
    if "options" in result:
        result["options"] = result["options"] or {}
    if "database" in result:
        result["database"] = result["database"] or ""

    for key in ("bucket_name", "chunk_size_bytes", "rollback_on_failure"):
        if key in data:
            result[key] = data[key]

    return result


def _parse_upload(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the upload section from YAML data."""
    if data is None:
        return {}
    return {
        "field_name": data.get("field_name", ""),
        "max_count": data.get("max_count", 0),
    }


def _parse_observability(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the observability section from YAML data."""
    if data is None:
        return {}
    return {
        "metrics": data.get("metrics", True),
        "health_check": data.get("health_check", True),
    }


def load_config(path: Path) -> GridStreamConfig:
    """Load a GridStreamConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated GridStreamConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If a value has the wrong type or range.
    """
    with open(path, "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    return GridStreamConfig(
        server=ServerConfig(**_parse_server(raw.get("server"))),
        storage=StorageConfig(**_parse_storage(raw.get("storage"))),
        upload=UploadConfig(**_parse_upload(raw.get("upload"))),
        observability=ObservabilityConfig(**_parse_observability(raw.get("observability"))),
    )
