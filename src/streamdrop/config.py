"""Configuration loading and Pydantic models for StreamDrop."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

_DEFAULT_CONTENT_TYPES = [
    "video/mp4",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-matroska",
    "video/mov",
    "video/m4v",
    "video/hevc",
    "image/jpeg",
    "image/png",
    "image/jpg",
]


class ServerConfig(BaseModel):
    """Server binding and runtime configuration."""

    host: str = "0.0.0.0"
    port: int = 8787
    log_level: str = "INFO"
    log_format: str = "text"
    shutdown_timeout: int = 30
    public_base_url: str = ""


class UploadConfig(BaseModel):
    """Upload limits, accepted media types, and upload session lifetimes."""

    max_upload_size: int = 500 * 1024 * 1024
    max_chunk_size: int = 10 * 1024 * 1024
    allowed_content_types: list[str] = Field(
        default_factory=lambda: list(_DEFAULT_CONTENT_TYPES)
    )
    key_prefix: str = "uploads"
    chunk_prefix: str = "chunks"
    upload_url_ttl_seconds: int = 3600
    session_ttl_seconds: int = 86400
    session_retention_seconds: int = 604800
    sweep_interval_seconds: int = 300
    auto_combine: bool = False


class CorsConfig(BaseModel):
    """Cross-origin policy applied to every response."""

    allowed_origins: list[str] = Field(default_factory=lambda: ["*"])
    allow_methods: str = "GET, HEAD, PUT, POST, DELETE, OPTIONS"
    allow_headers: str = "*"
    expose_headers: str = "Content-Length, Content-Range, Content-Type, Accept-Ranges, ETag"
    max_age: int = 86400
    cache_control: str = "public, max-age=31536000"
    allow_private_network: bool = True
    cross_origin_isolation: bool = False


class AuthConfig(BaseModel):
    """Bearer-token validation against the external identity service."""

    enabled: bool = True
    identity_url: str = ""
    timeout_seconds: float = 5.0
    protect_writes: bool = False


class MetadataConfig(BaseModel):
    """Upload session store configuration."""

    engine: str = "sqlite"
    sqlite_path: str = "./data/sessions.db"


class StorageConfig(BaseModel):
    """Object storage backend configuration."""

    backend: str = "local"
    local_root: str = "./data/objects"
    aws_bucket: str = ""
    aws_region: str = "us-east-1"
    aws_prefix: str = ""
    aws_endpoint_url: str = ""
    aws_use_path_style: bool = False
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""


class ObservabilityConfig(BaseModel):
    """Metrics and health probe toggles."""

    metrics: bool = True
    health_check: bool = True


class StreamDropConfig(BaseModel):
    """Top-level StreamDrop configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    uploads: UploadConfig = Field(default_factory=UploadConfig)
    cors: CorsConfig = Field(default_factory=CorsConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    metadata: MetadataConfig = Field(default_factory=MetadataConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def _section(data: Any) -> dict[str, Any]:
    """Return a YAML section as a dict, treating missing/null as empty."""
    return data if isinstance(data, dict) else {}


def _parse_metadata(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the metadata section from YAML data.

    Handles nested structure: metadata.sqlite.path -> sqlite_path
    """
    if data is None:
        return {}
    result: dict[str, Any] = {"engine": data.get("engine", "sqlite")}
    sqlite_section = data.get("sqlite")
    if isinstance(sqlite_section, dict):
        result["sqlite_path"] = sqlite_section.get("path", "./data/sessions.db")
    return result


def _parse_storage(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the storage section from YAML data.

    Handles nested structure: storage.local.root_dir -> local_root,
    storage.aws.bucket -> aws_bucket, etc.
    """
    if data is None:
        return {}

    result: dict[str, Any] = {"backend": data.get("backend", "local")}

    local_section = data.get("local")
    if isinstance(local_section, dict):
        result["local_root"] = local_section.get("root_dir", "./data/objects")

    aws_section = data.get("aws")
    if isinstance(aws_section, dict):
        result["aws_bucket"] = aws_section.get("bucket", "")
        result["aws_region"] = aws_section.get("region", "us-east-1")
        result["aws_prefix"] = aws_section.get("prefix", "")
        result["aws_endpoint_url"] = aws_section.get("endpoint_url", "")
        result["aws_use_path_style"] = aws_section.get("use_path_style", False)
        result["aws_access_key_id"] = aws_section.get("access_key_id", "")
        result["aws_secret_access_key"] = aws_section.get("secret_access_key", "")

    return result


def load_config(path: Path) -> StreamDropConfig:
    """Load a StreamDropConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated StreamDropConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If a value has the wrong type.
    """
    with open(path, "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    return StreamDropConfig(
        server=ServerConfig(**_section(raw.get("server"))),
        uploads=UploadConfig(**_section(raw.get("uploads"))),
        cors=CorsConfig(**_section(raw.get("cors"))),
        auth=AuthConfig(**_section(raw.get("auth"))),
        metadata=MetadataConfig(**_parse_metadata(raw.get("metadata"))),
        storage=StorageConfig(**_parse_storage(raw.get("storage"))),
        observability=ObservabilityConfig(**_section(raw.get("observability"))),
    )
