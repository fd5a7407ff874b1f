"""Tests for StreamDrop configuration loading."""

from pathlib import Path

import pytest

from streamdrop.config import StreamDropConfig, load_config


class TestDefaults:
    def test_default_config(self):
        config = StreamDropConfig()
        assert config.server.port == 8787
        assert config.uploads.max_upload_size == 500 * 1024 * 1024
        assert config.uploads.max_chunk_size == 10 * 1024 * 1024
        assert "video/mp4" in config.uploads.allowed_content_types
        assert config.uploads.chunk_prefix == "chunks"
        assert config.cors.allowed_origins == ["*"]
        assert config.auth.enabled is True
        assert config.metadata.engine == "sqlite"
        assert config.storage.backend == "local"
        assert config.observability.metrics is True


class TestLoadConfig:
    def test_load_full_config(self, tmp_path: Path):
        path = tmp_path / "streamdrop.yaml"
        path.write_text(
            """
server:
  host: 127.0.0.1
  port: 9000
  public_base_url: https://media.example.com
uploads:
  max_chunk_size: 1048576
  allowed_content_types: [video/mp4]
  auto_combine: true
cors:
  allowed_origins: [https://app.example.com]
  cross_origin_isolation: true
auth:
  identity_url: https://id.example.com/me
  protect_writes: true
metadata:
  engine: sqlite
  sqlite:
    path: /var/lib/streamdrop/sessions.db
storage:
  backend: aws
  aws:
    bucket: media
    region: eu-west-1
    prefix: prod/
    endpoint_url: https://r2.example.com
    use_path_style: true
observability:
  metrics: false
"""
        )
        config = load_config(path)

        assert config.server.host == "127.0.0.1"
        assert config.server.port == 9000
        assert config.server.public_base_url == "https://media.example.com"
        assert config.uploads.max_chunk_size == 1048576
        assert config.uploads.allowed_content_types == ["video/mp4"]
        assert config.uploads.auto_combine is True
        assert config.cors.allowed_origins == ["https://app.example.com"]
        assert config.cors.cross_origin_isolation is True
        assert config.auth.identity_url == "https://id.example.com/me"
        assert config.auth.protect_writes is True
        assert config.metadata.sqlite_path == "/var/lib/streamdrop/sessions.db"
        assert config.storage.backend == "aws"
        assert config.storage.aws_bucket == "media"
        assert config.storage.aws_region == "eu-west-1"
        assert config.storage.aws_prefix == "prod/"
        assert config.storage.aws_use_path_style is True
        assert config.observability.metrics is False

    def test_empty_file_uses_defaults(self, tmp_path: Path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        config = load_config(path)
        assert config == StreamDropConfig()

    def test_null_sections_use_defaults(self, tmp_path: Path):
        path = tmp_path / "nulls.yaml"
        path.write_text("server:\nuploads:\n")
        config = load_config(path)
        assert config.server.port == 8787

    def test_missing_file_raises(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")
