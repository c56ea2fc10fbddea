"""JSON configuration for the screening server.

The file is optional: ``load_config(None)`` returns defaults. Every section is
sanitised on load so a partially written or hand-edited file never prevents
start-up. Secrets are never stored in the file; the Hugging Face token is read
from the environment variable named by ``remote.token_env``.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..ai.acquisition import (
    DEFAULT_DOWNLOAD_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_DELAY,
)
from ..ai.huggingface_client import DEFAULT_API_URL, DEFAULT_PROXY_URL
from ..ai.types import MAX_UPLOAD_BYTES

logger = logging.getLogger(__name__)

BACKENDS = ("local", "remote")


@dataclass
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass
class ModelSettings:
    url: str = (
        "https://huggingface.co/eyelid-screening/anemia-classifier/resolve/main/model.onnx"
    )
    cache_path: str = "models/cache/anemia_model.onnx"
    fallback_path: str = "models/anemia_model.onnx"
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY
    download_timeout_seconds: float = DEFAULT_DOWNLOAD_TIMEOUT
    serialize_runs: bool = False


@dataclass
class RemoteSettings:
    api_url: str = DEFAULT_API_URL
    proxy_url: str = DEFAULT_PROXY_URL
    token_env: str = "HUGGING_FACE_TOKEN"
    timeout: float = 30.0


@dataclass
class UploadSettings:
    directory: str = "uploads"
    max_bytes: int = MAX_UPLOAD_BYTES


@dataclass
class AppConfig:
    backend: str = "local"
    server: ServerSettings = field(default_factory=ServerSettings)
    model: ModelSettings = field(default_factory=ModelSettings)
    remote: RemoteSettings = field(default_factory=RemoteSettings)
    uploads: UploadSettings = field(default_factory=UploadSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppConfig:
        defaults = cls()
        return cls(
            backend=_sanitize_backend(data.get("backend"), defaults.backend),
            server=_build_section(ServerSettings, data.get("server")),
            model=_build_section(ModelSettings, data.get("model")),
            remote=_build_section(RemoteSettings, data.get("remote")),
            uploads=_build_section(UploadSettings, data.get("uploads")),
        )


def load_config(path: str | Path | None) -> AppConfig:
    """Load configuration from ``path`` and apply environment overrides.

    Raises ``FileNotFoundError`` when an explicit path does not exist and
    ``ValueError`` when the file is not a JSON object.
    """
    if path is None:
        config = AppConfig()
    else:
        config_path = Path(path)
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Configuration in {config_path} must be a JSON object")
        config = AppConfig.from_dict(data)
        logger.info("Loaded configuration from %s", config_path)
    return _apply_env_overrides(config)


def _apply_env_overrides(config: AppConfig) -> AppConfig:
    backend = os.environ.get("SCREENING_BACKEND")
    if backend:
        config.backend = _sanitize_backend(backend, config.backend)
    model_url = os.environ.get("SCREENING_MODEL_URL")
    if model_url:
        config.model.url = model_url
    return config


def _sanitize_backend(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip().lower() in BACKENDS:
        return value.strip().lower()
    if value is not None:
        logger.warning("Unsupported backend %r; using %s", value, default)
    return default


def _build_section(section_cls: type, data: Any) -> Any:
    section = section_cls()
    if not isinstance(data, dict):
        return section
    for name, current in list(vars(section).items()):
        if name not in data:
            continue
        value = data[name]
        try:
            if isinstance(current, bool):
                converted = value if isinstance(value, bool) else str(value).lower() in {"1", "true", "yes"}
            elif isinstance(current, int):
                converted = int(value)
            elif isinstance(current, float):
                converted = float(value)
            else:
                converted = str(value)
        except (TypeError, ValueError):
            logger.warning(
                "Ignoring invalid value %r for %s.%s",
                value,
                section_cls.__name__,
                name,
            )
            continue
        setattr(section, name, converted)
    return section


__all__ = [
    "AppConfig",
    "ServerSettings",
    "ModelSettings",
    "RemoteSettings",
    "UploadSettings",
    "load_config",
]
