from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

BACKEND_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    """Application settings loaded from ``RELAY_*`` environment variables."""

    app_name: str = Field(default="PeerLink Signaling Relay", description="Human readable service name")
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=False, description="Enable debug mode")

    host: str = Field(default="0.0.0.0", description="Interface the server listens on")
    port: int = Field(default=3001, description="TCP port the server listens on")
    ssl_certfile: Path | None = Field(
        default=None,
        description="PEM certificate handed to the ASGI server for TLS termination.",
    )
    ssl_keyfile: Path | None = Field(
        default=None,
        description="PEM private key matching ``ssl_certfile``.",
    )
    log_level: str = Field(default="INFO", description="Root log level")

    cors_origins: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost:5173",
            "https://localhost:5173",
            "http://127.0.0.1:5173",
            "https://127.0.0.1:5173",
        ],
        description="List of allowed CORS origins",
    )
    cors_allow_origin_regex: str | None = Field(
        default=r"^https?://(localhost|127\.0\.0\.1|\[::1\]|(\d{1,3}\.){3}\d{1,3})(:\d+)?$",
        description="Optional regular expression that matches allowed CORS origins",
    )

    websocket_keepalive_timeout_seconds: float | None = Field(
        default=None,
        description="Idle time after which the server checks whether a keepalive ping is due.",
    )
    websocket_keepalive_ping_interval_seconds: float | None = Field(
        default=None,
        description="Minimum delay between keepalive pings sent to idle clients.",
    )
    max_message_bytes: int = Field(
        default=64 * 1024,
        description="Frames larger than this are discarded without processing.",
    )
    max_username_length: int = Field(default=64, description="Maximum accepted username length")
    max_room_id_length: int = Field(default=128, description="Maximum accepted room identifier length")

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=str(BACKEND_DIR.parent / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Any) -> Any:
        if v in (None, "", Ellipsis):
            return []
        if isinstance(v, str):
            stripped = v.strip()
            if stripped.startswith("["):
                import json

                return [str(item) for item in json.loads(stripped)]
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator("ssl_certfile", "ssl_keyfile", mode="before")
    @classmethod
    def resolve_optional_path(cls, value: str | Path | None) -> Path | None:
        if value in (None, "", Ellipsis):
            return None
        return Path(value).expanduser().resolve()

    @field_validator("log_level", mode="before")
    @classmethod
    def normalise_log_level(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    def resolved_ssl_files(self) -> tuple[Path, Path] | None:
        """Return the certificate/key pair to serve TLS with, if any.

        Falls back to ``localhost.pem``/``localhost-key.pem`` in the working
        directory, the names produced by mkcert for local development.
        """
        if self.ssl_certfile and self.ssl_keyfile:
            return self.ssl_certfile, self.ssl_keyfile
        certfile = Path("localhost.pem").resolve()
        keyfile = Path("localhost-key.pem").resolve()
        if certfile.is_file() and keyfile.is_file():
            return certfile, keyfile
        return None


@lru_cache
def get_settings() -> Settings:
    return Settings()
