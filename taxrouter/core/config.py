from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL

from taxrouter.core.errors import ConfigError


# Built-in Secret Box key for local development only; production must override it.
DEFAULT_DEV_SECRET_BOX_KEY = "MTIzNDU2Nzg5MDEyMzQ1Njc4OTAxMjM0NTY3ODkwMTI="


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "taxrouter"
    # development | test | production; production refuses the built-in Secret Box key.
    environment: str = "development"
    log_level: str = "INFO"

    # On-disk YAML document with server/database/cors/firebase/sendgrid/portal blocks.
    config_file: str = "config.yaml"
    # Explicit control-plane URL wins over the YAML database block when set.
    database_url: str | None = None

    # Base64 of the 32-byte Secret Box key.
    ssn_encryption_key: str | None = None

    # Control-plane pool: 10 open / 5 idle / 60 s lifetime.
    control_db_pool_size: int = 5
    control_db_max_overflow: int = 5
    control_db_pool_recycle_s: int = 60

    # Per-tenant pool: max-open 5, max-idle 2, max-lifetime 30 s.
    tenant_db_max_open: int = 5
    tenant_db_max_idle: int = 2
    tenant_db_max_lifetime_s: int = 30
    # Bound the connect + liveness probe round-trip for a new tenant handle.
    tenant_db_connect_timeout_s: float = 10.0
    # Eviction walks the cache every tick and drops handles idle past the threshold.
    tenant_cache_eviction_interval_s: float = 60.0
    tenant_cache_idle_timeout_s: float = 300.0

    # Managed-secret and filesystem secret cache lifetime.
    secret_cache_ttl_s: float = 3600.0
    secret_fetch_timeout_s: float = 10.0

    # Firebase ID token verification; project id falls back to the YAML firebase block.
    firebase_project_id: str | None = None
    firebase_jwks_url: str = (
        "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com"
    )
    firebase_jwks_cache_ttl_s: int = 3600
    firebase_clock_skew_s: int = 60

    # Portal tokens: magic links are single use, sessions are short lived.
    portal_magic_link_ttl_s: int = 24 * 3600
    portal_session_ttl_s: int = 2 * 3600
    portal_token_issuer: str = "welltaxpro"

    # Graceful shutdown wait for in-flight requests before closing tenant handles.
    shutdown_grace_s: int = 10


class ServerConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    port: int = 8080


class DatabaseConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    dbname: str = "welltaxpro"
    sslmode: str = "disable"
    # Maintenance database the provisioner connects to before the target exists.
    init_db_name: str = Field(default="postgres", alias="initDbName")


class CorsConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    allowed_origins: list[str] = Field(default_factory=list, alias="allowedOrigins")
    allowed_methods: list[str] = Field(
        default_factory=lambda: ["GET", "POST", "PUT", "DELETE", "OPTIONS"], alias="allowedMethods"
    )
    allowed_headers: list[str] = Field(
        default_factory=lambda: ["Authorization", "Content-Type"], alias="allowedHeaders"
    )
    allow_credentials: bool = Field(default=True, alias="allowCredentials")


class FirebaseConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_key: str | None = Field(default=None, alias="apiKey")
    service_account_path: str | None = Field(default=None, alias="serviceAccountPath")
    project_id: str | None = Field(default=None, alias="projectId")


class SendgridConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_key: str | None = Field(default=None, alias="apiKey")
    default_from_email: str | None = Field(default=None, alias="defaultFromEmail")
    default_from_name: str | None = Field(default=None, alias="defaultFromName")


class PortalConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    jwt_secret: str | None = Field(default=None, alias="jwtSecret")
    base_url: str = Field(default="http://localhost:3000", alias="baseURL")


class FileConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    cors: CorsConfig = Field(default_factory=CorsConfig)
    firebase: FirebaseConfig = Field(default_factory=FirebaseConfig)
    sendgrid: SendgridConfig = Field(default_factory=SendgridConfig)
    portal: PortalConfig = Field(default_factory=PortalConfig)


def parse_file_config(raw: str) -> FileConfig:
    """Parse the YAML configuration document; raise ConfigError when it is malformed."""
    try:
        document: Any = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigError(f"configuration file is not valid YAML: {exc}") from exc
    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise ConfigError("configuration file must contain a mapping at the top level")
    try:
        return FileConfig.model_validate(document)
    except ValidationError as exc:
        raise ConfigError(f"configuration file is invalid: {exc}") from exc


def load_file_config(path: str | Path) -> FileConfig:
    # A missing file means defaults; a present but broken file fails startup.
    config_path = Path(path)
    if not config_path.exists():
        return FileConfig()
    return parse_file_config(config_path.read_text(encoding="utf-8"))


def control_plane_url(settings: Settings, file_config: FileConfig) -> str | URL:
    if settings.database_url:
        return settings.database_url
    database = file_config.database
    return URL.create(
        "postgresql+asyncpg",
        username=database.user,
        password=database.password or None,
        host=database.host,
        port=database.port,
        database=database.dbname,
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


@lru_cache
def get_file_config() -> FileConfig:
    return load_file_config(get_settings().config_file)
