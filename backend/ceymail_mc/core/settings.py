from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, DotEnvSettingsSource, EnvSettingsSource, SettingsConfigDict


class _FallbackEnvSettingsSource(EnvSettingsSource):
    """Allow ALLOW_ORIGINS to be comma-separated instead of strict JSON."""

    def decode_complex_value(self, field_name, field, value):  # type: ignore[override]
        try:
            return super().decode_complex_value(field_name, field, value)
        except json.JSONDecodeError:
            if field_name == "allow_origins":
                return value
            raise


class _FallbackDotEnvSettingsSource(DotEnvSettingsSource):
    """Allow ALLOW_ORIGINS to be comma-separated instead of strict JSON."""

    def decode_complex_value(self, field_name, field, value):  # type: ignore[override]
        try:
            return super().decode_complex_value(field_name, field, value)
        except json.JSONDecodeError:
            if field_name == "allow_origins":
                return value
            raise


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    project_name: str = "CeyMail Mission Control API"
    project_version: str = "1.0.0"
    environment: str = Field(
        default="development",
        description="Deployment environment name",
        validation_alias=AliasChoices("ENV", "ENVIRONMENT"),
    )
    git_sha: str | None = Field(default=None, description="Git SHA for /version")
    log_level: str = Field(default="INFO", description="Logging level")

    # Dashboard config written by the setup wizard (database + session secret)
    config_file: str = Field(
        default="./data/config.json",
        description="Path to the dashboard config.json",
        validation_alias=AliasChoices("MC_CONFIG_FILE", "CONFIG_FILE"),
    )

    # Database (fallback when config.json is absent)
    database_url: str | None = Field(
        default=None,
        description="SQLAlchemy-style URL for the mail database server",
        validation_alias=AliasChoices("DATABASE_URL", "DB_URL"),
    )
    mail_database: str = Field(default="ceymail", description="Mail database name")
    dashboard_database: str = Field(default="ceymail_dashboard", description="Dashboard database name")

    # Session tokens
    session_secret: str = Field(
        default="change_me",
        description="Session token signing secret",
        validation_alias=AliasChoices("SESSION_SECRET", "JWT_SECRET"),
    )
    algorithm: str = Field(default="HS256", description="Session token signing algorithm")
    session_cookie_name: str = Field(default="mc-session", description="Session cookie name")

    # CORS
    allow_origins: List[str] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    )

    # Backups
    backup_dir: str = Field(
        default="/var/backups/ceymail",
        description="Directory where backup archives are stored",
        validation_alias=AliasChoices("BACKUP_DIR", "BACKUPS_DIR"),
    )
    backup_owner: str = Field(
        default="ceymail-mc:ceymail-mc",
        description="user:group assigned to a freshly created backup directory",
        validation_alias=AliasChoices("BACKUP_OWNER"),
    )
    sudo_path: str = Field(default="/usr/bin/sudo", description="Privilege elevation binary")
    backup_helper_path: str = Field(
        default="/usr/local/bin/ceymail-backup",
        description="Restricted archive helper invoked through sudo",
        validation_alias=AliasChoices("BACKUP_HELPER", "BACKUP_HELPER_PATH"),
    )
    mysqldump_path: str = Field(default="/usr/bin/mysqldump", description="mysqldump binary")
    dump_home: str = Field(default="/var/lib/ceymail-mc", description="HOME given to mysqldump")
    dir_command_timeout_seconds: float = Field(default=5.0, description="Timeout for mkdir/chown")
    dump_timeout_seconds: float = Field(default=120.0, description="Timeout for the database dump")
    archive_timeout_seconds: float = Field(default=300.0, description="Timeout for archive creation")

    @field_validator("allow_origins", mode="before")
    @classmethod
    def parse_allow_origins(cls, value: str | List[str]) -> List[str]:
        if isinstance(value, list):
            return value
        if isinstance(value, str) and value.strip():
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return [
            "http://localhost",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]

    @field_validator("backup_owner")
    @classmethod
    def validate_backup_owner(cls, value: str) -> str:
        owner = (value or "").strip()
        user, _, group = owner.partition(":")
        if not user or not group:
            raise ValueError("BACKUP_OWNER must look like user:group")
        return owner

    @property
    def backup_root(self) -> Path:
        return Path(self.backup_dir).expanduser().resolve()

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            _FallbackEnvSettingsSource(settings_cls),
            _FallbackDotEnvSettingsSource(settings_cls),
            file_secret_settings,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
