from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "FeatherPanel"
    environment: str = Field("development", validation_alias="FEATHERPANEL_ENV")
    debug: bool = Field(False, validation_alias="FEATHERPANEL_DEBUG")
    sqlite_path: Path = Field(BASE_DIR / "data" / "featherpanel.db", validation_alias="FEATHERPANEL_SQLITE_PATH")
    storage_root: Path = Field(BASE_DIR / "storage", validation_alias="FEATHERPANEL_STORAGE_ROOT")
    migrations_dir: Optional[Path] = Field(None, validation_alias="FEATHERPANEL_MIGRATIONS_DIR")
    public_root: Path = Field(BASE_DIR / "public", validation_alias="FEATHERPANEL_PUBLIC_ROOT")
    panel_version: str = Field("v1.0.0", validation_alias="FEATHERPANEL_VERSION")
    registry_base_url: str = Field("https://api.featherpanel.com", validation_alias="FEATHERPANEL_REGISTRY_URL")
    cloud_base_url: str = Field("https://api.featherpanel.com", validation_alias="FEATHERPANEL_CLOUD_URL")
    registry_timeout_seconds: float = Field(10.0, validation_alias="FEATHERPANEL_REGISTRY_TIMEOUT")
    install_timeout_seconds: float = Field(15.0, validation_alias="FEATHERPANEL_INSTALL_TIMEOUT")
    url_install_timeout_seconds: float = Field(30.0, validation_alias="FEATHERPANEL_URL_INSTALL_TIMEOUT")
    premium_download_timeout_seconds: float = Field(60.0, validation_alias="FEATHERPANEL_PREMIUM_TIMEOUT")
    encryption_key: Optional[str] = Field(None, validation_alias="FEATHERPANEL_ENCRYPTION_KEY")
    env_file: Path = Field(Path(".env"), validation_alias="FEATHERPANEL_ENV_FILE")
    snapshot_upload_limit_bytes: int = 1024 * 1024 * 1024
    addon_upload_limit_bytes: int = 256 * 1024 * 1024
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["*"],
        validation_alias="FEATHERPANEL_CORS_ORIGINS",
    )

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _parse_origins(cls, value):
        if isinstance(value, str):
            if not value.strip():
                return []
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.sqlite_path.as_posix()}"

    @property
    def addons_dir(self) -> Path:
        return self.storage_root / "addons"

    @property
    def backups_dir(self) -> Path:
        return self.storage_root / "backups"

    @property
    def core_migrations_dir(self) -> Path:
        return self.migrations_dir or self.storage_root / "migrations"


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()
    settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return settings


def update_env_value(path: Path, name: str, value: str) -> None:
    """Set ``name=value`` in a dotenv file, replacing an existing assignment."""

    lines = path.read_text(encoding="utf-8").splitlines() if path.exists() else []
    assignment = f"{name}={value}"
    for index, line in enumerate(lines):
        if line.split("=", 1)[0].strip() == name:
            lines[index] = assignment
            break
    else:
        lines.append(assignment)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
