"""Application configuration loaded from environment variables."""

from __future__ import annotations

from datetime import timedelta

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Directory snapshot settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/directory.db"

    # Snapshot policy
    directory_snapshot_sync_ttl_seconds: int = Field(default=15 * 60, ge=1)
    directory_source_timeout_seconds: float = Field(default=30.0, gt=0)
    directory_first_sync_timeout_seconds: float = Field(default=30.0, gt=0)
    directory_search_limit: int = Field(default=10, ge=1, le=100)
    directory_allow_empty_sync: bool = True

    # Microsoft Graph
    azure_tenant_id: str = ""
    azure_client_id: str = ""
    azure_client_secret: str = ""
    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    graph_login_url: str = "https://login.microsoftonline.com"
    graph_page_size: int = Field(default=999, ge=1, le=999)

    @property
    def graph_configured(self) -> bool:
        """True when all Graph client-credential settings are present."""
        return bool(self.azure_tenant_id and self.azure_client_id and self.azure_client_secret)

    @property
    def snapshot_ttl(self) -> timedelta:
        return timedelta(seconds=self.directory_snapshot_sync_ttl_seconds)

    def validate_runtime(self) -> None:
        """Reject half-configured Graph credentials outside debug mode."""
        if self.debug:
            return

        provided = {
            "AZURE_TENANT_ID": self.azure_tenant_id,
            "AZURE_CLIENT_ID": self.azure_client_id,
            "AZURE_CLIENT_SECRET": self.azure_client_secret,
        }
        missing = [name for name, value in provided.items() if not value]
        if missing and len(missing) < len(provided):
            joined = ", ".join(missing)
            raise ValueError(f"Incomplete Graph configuration: missing {joined}")
