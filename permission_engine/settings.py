from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Engine settings.

    Notes:
    - Defaults are local and deterministic (SQLite file next to the package).
    - Every field can be overridden with a `PERM_` environment variable.
    """

    model_config = SettingsConfigDict(env_prefix="PERM_", extra="ignore")

    db_url: str | None = None
    catalog_path: str | None = None
    log_level: str = "INFO"

    cache_ttl_seconds: int = 300
    # Membership tiers that count as "manager" for department grants.
    manager_tiers: list[str] = Field(default_factory=lambda: ["manager", "director"])

    audit_checks: bool = True
    audit_encryption_key: str | None = None
    audit_encrypted_fields: list[str] = Field(default_factory=lambda: ["ip_address", "user_agent", "reason"])
    default_framework: str = "PCI_DSS"
    min_retention_days: int = 365

    max_elevation_hours: int = 24

    # Codes (wildcards allowed) no manager may hand to someone else.
    non_delegable_permissions: list[str] = Field(default_factory=lambda: ["users.*", "roles.*", "audit.*"])
    # Holding this lets a user approve or revoke any delegation.
    delegation_admin_permission: str = "users.manage"

    def resolved_db_url(self) -> str:
        if self.db_url:
            return self.db_url

        repo_root = Path(__file__).resolve().parents[1]
        db_path = repo_root / "permissions.db"
        return f"sqlite:///{db_path}"

    def resolved_catalog_path(self) -> Path:
        if self.catalog_path:
            return Path(self.catalog_path)

        repo_root = Path(__file__).resolve().parents[1]
        return repo_root / "config" / "permission_catalog.yaml"


@lru_cache
def get_settings() -> Settings:
    return Settings()
