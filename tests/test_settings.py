"""Tests for environment-driven settings and engine assembly."""
from __future__ import annotations

import logging
from pathlib import Path

import pytest

from permission_engine import build_engine
from permission_engine.db.session import create_db_engine, create_session_factory
from permission_engine.settings import Settings


def test_defaults():
    settings = Settings()

    assert settings.cache_ttl_seconds == 300
    assert settings.manager_tiers == ["manager", "director"]
    assert settings.default_framework == "PCI_DSS"
    assert settings.min_retention_days == 365
    assert settings.non_delegable_permissions == ["users.*", "roles.*", "audit.*"]
    assert settings.delegation_admin_permission == "users.manage"
    assert settings.resolved_db_url().startswith("sqlite:///")
    assert settings.resolved_catalog_path().name == "permission_catalog.yaml"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("PERM_CACHE_TTL_SECONDS", "60")
    monkeypatch.setenv("PERM_MANAGER_TIERS", '["lead", "head"]')
    monkeypatch.setenv("PERM_DB_URL", "sqlite://")
    monkeypatch.setenv("PERM_AUDIT_CHECKS", "false")

    settings = Settings()

    assert settings.cache_ttl_seconds == 60
    assert settings.manager_tiers == ["lead", "head"]
    assert settings.resolved_db_url() == "sqlite://"
    assert settings.audit_checks is False


def test_build_engine_initializes_database_from_catalog(tmp_path, clock):
    settings = Settings(
        db_url=f"sqlite:///{tmp_path / 'perm.db'}",
        catalog_path=str(Path(__file__).resolve().parents[1] / "config" / "permission_catalog.yaml"),
        audit_encryption_key="00" * 32,
        log_level="debug",
    )
    session_factory = create_session_factory(create_db_engine(settings.resolved_db_url()))

    engine = build_engine(settings, session_factory, clock=clock)
    try:
        assert engine.store.get_role("superadmin").is_universal
        assert logging.getLogger("permission_engine").level == logging.DEBUG
    finally:
        session_factory.kw["bind"].dispose()


def test_build_engine_rejects_bad_encryption_key(seeded):
    with pytest.raises(ValueError):
        build_engine(Settings(db_url="sqlite://", audit_encryption_key="short"), seeded, initialize=False)


def test_missing_encryption_key_is_warned(seeded, caplog):
    with caplog.at_level(logging.WARNING):
        build_engine(Settings(db_url="sqlite://", audit_encryption_key=None), seeded, initialize=False)
    assert "No audit encryption key" in caplog.text
