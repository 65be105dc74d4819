"""
Pytest fixtures for the test suite.

Every test gets a fresh in-memory SQLite database (one shared static
connection), seeded with a small catalog and a handful of identities. Time is
controlled through `clock`, which every engine component receives.
"""
from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from permission_engine.catalog import parse_catalog
from permission_engine.db.base import Base
from permission_engine.db.init_db import write_catalog
from permission_engine.db.session import create_db_engine, create_session_factory
from permission_engine.engine.facade import build_engine
from permission_engine.models import (
    DepartmentMembershipRow,
    ProjectAssignmentRow,
    UserIdentityRow,
)
from permission_engine.settings import Settings


TEST_DB_URL = "sqlite://"

TEST_CATALOG = {
    "permissions": {
        "orders.read": {"category": "sales"},
        "orders.create": {"category": "sales"},
        "orders.approve": {"category": "sales", "implies": ["orders.read"]},
        "orders.*": {"category": "sales"},
        "clients.read": {"category": "sales"},
        "clients.update": {"category": "sales", "implies": ["clients.read"]},
        "reports.read": {"category": "finance"},
        "reports.export": {"category": "finance", "implies": ["reports.read"]},
        "payments.refund": {"category": "finance"},
        "users.manage": {"category": "admin"},
    },
    "roles": {
        "employee": {"level": 10, "permissions": ["orders.read", "orders.create"]},
        "manager": {"level": 40, "inherits": ["employee"], "permissions": ["orders.approve"]},
        "superadmin": {"level": 100, "universal": True},
        "archived": {"level": 5, "permissions": ["reports.export"], "active": False},
        "legacy": {"level": 5, "inherits": ["archived"], "permissions": ["users.manage"]},
    },
    "department_grants": [
        {"department": "sales", "permission": "clients.read"},
        {"department": "sales", "permission": "clients.update", "employees": False, "managers": True},
        {"department": "finance", "permission": "reports.read"},
    ],
}


class FakeClock:
    """Callable clock returning a fixed naive-UTC instant until advanced."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    # A Wednesday, mid-morning.
    return FakeClock(datetime(2024, 5, 15, 10, 30, 0))


@pytest.fixture
def settings():
    return Settings(db_url=TEST_DB_URL, audit_encryption_key=None, audit_checks=True)


@pytest.fixture
def session_factory():
    """Fresh in-memory database with all tables created."""
    engine = create_db_engine(TEST_DB_URL)
    Base.metadata.create_all(bind=engine)
    factory = create_session_factory(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def catalog():
    return parse_catalog(TEST_CATALOG)


@pytest.fixture
def add_identity(session_factory):
    def _add(user_id, role="employee", department_id="sales", tier="employee", active=True, locked=False):
        with session_factory() as db:
            db.add(
                UserIdentityRow(
                    user_id=user_id,
                    role_code=role,
                    department_id=department_id,
                    employee_tier=tier,
                    active=active,
                    locked=locked,
                )
            )
            db.commit()

    return _add


@pytest.fixture
def add_membership(session_factory):
    def _add(user_id, department_id, tier="employee", name=None, active=True):
        with session_factory() as db:
            db.add(
                DepartmentMembershipRow(
                    user_id=user_id, department_id=department_id, department_name=name, tier=tier, active=active
                )
            )
            db.commit()

    return _add


@pytest.fixture
def add_project(session_factory):
    def _add(user_id, project_id, permissions, name=None, expires_at=None, active=True):
        with session_factory() as db:
            db.add(
                ProjectAssignmentRow(
                    user_id=user_id,
                    project_id=project_id,
                    project_name=name,
                    permissions=list(permissions),
                    expires_at=expires_at,
                    active=active,
                )
            )
            db.commit()

    return _add


@pytest.fixture
def seeded(session_factory, catalog, add_identity):
    """Catalog plus the standard cast of users."""
    with session_factory() as db:
        write_catalog(db, catalog)
        db.commit()

    add_identity("u-emp", role="employee", department_id="sales", tier="employee")
    add_identity("u-mgr", role="manager", department_id="sales", tier="manager")
    add_identity("u-root", role="superadmin", department_id=None, tier=None)
    add_identity("u-legacy", role="legacy", department_id=None, tier=None)
    add_identity("u-locked", role="employee", department_id="sales", locked=True)
    add_identity("u-gone", role="employee", department_id="sales", active=False)
    return session_factory


@pytest.fixture
def engine(seeded, settings, clock):
    return build_engine(settings, seeded, clock=clock, condition_clock=clock, initialize=False)
