"""
Pytest Configuration and Fixtures
Shared fixtures and configuration for all tests
"""

import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("SNAPSHOT_CACHE_BACKEND", "memory")

import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from workshop_rbac.db import models  # noqa: F401
from workshop_rbac.db.base import Base
from workshop_rbac.services.rbac.factory import build_services
from workshop_rbac.services.rbac.snapshot import InMemorySnapshotBackend


# ============================================
# PYTEST CONFIGURATION
# ============================================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, isolated)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests against a temporary database"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add default markers"""
    for item in items:
        if "/unit/" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ============================================
# CLOCK
# ============================================

class FrozenClock:
    """Controllable time source"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


# ============================================
# DATABASE FIXTURES
# ============================================

@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Fresh SQLite database per test"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'rbac.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


# ============================================
# SERVICE FIXTURES
# ============================================

@pytest.fixture
def backend():
    return InMemorySnapshotBackend()


@pytest.fixture
def services(session_factory, backend, clock):
    """(AuthorizationService, RBACAdminService) sharing one cache"""
    return build_services(session_factory, backend=backend, clock=clock)


@pytest.fixture
def authz(services):
    return services[0]


@pytest.fixture
def admin(services):
    return services[1]


@pytest.fixture
def org_id():
    return uuid.uuid4()


@pytest.fixture
def other_org_id():
    return uuid.uuid4()


@pytest.fixture
def user_id():
    return uuid.uuid4()


WORKSHOP_PERMISSIONS = [
    ("work_orders.view", "work_orders", "view"),
    ("work_orders.create", "work_orders", "create"),
    ("invoices.view", "invoices", "view"),
    ("invoices.delete", "invoices", "delete"),
    ("customers.view", "customers", "view"),
    ("salaries.view", "salaries", "view"),
]


async def seed_workshop(admin_service, organization_id: uuid.UUID) -> None:
    """Typical workshop catalog: admin, technician, accountant, receptionist"""
    for key, resource, action in WORKSHOP_PERMISSIONS:
        await admin_service.create_permission(organization_id, key, resource, action)

    await admin_service.create_role(organization_id, "admin", "Administrator", is_system_role=True)
    await admin_service.create_role(
        organization_id, "technician", "Technician",
        is_system_role=True, permission_keys=["work_orders.view", "work_orders.create"],
    )
    await admin_service.create_role(
        organization_id, "accountant", "Accountant", permission_keys=["invoices.view", "customers.view"],
    )
    await admin_service.create_role(
        organization_id, "receptionist", "Receptionist", permission_keys=["customers.view"],
    )


@pytest_asyncio.fixture
async def workshop(admin, org_id):
    """Seeded organization id"""
    await seed_workshop(admin, org_id)
    return org_id
