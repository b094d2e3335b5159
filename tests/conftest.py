import os

# Configure the app before anything imports dispatch settings
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["EXPORT_ROUTE_SHEETS"] = "false"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./.pytest-dispatch.db"
os.environ["DEBUG"] = "false"

import pytest

from dispatch.core.config import Settings, get_settings
from dispatch.models import OrderStatus
from dispatch.repositories import reset_memory_store
from dispatch.repositories.memory import MemoryDispatchStore
from dispatch.services.assignments import AssignmentService
from dispatch.services.locks import reset_locks

# Recife, around the fallback origin
BRANCH_LAT, BRANCH_LNG = -8.0476, -34.8770


@pytest.fixture(autouse=True)
def fresh_state():
    reset_locks()
    reset_memory_store()
    yield
    reset_locks()
    reset_memory_store()


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def store() -> MemoryDispatchStore:
    return MemoryDispatchStore()


@pytest.fixture
def branch(store: MemoryDispatchStore):
    return store.add_branch(
        "Recife Antigo",
        latitude=BRANCH_LAT,
        longitude=BRANCH_LNG,
        address_street="Rua do Bom Jesus, 100",
    )


@pytest.fixture
def exported() -> list[dict]:
    return []


@pytest.fixture
def service(store: MemoryDispatchStore, settings: Settings, exported: list[dict]) -> AssignmentService:
    return AssignmentService(store, settings, exporter=exported.append)


@pytest.fixture
def make_order(store: MemoryDispatchStore, branch):
    """Ready delivery order placed ``north_m`` / ``east_m`` meters away from the branch."""

    def _make(north_m: float = 0.0, east_m: float = 0.0, branch_id=None, **kwargs):
        lat = BRANCH_LAT + north_m / 111_195.0
        lng = BRANCH_LNG + east_m / 110_100.0
        kwargs.setdefault("status", OrderStatus.READY)
        kwargs.setdefault("address", "Rua da Aurora")
        kwargs.setdefault("city", "Recife")
        return store.add_order(branch_id or branch.id, lat=lat, lng=lng, **kwargs)

    return _make
