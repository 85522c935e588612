from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest

from backoffice.estimates import EstimateRepository
from backoffice.quotes import QuoteRepository
from backoffice.storage import StorageEngine
from backoffice.timesheets import TimesheetRepository
from backoffice.users import UserRepository

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "ChangeMe123!"


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "estimates.db"


@pytest.fixture()
def engine(db_path: Path) -> Iterator[StorageEngine]:
    eng = StorageEngine(db_path)
    eng.open()
    yield eng
    eng.close()


@pytest.fixture()
def users(engine: StorageEngine) -> UserRepository:
    repo = UserRepository(engine)
    repo.initialize(admin_email=ADMIN_EMAIL, admin_password=ADMIN_PASSWORD)
    return repo


@pytest.fixture()
def estimates(engine: StorageEngine) -> EstimateRepository:
    return EstimateRepository(engine)


@pytest.fixture()
def timesheets(engine: StorageEngine) -> TimesheetRepository:
    return TimesheetRepository(engine)


@pytest.fixture()
def quotes(engine: StorageEngine) -> QuoteRepository:
    return QuoteRepository(engine)


@pytest.fixture()
def worker_id(users: UserRepository) -> int:
    return users.create_user(email="worker@example.com", password="worker-pass", name="Worker", is_approved=True)
