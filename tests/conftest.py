import os
import sys
from pathlib import Path

os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("DB_BUSY_TIMEOUT_SECONDS", "10")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import database  # noqa: E402
from config import reset_settings_cache  # noqa: E402
from database import session_scope  # noqa: E402
from helpers import ADMIN_EMAIL, ADMIN_PASSWORD, login, make_member, make_user  # noqa: E402
from permissions import EMPLOYEE_ROLE_ID  # noqa: E402
from seed import seed_all  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_database(tmp_path):
    """Every test gets its own seeded SQLite file."""
    reset_settings_cache()
    engine = database.init_engine(f"sqlite:///{tmp_path / 'library.db'}", create_schema=True)
    with session_scope() as db:
        seed_all(db)
    yield engine
    engine.dispose()
    database.engine = None


@pytest.fixture
def db():
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from main import app

    return TestClient(app)


@pytest.fixture
def admin_token(client):
    return login(client, ADMIN_EMAIL, ADMIN_PASSWORD)


@pytest.fixture
def employee_token(client):
    make_user("clerk", EMPLOYEE_ROLE_ID)
    return login(client, "clerk@example.com", "secret123")


@pytest.fixture
def member_token(client):
    make_member("Mona Member", email="mona@example.com")
    return login(client, "mona@example.com", "secret123")
