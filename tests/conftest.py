"""
Pytest configuration and fixtures.

Points the application at a temporary SQLite database and storage directory
before any application module is imported.
"""
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional
from unittest.mock import MagicMock

_TMP_DIR = Path(tempfile.mkdtemp(prefix="phage-tests-"))
os.environ["PHAGE_DB_URL"] = f"sqlite:///{_TMP_DIR / 'test.db'}"
os.environ["PHAGE_STORAGE_DIR"] = str(_TMP_DIR / "storage")
os.environ["PHAGE_PUBLIC_URL"] = "http://testserver"
os.environ["JWT_SECRET"] = "test-secret"
for var in (
    "DODO_PAYMENTS_API_KEY",
    "DODO_PAYMENTS_PRODUCT_ID",
    "DODO_PAYMENTS_RETURN_URL",
    "DODO_PAYMENTS_WEBHOOK_SECRET",
    "BREVO_API_KEY",
):
    os.environ.pop(var, None)

import pytest  # noqa: E402
import requests  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import currency  # noqa: E402
from app import app  # noqa: E402
from config import get_settings  # noqa: E402
from database import DBSession, engine  # noqa: E402
from models import User  # noqa: E402
from security import create_token  # noqa: E402
from storage import FileStorage  # noqa: E402


@pytest.fixture(autouse=True)
def reset_state() -> Iterator[None]:
    """Recreate tables and drop cached exchange rates for every test."""
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    currency._rates = None
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def settings() -> Any:
    return get_settings()


@pytest.fixture
def client() -> Iterator[TestClient]:
    """Create test HTTP client (runs startup handlers)."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_user() -> Callable[..., User]:
    """Insert a user directly, skipping password hashing."""
    def _make(credits: int = 5, email: Optional[str] = None) -> User:
        with DBSession() as s:
            count = s.query(User).count()
            user = User(
                email=email or f"user{count}@example.com",
                name="Test User",
                password_hash="not-a-real-hash",
                credits=credits,
            )
            s.add(user)
            s.commit()
            s.refresh(user)
            return user
    return _make


@pytest.fixture
def user(make_user: Callable[..., User]) -> User:
    return make_user(credits=5)


@pytest.fixture
def auth_headers(user: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_token(str(user.id))}"}


@pytest.fixture
def storage(settings: Any) -> FileStorage:
    return FileStorage(settings.storage_dir)


@pytest.fixture
def fake_response() -> Callable[..., MagicMock]:
    """Factory for stand-ins of requests.Response."""
    def _make(
        status_code: int = 200,
        json_data: Optional[Any] = None,
        content: bytes = b"",
        text: str = "",
        reason: str = "OK",
    ) -> MagicMock:
        resp = MagicMock(spec=requests.Response)
        resp.status_code = status_code
        resp.ok = status_code < 400
        resp.json.return_value = json_data if json_data is not None else {}
        resp.content = content
        resp.text = text
        resp.reason = reason
        return resp
    return _make


@pytest.fixture
def credits_of() -> Callable[[int], int]:
    """Read a user's current credit balance from the database."""
    def _credits(user_id: int) -> int:
        with DBSession() as s:
            return s.get(User, user_id).credits
    return _credits
