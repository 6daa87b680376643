"""
Shared pytest fixtures.
"""
import pytest
from fastapi.testclient import TestClient

from app.settings import settings
from app.store import init_db


VALID_ISBN13 = "9780441013593"  # Dune
VALID_ISBN10 = "0441013597"


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Point the store at a fresh sqlite file."""
    path = tmp_path / "library.db"
    monkeypatch.setattr(settings, "db_path", str(path))
    init_db()
    return path


@pytest.fixture
def client(temp_db):
    from app.main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture
def student_payload():
    return (
        '{"student_id": "7f3c", "student_number": "STU-00045", '
        '"email": "bob@example.com", "full_name": "Bob Kumar"}'
    )


@pytest.fixture
def book_payload():
    return '{"book_id": "b-17", "title": "Dune"}'
