"""Pytest fixtures for therapy pipeline tests."""
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from app.main import create_app, get_db
from app.services.document_store import StoredDocument, content_hash
from app.worker.config import WorkerConfig


class FakeDocumentStore:
    """In-memory stand-in for GcsDocumentStore."""

    def __init__(self):
        self.objects = {}

    async def upload(self, contents, filename, content_type=None):
        path = f"gs://test-bucket/documents/{filename}"
        self.objects[path] = contents
        return StoredDocument(path=path, content_hash=content_hash(contents), size=len(contents))

    async def delete(self, path):
        return self.objects.pop(path, None) is not None


@pytest.fixture
def db_session() -> AsyncMock:
    """Mocked AsyncSession handed to every request."""
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def document_store() -> FakeDocumentStore:
    return FakeDocumentStore()


@pytest.fixture
def client(db_session, document_store) -> TestClient:
    """FastAPI test client with the database dependency overridden."""
    app = create_app(database=MagicMock(), document_store=document_store, queue_config=WorkerConfig())

    async def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    return TestClient(app)
