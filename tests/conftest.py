"""
Pytest configuration and fixtures for Property Alignment Labeler tests.
"""
import os
import sys
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Generator, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

# Add app directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment before importing app
os.environ["ADMIN_EMAIL"] = "admin@test.local"

from annotator.api_client import Label, LabelerApiClient, Sentence  # noqa: E402
from annotator.traversal import ORDER_BY_LABEL_COUNT  # noqa: E402


SAMPLE_CORPUS = {
    "birthPlace": {
        "domain": "Person",
        "range": "Place",
        "texts": [f"Person {i} was born in City {i} ." for i in range(12)],
    },
    "capital": {
        "domain": "Country",
        "range": "City",
        "texts": [
            "Berlin is the capital of Germany .",
            "Paris is the capital city of France .",
            "The weather in Rome is warm .",
        ],
    },
}

SAMPLE_DESCRIPTIONS = {
    "http://dbpedia.org/ontology/capital": {
        "description": "The capital of a country.",
        "domain": ["http://dbpedia.org/ontology/Country"],
        "range": ["http://dbpedia.org/ontology/City"],
    },
}


@pytest.fixture(scope="session")
def temp_db_path() -> Generator[Path, None, None]:
    """Create a temporary database file for the test session."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)
    yield db_path
    # Cleanup after all tests
    if db_path.exists():
        db_path.unlink()


@pytest.fixture(scope="session")
def app(temp_db_path: Path):
    """Create FastAPI app with test database."""
    import app as app_module

    # Override database path
    app_module.DB_PATH = temp_db_path

    # Initialize database
    app_module.init_db()

    return app_module.app


@pytest.fixture
def fresh_client(app) -> Generator[TestClient, None, None]:
    """Create a fresh test client with clean database for each test."""
    import app as app_module

    # Create new temp db for this test
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        test_db = Path(f.name)

    previous = app_module.DB_PATH
    app_module.DB_PATH = test_db
    app_module.init_db()

    with TestClient(app_module.app) as c:
        yield c

    app_module.DB_PATH = previous
    if test_db.exists():
        test_db.unlink()


def register(client: TestClient, email: str, password: str = "testpass123", display_name: Optional[str] = None) -> dict:
    response = client.post("/api/auth/register", json={
        "email": email,
        "password": password,
        "display_name": display_name,
    })
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture
def auth_client(fresh_client: TestClient) -> Generator[tuple[TestClient, dict], None, None]:
    """Create authenticated test client with a registered user."""
    user_data = register(fresh_client, f"user_{os.urandom(4).hex()}@test.local", display_name="Test User")

    # Client now has session cookie from registration
    yield fresh_client, user_data


@pytest.fixture
def second_client(fresh_client: TestClient) -> Generator[tuple[TestClient, dict], None, None]:
    """A second user with its own cookie jar on the same database."""
    import app as app_module

    with TestClient(app_module.app) as c:
        user_data = register(c, f"other_{os.urandom(4).hex()}@test.local", display_name="Other User")
        yield c, user_data


@pytest.fixture
def admin_client(fresh_client: TestClient) -> Generator[tuple[TestClient, dict], None, None]:
    """Create authenticated test client with admin user."""
    # Register as the admin user (ADMIN_EMAIL env var)
    user_data = register(fresh_client, "admin@test.local", password="adminpass123", display_name="Test Admin")
    assert user_data["role"] == "admin"
    yield fresh_client, user_data


@pytest.fixture
def seeded(fresh_client: TestClient) -> dict:
    """Load SAMPLE_CORPUS into the current test database."""
    import app as app_module

    with app_module.get_db() as conn:
        app_module.import_corpus(conn, SAMPLE_CORPUS, descriptions=SAMPLE_DESCRIPTIONS)
        properties = {
            row["name"]: row["id"]
            for row in conn.execute("SELECT id, name FROM properties").fetchall()
        }
        sentences = {
            name: [
                row["id"]
                for row in conn.execute(
                    "SELECT id FROM sentences WHERE property_id = ? ORDER BY id", (pid,)
                ).fetchall()
            ]
            for name, pid in properties.items()
        }
    return {"properties": properties, "sentences": sentences}


@pytest.fixture
def api_client(auth_client: tuple[TestClient, dict]) -> LabelerApiClient:
    """LabelerApiClient talking to the app through the authenticated TestClient."""
    client, _ = auth_client
    return LabelerApiClient(http_client=client)


def set_label_count(sentence_id: int, label_count: Optional[int]) -> None:
    import app as app_module

    with app_module.get_db() as conn:
        conn.execute("UPDATE sentences SET label_count = ? WHERE id = ?", (label_count, sentence_id))


# ============================================================================
# In-memory backend
# ============================================================================

class FakeBackend:
    """
    In-memory stand-in for LabelerApiClient with failure injection.

    Set `fail_rpc`, `fail_direct`, `fail_upsert`, `fail_batches`,
    `fail_index` or `fail_read` to make the matching call raise httpx.ConnectError.
    `calls` records (method, args) in order.
    """

    def __init__(self, property_id: int = 1, sentences: Optional[list] = None):
        self.property_id = property_id
        self.sentences = {s.id: s for s in (sentences or [])}
        self.labels: dict[int, Label] = {}
        self.calls: list = []
        self.fail_rpc = False
        self.fail_direct = False
        self.fail_upsert = False
        self.fail_batches = False
        self.fail_index = False
        self.fail_read = False
        self.on_batch = None

    @classmethod
    def with_texts(cls, texts: list[str], property_id: int = 1, first_id: int = 1) -> "FakeBackend":
        return cls(property_id, [
            Sentence(id=first_id + i, text=t, label_count=0, property_id=property_id)
            for i, t in enumerate(texts)
        ])

    def _error(self, name: str):
        return httpx.ConnectError(f"{name} unavailable")

    def _ordered(self, property_id, query) -> list:
        rows = [s for s in self.sentences.values() if s.property_id == property_id]
        if query.unlabeled_only:
            rows = [s for s in rows if s.label_count == 0]
        if query.order == ORDER_BY_LABEL_COUNT:
            rows.sort(key=lambda s: (s.label_count is None, s.label_count or 0, s.id))
        else:
            rows.sort(key=lambda s: s.id)
        return rows

    def count_sentences(self, property_id, query):
        self.calls.append(("count_sentences", property_id))
        if self.fail_index:
            raise self._error("count")
        return len(self._ordered(property_id, query))

    def list_sentence_ids(self, property_id, query):
        self.calls.append(("list_sentence_ids", property_id))
        if self.fail_index:
            raise self._error("ids")
        return [s.id for s in self._ordered(property_id, query)]

    def fetch_sentence_batch(self, property_id, query, offset, limit, ids=None):
        self.calls.append(("fetch_sentence_batch", property_id, offset, limit))
        if self.fail_batches:
            raise self._error("batch")
        if ids is None:
            rows = [replace(s) for s in self._ordered(property_id, query)[offset:offset + limit]]
        else:
            rows = [
                replace(self.sentences[i]) for i in ids
                if i in self.sentences and self.sentences[i].property_id == property_id
            ]
        if self.on_batch is not None:
            hook, self.on_batch = self.on_batch, None
            hook()
        return rows

    def fetch_sentence(self, sentence_id):
        self.calls.append(("fetch_sentence", sentence_id))
        if self.fail_read:
            raise self._error("sentence read")
        sentence = self.sentences.get(sentence_id)
        return replace(sentence) if sentence is not None else None

    def fetch_user_labeled_ids(self, property_id):
        self.calls.append(("fetch_user_labeled_ids", property_id))
        if self.fail_index:
            raise self._error("labeled ids")
        return {sid for sid, label in self.labels.items() if label.property_id == property_id}

    def fetch_label(self, sentence_id):
        self.calls.append(("fetch_label", sentence_id))
        return self.labels.get(sentence_id)

    def upsert_label(self, label):
        self.calls.append(("upsert_label", label.sentence_id))
        if self.fail_upsert:
            raise self._error("upsert")
        created = label.sentence_id not in self.labels
        stored = replace(label, sentence_text=self.sentences[label.sentence_id].text)
        self.labels[label.sentence_id] = stored
        return stored, created

    def delete_label(self, sentence_id):
        self.calls.append(("delete_label", sentence_id))
        return self.labels.pop(sentence_id, None) is not None

    def adjust_label_count(self, sentence_id, delta):
        self.calls.append(("adjust_label_count", sentence_id, delta))
        if self.fail_rpc:
            raise self._error("rpc")
        sentence = self.sentences[sentence_id]
        sentence.label_count = max(0, (sentence.label_count or 0) + delta)
        return sentence.label_count

    def set_label_count(self, sentence_id, label_count):
        self.calls.append(("set_label_count", sentence_id, label_count))
        if self.fail_direct:
            raise self._error("direct update")
        self.sentences[sentence_id].label_count = label_count

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def fake_backend() -> FakeBackend:
    """Three sentences with ids 1, 2, 3 on property 1."""
    return FakeBackend.with_texts([
        "Berlin is the capital of Germany .",
        "Paris is in France .",
        "It rained yesterday .",
    ])


@pytest.fixture
def make_backend():
    """Factory for a FakeBackend with n generated sentences."""
    def factory(n: int, property_id: int = 1) -> FakeBackend:
        return FakeBackend.with_texts([f"Sentence number {i} here ." for i in range(n)], property_id=property_id)
    return factory
