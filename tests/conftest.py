"""
Pytest configuration and fixtures for Papyrus Backend tests.
"""

import json
import os
import shutil
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

MASTER_KEY = "test-master-key-12345"

# Set test environment variables before importing the app
_TEST_ROOT = tempfile.mkdtemp(prefix="papyrus_test_")
os.environ["PAPYRUS_DB_PATH"] = str(Path(_TEST_ROOT) / "papyrus.db")
os.environ["LOCAL_STORAGE_ROOT"] = str(Path(_TEST_ROOT) / "objects")
os.environ["PAPYRUS_MASTER_KEY"] = MASTER_KEY
os.environ["PAPYRUS_BACKEND"] = "sqlite"
os.environ["STORAGE_BACKEND"] = "local"

from papyrus_backend.configuration import load_config  # noqa: E402
from papyrus_backend.main import create_app  # noqa: E402
from papyrus_backend.page_pool import RenderPool  # noqa: E402
from papyrus_backend.render import RenderDispatcher, TemplateStore  # noqa: E402
from papyrus_backend.services import build_services  # noqa: E402


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)


class FakeRenderContext:
    """Stands in for a typst workspace: returns a tiny PDF-looking byte string."""

    def __init__(self):
        self.renders = 0
        self.resets = 0
        self.closed = False

    def render(self, source, data):
        self.renders += 1
        return b"%PDF-1.4\n" + json.dumps(data["fields"], sort_keys=True).encode("utf-8")

    def reset(self):
        self.resets += 1

    def close(self):
        self.closed = True


def _overrides(tmp_path, **sections):
    overrides = {
        "backend": "sqlite",
        "database": {"path": str(tmp_path / "papyrus.db")},
        "storage": {"backend": "local", "local_root": str(tmp_path / "objects")},
        "rate_limit": {"default": 1000},
        "admin": {"master_key": MASTER_KEY},
        "queue": {"poll_interval": 0.01, "retry": {"backoff_initial": 0.0, "backoff_max": 0.0}},
    }
    for name, values in sections.items():
        overrides.setdefault(name, {})
        overrides[name].update(values)
    return overrides


@pytest.fixture
def make_config(tmp_path):
    """Build a config rooted in ``tmp_path``; keyword arguments override whole sections."""

    def _make(**sections):
        return load_config(_overrides(tmp_path, **sections))

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def services(config):
    built = build_services(config)
    yield built
    built.close()


@pytest.fixture
def make_client(make_config):
    """Create a test client for an app built from section overrides."""

    def _make(**sections):
        return TestClient(create_app(make_config(**sections)))

    return _make


@pytest.fixture
def client(services):
    """Create a test client for the FastAPI app."""
    return TestClient(create_app(services=services))


@pytest.fixture
def master_key():
    """Return the master API key for admin operations."""
    return MASTER_KEY


@pytest.fixture
def api_key(client, master_key):
    """Create a test API key on the premium tier."""
    response = client.post(
        "/admin/keys",
        json={"name": "test-user", "tier": "premium"},
        headers={"X-API-Key": master_key},
    )
    assert response.status_code == 201
    return response.json()["api_key"]


@pytest.fixture
def fake_context_factory():
    """Factory producing FakeRenderContext instances; keeps every one created."""
    created = []

    def _factory():
        context = FakeRenderContext()
        created.append(context)
        return context

    _factory.created = created
    return _factory


@pytest.fixture
def render_pool(fake_context_factory):
    pool = RenderPool(fake_context_factory, max_resources=2, acquire_timeout=1.0)
    yield pool
    pool.destroy_all()


@pytest.fixture
def dispatcher(render_pool):
    return RenderDispatcher(render_pool, TemplateStore(), acquire_timeout=1.0)


@pytest.fixture
def budget_request():
    return {
        "type": "budget",
        "title": "Kitchen Budget",
        "language": "en-US",
        "data": {
            "client": {"name": "Ana"},
            "budget": {
                "items": [
                    {"description": "Cabinets", "quantity": 2, "unitPrice": 150.0},
                    {"description": "Sink", "quantity": 1, "unitPrice": 80.0},
                ]
            },
        },
    }
