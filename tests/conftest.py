"""Pytest configuration and fixtures."""

import os
import sys
from pathlib import Path

# Add project root to sys.path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

# The module-level engine must never touch the real database file
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from sqlalchemy.orm import sessionmaker

from drama_gateway.server.ai_config_service import AIConfigService
from drama_gateway.server.database import create_db_engine, session_scope
from drama_gateway.server.init_db import init_db


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def add_config(session_factory):
    """Insert a provider config and return its id."""

    def _add(**overrides):
        data = {
            "service_type": "text",
            "name": "primary",
            "provider": "openai",
            "base_url": "https://api.example.com/v1",
            "api_key": "sk-test-123456",
            "model": ["gpt-test"],
            "priority": 0,
        }
        data.update(overrides)
        with session_scope(session_factory) as db:
            return AIConfigService(db).create_config(data).id

    return _add


@pytest.fixture
def no_sleep():
    """Sleep replacement that records the requested intervals."""
    calls = []

    def _sleep(seconds):
        calls.append(seconds)

    _sleep.calls = calls
    return _sleep


@pytest.fixture
def png_bytes():
    import io
    from PIL import Image

    buf = io.BytesIO()
    Image.new("RGB", (4, 4), (255, 0, 0)).save(buf, format="PNG")
    return buf.getvalue()
