"""
Shared pytest fixtures and path setup for unit tests.
"""

import os
import sys
from pathlib import Path

# Keep the developer's environment from leaking into Settings during tests.
for _name in list(os.environ):
    if _name.startswith("WORKSTATE_"):
        del os.environ[_name]
os.environ.setdefault("WORKSTATE_LOG_LEVEL", "DEBUG")

# Add src to sys.path so workstate.* imports work when running pytest from repo root.
PROJECT_SRC = Path(__file__).resolve().parents[2]
if str(PROJECT_SRC) not in sys.path:
    sys.path.insert(0, str(PROJECT_SRC))

import pytest

from workstate.core.config import Settings, reset_settings_instance
from workstate.core.hot_cache import HotCache
from workstate.core.local_storage import MemoryLocalStorage
from workstate.core.logging import reset_logging
from workstate.core.platform import create_web_platform
from workstate.services.persisted import PersistContext, reset_persist_context


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Drop process-wide singletons between tests."""
    reset_settings_instance()
    reset_persist_context()
    yield
    reset_settings_instance()
    reset_persist_context()
    reset_logging()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings pointing every file at a per-test directory."""
    return Settings(
        WORKSTATE_DATA_DIR=str(tmp_path / "data"),
        WORKSTATE_STORAGE_BACKEND="memory",
        WORKSTATE_WRITE_THROTTLE_MS=250,
    )


@pytest.fixture
def web_context() -> PersistContext:
    """Web context over an in-memory local storage."""
    return PersistContext(
        platform=create_web_platform(),
        local_storage=MemoryLocalStorage(),
        hot_cache=HotCache(),
    )
