import os
from pathlib import Path

import pytest

from agentrt.agents.loader import reset_loader_caches
from agentrt.config import get_settings
from agentrt.db.migrations.runner import run_migrations
from agentrt.modules.loader import reset_module_cache

FIXTURES = Path(__file__).resolve().parent / "fixtures"


@pytest.fixture(autouse=True)
def test_env(tmp_path: Path):
    db = tmp_path / "test.db"
    os.environ["APP_DB"] = str(db)
    os.environ["MODULE_BUNDLE_DIR"] = str(FIXTURES)
    os.environ["DECISION_TIMEOUT_SECONDS"] = "2"
    os.environ["EXECUTION_TIMEOUT_SECONDS"] = "2"
    get_settings.cache_clear()
    run_migrations()
    reset_module_cache()
    reset_loader_caches()
    yield
    get_settings.cache_clear()
    reset_module_cache()
    reset_loader_caches()


@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES


@pytest.fixture
def billing_source() -> str:
    return (FIXTURES / "billing_dispute.agent").read_text(encoding="utf-8")
