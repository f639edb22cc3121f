from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture(scope="session")
def app():
    # Must be set before importing modules that read settings at import time.
    os.environ.setdefault("OPENAI_API_KEY", "sk-test")
    os.environ.setdefault("PUBLIC_BASE_URL", "https://relay.example.com")

    import importlib

    from config.settings import get_settings

    get_settings.cache_clear()
    for module_name in ["api.routes", "api.twilio_routes", "main"]:
        sys.modules.pop(module_name, None)

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def reset_settings():
    from config.settings import get_settings

    get_settings.cache_clear()
    yield get_settings
    get_settings.cache_clear()
