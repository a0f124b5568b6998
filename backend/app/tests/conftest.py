import os

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("TRACKASIA_API_KEY", "")
os.environ.setdefault("REDIS_URL", "redis://localhost:6399/0")
os.environ.setdefault("DISTANCE_CACHE_TTL_SECONDS", "0")

from app.main import app
from app.providers import trackasia
from app.services import cache
from app.utils.settings import get_settings


@pytest.fixture(autouse=True)
def reset_singletons():
    get_settings.cache_clear()
    cache.reset_cache()
    trackasia._CLIENT = None
    yield
    get_settings.cache_clear()
    cache.reset_cache()
    trackasia._CLIENT = None


@pytest.fixture()
def client():
    with TestClient(app) as c:
        yield c
