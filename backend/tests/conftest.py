from pathlib import Path
from dotenv import load_dotenv
import fakeredis
import pytest

# Load environment variables for tests before the app settings are built
load_dotenv(Path(__file__).resolve().parents[1] / '.env.test')


@pytest.fixture
def fake_bus(monkeypatch):
    """Enable the change feed against an in-process fake Redis."""
    from marketplace.core.config import settings
    from marketplace.realtime import bus

    fake = fakeredis.FakeStrictRedis()
    monkeypatch.setattr(settings, "WS_BUS_ENABLED", True)
    monkeypatch.setattr(bus, "get_redis_client", lambda: fake)
    return fake
