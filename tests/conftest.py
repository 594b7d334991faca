import json, threading
import pytest

from app import create_app
from key_store import KeyStore
from reputation_cache import ReputationCache
from gateway import Gateway

VALID_KEY = "k-valid-123"
EXPIRED_KEY = "k-expired-456"

KEY_RECORDS = [
    {"key": VALID_KEY, "owner": "acme", "type": "pro", "expiry": "2999-01-01T00:00:00Z"},
    {"key": EXPIRED_KEY, "owner": "oldco", "type": "free", "expiry": "2020-01-01T00:00:00Z"},
]


class FakeProvider:
    """Canned geo/VPN answers with call counters."""

    def __init__(self, country="US", vpn=False):
        self.country = country
        self.vpn = vpn
        self.geo_calls = 0
        self.vpn_calls = 0
        self._lock = threading.Lock()

    def lookup_geo(self, ip):
        with self._lock:
            self.geo_calls += 1
        return self.country

    def check_vpn(self, ip):
        with self._lock:
            self.vpn_calls += 1
        return self.vpn


@pytest.fixture
def keys_path(tmp_path):
    p = tmp_path / "keys.json"
    p.write_text(json.dumps(KEY_RECORDS))
    return p


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "ip_cache.json"


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def gateway(keys_path, cache_path, provider):
    gw = Gateway(KeyStore(str(keys_path)).load(), ReputationCache(str(cache_path)).load(), provider)
    yield gw
    gw.close()


@pytest.fixture
def brands_path(tmp_path):
    p = tmp_path / "brands.json"
    p.write_text(json.dumps({"42": "Acme Widgets", "7": {"brand": "Globex"}}))
    return p


@pytest.fixture
def app(tmp_path, keys_path, cache_path, brands_path, provider):
    app = create_app({
        "TESTING": True,
        "API_KEYS_PATH": str(keys_path),
        "REPUTATION_CACHE_PATH": str(cache_path),
        "BRANDS_PATH": str(brands_path),
    }, provider=provider, instance_path=str(tmp_path / "instance"))
    yield app
    app.extensions["gateway"].close()


@pytest.fixture
def client(app):
    return app.test_client()
