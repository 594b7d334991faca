import json, time, threading
import pytest

from gateway import Gateway, is_ip_format
from key_store import KeyStore
from reputation_cache import ReputationCache
from errors import InvalidIPFormat, CacheIOError, ReputationError, InvalidKey
from conftest import VALID_KEY, FakeProvider


@pytest.mark.parametrize("ip", ["8.8.8.8", "0.0.0.0", "255.255.255.255", "999.1.1.1", "1.22.333.4"])
def test_ip_format_accepts_dotted_quads(ip):
    assert is_ip_format(ip)


@pytest.mark.parametrize("ip", ["1.2.3", "1.2.3.4.5", "1234.1.1.1", "a.b.c.d", "", " 1.2.3.4", "1.2.3.4\n", "::1", None])
def test_ip_format_rejects_others(ip):
    assert not is_ip_format(ip)


def test_invalid_ip_does_no_io(gateway, provider):
    key = gateway.authorize(VALID_KEY)
    with pytest.raises(InvalidIPFormat):
        gateway.resolve_reputation("1.2.3", key)
    assert provider.geo_calls == provider.vpn_calls == 0
    assert len(gateway.cache) == 0


def test_authorize_rejects_unknown_key(gateway):
    with pytest.raises(InvalidKey):
        gateway.authorize("bogus")


def test_miss_then_hit_is_idempotent(gateway, provider, cache_path):
    key = gateway.authorize(VALID_KEY)
    first = gateway.resolve_reputation("8.8.8.8", key)
    second = gateway.resolve_reputation("8.8.8.8", key)
    assert first == second == {
        "ip": "8.8.8.8", "country": "US", "countryCode": "US", "isVPN": False,
        "keyInfo": {"owner": "acme", "type": "pro"},
    }
    assert provider.geo_calls == 1
    assert provider.vpn_calls == 1
    assert json.loads(cache_path.read_text())["8.8.8.8"]["country"] == "US"


def test_unknown_country(keys_path, cache_path):
    gw = Gateway(KeyStore(str(keys_path)).load(), ReputationCache(str(cache_path)).load(),
                 FakeProvider(country=None, vpn=True))
    try:
        out = gw.resolve_reputation("1.1.1.1", gw.authorize(VALID_KEY))
    finally:
        gw.close()
    assert out["country"] == "Unknown"
    assert out["countryCode"] == "Unknown"
    assert out["isVPN"] is True


def test_hit_uses_live_key_metadata(gateway, cache_path):
    key = gateway.authorize(VALID_KEY)
    gateway.resolve_reputation("8.8.8.8", key)
    on_disk = json.loads(cache_path.read_text())["8.8.8.8"]
    assert "keyInfo" not in on_disk
    other = key.__class__(key="other", owner="someone", type="free", expiry=key.expiry)
    assert gateway.resolve_reputation("8.8.8.8", other)["keyInfo"] == {"owner": "someone", "type": "free"}


def test_cache_write_failure_escalates(gateway, monkeypatch):
    def fail(ip, record):
        raise CacheIOError()
    monkeypatch.setattr(gateway.cache, "put", fail)
    with pytest.raises(CacheIOError):
        gateway.resolve_reputation("8.8.8.8", gateway.authorize(VALID_KEY))


def test_unexpected_provider_error_is_internal(gateway, provider, monkeypatch):
    def explode(ip):
        raise RuntimeError("geo backend exploded")
    monkeypatch.setattr(provider, "lookup_geo", explode)
    with pytest.raises(ReputationError):
        gateway.resolve_reputation("8.8.8.8", gateway.authorize(VALID_KEY))
    assert len(gateway.cache) == 0


def _hammer(gw, ip, n):
    key = gw.authorize(VALID_KEY)
    results, errors = [], []
    barrier = threading.Barrier(n)

    def worker():
        barrier.wait()
        try:
            results.append(gw.resolve_reputation(ip, key))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads: t.start()
    for t in threads: t.join()
    return results, errors


def test_concurrent_first_lookups_leave_one_record(gateway, provider, cache_path):
    results, errors = _hammer(gateway, "4.4.4.4", 16)
    assert errors == []
    assert len(results) == 16
    assert all(r == results[0] for r in results)
    on_disk = json.loads(cache_path.read_text())
    assert list(on_disk) == ["4.4.4.4"]
    assert on_disk["4.4.4.4"] == {"ip": "4.4.4.4", "country": "US", "countryCode": "US", "isVPN": False}
    assert 1 <= provider.vpn_calls <= 16


def test_coalesced_misses_call_provider_once(keys_path, cache_path):
    provider = FakeProvider()
    gw = Gateway(KeyStore(str(keys_path)).load(), ReputationCache(str(cache_path)).load(),
                 provider, coalesce_misses=True)
    try:
        results, errors = _hammer(gw, "5.5.5.5", 12)
    finally:
        gw.close()
    assert errors == []
    assert len(results) == 12
    assert provider.geo_calls == 1
    assert provider.vpn_calls == 1


class GatedProvider(FakeProvider):
    """Holds every geo lookup until `release` is set."""

    def __init__(self, **kw):
        super().__init__(**kw)
        self.release = threading.Event()

    def lookup_geo(self, ip):
        self.release.wait(5)
        return super().lookup_geo(ip)


def _wait_for(predicate, timeout=5):
    end = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < end, "condition never became true"
        time.sleep(0.01)


def test_coalesced_waiters_retry_after_failed_write(keys_path, cache_path):
    provider = GatedProvider()
    cache = ReputationCache(str(cache_path)).load()
    gw = Gateway(KeyStore(str(keys_path)).load(), cache, provider, coalesce_misses=True)
    real_put = cache.put
    calls = []

    def flaky_put(ip, record):
        calls.append(ip)
        if len(calls) == 1:
            raise CacheIOError()
        return real_put(ip, record)
    cache.put = flaky_put

    key = gw.authorize(VALID_KEY)
    results, errors = [], []

    def worker():
        try:
            results.append(gw.resolve_reputation("6.6.6.6", key))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    try:
        for t in threads: t.start()
        _wait_for(lambda: gw._inflight.get("6.6.6.6", [None, 0])[1] == 6)
        provider.release.set()
        for t in threads: t.join()
    finally:
        provider.release.set()
        gw.close()

    assert [type(e) for e in errors] == [CacheIOError]
    assert len(results) == 5
    # one failed attempt, one retry by the next waiter, everyone else hits
    assert provider.geo_calls == 2
    assert gw._inflight == {}
    assert json.loads(cache_path.read_text())["6.6.6.6"]["country"] == "US"


class StuckVPNProvider(FakeProvider):
    def __init__(self, **kw):
        super().__init__(**kw)
        self.release = threading.Event()

    def check_vpn(self, ip):
        self.release.wait(5)
        return True


def test_slow_vpn_check_fails_open_after_deadline(keys_path, cache_path):
    provider = StuckVPNProvider()
    gw = Gateway(KeyStore(str(keys_path)).load(), ReputationCache(str(cache_path)).load(),
                 provider, deadline=0.2)
    try:
        started = time.monotonic()
        out = gw.resolve_reputation("7.7.7.7", gw.authorize(VALID_KEY))
        elapsed = time.monotonic() - started
    finally:
        provider.release.set()
        gw.close()
    assert elapsed < 2
    assert out["isVPN"] is False
    assert out["country"] == "US"
    assert json.loads(cache_path.read_text())["7.7.7.7"]["isVPN"] is False
