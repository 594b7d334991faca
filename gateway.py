import re, time, logging, threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

from errors import InvalidIPFormat, CacheIOError, ReputationError
from reputation_cache import ReputationRecord
from reputation_provider import FAIL_OPEN_VPN

logger = logging.getLogger(__name__)

# Format check only: octets above 255 pass.
IP_PATTERN = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$", re.ASCII)


def is_ip_format(ip) -> bool:
    return isinstance(ip, str) and IP_PATTERN.fullmatch(ip) is not None


class Gateway:
    """Service context shared by all request handlers.

    Owns the key store, the reputation cache and the provider client.
    `deadline` bounds the wall-clock wait for each provider answer; a late
    geo answer becomes "Unknown" and a late VPN answer becomes FAIL_OPEN_VPN.
    """

    def __init__(self, keys, cache, provider, coalesce_misses=False, workers=4, deadline=None):
        self.keys = keys
        self.cache = cache
        self.provider = provider
        self.coalesce_misses = coalesce_misses
        self.deadline = deadline
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reputation")
        # ip -> [lock, number of requests holding or waiting on it]
        self._inflight = {}
        self._inflight_lock = threading.Lock()

    def authorize(self, key):
        return self.keys.validate(key)

    def resolve_reputation(self, ip, key_info) -> dict:
        if not is_ip_format(ip):
            raise InvalidIPFormat()
        record = self.cache.get(ip)
        if record is None:
            if self.coalesce_misses:
                lock = self._acquire_slot(ip)
                try:
                    with lock:
                        record = self.cache.get(ip) or self._fetch_and_store(ip)
                finally:
                    self._release_slot(ip)
            else:
                record = self._fetch_and_store(ip)
        # key metadata always comes from the live request
        return {**record.as_dict(), "keyInfo": key_info.info()}

    def _acquire_slot(self, ip):
        with self._inflight_lock:
            slot = self._inflight.get(ip)
            if slot is None:
                slot = self._inflight[ip] = [threading.Lock(), 0]
            slot[1] += 1
            return slot[0]

    def _release_slot(self, ip):
        with self._inflight_lock:
            slot = self._inflight[ip]
            slot[1] -= 1
            if slot[1] == 0:
                del self._inflight[ip]

    def _answer(self, future, fallback, what, ip, started):
        timeout = None
        if self.deadline is not None:
            timeout = max(self.deadline - (time.monotonic() - started), 0)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            logger.warning("%s for %s exceeded %ss, using %r", what, ip, self.deadline, fallback)
            return fallback

    def _fetch_and_store(self, ip) -> ReputationRecord:
        logger.info("Cache miss for %s, querying provider", ip)
        try:
            started = time.monotonic()
            geo = self._pool.submit(self.provider.lookup_geo, ip)
            vpn = self._pool.submit(self.provider.check_vpn, ip)
            country = self._answer(geo, None, "Geo lookup", ip, started) or "Unknown"
            is_vpn = self._answer(vpn, FAIL_OPEN_VPN, "VPN check", ip, started)
            record = ReputationRecord(ip=ip, country=country, countryCode=country, isVPN=bool(is_vpn))
            return self.cache.put(ip, record)
        except CacheIOError:
            raise
        except Exception as e:
            logger.exception("Reputation lookup failed for %s", ip)
            raise ReputationError() from e

    def close(self):
        self._pool.shutdown(wait=False)
