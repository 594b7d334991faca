import os, json, logging, tempfile, threading
from dataclasses import dataclass, asdict

from errors import CacheIOError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReputationRecord:
    ip: str
    country: str
    countryCode: str
    isVPN: bool

    def as_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, ip, d):
        if not isinstance(d, dict):
            raise ValueError(f"cache entry for {ip} is not an object")
        country = d.get("country") or "Unknown"
        is_vpn = d.get("isVPN", False)
        if not isinstance(country, str) or not isinstance(is_vpn, bool):
            raise ValueError(f"cache entry for {ip} has bad field types")
        return cls(ip=ip, country=country,
                   countryCode=str(d.get("countryCode") or country), isVPN=is_vpn)


class ReputationCache:
    """IP -> ReputationRecord, persisted as a single JSON document.

    Records are never evicted or re-checked. Every put rewrites the whole
    document through a temp file + os.replace under one writer lock, so a
    crash mid-write leaves the previous document intact.
    """

    def __init__(self, path):
        self.path = path
        self._records = {}
        self._write_lock = threading.Lock()

    def load(self):
        self._records = self._read()
        logger.info("Reputation cache: %d entries from %s", len(self._records), self.path)
        return self

    def _read(self):
        if not self.path or not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Reputation cache %s unreadable, starting empty: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Reputation cache %s is not a JSON object, starting empty", self.path)
            return {}
        records = {}
        for ip, entry in data.items():
            try:
                records[ip] = ReputationRecord.from_dict(ip, entry)
            except ValueError as e:
                logger.warning("Skipping malformed cache entry: %s", e)
        return records

    def get(self, ip):
        return self._records.get(ip)

    def put(self, ip, record: ReputationRecord) -> ReputationRecord:
        with self._write_lock:
            existing = self._records.get(ip)
            if existing is not None:
                return existing
            merged = dict(self._records)
            merged[ip] = record
            self._persist(merged)
            self._records = merged
        logger.debug("Cached reputation for %s", ip)
        return record

    def _persist(self, records):
        doc = {ip: r.as_dict() for ip, r in records.items()}
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".ipcache-", suffix=".tmp", dir=directory)
            with os.fdopen(fd, "w") as f:
                json.dump(doc, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
            tmp = None
        except OSError as e:
            logger.error("Failed to persist reputation cache to %s: %s", self.path, e)
            raise CacheIOError() from e
        finally:
            if tmp and os.path.exists(tmp):
                os.unlink(tmp)

    def snapshot(self):
        return dict(self._records)

    def __len__(self):
        return len(self._records)

    def __contains__(self, ip):
        return ip in self._records
