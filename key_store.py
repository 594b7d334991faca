import os, json, logging
from dataclasses import dataclass
from datetime import datetime, timezone

from errors import MissingKey, InvalidKey, ExpiredKey, KeyStoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApiKey:
    key: str
    owner: str
    type: str
    expiry: datetime

    def is_expired(self, now=None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now > self.expiry

    def info(self):
        """Metadata echoed back to callers; never the key itself."""
        return {"owner": self.owner, "type": self.type}


def _parse_expiry(value):
    if isinstance(value, bool):
        raise ValueError(f"bad expiry: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    raise ValueError(f"bad expiry: {value!r}")


def _iter_records(data):
    if isinstance(data, list):
        for item in data:
            if not isinstance(item, dict):
                raise ValueError(f"key record must be an object, got {type(item).__name__}")
            yield item
    elif isinstance(data, dict):
        for k, v in data.items():
            if not isinstance(v, dict):
                raise ValueError(f"key record for {k!r} must be an object")
            yield {"key": k, **v}
    else:
        raise ValueError("key document must be a list or an object")


def parse_keys(data):
    keys = {}
    for rec in _iter_records(data):
        key = rec.get("key")
        if not isinstance(key, str) or not key:
            raise ValueError("key record without a key value")
        if key in keys:
            raise ValueError(f"duplicate key for owner {rec.get('owner', 'unknown')!r}")
        if "expiry" not in rec:
            raise ValueError(f"key record for owner {rec.get('owner', 'unknown')!r} has no expiry")
        keys[key] = ApiKey(key=key,
                           owner=str(rec.get("owner") or "unknown"),
                           type=str(rec.get("type") or "unknown"),
                           expiry=_parse_expiry(rec["expiry"]))
    return keys


class KeyStore:
    """Provisioned API keys, loaded from a JSON document.

    The mapping is replaced wholesale on (re)load and never mutated in place,
    so request threads can read it without locking.
    """

    def __init__(self, path):
        self.path = path
        self._keys = {}

    def load(self):
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            keys = parse_keys(data)
        except (OSError, ValueError) as e:
            raise KeyStoreError(f"cannot load API keys from {self.path}: {e}") from e
        self._keys = keys
        logger.info("Loaded %d API keys from %s", len(keys), self.path)
        return self

    def reload(self):
        # a failed reload keeps the previous key set
        return self.load()

    def validate(self, key, now=None) -> ApiKey:
        if not key:
            raise MissingKey()
        record = self._keys.get(key)
        if record is None:
            raise InvalidKey()
        if record.is_expired(now):
            raise ExpiredKey()
        return record

    def __len__(self):
        return len(self._keys)

    def __contains__(self, key):
        return key in self._keys

    @classmethod
    def from_path(cls, path):
        if not path or not os.path.exists(path):
            raise KeyStoreError(f"API key file not found: {path}")
        return cls(path).load()
