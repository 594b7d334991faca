import os, json, ipaddress, logging
import requests

from errors import ProviderUnavailable

logger = logging.getLogger(__name__)

# Verdict used whenever the VPN detector can't answer: unknown counts as "not a VPN".
FAIL_OPEN_VPN = False

# connect timeout; the read timeout is the configured value
CONNECT_TIMEOUT = 3.05

GEO_URL = "http://ip-api.com/json/{ip}"
VPN_URL = "https://vpnapi.io/api/{ip}"


def _ipset_entries(text):
    """Range strings from a JSON list, a JSON object of lists, or one-per-line text."""
    try:
        data = json.loads(text)
    except ValueError:
        return [s for s in (line.strip() for line in text.splitlines()) if s and not s.startswith("#")]
    groups = data.values() if isinstance(data, dict) else [data]
    return [x for group in groups if isinstance(group, list) for x in group if isinstance(x, str)]


def load_ipset(path):
    if not path or not os.path.exists(path):
        return []
    with open(path, "r") as f:
        entries = _ipset_entries(f.read())
    nets = []
    for entry in entries:
        try:
            nets.append(ipaddress.ip_network(entry.strip(), strict=False))
        except ValueError:
            logger.debug("Ignoring bad ipset entry %r", entry)
    logger.info("Loaded %d VPN ranges from %s", len(nets), path)
    return nets


class ReputationProvider:
    """Live geolocation (ip-api.com) and VPN/proxy detection (vpnapi.io)."""

    def __init__(self, vpn_api_key="", timeout=5.0, ipset_path=None,
                 geo_url=GEO_URL, vpn_url=VPN_URL, session=None):
        self.vpn_api_key = (vpn_api_key or "").strip()
        self.timeout = (min(CONNECT_TIMEOUT, timeout), timeout)
        self.geo_url = geo_url
        self.vpn_url = vpn_url
        self.session = session or requests.Session()
        self._nets = load_ipset(ipset_path)

    def lookup_geo(self, ip: str):
        """Return an ISO country code, or None when the lookup fails."""
        try:
            r = self.session.get(self.geo_url.format(ip=ip),
                                 params={"fields": "status,countryCode"}, timeout=self.timeout)
            d = r.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Geo lookup failed for %s: %s", ip, e)
            return None
        if not isinstance(d, dict) or d.get("status") != "success":
            return None
        code = d.get("countryCode")
        return code.upper() if isinstance(code, str) and code else None

    def _in_ipset(self, ip):
        try:
            ip_obj = ipaddress.ip_address(ip)
        except ValueError:
            return False
        return any(ip_obj in net for net in self._nets)

    def _vpnapi_lookup(self, ip):
        if not self.vpn_api_key:
            raise ProviderUnavailable("VPNAPI_IO_KEY not set")
        try:
            r = self.session.get(self.vpn_url.format(ip=ip),
                                 params={"key": self.vpn_api_key}, timeout=self.timeout)
        except requests.RequestException as e:
            raise ProviderUnavailable(f"request failed: {e}") from e
        if r.status_code != 200:
            raise ProviderUnavailable(f"HTTP {r.status_code}")
        try:
            sec = r.json().get("security")
        except (ValueError, AttributeError) as e:
            raise ProviderUnavailable(f"malformed response: {e}") from e
        if not isinstance(sec, dict):
            raise ProviderUnavailable("response has no security block")
        return bool(sec.get("vpn") or sec.get("proxy") or sec.get("tor"))

    def check_vpn(self, ip: str) -> bool:
        # offline first
        if self._in_ipset(ip):
            return True
        try:
            return self._vpnapi_lookup(ip)
        except ProviderUnavailable as e:
            logger.warning("VPN check unavailable for %s (%s), assuming not VPN", ip, e)
            return FAIL_OPEN_VPN
        except Exception:
            logger.exception("Unexpected VPN check failure for %s, assuming not VPN", ip)
            return FAIL_OPEN_VPN
