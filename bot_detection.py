import re

BOT_PATTERNS = [
    r"bot\b", r"crawler", r"spider", r"slurp", r"googlebot", r"bingbot", r"yandex",
    r"baiduspider", r"duckduckbot", r"facebookexternalhit", r"twitterbot",
    r"ahrefs", r"semrush", r"mj12bot", r"petalbot", r"applebot",
]

SUSPICIOUS_PATTERNS = [
    r"^curl/", r"^wget/", r"python-requests", r"python-urllib", r"aiohttp", r"httpx",
    r"go-http-client", r"java/", r"okhttp", r"libwww-perl", r"scrapy", r"headless",
    r"phantomjs", r"selenium", r"puppeteer", r"playwright", r"nikto", r"sqlmap",
    r"nmap", r"masscan", r"zgrab",
]

_BOT_RE = re.compile("|".join(BOT_PATTERNS), re.IGNORECASE)
_SUSPICIOUS_RE = re.compile("|".join(SUSPICIOUS_PATTERNS), re.IGNORECASE)


def classify_user_agent(user_agent):
    ua = (user_agent or "").strip()
    is_bot = bool(_BOT_RE.search(ua))
    # too short to be a real browser string
    is_suspicious = bool(_SUSPICIOUS_RE.search(ua)) or len(ua) < 10
    return {"userAgent": ua, "isBot": is_bot, "isSuspicious": is_suspicious}
