import os, atexit, logging
from dotenv import load_dotenv
from flask import Flask, request, jsonify, make_response, current_app
from werkzeug.exceptions import HTTPException
from models import db, Event
from errors import GatewayError, MissingParameter, UnknownBrand, ReputationError
from key_store import KeyStore
from reputation_cache import ReputationCache
from reputation_provider import ReputationProvider
from gateway import Gateway
from brands import BrandCatalog
from bot_detection import classify_user_agent

logger = logging.getLogger(__name__)

GATED = ["GET", "POST"]


def _env_flag(name, default="false"):
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def _default_config(instance_path):
    db_uri = os.getenv("DATABASE_URL") or ("sqlite:///" + os.path.join(instance_path, "app.db"))
    # Render / Heroku style postgres URL fix
    if db_uri.startswith("postgres://"):
        db_uri = db_uri.replace("postgres://", "postgresql://", 1)
    return dict(
        SQLALCHEMY_DATABASE_URI=db_uri,
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        API_KEYS_PATH=os.getenv("API_KEYS_PATH") or os.path.join(instance_path, "keys.json"),
        REPUTATION_CACHE_PATH=os.getenv("REPUTATION_CACHE_PATH") or os.path.join(instance_path, "ip_cache.json"),
        BRANDS_PATH=os.getenv("BRANDS_PATH") or os.path.join(instance_path, "brands.json"),
        VPNAPI_IO_KEY=os.getenv("VPNAPI_IO_KEY", "").strip(),
        VPN_IPSET_PATH=os.getenv("VPN_IPSET_PATH", "").strip(),
        VPN_CHECK_TIMEOUT=float(os.getenv("VPN_CHECK_TIMEOUT", "5")),
        COALESCE_MISSES=_env_flag("COALESCE_MISSES"),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
    )


def create_app(config=None, provider=None, instance_path=None):
    # Load .env in local/dev environments
    load_dotenv()
    app = Flask(__name__, instance_relative_config=True, instance_path=instance_path)
    os.makedirs(app.instance_path, exist_ok=True)
    app.config.update(_default_config(app.instance_path))
    if config:
        app.config.update(config)
    logging.basicConfig(level=app.config["LOG_LEVEL"],
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    db.init_app(app)
    with app.app_context():
        db.create_all()

    # no key table, no service: KeyStoreError propagates to the caller
    keys = KeyStore.from_path(app.config["API_KEYS_PATH"])
    cache = ReputationCache(app.config["REPUTATION_CACHE_PATH"]).load()
    if provider is None:
        provider = ReputationProvider(vpn_api_key=app.config["VPNAPI_IO_KEY"],
                                      timeout=app.config["VPN_CHECK_TIMEOUT"],
                                      ipset_path=app.config["VPN_IPSET_PATH"])
    gateway = Gateway(keys, cache, provider,
                      coalesce_misses=app.config["COALESCE_MISSES"],
                      deadline=app.config["VPN_CHECK_TIMEOUT"])
    # the lookup pool lives as long as the process
    atexit.register(gateway.close)
    app.extensions["gateway"] = gateway
    app.extensions["brands"] = BrandCatalog(app.config["BRANDS_PATH"]).load()

    def _gateway():
        return current_app.extensions["gateway"]

    def _param(name):
        val = request.values.get(name)
        if val is None and request.is_json:
            body = request.get_json(silent=True) or {}
            val = body.get(name) if isinstance(body, dict) else None
        # lists, numbers, objects count as absent
        return val.strip() if isinstance(val, str) else None

    def _client_ip():
        return request.headers.get("X-Forwarded-For", request.remote_addr or "")

    def _log(kind, status, details, owner=None):
        ev = Event(kind=kind, route=request.path, ip=_client_ip(), key_owner=owner,
                   status=status, details=details)
        db.session.add(ev); db.session.commit()

    def _authorize():
        return _gateway().authorize(_param("key"))

    def _require_id():
        val = _param("id")
        if not val:
            raise MissingParameter()
        return val

    @app.errorhandler(GatewayError)
    def handle_gateway_error(e):
        if e.status_code >= 500:
            logger.error("%s on %s: %s", e.name, request.path, e.message, exc_info=e)
            kind = "error"
        else:
            logger.info("%s on %s from %s", e.name, request.path, _client_ip())
            kind = "denied"
        _log(kind, e.status_code, {"error": e.name, "id": _param("id")})
        return jsonify(e.as_dict()), e.status_code

    @app.errorhandler(405)
    def method_not_allowed(e):
        resp = make_response(jsonify({"error": "MethodNotAllowed", "message": "Method not allowed"}), 405)
        if getattr(e, "valid_methods", None):
            resp.headers["Allow"] = ", ".join(e.valid_methods)
        return resp

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        if isinstance(e, HTTPException):
            return e
        logger.exception("Unhandled error on %s", request.path)
        db.session.rollback()
        return handle_gateway_error(ReputationError())

    @app.route("/brands", methods=GATED)
    def brands():
        api_key = _authorize()
        brand_id = _require_id()
        brand = current_app.extensions["brands"].lookup(brand_id)
        if brand is None:
            raise UnknownBrand()
        _log("brand", 200, {"id": brand_id}, owner=api_key.owner)
        return jsonify({"brand": brand, "keyInfo": api_key.info()})

    @app.route("/ipcheck", methods=GATED)
    def ipcheck():
        api_key = _authorize()
        ip = _require_id()
        result = _gateway().resolve_reputation(ip, api_key)
        _log("ipcheck", 200, {"id": ip, "isVPN": result["isVPN"]}, owner=api_key.owner)
        return jsonify(result)

    @app.route("/detectbot", methods=GATED)
    def detectbot():
        api_key = _authorize()
        ua = _require_id()
        result = classify_user_agent(ua)
        _log("detectbot", 200, {"isBot": result["isBot"], "isSuspicious": result["isSuspicious"]},
             owner=api_key.owner)
        return jsonify({**result, "keyInfo": api_key.info()})

    @app.route("/api/events", methods=GATED)
    def api_events():
        _authorize()
        kind = request.args.get("kind")
        try:
            page = max(int(request.args.get("page", 1)), 1); per = min(max(int(request.args.get("per", 25)), 1), 100)
        except ValueError:
            page, per = 1, 25
        q = Event.query
        if kind in {"ipcheck", "brand", "detectbot", "denied", "error"}:
            q = q.filter(Event.kind == kind)
        q = q.order_by(Event.created_at.desc(), Event.id.desc()).paginate(page=page, per_page=per, error_out=False)
        payload = {"page": page, "per": per, "total": q.total, "items": [e.as_dict() for e in q.items]}
        resp = make_response(jsonify(payload)); resp.headers["Cache-Control"] = "no-store"; return resp

    @app.route("/api/health")
    def api_health():
        gw = _gateway()
        return {"ok": True, "keys": len(gw.keys), "cached": len(gw.cache)}

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", 5000)), threaded=True)
