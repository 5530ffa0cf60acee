# defense.py - durcissement du backend kilometrage (Flask)
import os, re, time
from typing import Optional
from flask import request, abort, g, jsonify, current_app
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix

ADMIN_PREFIX = "/api/admin/"


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default)


def _compile_regex(pat: str) -> Optional[re.Pattern]:
    if not pat:
        return None
    try:
        return re.compile(pat, re.I)
    except re.error:
        return None


def _parse_csv(s: str) -> list[str]:
    return [x.strip() for x in (s or "").split(",") if x.strip()]


def _client_ip() -> str:
    # ProxyFix deja applique: remote_addr est l'IP du client
    return (request.remote_addr or "").strip()


def _admin_key_ok() -> bool:
    k = current_app.config.get("ADMIN_API_KEY") or ""
    if not k:
        return False  # pas de cle configuree: routes admin fermees
    return request.headers.get("X-Admin-Key") == k


def _json_error(status: int, code: str, msg: str):
    resp = jsonify({"success": False, "error": code, "message": msg})
    resp.status_code = status
    return resp


def _install_security_headers(app):
    hsts_seconds = int(_env("HSTS_SECONDS", "31536000"))

    @app.after_request
    def _set_headers(resp):
        resp.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
        resp.headers.setdefault("Strict-Transport-Security", f"max-age={hsts_seconds}; includeSubDomains")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        return resp


def _install_request_guards(app):
    deny = set(_parse_csv(_env("DEFENSE_IP_DENYLIST", "")))
    ua_re = _compile_regex(_env("DEFENSE_BLOCK_UA_REGEX", r"(sqlmap|nikto|acunetix|nmap|dirbuster)"))
    max_json = int(_env("DEFENSE_MAX_JSON_KB", "1024")) * 1024
    slow_ms = int(_env("DEFENSE_SLOW_MS", "3000"))

    @app.before_request
    def _pre_guard():
        g._t0 = time.perf_counter()

        if _client_ip() in deny:
            abort(403)

        ua = (request.headers.get("User-Agent") or "").lower()
        if ua_re and ua_re.search(ua):
            abort(403)

        if request.mimetype and "json" in request.mimetype.lower():
            raw = request.get_data(cache=True, as_text=False) or b""
            if len(raw) > max_json:
                abort(413)

        if request.path.startswith(ADMIN_PREFIX) and not _admin_key_ok():
            return _json_error(403, "forbidden", "Cle admin requise")

    @app.after_request
    def _slow_log(resp):
        # un FTP lent bloque la file d'ecriture de la cle: on le trace
        dt_ms = int((time.perf_counter() - getattr(g, "_t0", time.perf_counter())) * 1000)
        if dt_ms >= slow_ms:
            current_app.logger.warning("SLOW %s %s %sms ip=%s", request.method, request.path, dt_ms, _client_ip())
        return resp


def _install_rate_limits(app, *blueprints):
    def _key_func():
        return request.headers.get("X-Admin-Key") or get_remote_address()

    limiter = Limiter(
        key_func=_key_func,
        default_limits=[x.strip() for x in (app.config.get("RATELIMIT_DEFAULT") or "").split(";") if x.strip()],
        storage_uri=app.config.get("RATELIMIT_STORAGE_URI", "memory://"),
    )
    # limite de rafale sur l API kilometrage
    burst = _env("RATE_LIMITS_BURST", "30/10seconds")
    for bp in blueprints:
        limiter.limit(burst)(bp)
    limiter.init_app(app)
    return limiter


def _install_proxyfix(app):
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)
    app.config.setdefault("PREFERRED_URL_SCHEME", "https")


def _install_json_errors(app):
    @app.errorhandler(400)
    def _400(e): return _json_error(400, "bad_request", "Requete invalide")
    @app.errorhandler(403)
    def _403(e): return _json_error(403, "forbidden", "Interdit")
    @app.errorhandler(404)
    def _404(e): return _json_error(404, "not_found", "Introuvable")
    @app.errorhandler(405)
    def _405(e): return _json_error(405, "method_not_allowed", "Methode non autorisee")
    @app.errorhandler(413)
    def _413(e): return _json_error(413, "payload_too_large", "Requete trop volumineuse")
    @app.errorhandler(429)
    def _429(e): return _json_error(429, "rate_limited", "Trop de requetes")
    @app.errorhandler(500)
    def _500(e): return _json_error(500, "server_error", "Erreur interne")


def init_defense(app, *limited_blueprints):
    """A appeler depuis create_app() avant register_blueprint()."""
    _install_proxyfix(app)
    _install_security_headers(app)
    _install_request_guards(app)
    limiter = _install_rate_limits(app, *limited_blueprints)
    _install_json_errors(app)
    app.logger.info("[DEFENSE] Defense stack initialized.")
    return limiter
