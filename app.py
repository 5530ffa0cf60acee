# app.py - backend kilometrage (API releves + registre des tournees sur FTP)
import os, logging
from logging.handlers import RotatingFileHandler
from flask import Flask, jsonify, request, Response
from flask.logging import default_handler
from flask_cors import CORS

from config import Config, FtpConfig
from defense import init_defense
from ftp_transport import FtpTransport
from km_store import RecordStore
from routes_kilometrage import bp_km, bp_km_admin
from write_queue import WriteQueue

# Origines permises (surcharge possible via FRONTEND_ORIGINS)
ALLOWED_ORIGINS = {
    "http://localhost:5173",
    "http://127.0.0.1:5173",
}


def build_store(ftp_config: FtpConfig = None) -> RecordStore:
    """Store unique du process: une seule WriteQueue partagee par toutes les requetes."""
    cfg = ftp_config or FtpConfig.from_env()
    return RecordStore(FtpTransport(cfg), WriteQueue(), horaires=cfg.horaires)


def create_app(overrides: dict = None, store: RecordStore = None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    allowed = ALLOWED_ORIGINS | set(app.config.get("FRONTEND_ORIGINS") or [])
    CORS(app, resources={r"/api/*": {"origins": sorted(allowed)}})

    @app.after_request
    def add_cors_headers(resp: Response):
        origin = request.headers.get("Origin", "")
        if origin and (origin.startswith("http://localhost:") or origin.startswith("http://127.0.0.1:")):
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type, X-Admin-Key"
        return resp

    _init_logging(app)
    init_defense(app, bp_km)

    app.extensions["km_store"] = store or build_store()
    app.register_blueprint(bp_km)
    app.register_blueprint(bp_km_admin)
    app.logger.info("Blueprint kilometrage enregistre (dir=%s).", app.extensions["km_store"].base_dir)

    @app.get("/health")
    @app.get("/healthz")
    def health():
        return jsonify(ok=True, service="kilometrage-backend")

    return app


def _init_logging(app: Flask):
    level = getattr(logging, app.config.get("KM_LOG_LEVEL") or "INFO", logging.INFO)
    app.logger.removeHandler(default_handler)
    # le store et le transport FTP journalisent sous "kilometrage"
    km_log = logging.getLogger("kilometrage")
    km_log.propagate = False
    for lg in (app.logger, km_log):
        lg.setLevel(level)
    if app.logger.handlers:
        return  # deja configure (plusieurs create_app dans le meme process)

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    sh = logging.StreamHandler(); sh.setFormatter(fmt)
    handlers = [sh]
    log_file = app.config.get("KM_LOG_FILE")
    if log_file:
        try:
            fh = RotatingFileHandler(log_file, maxBytes=5_000_000, backupCount=3, encoding="utf-8")
            fh.setFormatter(fmt); handlers.append(fh)
        except OSError as e:
            app.logger.warning("Log fichier indisponible (%s): %s", log_file, e)
    for lg in (app.logger, km_log):
        for h in handlers:
            lg.addHandler(h)


if __name__ == "__main__":
    app = create_app()
    port = int(os.environ.get("PORT", "10000"))
    app.run(host="0.0.0.0", port=port, threaded=True)
