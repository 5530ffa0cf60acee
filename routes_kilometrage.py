# routes_kilometrage.py - API kilometrage (stockage FTP JSON)
#
#   GET  /api/kilometrage/params?agence=GLEIZE
#   POST /api/kilometrage/newid      {agence, codeTournee}
#   POST /api/kilometrage/assign     {id, transporteur, codeTransporteur}
#   POST /api/kilometrage/absent     {agence, codeAgence, tournee, codeTournee, chauffeur, codeChauffeur, date, note}
#   POST /api/kilometrage/save       {agence, ..., date, km, commentaire, id, horaire}
#   GET  /api/kilometrage/data?agence=GLEIZE&year=2026
#   GET  /api/kilometrage/resume?agence=GLEIZE&date=2026-02-18[&id=&codeTournee=&codeChauffeur=]
#   GET  /api/kilometrage/sites
#   GET  /api/kilometrage/periods?agence=GLEIZE
#   GET  /api/kilometrage/healthz
#
#   GET|PUT /api/admin/kilometrage/params   (X-Admin-Key, voir defense.py)
from datetime import datetime, timezone

from flask import Blueprint, request, jsonify, current_app

import km_keys
from km_errors import KmError, ValidationError
from km_store import RecordStore

bp_km = Blueprint("kilometrage", __name__, url_prefix="/api/kilometrage")
bp_km_admin = Blueprint("kilometrage_admin", __name__, url_prefix="/api/admin/kilometrage")


def _store() -> RecordStore:
    return current_app.extensions["km_store"]


def _fail(err: KmError, what: str):
    if isinstance(err, ValidationError):
        return jsonify(success=False, error=err.message, code=err.code), 400
    current_app.logger.error("Erreur /api/kilometrage/%s : %s", what, err)
    return jsonify(success=False, error=str(err)), err.status_code


def _arg(name: str) -> str:
    return (request.args.get(name) or "").strip()


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@bp_km.get("/params")
def get_params():
    try:
        return jsonify(_store().read_registry(_arg("agence") or None))
    except KmError as e:
        return _fail(e, "params")


@bp_km.post("/newid")
def new_id():
    data = _body()
    try:
        rid = _store().new_route_id(str(data.get("agence") or ""), str(data.get("codeTournee") or ""))
    except KmError as e:
        return _fail(e, "newid")
    return jsonify(success=True, id=rid)


@bp_km.post("/assign")
def assign():
    data = _body()
    try:
        row = _store().assign_driver(
            str(data.get("id") or ""),
            str(data.get("transporteur") or ""),
            str(data.get("codeTransporteur") or ""),
        )
    except KmError as e:
        return _fail(e, "assign")
    return jsonify(success=True, row=row)


@bp_km.post("/absent")
def absent():
    try:
        _store().append_absence(_body())
    except KmError as e:
        return _fail(e, "absent")
    return jsonify(success=True)


@bp_km.post("/save")
def save():
    # les ecritures concurrentes d'un meme magasin sont serialisees par la WriteQueue
    try:
        _store().append_reading(_body())
    except KmError as e:
        return _fail(e, "save")
    return jsonify(success=True)


@bp_km.get("/data")
def year_data():
    agence = _arg("agence")
    year = _arg("year") or str(datetime.now(timezone.utc).year)
    if not agence:
        return jsonify(success=False, error="Parametre agence manquant"), 400
    if not km_keys.is_year(year):
        return jsonify(success=False, error="Parametre year invalide"), 400
    try:
        return jsonify(_store().read_year(agence, year))
    except KmError as e:
        return _fail(e, "data")


@bp_km.get("/resume")
def day_summary():
    agence, day = _arg("agence"), _arg("date")
    if not agence or not day:
        return jsonify(success=False, error="Parametres manquants (agence / date)"), 400
    if km_keys.parse_day(day) is None:
        return jsonify(success=False, error="Date invalide (YYYY-MM-DD attendu)"), 400
    try:
        rows = _store().read_day(
            agence, day,
            route_id=_arg("id") or None,
            route_code=_arg("codeTournee") or None,
            driver_code=_arg("codeChauffeur") or None,
        )
    except KmError as e:
        return _fail(e, "resume")
    return jsonify(success=True, rows=rows)


@bp_km.get("/sites")
def sites():
    try:
        return jsonify(success=True, sites=_store().list_sites())
    except KmError as e:
        return _fail(e, "sites")


@bp_km.get("/periods")
def periods():
    agence = _arg("agence")
    if not agence:
        return jsonify(success=False, error="Parametre agence manquant"), 400
    try:
        return jsonify(success=True, periods=_store().list_periods(agence))
    except KmError as e:
        return _fail(e, "periods")


@bp_km.get("/healthz")
def healthz():
    try:
        info = _store().healthcheck()
    except KmError as e:
        return jsonify(success=False, error=str(e)), 500
    return jsonify(success=True, **info)


# === Admin: edition complete du registre ===

@bp_km_admin.get("/params")
def admin_load_params():
    store = _store()
    try:
        data = store.read_registry()
        last_modified = store.registry_modified_at()
    except KmError as e:
        return _fail(e, "admin/params")
    resp = jsonify(ok=True, data=data, lastModified=last_modified)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@bp_km_admin.put("/params")
def admin_save_params():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or "data" not in payload:
        return jsonify(ok=False, error="missing_data"), 400
    try:
        rows = _store().replace_registry(payload["data"])
    except KmError as e:
        return _fail(e, "admin/params")
    current_app.logger.info("[KM] registre remplace (%s lignes)", len(rows))
    return jsonify(ok=True, count=len(rows))
